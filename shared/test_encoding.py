"""Tests for chunked base64 encoding."""

import base64
import binascii
import os

import pytest

from shared.encoding import BASE64_CHUNK_SIZE, decode_base64_chunked, encode_base64_chunked


@pytest.mark.parametrize("size", [0, 1, 2, 3, 8191, 8192, 8193, 1024 * 1024])
def test_round_trip_is_exact(size):
    """Encoding then decoding reproduces the input bytes."""
    data = os.urandom(size)

    encoded = encode_base64_chunked(data)

    assert decode_base64_chunked(encoded) == data


def test_output_is_one_valid_base64_string():
    """Chunk boundaries do not leave padding in the middle of the output."""
    data = bytes(range(256)) * 100  # 25600 bytes, not a multiple of 3 per chunk

    encoded = encode_base64_chunked(data)

    assert encoded == base64.b64encode(data).decode("ascii")
    assert "=" not in encoded.rstrip("=")


def test_small_chunk_size_matches_standard_encoding():
    """The carried remainder keeps output identical for any chunk size."""
    data = b"hello shared world"

    assert encode_base64_chunked(data, chunk_size=4) == base64.b64encode(data).decode("ascii")
    assert decode_base64_chunked(encode_base64_chunked(data, chunk_size=5), chunk_size=7) == data


def test_empty_input():
    """Empty data encodes to an empty string and back."""
    assert encode_base64_chunked(b"") == ""
    assert decode_base64_chunked("") == b""


def test_default_chunk_size():
    assert BASE64_CHUNK_SIZE == 8192


def test_decode_rejects_bad_length():
    """Text whose length is not a multiple of 4 is rejected."""
    with pytest.raises(ValueError):
        decode_base64_chunked("abcde")


def test_decode_rejects_invalid_characters():
    """Characters outside the base64 alphabet are rejected."""
    with pytest.raises((ValueError, binascii.Error)):
        decode_base64_chunked("ab$d")
