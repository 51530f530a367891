"""Base64 helpers for storing binary share content as text."""

import base64
from typing import List

# 8 KiB slices keep individual encode/decode calls small.
BASE64_CHUNK_SIZE = 8192


def encode_base64_chunked(data: bytes, chunk_size: int = BASE64_CHUNK_SIZE) -> str:
    """
    Encode bytes to base64 text, walking the input in fixed-size chunks.

    Each chunk is encoded on a 3-byte boundary and the 0-2 leftover bytes are
    carried into the next chunk, so the joined pieces form one valid base64
    string identical to encoding the whole buffer at once.

    Args:
        data: Binary content to encode
        chunk_size: Number of input bytes read per step

    Returns:
        ASCII base64 text
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    view = memoryview(data)
    pieces: List[bytes] = []
    carry = b""

    for start in range(0, len(view), chunk_size):
        chunk = carry + view[start:start + chunk_size].tobytes()
        usable = len(chunk) - (len(chunk) % 3)
        pieces.append(base64.b64encode(chunk[:usable]))
        carry = chunk[usable:]

    if carry:
        pieces.append(base64.b64encode(carry))

    return b"".join(pieces).decode("ascii")


def decode_base64_chunked(text: str, chunk_size: int = BASE64_CHUNK_SIZE) -> bytes:
    """
    Decode base64 text produced by :func:`encode_base64_chunked`.

    The text is decoded in 4-character aligned slices; only the final slice
    may carry padding.

    Raises:
        ValueError: If the text is not valid base64
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    cleaned = "".join(text.split())
    if len(cleaned) % 4:
        raise ValueError(f"Invalid base64 length {len(cleaned)}")

    step = max(4, chunk_size - (chunk_size % 4))
    return b"".join(
        base64.b64decode(cleaned[start:start + step], validate=True)
        for start in range(0, len(cleaned), step)
    )
