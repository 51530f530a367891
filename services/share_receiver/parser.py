"""Share payload decoding.

The body of a share request can only be read once, so it is captured into a
``CapturedBody`` first and every decoder works on those bytes. The standard
Starlette multipart decoder is tried first; when it raises, a manual
byte-level decoder extracts the same fields.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional, Tuple

from python_multipart.multipart import parse_options_header
from starlette.datastructures import Headers, UploadFile
from starlette.formparsers import MultiPartParser
from starlette.requests import ClientDisconnect, Request

from shared.models import DEFAULT_MIME_TYPE, ParsedSharePayload, SharedFile

logger = logging.getLogger(__name__)

TEXT_FIELDS = ("title", "text", "url")

CRLF = b"\r\n"
HEADER_END = b"\r\n\r\n"


class ParseFailure(Exception):
    """Raised when a share body cannot be read or decoded."""


@dataclass(frozen=True)
class CapturedBody:
    """The bytes of a share request, read exactly once."""
    content_type: str
    data: bytes = field(repr=False)

    @classmethod
    async def capture(cls, request: Request) -> "CapturedBody":
        """
        Drain the request body stream into memory.

        This is the only place the request stream is read; callers pass the
        returned object on instead of the request.

        Raises:
            ParseFailure: If the client disconnected before the body was read
        """
        chunks = []
        try:
            async for chunk in request.stream():
                chunks.append(chunk)
        except ClientDisconnect as e:
            raise ParseFailure("Client disconnected while sending share body") from e
        return cls(
            content_type=request.headers.get("content-type", ""),
            data=b"".join(chunks)
        )

    @property
    def media_type(self) -> str:
        return self.content_type.split(";", 1)[0].strip().lower()


class _FilePart(NamedTuple):
    filename: str
    content_type: Optional[str]
    data: bytes
    declared_length: Optional[str]


def _safe_decode(value: bytes) -> str:
    # Matches Starlette: UTF-8 first, latin-1 when that fails.
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError:
        return value.decode("latin-1")


def _normalize_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _normalize_mime_type(value: Optional[str]) -> str:
    if not value:
        return DEFAULT_MIME_TYPE
    mime_type = value.split(";", 1)[0].strip()
    return mime_type or DEFAULT_MIME_TYPE


def _pick_files(candidates: List[_FilePart]) -> Tuple[SharedFile, ...]:
    """
    Turn every part that carries a filename into a shared file.

    Browsers send an empty ``filename=""`` part when no file was attached;
    such placeholders are skipped.
    """
    files = []
    for candidate in candidates:
        if not candidate.filename and not candidate.data:
            continue
        reported_size = len(candidate.data)
        if candidate.declared_length is not None:
            try:
                reported_size = int(candidate.declared_length)
            except ValueError:
                pass
        files.append(SharedFile(
            name=candidate.filename.strip() or "unnamed",
            mime_type=_normalize_mime_type(candidate.content_type),
            data=candidate.data,
            reported_size=reported_size
        ))
    return tuple(files)


def _build_payload(fields: Dict[str, str], candidates: List[_FilePart]) -> Optional[ParsedSharePayload]:
    if not fields and not candidates:
        return None
    return ParsedSharePayload(
        title=_normalize_text(fields.get("title")),
        text=_normalize_text(fields.get("text")),
        url=_normalize_text(fields.get("url")),
        files=_pick_files(candidates)
    )


def extract_boundary(content_type: str) -> Optional[str]:
    """Get the multipart boundary token from a content-type header value."""
    _, params = parse_options_header(content_type or "")
    boundary = params.get(b"boundary")
    if not boundary:
        return None
    return boundary.decode("latin-1")


def _parse_part_headers(block: bytes) -> Dict[str, bytes]:
    """Split a part's header block into lowercased names and raw values."""
    headers: Dict[str, bytes] = {}
    for line in block.split(CRLF):
        name, separator, value = line.partition(b":")
        if not separator:
            continue
        headers[name.strip().lower().decode("latin-1")] = value.strip()
    return headers


def parse_multipart_fallback(body: CapturedBody) -> Optional[ParsedSharePayload]:
    """
    Decode a multipart body by scanning the raw bytes for boundaries.

    Part bodies are sliced as bytes and only decoded to text for parts that
    are not files. Content-Disposition parameters are read with the same
    python-multipart helper Starlette uses, so quoted, escaped and token
    forms decode identically.

    Args:
        body: The captured share request

    Returns:
        ParsedSharePayload, or None if there is no boundary or no recognised part
    """
    boundary = extract_boundary(body.content_type)
    if not boundary:
        logger.warning("Share body has no multipart boundary")
        return None

    data = body.data
    delimiter = b"--" + boundary.encode("latin-1")

    positions = []
    position = data.find(delimiter)
    while position != -1:
        positions.append(position)
        position = data.find(delimiter, position + len(delimiter))

    fields: Dict[str, str] = {}
    candidates: List[_FilePart] = []

    for index, position in enumerate(positions):
        part_start = position + len(delimiter)
        # Closing delimiter: "--boundary--"
        if data[part_start:part_start + 2] == b"--":
            break

        part_end = positions[index + 1] if index + 1 < len(positions) else len(data)
        part = data[part_start:part_end]
        if part.startswith(CRLF):
            part = part[len(CRLF):]

        header_end = part.find(HEADER_END)
        if header_end == -1:
            continue

        headers = _parse_part_headers(part[:header_end])
        content = part[header_end + len(HEADER_END):]
        if content.endswith(CRLF):
            content = content[:-len(CRLF)]

        disposition = headers.get("content-disposition")
        if disposition is None:
            continue
        _, options = parse_options_header(disposition)
        if b"name" not in options:
            continue

        if b"filename" in options:
            content_type = headers.get("content-type")
            content_length = headers.get("content-length")
            candidates.append(_FilePart(
                filename=_safe_decode(options[b"filename"]),
                content_type=content_type.decode("latin-1") if content_type is not None else None,
                data=content,
                declared_length=content_length.decode("latin-1") if content_length is not None else None
            ))
            continue

        name = _safe_decode(options[b"name"])
        if name in TEXT_FIELDS and name not in fields:
            fields[name] = _safe_decode(content)

    return _build_payload(fields, candidates)


class SharePayloadParser:
    """Decodes captured share bodies into ParsedSharePayload objects."""

    async def parse(self, body: CapturedBody) -> Optional[ParsedSharePayload]:
        """
        Decode a captured share body.

        Multipart bodies go through the standard decoder first and the manual
        decoder if that raises. JSON bodies with title/text/url keys are also
        accepted.

        Returns:
            ParsedSharePayload, or None if nothing could be decoded
        """
        if body.media_type == "application/json":
            return self._parse_json(body)

        try:
            return await self._parse_standard(body)
        except Exception as e:
            logger.warning(f"Standard multipart decoder failed ({e!r}), using manual decoder")

        try:
            return parse_multipart_fallback(body)
        except Exception as e:
            logger.error(f"Manual multipart decoder failed: {e}", exc_info=True)
            return None

    async def _parse_standard(self, body: CapturedBody) -> Optional[ParsedSharePayload]:
        async def stream():
            yield body.data

        parser = MultiPartParser(Headers({"content-type": body.content_type}), stream())
        form = await parser.parse()

        fields: Dict[str, str] = {}
        candidates: List[_FilePart] = []
        try:
            for key, value in form.multi_items():
                if isinstance(value, UploadFile):
                    candidates.append(_FilePart(
                        filename=value.filename or "",
                        content_type=value.headers.get("content-type"),
                        data=await value.read(),
                        declared_length=value.headers.get("content-length")
                    ))
                elif key in TEXT_FIELDS and key not in fields:
                    fields[key] = value
        finally:
            await form.close()

        return _build_payload(fields, candidates)

    @staticmethod
    def _parse_json(body: CapturedBody) -> Optional[ParsedSharePayload]:
        try:
            document = json.loads(body.data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            logger.warning(f"Share body is not valid JSON: {e}")
            return None

        if not isinstance(document, dict):
            logger.warning("Share JSON body is not an object")
            return None

        fields = {
            key: document[key]
            for key in TEXT_FIELDS
            if isinstance(document.get(key), str)
        }
        return _build_payload(fields, [])
