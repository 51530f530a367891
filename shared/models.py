"""Shared data models for the share inbox application."""

import io
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, BinaryIO, Dict, List, Optional, Tuple

from shared.encoding import decode_base64_chunked, encode_base64_chunked

DEFAULT_MIME_TYPE = "application/octet-stream"
URL_PATTERN = re.compile(r"^https?://", re.IGNORECASE)


@dataclass(frozen=True)
class SharedFile:
    """
    A file received with a share.

    ``reported_size`` is the size the sender declared, which some mobile share
    clients report as 0 even though ``data`` is non-empty.
    """
    name: str
    mime_type: str
    data: bytes = field(repr=False)
    reported_size: int = 0

    def open_stream(self) -> BinaryIO:
        """Open a binary stream over the file content."""
        return io.BytesIO(self.data)

    def read(self) -> bytes:
        """Read the complete file content."""
        return self.data

    @property
    def kind(self) -> str:
        if self.mime_type.startswith("image/"):
            return "image"
        if self.mime_type.startswith("video/"):
            return "video"
        return "file"


@dataclass(frozen=True)
class ParsedSharePayload:
    """
    Decoded result of one share request.

    ``files`` holds every shared file in part order; ``file`` is the first
    one and decides the kind of the share.
    """
    title: Optional[str] = None
    text: Optional[str] = None
    url: Optional[str] = None
    files: Tuple[SharedFile, ...] = ()

    @property
    def file(self) -> Optional[SharedFile]:
        return self.files[0] if self.files else None

    @property
    def content(self) -> str:
        """Primary textual content: url, then text, then title."""
        return self.url or self.text or self.title or ""

    @property
    def is_empty(self) -> bool:
        return self.file is None and not self.content

    @property
    def kind(self) -> str:
        """Classify the share; a file takes precedence over text and url."""
        if self.file is not None:
            return self.file.kind
        if URL_PATTERN.match(self.content.strip()):
            return "link"
        return "text"


@dataclass
class QueuedFile:
    """A file stored in the offline queue as base64 text."""
    name: str
    type: str
    size: int
    data: str = field(repr=False)

    @classmethod
    def from_shared_file(cls, shared_file: SharedFile) -> "QueuedFile":
        return cls(
            name=shared_file.name,
            type=shared_file.mime_type,
            size=shared_file.reported_size,
            data=encode_base64_chunked(shared_file.data),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueuedFile":
        return cls(
            name=data.get("name") or "unnamed",
            type=data.get("type") or DEFAULT_MIME_TYPE,
            size=int(data.get("size") or 0),
            data=data.get("data") or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "type": self.type, "size": self.size, "data": self.data}

    def to_shared_file(self) -> SharedFile:
        """Decode the stored base64 back into the original bytes."""
        return SharedFile(
            name=self.name,
            mime_type=self.type,
            data=decode_base64_chunked(self.data),
            reported_size=self.size,
        )


@dataclass
class NewQueuedShare:
    """A share about to be queued; the store assigns id and timestamp."""
    title: Optional[str] = None
    text: Optional[str] = None
    url: Optional[str] = None
    files: List[QueuedFile] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: ParsedSharePayload) -> "NewQueuedShare":
        files = [QueuedFile.from_shared_file(shared_file) for shared_file in payload.files]
        return cls(title=payload.title, text=payload.text, url=payload.url, files=files)


@dataclass
class QueuedShare:
    """A durable share record awaiting delivery."""
    id: int
    title: Optional[str]
    text: Optional[str]
    url: Optional[str]
    files: List[QueuedFile]
    timestamp: int

    @property
    def delivery_key(self) -> str:
        """Stable key identifying this entry across delivery attempts."""
        return f"q{self.id}-{self.timestamp}"

    def to_payload(self) -> ParsedSharePayload:
        """
        Rebuild the share payload with the file bytes decoded.

        Raises:
            ValueError: If any stored file data is not valid base64
        """
        return ParsedSharePayload(
            title=self.title,
            text=self.text,
            url=self.url,
            files=tuple(queued_file.to_shared_file() for queued_file in self.files),
        )


class DeliveryOutcome(str, Enum):
    """Result of one delivery attempt."""
    SUCCESS = "success"
    NETWORK_FAILURE = "network_failure"
    SERVER_REJECTED = "server_rejected"


@dataclass
class DeliveryResult:
    """Outcome of a delivery attempt plus where it stopped."""
    outcome: DeliveryOutcome
    stage: Optional[str] = None  # storage, ingest
    detail: Optional[str] = None
    keys: List[str] = field(default_factory=list)
    # Stored objects that no accepted record refers to
    orphaned_keys: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome == DeliveryOutcome.SUCCESS


@dataclass
class UploadResult:
    """Informational result of a storage write."""
    bytes_written: int
    strategy_used: str  # stream, buffered
    key: str


@dataclass
class ShareOutcome:
    """Outcome reported back to the share sender through the redirect."""
    status: str  # success, pending, error
    reason: Optional[str] = None  # parse_failed, upload_failed, unknown
    queue_id: Optional[int] = None

    @classmethod
    def success(cls) -> "ShareOutcome":
        return cls(status="success")

    @classmethod
    def pending(cls, queue_id: int) -> "ShareOutcome":
        return cls(status="pending", queue_id=queue_id)

    @classmethod
    def error(cls, reason: str) -> "ShareOutcome":
        return cls(status="error", reason=reason)

    def query_string(self) -> str:
        if self.status == "error":
            return f"shared=error&reason={self.reason or 'unknown'}"
        return f"shared={self.status}"


class TriggerKind(str, Enum):
    """Sources that can start a queue drain."""
    CONNECTIVITY_RESTORED = "connectivity_restored"
    PERIODIC = "periodic"
    COMMAND = "command"


@dataclass
class DrainSummary:
    """Counts from one queue drain."""
    trigger: TriggerKind
    attempted: int = 0
    delivered: int = 0
    pending: int = 0


@dataclass
class SyncEvent:
    """Event published when a queued share has been delivered."""
    type: str
    id: int

    def to_message(self) -> Dict[str, Any]:
        return {"type": self.type, "id": self.id}
