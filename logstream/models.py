"""Value types shared by the serializer, queue, rotator and stream."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable


class FormatPolicy(Enum):
    RAW = "raw"
    JSON = "json"
    ORDERED_JSON = "ordered-json"
    UNSAFE_JSON = "unsafe-json"
    TEXT = "text"


class EvictionPolicy(Enum):
    DROP_OLDEST = "drop-oldest"
    DROP_NEWEST = "drop-newest"


class RawText(str):
    """A pre-formatted record that is written to disk unchanged."""


@dataclass(frozen=True)
class RotationTrigger:
    """Why a rotation was requested. Only the rotator looks inside."""

    reason: str = "manual"
    details: dict[str, Any] = field(default_factory=dict)
    requested_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class FileInfo:
    """Announced with ``newfile``: the freshly opened current file."""

    path: str
    stream: Any
    opened_at: datetime
    version: int = 0
    trigger: RotationTrigger | None = None


@dataclass
class QueueEntry:
    data: bytes
    callback: Callable[[Exception | None], None] | None = None

