"""Data models for segmented speech conversion."""

from dataclasses import asdict, dataclass, field, fields
from enum import Enum

from tts_relay.constants import (
    CHUNK_MIN_CHARS,
    CHUNK_MAX_CHARS,
    DEFAULT_VOICE_ID,
    DEFAULT_MODEL_ID,
    DEFAULT_STABILITY,
    DEFAULT_SIMILARITY,
    DEFAULT_SPEED,
    DEFAULT_OUTPUT_FORMAT,
)


class SegmentStatus(str, Enum):
    PENDING = "pending"
    CONVERTING = "converting"
    SUCCESS = "success"
    FAILED = "failed"


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class Segment:
    id: int
    text: str
    edited_text: str = ""     # user-mutable copy, sent to the provider
    status: SegmentStatus = SegmentStatus.PENDING

    def __post_init__(self):
        if not self.edited_text:
            self.edited_text = self.text
        self.status = SegmentStatus(self.status)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "edited_text": self.edited_text,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Segment":
        return cls(
            id=int(data["id"]),
            text=data["text"],
            edited_text=data.get("edited_text", ""),
            status=data.get("status", SegmentStatus.PENDING),
        )


@dataclass
class Credential:
    secret: str
    balance: int | None = None    # remaining characters; None until checked
    status: CredentialStatus = CredentialStatus.ACTIVE
    session_invalid: bool = False  # quarantine for the current run only

    def __post_init__(self):
        self.status = CredentialStatus(self.status)

    def to_dict(self) -> dict:
        """Persistable form. The quarantine flag never leaves the process."""
        return {
            "secret": self.secret,
            "balance": self.balance,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Credential":
        balance = data.get("balance")
        return cls(
            secret=data["secret"],
            balance=int(balance) if balance is not None else None,
            status=data.get("status", CredentialStatus.ACTIVE),
        )


@dataclass
class TuningSettings:
    min_chunk_chars: int = CHUNK_MIN_CHARS
    max_chunk_chars: int = CHUNK_MAX_CHARS
    start_from_segment_id: int = 1
    voice_id: str = DEFAULT_VOICE_ID
    model_id: str = DEFAULT_MODEL_ID
    stability: float = DEFAULT_STABILITY
    similarity_boost: float = DEFAULT_SIMILARITY
    speed: float = DEFAULT_SPEED
    output_format: str = DEFAULT_OUTPUT_FORMAT

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None) -> "TuningSettings":
        """Build from stored data, ignoring unknown keys and keeping defaults for missing ones."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


@dataclass
class LogEntry:
    timestamp: str    # ISO-8601, UTC
    level: str        # info | success | warning | error
    message: str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "LogEntry":
        return cls(
            timestamp=data.get("timestamp", ""),
            level=data.get("level", "info"),
            message=data.get("message", ""),
        )


@dataclass
class SessionSnapshot:
    full_text: str = ""
    tuning: TuningSettings = field(default_factory=TuningSettings)
    segments: list[Segment] = field(default_factory=list)
    log: list[LogEntry] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "full_text": self.full_text,
            "tuning": self.tuning.to_dict(),
            "segments": [s.to_dict() for s in self.segments],
            "log": [e.to_dict() for e in self.log],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionSnapshot":
        return cls(
            full_text=data.get("full_text", ""),
            tuning=TuningSettings.from_dict(data.get("tuning")),
            segments=[Segment.from_dict(s) for s in data.get("segments", [])],
            log=[LogEntry.from_dict(e) for e in data.get("log", [])],
        )


@dataclass
class RunResult:
    outcome: str          # "completed", "stopped" or "exhausted"
    succeeded: int = 0
    failed: int = 0
