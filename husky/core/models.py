"""
Data model for directory documents and conversation state.
All records serialize to plain dicts (camelCase keys) for cache and wire use.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SourceType(str, Enum):
    """Directory entity kinds; each one is a separate vector collection."""

    MEMBER = "member"
    TEAM = "team"
    PROJECT = "project"
    FOCUS_AREA = "focusArea"
    IRL_EVENT = "irlEvent"
    WEB_DOC = "webDoc"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ThreadStatus(str, Enum):
    NEW = "new"
    ACTIVE = "active"
    SUMMARIZING = "summarizing"


def document_id(source_type: SourceType, source_id: str) -> str:
    """Stable id of the vector document mirroring one directory entity."""
    return f"{SourceType(source_type).value}:{source_id}"


# ── Directory documents ─────────────────────────────────────────────


@dataclass
class DirectoryDocument:
    """Vector document mirroring one directory entity."""

    source_type: SourceType
    source_id: str
    content_hash: str
    text: str
    embedding: List[float] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    version: int = 1
    updated_at: Optional[datetime] = None

    @property
    def id(self) -> str:
        return document_id(self.source_type, self.source_id)

    @property
    def title(self) -> str:
        return str(self.metadata.get("name") or self.metadata.get("title") or self.source_id)

    def freshness(self) -> float:
        """Timestamp of the source entity's last change, for tie-breaking."""
        stamp = parse_datetime(self.metadata.get("updated_at")) or self.updated_at
        return stamp.timestamp() if stamp else 0.0


@dataclass
class RetrievedDocument:
    document: DirectoryDocument
    similarity: float

    @property
    def id(self) -> str:
        return self.document.id


# ── Conversation records ────────────────────────────────────────────


@dataclass
class Thread:
    user_id: str
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    summary_ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "createdAt": format_datetime(self.created_at),
            "summaryRef": self.summary_ref,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Thread":
        return cls(
            id=data["id"],
            user_id=data["userId"],
            created_at=parse_datetime(data["createdAt"]),
            summary_ref=data.get("summaryRef"),
        )


@dataclass(frozen=True)
class Message:
    """A single chat message. Immutable once persisted."""

    thread_id: str
    role: Role
    text: str
    timestamp: datetime
    position: int
    citations: tuple = ()
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "threadId": self.thread_id,
            "role": self.role.value,
            "text": self.text,
            "timestamp": format_datetime(self.timestamp),
            "position": self.position,
            "citations": list(self.citations),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=data["id"],
            thread_id=data["threadId"],
            role=Role(data["role"]),
            text=data["text"],
            timestamp=parse_datetime(data["timestamp"]),
            position=int(data["position"]),
            citations=tuple(data.get("citations") or ()),
        )


@dataclass(frozen=True)
class Summary:
    """Lossy compression of a thread up to ``covered_through_message_id``."""

    thread_id: str
    text: str
    covered_through_message_id: str
    covered_through_position: int
    token_count: int
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "threadId": self.thread_id,
            "text": self.text,
            "coveredThroughMessageId": self.covered_through_message_id,
            "coveredThroughPosition": self.covered_through_position,
            "tokenCount": self.token_count,
            "updatedAt": format_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Summary":
        return cls(
            thread_id=data["threadId"],
            text=data["text"],
            covered_through_message_id=data["coveredThroughMessageId"],
            covered_through_position=int(data["coveredThroughPosition"]),
            token_count=int(data["tokenCount"]),
            updated_at=parse_datetime(data["updatedAt"]),
        )


@dataclass(frozen=True)
class FeedbackEntry:
    thread_id: str
    message_id: str
    rating: int
    comment: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ConversationState:
    """Hot per-thread state served by the summary cache."""

    thread: Thread
    last_message: Optional[Message] = None
    summary: Optional[Summary] = None

    @property
    def covered_position(self) -> int:
        return self.summary.covered_through_position if self.summary else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "thread": self.thread.to_dict(),
            "lastMessage": self.last_message.to_dict() if self.last_message else None,
            "summary": self.summary.to_dict() if self.summary else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationState":
        return cls(
            thread=Thread.from_dict(data["thread"]),
            last_message=Message.from_dict(data["lastMessage"]) if data.get("lastMessage") else None,
            summary=Summary.from_dict(data["summary"]) if data.get("summary") else None,
        )


# ── Results ─────────────────────────────────────────────────────────


@dataclass
class ChatTurnResult:
    thread_id: str
    message_id: str
    answer: str
    citations: List[str] = field(default_factory=list)
    summary_updated: bool = False
    grounded: bool = False
    actions: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "threadId": self.thread_id,
            "messageId": self.message_id,
            "answer": self.answer,
            "citations": list(self.citations),
            "summaryUpdated": self.summary_updated,
            "grounded": self.grounded,
            "actions": list(self.actions),
        }


@dataclass
class IngestionReport:
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    deleted: int = 0
    failures: List[Any] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def merge(self, other: "IngestionReport") -> None:
        self.processed += other.processed
        self.skipped += other.skipped
        self.failed += other.failed
        self.deleted += other.deleted
        self.failures.extend(other.failures)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "deleted": self.deleted,
            "failures": [f.to_dict() for f in self.failures],
            "startedAt": format_datetime(self.started_at),
            "finishedAt": format_datetime(self.finished_at),
        }
