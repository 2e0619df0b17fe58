from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Generic, List, Literal, Optional, TypeVar

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    name: str
    email: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, name: str, email: str, password_hash: str) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            email=email,
            password_hash=password_hash,
            created_at=now,
            updated_at=now,
        )

    def to_public(self) -> "PublicUser":
        return PublicUser(
            id=self.id, name=self.name, email=self.email, created_at=self.created_at
        )


@dataclass
class PublicUser:
    """User fields that are safe to hand back to callers."""

    id: str
    name: str
    email: str
    created_at: datetime


@dataclass
class Post:
    id: str
    title: str
    content: str
    user_id: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, title: str, content: str, user_id: str) -> "Post":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            title=title,
            content=content,
            user_id=user_id,
            created_at=now,
            updated_at=now,
        )


@dataclass(frozen=True)
class SortField:
    column: str
    order: Literal["asc", "desc"] = "asc"


@dataclass
class QueryOptions:
    page: int = 1
    limit: int = 10
    search: Optional[str] = None
    sort_by: List[SortField] = field(default_factory=list)


@dataclass
class PaginatedResult(Generic[T]):
    data: List[T]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit


@dataclass
class SessionRecord:
    """Server-held session state; timestamps are epoch seconds."""

    session_id: str
    user_id: str
    email: str
    login_time: float
    last_activity: float
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    # Derived per listing, never persisted
    is_current: bool = False

    def to_json(self) -> str:
        payload = asdict(self)
        payload.pop("is_current", None)
        return json.dumps(payload, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "SessionRecord":
        data: Dict[str, Any] = json.loads(raw)
        return cls(
            session_id=data["session_id"],
            user_id=data["user_id"],
            email=data["email"],
            login_time=float(data["login_time"]),
            last_activity=float(data["last_activity"]),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
        )


@dataclass
class LoginAttemptRecord:
    count: int
    last_attempt: float
    blocked_until: Optional[float] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "LoginAttemptRecord":
        data: Dict[str, Any] = json.loads(raw)
        blocked = data.get("blocked_until")
        return cls(
            count=int(data["count"]),
            last_attempt=float(data["last_attempt"]),
            blocked_until=float(blocked) if blocked is not None else None,
        )
