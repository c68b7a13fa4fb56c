from enum import Enum, IntEnum
from typing import Optional, List
from datetime import datetime, timezone
import uuid

from sqlmodel import SQLModel, Field
from sqlalchemy import Column, JSON


class ReportStatus(str, Enum):
    """Lifecycle stages of a report, declared in workflow order."""

    SUBMITTED = "submitted"
    ADMIN_RECEIVED = "admin_received"
    ASSIGNED_AGENT = "assigned_agent"
    AGENT_RECEIVED = "agent_received"
    RESOLVED = "resolved"


class Role(str, Enum):
    REPORTER = "reporter"
    ADMINISTRATOR = "administrator"
    AGENT = "agent"


class Category(str, Enum):
    POTHOLE = "pothole"
    STREETLIGHT = "streetlight"
    TRASH = "trash"
    TRAFFIC = "traffic"
    WATER = "water"
    SIDEWALK = "sidewalk"
    OTHER = "other"


class Priority(IntEnum):
    # Lower value sorts first: most urgent on top of admin/agent queues.
    HIGH = 1
    MEDIUM = 2
    LOW = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Profile(SQLModel, table=True):
    __tablename__ = "profiles"
    id: Optional[str] = Field(default_factory=_new_id, primary_key=True)
    email: str = Field(sa_column_kwargs={"unique": True}, index=True)
    full_name: Optional[str] = None
    # Password hash stored for authentication (pbkdf2_sha256 via passlib).
    password_hash: Optional[str] = None
    # Role for RBAC: 'reporter', 'administrator' or 'agent'.
    role: str = Field(default=Role.REPORTER.value)
    created_at: Optional[datetime] = Field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None


class Report(SQLModel, table=True):
    __tablename__ = "reports"
    id: Optional[str] = Field(default_factory=_new_id, primary_key=True)
    category: str = Field(index=True)
    description: str
    # Stored as the integer value of `Priority`; None sorts last.
    priority: Optional[int] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    address: Optional[str] = None
    photo_urls: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False, default=list))
    # Reporter identity: authenticated profile id and/or free-text contact.
    user_id: Optional[str] = Field(default=None, foreign_key="profiles.id", index=True)
    contact: Optional[str] = None
    agent_id: Optional[str] = Field(default=None, foreign_key="profiles.id", index=True)
    status: str = Field(default=ReportStatus.SUBMITTED.value, index=True)
    created_at: Optional[datetime] = Field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None


class StatusAudit(SQLModel, table=True):
    __tablename__ = "status_audits"
    id: Optional[int] = Field(default=None, primary_key=True)
    report_id: str = Field(foreign_key="reports.id", index=True)
    old_status: str
    new_status: str
    # Agent assignment after the change (None when unassigned).
    agent_id: Optional[str] = None
    actor_id: str
    created_at: Optional[datetime] = Field(default_factory=_utcnow)
