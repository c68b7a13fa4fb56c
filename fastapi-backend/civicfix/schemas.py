"""Request and response bodies for the HTTP API."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, StrictStr, field_validator

from .models import Profile, Report
from .storage import BlobStorage
from .workflow import TransitionResult, badge_label, current_step_index, progress


class RegisterRequest(BaseModel):
    email: StrictStr
    password: StrictStr
    full_name: Optional[str] = None
    role: Optional[str] = None


class ProfilePublic(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None
    role: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_profile(cls, profile: Profile) -> "ProfilePublic":
        return cls(
            id=profile.id,
            email=profile.email,
            full_name=profile.full_name,
            role=profile.role,
            created_at=profile.created_at,
        )


class MePublic(ProfilePublic):
    # True when the role shown came from a cache entry awaiting refresh.
    role_stale: bool = False


class RoleUpdate(BaseModel):
    role: StrictStr


class AgentSummary(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None
    open_reports: int = 0


class ReportCreate(BaseModel):
    category: StrictStr
    description: StrictStr
    contact: Optional[str] = None
    priority: Optional[Union[int, str]] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    address: Optional[str] = None
    photo_urls: List[str] = Field(default_factory=list)

    @field_validator("description")
    @classmethod
    def description_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("description must not be blank")
        return v.strip()


class ReportSummary(BaseModel):
    """What anyone may see about a report; no reporter or agent identity."""

    id: str
    category: str
    description: str
    priority: Optional[int] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    address: Optional[str] = None
    photo_urls: List[str] = Field(default_factory=list)
    status: str
    step_index: int
    badge: str
    progress: List[Dict[str, Any]]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def report_fields(cls, report: Report, storage: Optional[BlobStorage]) -> Dict[str, Any]:
        urls = list(report.photo_urls or [])
        if storage is not None:
            urls = [storage.resolve_url(u) for u in urls]
        return dict(
            id=report.id,
            category=report.category,
            description=report.description,
            priority=report.priority,
            lat=report.lat,
            lng=report.lng,
            address=report.address,
            photo_urls=urls,
            status=report.status,
            step_index=current_step_index(report.status),
            badge=badge_label(report.status),
            progress=progress(report.status),
            created_at=report.created_at,
            updated_at=report.updated_at,
        )

    @classmethod
    def from_report(cls, report: Report, storage: Optional[BlobStorage] = None):
        return cls(**cls.report_fields(report, storage))


class ReportPublic(ReportSummary):
    """Full report for its reporter, administrators and agents."""

    contact: Optional[str] = None
    user_id: Optional[str] = None
    agent_id: Optional[str] = None

    @classmethod
    def report_fields(cls, report: Report, storage: Optional[BlobStorage]) -> Dict[str, Any]:
        fields = super().report_fields(report, storage)
        fields.update(contact=report.contact, user_id=report.user_id, agent_id=report.agent_id)
        return fields


class PaginatedReports(BaseModel):
    items: List[ReportPublic]
    total: int
    page: int
    page_size: int
    total_pages: int


class PaginatedSummaries(BaseModel):
    items: List[ReportSummary]
    total: int
    page: int
    page_size: int
    total_pages: int


class StatusUpdateSchema(BaseModel):
    status: StrictStr


class AssignmentSchema(BaseModel):
    # None clears the assignment and resets the report to 'submitted'.
    agent_id: Optional[str] = None


class PrioritySchema(BaseModel):
    priority: Optional[Union[int, str]] = None


class TransitionResponse(BaseModel):
    report: ReportPublic
    previous_status: str
    status: str
    applied: bool
    reason: str

    @classmethod
    def from_result(cls, result: TransitionResult, storage: Optional[BlobStorage] = None) -> "TransitionResponse":
        return cls(
            report=ReportPublic.from_report(result.report, storage),
            previous_status=result.previous_status.value,
            status=result.status.value,
            applied=result.applied,
            reason=result.reason,
        )


class AuditPublic(BaseModel):
    id: int
    report_id: str
    old_status: str
    new_status: str
    agent_id: Optional[str] = None
    actor_id: str
    created_at: Optional[datetime] = None


class StatsPublic(BaseModel):
    reports_total: int
    resolved_total: int
    citizens_total: int


class PhotoUploaded(BaseModel):
    url: str
    content_type: str
    size: int
