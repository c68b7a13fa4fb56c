"""
Storage access for reports and profiles.

All reads and writes go through `ReportRepository`, which turns driver
failures into `TransientStorageError` and missing rows into `NotFoundError`.
`update()` takes an optional `expected` mapping that becomes part of the
UPDATE's WHERE clause, so status changes only land on the row the caller
actually read.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
import logging

from sqlalchemy import update as sa_update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlmodel import func, or_, select
from sqlmodel.ext.asyncio.session import AsyncSession

from .errors import ConflictError, NotFoundError, TransientStorageError, ValidationError
from .models import Profile, Report, ReportStatus, StatusAudit

logger = logging.getLogger("civicfix.repository")

# Named orderings used by the list screens.
ORDERINGS = {
    # Admin triage: grouped by category, most urgent first, oldest first.
    "triage": (
        Report.category.asc(),
        Report.priority.is_(None),
        Report.priority.asc(),
        Report.created_at.asc(),
    ),
    # Agent queue: most urgent first, oldest first.
    "queue": (
        Report.priority.is_(None),
        Report.priority.asc(),
        Report.created_at.asc(),
    ),
    "newest": (Report.created_at.desc(),),
}


class ReportRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    @asynccontextmanager
    async def _storage_call(self, what: str):
        try:
            yield
        except IntegrityError as exc:
            await self.session.rollback()
            raise ValidationError(f"{what} violates a storage constraint") from exc
        except DBAPIError as exc:
            await self.session.rollback()
            logger.error("Storage failure during %s: %s", what, exc)
            raise TransientStorageError(f"Storage failure during {what}") from exc

    # ---------- reports ----------
    async def get(self, report_id: str, *, refresh: bool = False) -> Report:
        async with self._storage_call("report lookup"):
            report = await self.session.get(Report, report_id, populate_existing=refresh)
        if report is None:
            raise NotFoundError(f"Report {report_id} not found", report_id=report_id)
        return report

    async def insert(self, report: Report) -> Report:
        async with self._storage_call("report insert"):
            self.session.add(report)
            await self.session.commit()
            await self.session.refresh(report)
        return report

    async def update(
        self,
        report_id: str,
        fields: Mapping[str, Any],
        *,
        expected: Optional[Mapping[str, Any]] = None,
        audit: Optional[StatusAudit] = None,
    ) -> Report:
        """Apply `fields` to one report, optionally only if it still matches `expected`.

        Raises ConflictError when the row exists but no longer matches.
        """
        values: Dict[str, Any] = dict(fields)
        values["updated_at"] = datetime.now(timezone.utc)

        stmt = sa_update(Report).where(Report.id == report_id)
        for column_name, value in (expected or {}).items():
            column = getattr(Report, column_name)
            stmt = stmt.where(column.is_(None) if value is None else column == value)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        async with self._storage_call("report update"):
            result = await self.session.exec(stmt)
            matched = result.rowcount
            if matched == 0:
                await self.session.rollback()
            else:
                if audit is not None:
                    self.session.add(audit)
                await self.session.commit()

        if matched == 0:
            current = await self.get(report_id, refresh=True)
            logger.warning(
                "Conditional update on %s lost a race (expected=%s, found status=%s agent=%s)",
                report_id, dict(expected or {}), current.status, current.agent_id,
            )
            raise ConflictError(
                f"Report {report_id} changed concurrently; re-fetch and retry",
                report_id=report_id,
            )
        return await self.get(report_id, refresh=True)

    async def query(
        self,
        *,
        status: Optional[str] = None,
        category: Optional[str] = None,
        agent_id: Optional[str] = None,
        user_id: Optional[str] = None,
        contact: Optional[str] = None,
        exclude_category: Optional[str] = None,
        order: str = "newest",
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> Tuple[List[Report], int]:
        """Return (page of reports, total matching) for the given filters."""
        conditions = []
        if status:
            conditions.append(Report.status == status)
        if category:
            conditions.append(Report.category == category)
        if exclude_category:
            conditions.append(Report.category != exclude_category)
        if agent_id:
            conditions.append(Report.agent_id == agent_id)
        # A reporter owns reports filed under their id or exactly their contact address.
        owner = []
        if user_id:
            owner.append(Report.user_id == user_id)
        if contact:
            owner.append(func.lower(Report.contact) == contact.strip().lower())
        if owner:
            conditions.append(or_(*owner))

        statement = select(Report).where(*conditions).order_by(*ORDERINGS[order])
        count_statement = select(func.count(Report.id)).where(*conditions)
        if offset:
            statement = statement.offset(offset)
        if limit is not None:
            statement = statement.limit(limit)

        async with self._storage_call("report query"):
            total = (await self.session.exec(count_statement)).one()
            rows = (await self.session.exec(statement)).all()
        return list(rows), total

    async def audits(self, report_id: str) -> Sequence[StatusAudit]:
        stmt = (
            select(StatusAudit)
            .where(StatusAudit.report_id == report_id)
            .order_by(StatusAudit.created_at.desc(), StatusAudit.id.desc())
        )
        async with self._storage_call("audit query"):
            return (await self.session.exec(stmt)).all()

    async def stats(self) -> Dict[str, int]:
        async with self._storage_call("stats query"):
            reports_total = (await self.session.exec(select(func.count(Report.id)))).one()
            resolved_total = (
                await self.session.exec(
                    select(func.count(Report.id)).where(Report.status == ReportStatus.RESOLVED.value)
                )
            ).one()
            citizens_total = (await self.session.exec(select(func.count(Profile.id)))).one()
        return {
            "reports_total": reports_total,
            "resolved_total": resolved_total,
            "citizens_total": citizens_total,
        }

    async def open_counts_by_agent(self) -> Dict[str, int]:
        """Unresolved reports per assigned agent."""
        stmt = (
            select(Report.agent_id, func.count(Report.id))
            .where(Report.agent_id.is_not(None))
            .where(Report.status != ReportStatus.RESOLVED.value)
            .group_by(Report.agent_id)
        )
        async with self._storage_call("agent workload query"):
            rows = (await self.session.exec(stmt)).all()
        return {agent_id: count for agent_id, count in rows}

    # ---------- profiles ----------
    async def get_profile(self, profile_id: str) -> Profile:
        async with self._storage_call("profile lookup"):
            profile = await self.session.get(Profile, profile_id)
        if profile is None:
            raise NotFoundError(f"Profile {profile_id} not found")
        return profile

    async def find_profile_by_email(self, email: str) -> Optional[Profile]:
        stmt = select(Profile).where(func.lower(Profile.email) == email.strip().lower())
        async with self._storage_call("profile lookup"):
            return (await self.session.exec(stmt)).first()

    async def list_profiles(self, role: Optional[str] = None) -> Sequence[Profile]:
        stmt = select(Profile).order_by(Profile.created_at.desc())
        if role:
            stmt = stmt.where(Profile.role == role)
        async with self._storage_call("profile query"):
            return (await self.session.exec(stmt)).all()

    async def count_profiles(self) -> int:
        async with self._storage_call("profile count"):
            return (await self.session.exec(select(func.count(Profile.id)))).one()

    async def save_profile(self, profile: Profile) -> Profile:
        async with self._storage_call("profile write"):
            self.session.add(profile)
            await self.session.commit()
            await self.session.refresh(profile)
        return profile


__all__ = ["ReportRepository", "ORDERINGS"]
