"""
Report workflow engine.

A report moves through five ordered states:

    submitted -> admin_received -> assigned_agent -> agent_received -> resolved

Administrators acknowledge and assign; the assigned agent accepts and
resolves. All ordering and role rules live here: the pure helpers
(`evaluate_transition`, `assignment_target`, `can`) decide, and
`WorkflowEngine` loads the report, applies the decision with a conditional
write, and records an audit row.

Out-of-order requests are clamped by default: nothing is written and the
result carries `applied=False` plus the reason. With strict transitions
enabled the same request raises `InvalidTransitionError`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union
import logging

from .config import get_settings
from .errors import AuthorizationError, InvalidTransitionError, ValidationError
from .identity import Principal
from .models import Category, Priority, Report, ReportStatus, Role, StatusAudit
from .observability import workflow_transitions_total
from .repository import ReportRepository

logger = logging.getLogger("civicfix.workflow")

STATUS_ORDER: Tuple[ReportStatus, ...] = tuple(ReportStatus)

STEP_LABELS: Dict[ReportStatus, str] = {
    ReportStatus.SUBMITTED: "Submitted",
    ReportStatus.ADMIN_RECEIVED: "Admin Received",
    ReportStatus.ASSIGNED_AGENT: "Assigned to Agent",
    ReportStatus.AGENT_RECEIVED: "Issue Received",
    ReportStatus.RESOLVED: "Issue Solved",
}

BADGE_LABELS: Dict[ReportStatus, str] = {
    ReportStatus.SUBMITTED: "Submitted",
    ReportStatus.ADMIN_RECEIVED: "Received",
    ReportStatus.ASSIGNED_AGENT: "Assigned",
    ReportStatus.AGENT_RECEIVED: "In Progress",
    ReportStatus.RESOLVED: "Resolved",
}

# Outcome reasons reported back to callers.
APPLIED = "applied"
UNCHANGED = "unchanged"
UNASSIGNED = "unassigned"
OUT_OF_ORDER = "out_of_order"
BACKWARD = "backward"


class Action(str, Enum):
    SUBMIT = "submit"
    ACKNOWLEDGE = "acknowledge"
    ASSIGN = "assign"
    SET_PRIORITY = "set_priority"
    ACCEPT = "accept"
    RESOLVE = "resolve"
    MANAGE_USERS = "manage_users"
    VIEW_ALL = "view_all"


CAPABILITIES: Dict[Role, FrozenSet[Action]] = {
    Role.REPORTER: frozenset({Action.SUBMIT}),
    Role.ADMINISTRATOR: frozenset({
        Action.SUBMIT,
        Action.ACKNOWLEDGE,
        Action.ASSIGN,
        Action.SET_PRIORITY,
        Action.MANAGE_USERS,
        Action.VIEW_ALL,
    }),
    Role.AGENT: frozenset({Action.SUBMIT, Action.ACCEPT, Action.RESOLVE}),
}

# Every forward edge of the state machine and the capability it needs.
TRANSITIONS: Dict[Tuple[ReportStatus, ReportStatus], Action] = {
    (ReportStatus.SUBMITTED, ReportStatus.ADMIN_RECEIVED): Action.ACKNOWLEDGE,
    (ReportStatus.ADMIN_RECEIVED, ReportStatus.ASSIGNED_AGENT): Action.ASSIGN,
    (ReportStatus.ASSIGNED_AGENT, ReportStatus.AGENT_RECEIVED): Action.ACCEPT,
    (ReportStatus.AGENT_RECEIVED, ReportStatus.RESOLVED): Action.RESOLVE,
    (ReportStatus.ASSIGNED_AGENT, ReportStatus.RESOLVED): Action.RESOLVE,
}

AGENT_OWNED = frozenset({
    ReportStatus.ASSIGNED_AGENT,
    ReportStatus.AGENT_RECEIVED,
    ReportStatus.RESOLVED,
})


def can(role: Union[Role, str, None], action: Action) -> bool:
    """Return True when `role` is allowed to perform `action`."""
    try:
        role = Role(role)
    except ValueError:
        return False
    return action in CAPABILITIES.get(role, frozenset())


def parse_status(value: Any) -> ReportStatus:
    try:
        return ReportStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in STATUS_ORDER)
        raise ValidationError(f"Invalid status {value!r}. Allowed: {allowed}") from None


def current_step_index(status: Any) -> int:
    """Position of `status` in the workflow order, or -1 if it is not a status."""
    try:
        return STATUS_ORDER.index(ReportStatus(status))
    except ValueError:
        return -1


def next_step(status: Any) -> Optional[ReportStatus]:
    index = current_step_index(status)
    if index < 0 or index + 1 >= len(STATUS_ORDER):
        return None
    return STATUS_ORDER[index + 1]


def step_label(status: Any) -> str:
    try:
        return STEP_LABELS[ReportStatus(status)]
    except ValueError:
        return "Unknown"


def badge_label(status: Any) -> str:
    try:
        return BADGE_LABELS[ReportStatus(status)]
    except ValueError:
        return "Unknown"


def progress(status: Any) -> List[Dict[str, Any]]:
    """Per-step progress rows for trackers: completed steps precede the active one."""
    current = current_step_index(status)
    return [
        {
            "key": step.value,
            "label": STEP_LABELS[step],
            "completed": index < current,
            "active": index == current,
        }
        for index, step in enumerate(STATUS_ORDER)
    ]


def parse_priority(value: Any) -> Optional[Priority]:
    if value is None or value == "":
        return None
    if isinstance(value, Priority):
        return value
    if isinstance(value, str):
        name = value.strip().upper()
        if name in Priority.__members__:
            return Priority[name]
        if name.isdigit():
            value = int(name)
    try:
        return Priority(value)
    except (ValueError, TypeError):
        allowed = ", ".join(p.name.lower() for p in Priority)
        raise ValidationError(f"Invalid priority {value!r}. Allowed: {allowed}") from None


def parse_category(value: Any) -> Category:
    """Normalize a submitted category; unknown categories are filed under 'other'."""
    text = (value or "").strip().lower() if isinstance(value, str) else ""
    if not text:
        raise ValidationError("Category is required")
    try:
        return Category(text)
    except ValueError:
        return Category.OTHER


@dataclass(frozen=True)
class Decision:
    target: ReportStatus
    applied: bool
    reason: str
    unassign: bool = False


def evaluate_transition(
    current: Any,
    agent_id: Optional[str],
    requested: Any,
    role: Union[Role, str],
    actor_id: str,
    *,
    strict: bool = False,
) -> Decision:
    """Decide what a status request does, without touching storage.

    Raises ValidationError for unknown statuses, AuthorizationError when the
    actor may not make the move, and InvalidTransitionError for out-of-order
    requests when `strict` is set (otherwise those are clamped).
    """
    target = parse_status(requested)
    current_status = parse_status(current)
    try:
        role = Role(role)
    except ValueError:
        raise AuthorizationError(f"Unknown role {role!r}") from None

    # Agents only ever act on reports assigned to them, no-ops included.
    if role is Role.AGENT and (agent_id is None or agent_id != actor_id):
        raise AuthorizationError("Report is not assigned to this agent")

    if target is current_status:
        return Decision(current_status, applied=False, reason=UNCHANGED)

    action = TRANSITIONS.get((current_status, target))
    if action is not None:
        if not can(role, action):
            raise AuthorizationError(
                f"Role '{role.value}' may not move a report from {current_status.value} to {target.value}"
            )
        if target in AGENT_OWNED and agent_id is None:
            raise ValidationError(f"Assign an agent before moving a report to {target.value}")
        return Decision(target, applied=True, reason=APPLIED)

    if target is ReportStatus.SUBMITTED and can(role, Action.ASSIGN):
        return Decision(ReportStatus.SUBMITTED, applied=True, reason=UNASSIGNED, unassign=True)

    reason = BACKWARD if STATUS_ORDER.index(target) < STATUS_ORDER.index(current_status) else OUT_OF_ORDER
    if strict:
        raise InvalidTransitionError(
            f"Cannot move a report from {current_status.value} to {target.value} ({reason})"
        )
    return Decision(current_status, applied=False, reason=reason)


def assignment_target(
    current: Any, current_agent_id: Optional[str], new_agent_id: Optional[str]
) -> ReportStatus:
    """Status a report takes when an administrator (un)assigns an agent."""
    current_status = parse_status(current)
    if new_agent_id is None:
        return ReportStatus.SUBMITTED
    if current_status is ReportStatus.SUBMITTED:
        return ReportStatus.ADMIN_RECEIVED
    if current_status in AGENT_OWNED and current_agent_id == new_agent_id:
        return current_status
    return ReportStatus.ASSIGNED_AGENT


@dataclass
class TransitionResult:
    report: Report
    previous_status: ReportStatus
    applied: bool
    reason: str

    @property
    def status(self) -> ReportStatus:
        return ReportStatus(self.report.status)


class WorkflowEngine:
    """Applies workflow decisions to stored reports."""

    def __init__(self, repository: ReportRepository, *, strict: Optional[bool] = None):
        self.repository = repository
        self.strict = get_settings().strict_transitions if strict is None else strict

    async def submit(self, fields: Mapping[str, Any], principal: Optional[Principal] = None) -> Report:
        if principal is not None and not can(principal.role, Action.SUBMIT):
            raise AuthorizationError("This account cannot submit reports")

        description = (fields.get("description") or "").strip()
        if not description:
            raise ValidationError("Description is required")
        category = parse_category(fields.get("category"))
        priority = parse_priority(fields.get("priority"))

        lat, lng = fields.get("lat"), fields.get("lng")
        if (lat is None) != (lng is None):
            raise ValidationError("Location needs both lat and lng")
        if lat is not None and not (-90 <= lat <= 90 and -180 <= lng <= 180):
            raise ValidationError("Location is out of range")

        contact = (fields.get("contact") or "").strip() or (principal.email if principal else None)
        report = Report(
            category=category.value,
            description=description,
            priority=int(priority) if priority is not None else None,
            lat=lat,
            lng=lng,
            address=(fields.get("address") or "").strip() or None,
            photo_urls=list(fields.get("photo_urls") or []),
            user_id=principal.id if principal else None,
            contact=contact,
            agent_id=None,
            status=ReportStatus.SUBMITTED.value,
        )
        report = await self.repository.insert(report)
        workflow_transitions_total.labels(operation="submit", outcome=APPLIED).inc()
        logger.info("Report %s submitted (category=%s)", report.id, report.category)
        return report

    async def request_transition(
        self, report_id: str, requested: Any, principal: Principal
    ) -> TransitionResult:
        report = await self.repository.get(report_id)
        previous = ReportStatus(report.status)
        try:
            decision = evaluate_transition(
                report.status,
                report.agent_id,
                requested,
                principal.role,
                principal.id,
                strict=self.strict,
            )
        except (AuthorizationError, InvalidTransitionError) as exc:
            workflow_transitions_total.labels(operation="transition", outcome=type(exc).__name__).inc()
            logger.info("Rejected %s -> %r on %s by %s: %s", previous.value, requested, report_id, principal.id, exc)
            raise

        if decision.unassign:
            return await self._write_assignment(report, None, ReportStatus.SUBMITTED, principal)

        workflow_transitions_total.labels(operation="transition", outcome=decision.reason).inc()
        if not decision.applied:
            if decision.reason != UNCHANGED:
                logger.info(
                    "Clamped %s -> %r on %s by %s (%s)",
                    previous.value, requested, report_id, principal.id, decision.reason,
                )
            return TransitionResult(report, previous, applied=False, reason=decision.reason)

        audit = StatusAudit(
            report_id=report.id,
            old_status=previous.value,
            new_status=decision.target.value,
            agent_id=report.agent_id,
            actor_id=principal.id,
        )
        updated = await self.repository.update(
            report.id,
            {"status": decision.target.value},
            expected={"status": previous.value, "agent_id": report.agent_id},
            audit=audit,
        )
        logger.info("Report %s moved %s -> %s by %s", report.id, previous.value, decision.target.value, principal.id)
        return TransitionResult(updated, previous, applied=True, reason=APPLIED)

    async def assign_agent(
        self, report_id: str, agent_id: Optional[str], principal: Principal
    ) -> TransitionResult:
        if not can(principal.role, Action.ASSIGN):
            raise AuthorizationError("Only administrators can assign agents")

        report = await self.repository.get(report_id)
        if agent_id is not None:
            agent = await self.repository.get_profile(agent_id)
            if agent.role != Role.AGENT.value:
                raise ValidationError(f"Profile {agent_id} is not an agent")
        target = assignment_target(report.status, report.agent_id, agent_id)
        return await self._write_assignment(report, agent_id, target, principal)

    async def set_priority(self, report_id: str, priority: Any, principal: Principal) -> Report:
        if not can(principal.role, Action.SET_PRIORITY):
            raise AuthorizationError("Only administrators can set priority")
        level = parse_priority(priority)
        report = await self.repository.get(report_id)
        value = int(level) if level is not None else None
        if report.priority == value:
            return report
        updated = await self.repository.update(report.id, {"priority": value})
        workflow_transitions_total.labels(operation="priority", outcome=APPLIED).inc()
        logger.info("Report %s priority set to %s by %s", report.id, value, principal.id)
        return updated

    async def _write_assignment(
        self,
        report: Report,
        agent_id: Optional[str],
        target: ReportStatus,
        principal: Principal,
    ) -> TransitionResult:
        previous = ReportStatus(report.status)
        if report.agent_id == agent_id and previous is target:
            workflow_transitions_total.labels(operation="assign", outcome=UNCHANGED).inc()
            return TransitionResult(report, previous, applied=False, reason=UNCHANGED)

        audit = StatusAudit(
            report_id=report.id,
            old_status=previous.value,
            new_status=target.value,
            agent_id=agent_id,
            actor_id=principal.id,
        )
        # Both columns change in one conditional UPDATE.
        updated = await self.repository.update(
            report.id,
            {"agent_id": agent_id, "status": target.value},
            expected={"status": previous.value, "agent_id": report.agent_id},
            audit=audit,
        )
        reason = UNASSIGNED if agent_id is None else APPLIED
        workflow_transitions_total.labels(operation="assign", outcome=reason).inc()
        logger.info(
            "Report %s assigned to %s by %s (%s -> %s)",
            report.id, agent_id, principal.id, previous.value, target.value,
        )
        return TransitionResult(updated, previous, applied=True, reason=reason)


__all__ = [
    "Action",
    "CAPABILITIES",
    "Decision",
    "STATUS_ORDER",
    "TRANSITIONS",
    "TransitionResult",
    "WorkflowEngine",
    "assignment_target",
    "badge_label",
    "can",
    "current_step_index",
    "evaluate_transition",
    "next_step",
    "parse_category",
    "parse_priority",
    "parse_status",
    "progress",
    "step_label",
]
