"""WorkflowEngine against the SQLite-backed repository."""

import uuid

import pytest

from civicfix.database import async_session_factory
from civicfix.errors import (
    AuthorizationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    TransientStorageError,
    ValidationError,
)
from civicfix.models import ReportStatus, Role
from civicfix.repository import ReportRepository
from civicfix.workflow import WorkflowEngine


@pytest.fixture
def new_report(engine, make_principal):
    async def _create(**overrides):
        fields = {"category": "pothole", "description": "Deep pothole on Main St"}
        fields.update(overrides)
        reporter = await make_principal(f"reporter-{uuid.uuid4().hex[:8]}@example.com")
        return await engine.submit(fields, reporter)

    return _create


@pytest.fixture
def roles(make_principal):
    async def _create():
        admin = await make_principal("admin@example.com", Role.ADMINISTRATOR)
        agent_y = await make_principal("agent-y@example.com", Role.AGENT)
        agent_z = await make_principal("agent-z@example.com", Role.AGENT)
        return admin, agent_y, agent_z

    return _create


@pytest.mark.asyncio
async def test_submit_forces_submitted_and_defaults_contact(engine, make_principal):
    reporter = await make_principal("citizen@example.com")
    report = await engine.submit(
        {
            "category": "graffiti",
            "description": "  Tagging on the bridge  ",
            "priority": "high",
            "lat": 40.0,
            "lng": -73.9,
            "photo_urls": ["/storage/reports/photos/a.jpg"],
        },
        reporter,
    )
    assert report.status == ReportStatus.SUBMITTED.value
    assert report.agent_id is None
    assert report.category == "other"
    assert report.description == "Tagging on the bridge"
    assert report.priority == 1
    assert report.contact == "citizen@example.com"
    assert report.user_id == reporter.id
    assert report.photo_urls == ["/storage/reports/photos/a.jpg"]


@pytest.mark.asyncio
async def test_submit_validation(engine):
    with pytest.raises(ValidationError):
        await engine.submit({"category": "pothole", "description": "   "})
    with pytest.raises(ValidationError):
        await engine.submit({"description": "no category"})
    with pytest.raises(ValidationError):
        await engine.submit({"category": "water", "description": "leak", "lat": 10.0})
    with pytest.raises(ValidationError):
        await engine.submit({"category": "water", "description": "leak", "lat": 91.0, "lng": 0.0})


@pytest.mark.asyncio
async def test_scenario_assign_from_submitted_acknowledges(engine, new_report, roles):
    admin, agent_y, _ = await roles()
    report = await new_report()

    result = await engine.assign_agent(report.id, agent_y.id, admin)

    assert result.applied
    assert result.status is ReportStatus.ADMIN_RECEIVED
    assert result.report.agent_id == agent_y.id


@pytest.mark.asyncio
async def test_scenario_assign_from_admin_received(engine, new_report, roles):
    admin, agent_y, _ = await roles()
    report = await new_report()
    await engine.request_transition(report.id, "admin_received", admin)

    result = await engine.assign_agent(report.id, agent_y.id, admin)

    assert result.status is ReportStatus.ASSIGNED_AGENT
    assert result.report.agent_id == agent_y.id
    assert result.previous_status is ReportStatus.ADMIN_RECEIVED


async def _assigned(engine, new_report, admin, agent):
    report = await new_report()
    await engine.request_transition(report.id, "admin_received", admin)
    result = await engine.assign_agent(report.id, agent.id, admin)
    assert result.status is ReportStatus.ASSIGNED_AGENT
    return result.report


@pytest.mark.asyncio
async def test_scenario_assigned_agent_accepts_then_resolves(engine, new_report, roles):
    admin, agent_y, _ = await roles()
    report = await _assigned(engine, new_report, admin, agent_y)

    accepted = await engine.request_transition(report.id, "agent_received", agent_y)
    assert accepted.applied and accepted.status is ReportStatus.AGENT_RECEIVED

    resolved = await engine.request_transition(report.id, "resolved", agent_y)
    assert resolved.applied and resolved.status is ReportStatus.RESOLVED

    audits = await engine.repository.audits(report.id)
    assert [a.new_status for a in audits][:2] == ["resolved", "agent_received"]
    assert all(a.actor_id == agent_y.id for a in audits[:2])


@pytest.mark.asyncio
async def test_scenario_other_agent_is_rejected(engine, new_report, roles):
    admin, agent_y, agent_z = await roles()
    report = await _assigned(engine, new_report, admin, agent_y)

    with pytest.raises(AuthorizationError):
        await engine.request_transition(report.id, "resolved", agent_z)

    stored = await engine.repository.get(report.id, refresh=True)
    assert stored.status == ReportStatus.ASSIGNED_AGENT.value


@pytest.mark.asyncio
async def test_scenario_jump_to_resolved_is_clamped(engine, new_report, roles, make_principal):
    admin, agent_y, _ = await roles()
    reporter = await make_principal("someone@example.com")
    report = await new_report()

    for principal in (admin, reporter):
        result = await engine.request_transition(report.id, "resolved", principal)
        assert result.applied is False
        assert result.reason == "out_of_order"
        assert result.status is ReportStatus.SUBMITTED

    with pytest.raises(AuthorizationError):
        await engine.request_transition(report.id, "resolved", agent_y)

    stored = await engine.repository.get(report.id, refresh=True)
    assert stored.status == ReportStatus.SUBMITTED.value
    assert await engine.repository.audits(report.id) == []


@pytest.mark.asyncio
async def test_same_status_request_is_idempotent(engine, new_report, roles):
    admin, _, _ = await roles()
    report = await new_report()
    before = await engine.repository.get(report.id, refresh=True)

    result = await engine.request_transition(report.id, "submitted", admin)

    after = await engine.repository.get(report.id, refresh=True)
    assert result.applied is False and result.reason == "unchanged"
    assert after.status == before.status
    assert after.updated_at == before.updated_at


@pytest.mark.asyncio
async def test_unassign_resets_status_and_agent_together(engine, new_report, roles):
    admin, agent_y, _ = await roles()
    report = await _assigned(engine, new_report, admin, agent_y)
    await engine.request_transition(report.id, "agent_received", agent_y)

    result = await engine.assign_agent(report.id, None, admin)

    assert result.applied and result.reason == "unassigned"
    stored = await engine.repository.get(report.id, refresh=True)
    assert stored.status == ReportStatus.SUBMITTED.value
    assert stored.agent_id is None


@pytest.mark.asyncio
async def test_admin_requesting_submitted_unassigns(engine, new_report, roles):
    admin, agent_y, _ = await roles()
    report = await _assigned(engine, new_report, admin, agent_y)

    result = await engine.request_transition(report.id, "submitted", admin)

    assert result.applied and result.reason == "unassigned"
    assert result.report.agent_id is None
    assert result.status is ReportStatus.SUBMITTED


@pytest.mark.asyncio
async def test_reassigning_accepted_report_resets_to_assigned(engine, new_report, roles):
    admin, agent_y, agent_z = await roles()
    report = await _assigned(engine, new_report, admin, agent_y)
    await engine.request_transition(report.id, "agent_received", agent_y)

    same = await engine.assign_agent(report.id, agent_y.id, admin)
    assert same.applied is False and same.status is ReportStatus.AGENT_RECEIVED

    moved = await engine.assign_agent(report.id, agent_z.id, admin)
    assert moved.status is ReportStatus.ASSIGNED_AGENT
    assert moved.report.agent_id == agent_z.id


@pytest.mark.asyncio
async def test_assignment_rules(engine, new_report, roles, make_principal):
    admin, agent_y, _ = await roles()
    reporter = await make_principal("not-an-agent@example.com")
    report = await new_report()

    with pytest.raises(AuthorizationError):
        await engine.assign_agent(report.id, agent_y.id, agent_y)
    with pytest.raises(ValidationError):
        await engine.assign_agent(report.id, reporter.id, admin)
    with pytest.raises(NotFoundError):
        await engine.assign_agent(report.id, "missing-agent", admin)
    with pytest.raises(NotFoundError):
        await engine.assign_agent("missing-report", agent_y.id, admin)


@pytest.mark.asyncio
async def test_reassigning_resolved_report_reopens_it(engine, new_report, roles):
    admin, agent_y, agent_z = await roles()
    report = await _assigned(engine, new_report, admin, agent_y)
    await engine.request_transition(report.id, "resolved", agent_y)

    same = await engine.assign_agent(report.id, agent_y.id, admin)
    assert same.applied is False and same.status is ReportStatus.RESOLVED

    moved = await engine.assign_agent(report.id, agent_z.id, admin)
    assert moved.applied and moved.reason == "applied"
    assert moved.previous_status is ReportStatus.RESOLVED
    assert moved.status is ReportStatus.ASSIGNED_AGENT
    assert moved.report.agent_id == agent_z.id

    await engine.request_transition(report.id, "resolved", agent_z)
    strict = WorkflowEngine(engine.repository, strict=True)
    back = await strict.assign_agent(report.id, agent_y.id, admin)
    assert back.status is ReportStatus.ASSIGNED_AGENT and back.report.agent_id == agent_y.id


@pytest.mark.asyncio
async def test_strict_engine_raises_on_out_of_order(repository, new_report, roles):
    admin, _, _ = await roles()
    report = await new_report()
    strict = WorkflowEngine(repository, strict=True)

    with pytest.raises(InvalidTransitionError):
        await strict.request_transition(report.id, "resolved", admin)


@pytest.mark.asyncio
async def test_unknown_report_is_not_found(engine, roles):
    admin, _, _ = await roles()
    with pytest.raises(NotFoundError):
        await engine.request_transition("does-not-exist", "admin_received", admin)


@pytest.mark.asyncio
async def test_concurrent_writer_causes_conflict(engine, new_report, roles):
    admin, agent_y, _ = await roles()
    report = await _assigned(engine, new_report, admin, agent_y)

    async with async_session_factory() as other_session:
        stale_engine = WorkflowEngine(ReportRepository(other_session), strict=False)
        # Load the report into the second session before it changes.
        stale_report = await stale_engine.repository.get(report.id)  # noqa: F841  keep it in the identity map

        await engine.request_transition(report.id, "agent_received", agent_y)

        with pytest.raises(ConflictError):
            await stale_engine.request_transition(report.id, "resolved", agent_y)

    stored = await engine.repository.get(report.id, refresh=True)
    assert stored.status == ReportStatus.AGENT_RECEIVED.value


@pytest.mark.asyncio
async def test_conditional_update_checks_expected_values(repository, new_report):
    report = await new_report()
    with pytest.raises(ConflictError):
        await repository.update(
            report.id,
            {"status": "admin_received"},
            expected={"status": "assigned_agent", "agent_id": None},
        )
    updated = await repository.update(
        report.id,
        {"status": "admin_received"},
        expected={"status": "submitted", "agent_id": None},
    )
    assert updated.status == "admin_received"


@pytest.mark.asyncio
async def test_set_priority(engine, new_report, roles):
    admin, agent_y, _ = await roles()
    report = await new_report()

    updated = await engine.set_priority(report.id, "low", admin)
    assert updated.priority == 3
    assert updated.status == ReportStatus.SUBMITTED.value

    cleared = await engine.set_priority(report.id, None, admin)
    assert cleared.priority is None

    with pytest.raises(AuthorizationError):
        await engine.set_priority(report.id, "high", agent_y)


@pytest.mark.asyncio
async def test_query_orderings(engine, repository, new_report):
    water_low = await new_report(category="water", priority="low")
    pothole_none = await new_report(category="pothole")
    pothole_high = await new_report(category="pothole", priority="high")

    rows, total = await repository.query(order="triage")
    assert total == 3
    assert [r.id for r in rows] == [pothole_high.id, pothole_none.id, water_low.id]

    rows, total = await repository.query(order="queue")
    assert [r.id for r in rows] == [pothole_high.id, water_low.id, pothole_none.id]

    rows, total = await repository.query(category="water")
    assert total == 1 and rows[0].id == water_low.id


@pytest.mark.asyncio
async def test_storage_failure_is_transient_and_leaves_report_unchanged(
    engine, new_report, roles, failing_updates
):
    admin, _, _ = await roles()
    report = await new_report()
    report_id = report.id
    failing_updates()

    with pytest.raises(TransientStorageError):
        await engine.request_transition(report_id, "admin_received", admin)

    async with async_session_factory() as other_session:
        stored = await ReportRepository(other_session).get(report_id)
        assert stored.status == ReportStatus.SUBMITTED.value
        assert await ReportRepository(other_session).audits(report_id) == []


@pytest.mark.asyncio
async def test_contact_filter_matches_whole_address(repository, make_principal, engine):
    owner = await make_principal("a_b@example.com")
    mine = await engine.submit({"category": "water", "description": "Leak"}, owner)
    await engine.submit(
        {"category": "water", "description": "Other leak", "contact": "axb@example.com"}
    )
    await engine.submit(
        {"category": "water", "description": "Phoned in", "contact": "A_B@Example.com"}
    )

    rows, total = await repository.query(contact="a_b@example.com")
    assert total == 2
    assert mine.id in {r.id for r in rows}
    assert all(r.contact.lower() == "a_b@example.com" for r in rows)

    rows, total = await repository.query(contact="%@example.com")
    assert total == 0
