"""RoleResolver cache behaviour with a controllable clock."""

import asyncio

import pytest

from civicfix.identity import Principal, RoleResolver, parse_role
from civicfix.models import Role


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class FakeLookup:
    def __init__(self, roles):
        self.roles = dict(roles)
        self.calls = []

    async def __call__(self, user_id):
        self.calls.append(user_id)
        await asyncio.sleep(0)
        return self.roles.get(user_id)


def test_parse_role():
    assert parse_role("Administrator") is Role.ADMINISTRATOR
    assert parse_role(Role.AGENT) is Role.AGENT
    assert parse_role("porter") is None
    assert parse_role(None) is None


def test_principal_fresh_clears_stale_flag():
    principal = Principal(id="u1", role=Role.REPORTER, stale=True)
    refreshed = principal.fresh(Role.AGENT)
    assert refreshed.role is Role.AGENT and refreshed.stale is False
    assert principal.stale is True


def test_cached_entry_goes_stale_after_ttl():
    clock = FakeClock()
    resolver = RoleResolver(FakeLookup({}), ttl_seconds=60, clock=clock)
    resolver.remember("u1", Role.AGENT)

    assert resolver.cached("u1") == (Role.AGENT, False)
    clock.now += 61
    assert resolver.cached("u1") == (Role.AGENT, True)
    assert resolver.cached("unknown") is None


@pytest.mark.asyncio
async def test_authoritative_always_hits_lookup_and_updates_cache():
    lookup = FakeLookup({"u1": Role.ADMINISTRATOR})
    resolver = RoleResolver(lookup, ttl_seconds=60, clock=FakeClock())
    resolver.remember("u1", Role.REPORTER)

    assert await resolver.authoritative("u1") is Role.ADMINISTRATOR
    assert lookup.calls == ["u1"]
    assert resolver.cached("u1") == (Role.ADMINISTRATOR, False)


@pytest.mark.asyncio
async def test_best_effort_returns_fresh_cache_without_lookup():
    lookup = FakeLookup({"u1": Role.ADMINISTRATOR})
    resolver = RoleResolver(lookup, ttl_seconds=60, clock=FakeClock())
    resolver.remember("u1", Role.AGENT)

    assert await resolver.best_effort("u1") == (Role.AGENT, False)
    await resolver.drain()
    assert lookup.calls == []


@pytest.mark.asyncio
async def test_best_effort_serves_stale_role_and_refreshes_in_background():
    clock = FakeClock()
    lookup = FakeLookup({"u1": Role.ADMINISTRATOR})
    resolver = RoleResolver(lookup, ttl_seconds=60, clock=clock)
    resolver.remember("u1", Role.AGENT)
    clock.now += 120

    role, stale = await resolver.best_effort("u1")
    assert (role, stale) == (Role.AGENT, True)

    await resolver.drain()
    assert lookup.calls == ["u1"]
    assert resolver.cached("u1") == (Role.ADMINISTRATOR, False)


@pytest.mark.asyncio
async def test_best_effort_uses_token_role_as_stale_fallback():
    lookup = FakeLookup({"u1": Role.REPORTER})
    resolver = RoleResolver(lookup, ttl_seconds=60, clock=FakeClock())

    assert await resolver.best_effort("u1", fallback=Role.ADMINISTRATOR) == (Role.ADMINISTRATOR, True)
    await resolver.drain()
    assert resolver.cached("u1") == (Role.REPORTER, False)


@pytest.mark.asyncio
async def test_best_effort_without_cache_or_fallback_waits_for_lookup():
    lookup = FakeLookup({"u1": Role.AGENT})
    resolver = RoleResolver(lookup, ttl_seconds=60, clock=FakeClock())

    assert await resolver.best_effort("u1") == (Role.AGENT, False)
    assert await resolver.best_effort("ghost") is None


@pytest.mark.asyncio
async def test_refresh_is_not_scheduled_twice():
    clock = FakeClock()
    lookup = FakeLookup({"u1": Role.AGENT})
    resolver = RoleResolver(lookup, ttl_seconds=60, clock=clock)
    resolver.remember("u1", Role.AGENT)
    clock.now += 120

    await resolver.best_effort("u1")
    await resolver.best_effort("u1")
    await resolver.drain()
    assert lookup.calls == ["u1"]


@pytest.mark.asyncio
async def test_deleted_profile_is_forgotten():
    lookup = FakeLookup({})
    resolver = RoleResolver(lookup, ttl_seconds=60, clock=FakeClock())
    resolver.remember("u1", Role.AGENT)

    assert await resolver.authoritative("u1") is None
    assert resolver.cached("u1") is None


@pytest.mark.asyncio
async def test_failed_background_refresh_keeps_cached_role():
    clock = FakeClock()

    async def broken_lookup(user_id):
        raise RuntimeError("database unavailable")

    resolver = RoleResolver(broken_lookup, ttl_seconds=60, clock=clock)
    resolver.remember("u1", Role.AGENT)
    clock.now += 120

    assert await resolver.best_effort("u1") == (Role.AGENT, True)
    await resolver.drain()
    assert resolver.cached("u1") == (Role.AGENT, True)
