"""
Tests for the live session registry: per-client history and session expiry
"""
from unittest.mock import MagicMock

import pytest

from cropdoc.dependencies import SessionRegistry
from cropdoc.errors import UnknownSessionError
from cropdoc.services.assistant import AssistantClient
from cropdoc.services.history import MemoryRecordBackend

from conftest import StubChat, StubDiagnosticClient


class FakeClock:
    def __init__(self, now=1_000.0):
        self.now = now

    def __call__(self):
        return self.now


def make_registry(clock, **kwargs):
    return SessionRegistry(
        diagnostic_client=StubDiagnosticClient(),
        assistant_client=AssistantClient(StubChat()),
        backend=MemoryRecordBackend(),
        clock=clock,
        **kwargs,
    )


# =============================================================================
# Idle expiry
# =============================================================================
class TestSessionExpiry:
    def test_idle_session_expires(self):
        clock = FakeClock()
        registry = make_registry(clock, session_ttl=60)
        handle = registry.create()

        clock.now += 61
        with pytest.raises(UnknownSessionError):
            registry.get(handle.session_id)
        assert handle.session_id not in registry.sessions

    def test_access_refreshes_idle_timer(self):
        clock = FakeClock()
        registry = make_registry(clock, session_ttl=60)
        handle = registry.create()

        clock.now += 50
        registry.get(handle.session_id)
        clock.now += 50
        assert registry.get(handle.session_id) is handle

    def test_create_prunes_expired_sessions(self):
        clock = FakeClock()
        registry = make_registry(clock, session_ttl=60)
        stale = registry.create()

        clock.now += 120
        fresh = registry.create()

        assert list(registry.sessions) == [fresh.session_id]
        assert stale.session_id not in registry.sessions


# =============================================================================
# Capacity
# =============================================================================
class TestSessionCapacity:
    def test_least_recently_used_evicted_at_cap(self):
        clock = FakeClock()
        registry = make_registry(clock, max_sessions=2)
        first = registry.create()
        clock.now += 1
        second = registry.create()
        clock.now += 1
        registry.get(first.session_id)
        clock.now += 1

        third = registry.create()

        assert set(registry.sessions) == {first.session_id, third.session_id}
        assert second.session_id not in registry.sessions

    def test_eviction_keeps_history(self):
        clock = FakeClock()
        registry = make_registry(clock, max_sessions=1)
        first = registry.create("farm-7")
        registry.create("farm-7")
        assert first.session_id not in registry.sessions
        assert "farm-7" in registry.stores


class TestHistoryStores:
    def test_store_loaded_once_per_client(self):
        backend = MagicMock(wraps=MemoryRecordBackend())
        backend.name = "memory"
        registry = SessionRegistry(
            diagnostic_client=StubDiagnosticClient(),
            assistant_client=AssistantClient(StubChat()),
            backend=backend,
        )
        assert registry.store_for("farm-7") is registry.store_for("farm-7")
        backend.read.assert_called_once_with("crop_health_history:farm-7")

    def test_default_client_uses_bare_key(self):
        registry = make_registry(FakeClock())
        assert registry.store_for().key == "crop_health_history"
