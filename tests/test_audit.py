"""Tests for the security and analytics audit writer."""

import pytest

from showcase.service.audit import AuditLogger
from showcase.storage.memory import MemoryStore
from showcase.storage.models import RequestContext

CONTEXT = RequestContext(
    ip_address="192.0.2.10", user_agent="pytest", url="/admin/api/security-log", method="POST"
)


class FailingStore(MemoryStore):
    def append_security_log(self, *args, **kwargs):
        raise RuntimeError("disk full")


@pytest.fixture
def store():
    return MemoryStore()


async def test_record_writes_inline_without_worker(store):
    audit = AuditLogger(store)
    await audit.record("csrf_violation", {"reason": "missing"}, 7, CONTEXT)
    [entry] = store.list_security_logs()
    assert entry.event_type == "csrf_violation"
    assert entry.event_data == {"reason": "missing"}
    assert entry.user_id == 7
    assert entry.ip_address == "192.0.2.10"
    assert entry.user_agent == "pytest"
    assert entry.url == "/admin/api/security-log"
    assert store.list_analytics_events() == []


async def test_security_events_are_mirrored_to_analytics(store):
    audit = AuditLogger(store)
    await audit.record("security_event", {"type": "devtools_open"}, 1, CONTEXT)
    await audit.record("suspicious_activity", {"type": "suspicious_activity"}, 1, CONTEXT)
    mirrored = [e.event_type for e in store.list_analytics_events()]
    assert mirrored == ["security_event", "suspicious_activity"]


async def test_track_writes_analytics_only(store):
    audit = AuditLogger(store)
    await audit.track("admin_logout", {"userId": 3}, CONTEXT)
    assert store.list_security_logs() == []
    [event] = store.list_analytics_events(event_type="admin_logout")
    assert event.event_data == {"userId": 3}


async def test_worker_drains_queue_on_stop(store):
    audit = AuditLogger(store)
    await audit.start()
    assert audit.running
    for i in range(5):
        await audit.record("admin_action", {"n": i}, 1, CONTEXT)
    await audit.stop()
    assert not audit.running
    assert len(store.list_security_logs(event_type="admin_action")) == 5


async def test_flush_waits_for_pending_writes(store):
    audit = AuditLogger(store)
    await audit.start()
    await audit.record("admin_action", {}, 1, CONTEXT)
    await audit.flush()
    assert len(store.list_security_logs()) == 1
    await audit.stop()


async def test_write_failures_do_not_raise():
    store = FailingStore()
    audit = AuditLogger(store)
    await audit.record("security_event", {"type": "x"}, 1, CONTEXT)
    # A failed security write skips the analytics mirror too
    assert store.list_analytics_events() == []


async def test_queue_full_falls_back_to_inline(store):
    audit = AuditLogger(store, queue_size=1)
    await audit.start()
    for _ in range(3):
        await audit.record("admin_action", {}, None, CONTEXT)
    await audit.stop()
    assert len(store.list_security_logs()) == 3


def test_list_security_logs_newest_first(store):
    for name in ("first", "second", "third"):
        store.append_security_log(name)
    assert [e.event_type for e in store.list_security_logs(limit=2)] == ["third", "second"]
