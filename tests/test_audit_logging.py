import json
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from staff_auth.core.context import bind_identity, get_identity_id, get_request_id, get_tenant_id, request_scope
from staff_auth.core.errors import StoreUnavailable
from staff_auth.core.logging import JsonFormatter, RequestContextFilter, redact_email
from staff_auth.schemas.auth import LoginRequest
from staff_auth.schemas.common import AuditAction
from staff_auth.services.audit import StoreAuditSink, record_safely, serialize_for_audit


def _record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("staff_auth.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    RequestContextFilter().filter(record)
    return record


def test_json_formatter_includes_request_context():
    with request_scope("req-1", tenant_id="tenant-a"):
        bind_identity("identity-9")
        payload = json.loads(JsonFormatter().format(_record("hello")))

    assert payload["message"] == "hello"
    assert payload["request_id"] == "req-1"
    assert payload["tenant_id"] == "tenant-a"
    assert payload["identity_id"] == "identity-9"
    assert payload["stream"] == "transactional"
    assert get_request_id() == "-"
    assert get_identity_id() == "-"


def test_bind_identity_outside_request_scope_is_ignored():
    bind_identity("identity-9", "tenant-a")
    assert get_identity_id() == "-"
    assert get_tenant_id() == "-"


@pytest.mark.asyncio
async def test_login_binds_identity_only_for_its_request(services, make_identity):
    identity = make_identity()
    request = LoginRequest(email=identity.email, password="Password123!")

    await services.login.login(request)
    assert get_identity_id() == "-"

    with request_scope("req-3"):
        await services.login.login(request)
        assert get_identity_id() == str(identity.id)
    assert get_identity_id() == "-"


def test_json_formatter_carries_audit_payload():
    record = _record("LOGIN", audit={"action": "LOGIN"})
    payload = json.loads(JsonFormatter(stream_label="audit").format(record))
    assert payload["stream"] == "audit"
    assert payload["audit"] == {"action": "LOGIN"}


def test_redact_email():
    assert redact_email("alice@example.com") == "al***@example.com"
    assert redact_email(None) == "redacted"
    assert redact_email("not-an-email") == "redacted"


def test_serialize_for_audit():
    value = serialize_for_audit(
        {"amount": Decimal("1.50"), "at": datetime(2026, 3, 2, tzinfo=timezone.utc), "id": uuid.UUID(int=1)}
    )
    assert value["at"].startswith("2026-03-02")
    assert value["id"] == "00000000-0000-0000-0000-000000000001"
    assert value["amount"] == "1.50"


@pytest.mark.asyncio
async def test_store_sink_persists_with_tenant(store, clock, make_identity):
    identity = make_identity()
    sink = StoreAuditSink(store, clock)

    with request_scope("req-2", tenant_id="tenant-b"):
        await sink.record_event(identity.id, AuditAction.LOGOUT, {"sessions": 2})

    [event] = store.audit_events_for(identity.id)
    assert event.action == AuditAction.LOGOUT
    assert event.tenant_id == "tenant-b"
    assert event.details == {"sessions": 2}
    assert event.created_at == clock.now()


@pytest.mark.asyncio
async def test_store_sink_swallows_store_outage(clock, caplog):
    class DownStore:
        def transaction(self):
            raise StoreUnavailable("down")

    sink = StoreAuditSink(DownStore(), clock)
    with caplog.at_level(logging.ERROR, logger="staff_auth.services.audit"):
        await sink.record_event(None, AuditAction.LOGIN)
    assert "Failed to persist audit event" in caplog.text


@pytest.mark.asyncio
async def test_record_safely_contains_sink_errors(caplog):
    class ExplodingSink:
        async def record_event(self, identity_id, action, metadata=None):
            raise RuntimeError("boom")

    with caplog.at_level(logging.ERROR, logger="staff_auth.services.audit"):
        await record_safely(ExplodingSink(), None, AuditAction.LOGIN)
    assert "Audit sink failed action=LOGIN" in caplog.text
