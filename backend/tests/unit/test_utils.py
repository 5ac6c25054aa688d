"""
Tests for time helpers, id/slug generation, bearer token validation and
the JSON log formatter.
"""

import json
import logging
import re
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from hrflow.config.settings import settings
from hrflow.domain.errors import AuthenticationError
from hrflow.utils.idgen import (
    generate_correlation_id, generate_instance_id, generate_reference_number, generate_slug, slugify
)
from hrflow.utils.jwt import JWTValidator, get_current_user, warn_if_signatures_unverified
from hrflow.utils.logger import JsonFormatter, set_actor_context, set_correlation_id
from hrflow.utils.time import (
    calculate_due_date, coerce_datetime, days_overdue, ensure_utc, format_iso, is_overdue,
    parse_iso, start_of_month
)


# ============================================================================
# Time
# ============================================================================

def test_ensure_utc_handles_naive_and_aware():
    naive = datetime(2024, 5, 1, 12, 0)
    ist = datetime(2024, 5, 1, 17, 30, tzinfo=timezone(timedelta(hours=5, minutes=30)))

    assert ensure_utc(naive).tzinfo == timezone.utc
    assert ensure_utc(ist) == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_iso_round_trip_uses_z_suffix():
    value = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    assert format_iso(value) == "2024-05-01T12:00:00Z"
    assert parse_iso("2024-05-01T12:00:00Z") == value
    assert parse_iso("2024-05-01") == datetime(2024, 5, 1, tzinfo=timezone.utc)


def test_coerce_datetime():
    assert coerce_datetime(None) is None
    assert coerce_datetime("") is None
    assert coerce_datetime("someday") is None
    assert coerce_datetime(42) is None
    assert coerce_datetime("2024-05-01T12:00:00+02:00") == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


def test_due_dates_and_overdue_days():
    start = datetime(2024, 5, 1, tzinfo=timezone.utc)

    assert calculate_due_date(start, None) is None
    assert calculate_due_date(start, 0) is None
    assert calculate_due_date(start, 1.5) == datetime(2024, 5, 2, 12, 0, tzinfo=timezone.utc)

    now = datetime(2024, 5, 4, 1, 0, tzinfo=timezone.utc)
    assert is_overdue(start, now) is True
    assert is_overdue(None, now) is False
    assert days_overdue(start, now) == 3
    assert days_overdue(now, start) == 0


def test_start_of_month():
    assert start_of_month(datetime(2024, 5, 17, 8, 30, tzinfo=timezone.utc)) == datetime(
        2024, 5, 1, tzinfo=timezone.utc
    )


# ============================================================================
# Identifiers
# ============================================================================

def test_slugify_collapses_whitespace():
    assert slugify("  Annual   Performance Review ") == "annual-performance-review"


def test_generated_slugs_are_unique_per_name():
    first = generate_slug("Onboarding Flow")
    second = generate_slug("Onboarding Flow")

    assert re.fullmatch(r"onboarding-flow-[a-z0-9]{6}", first)
    assert first != second


def test_identifier_formats():
    assert re.fullmatch(r"WFI-[0-9a-f]{12}", generate_instance_id())
    assert re.fullmatch(r"WF-[A-Z0-9]{8}", generate_reference_number())
    assert generate_correlation_id().startswith("COR-")


# ============================================================================
# Bearer tokens
# ============================================================================

def make_token(**claims) -> str:
    payload = {
        "sub": "user-42",
        "tenant_id": "tenant-a",
        "role": "manager",
        "employee_id": "emp-mgr",
        "email": "mia.manager@acme-hr.io",
        "name": "Mia Manager",
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    payload.update(claims)
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def test_valid_token_builds_actor_context():
    actor = get_current_user(f"Bearer {make_token()}")

    assert actor.user_id == "user-42"
    assert actor.tenant_id == "tenant-a"
    assert actor.role == "manager"
    assert actor.employee_id == "emp-mgr"
    assert actor.email == "mia.manager@acme-hr.io"
    assert actor.display_name == "Mia Manager"


def test_role_defaults_to_employee():
    token = make_token()
    claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    claims.pop("role")

    actor = JWTValidator().get_actor_context(
        jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    )
    assert actor.role == "employee"


@pytest.mark.parametrize("header", [
    "",
    "Bearer not-a-jwt",
])
def test_malformed_headers_are_rejected(header):
    with pytest.raises(AuthenticationError):
        get_current_user(header)


def test_expired_token_is_rejected():
    with pytest.raises(AuthenticationError, match="expired"):
        get_current_user(make_token(exp=datetime.now(timezone.utc) - timedelta(minutes=5)))


def test_wrong_signature_is_rejected():
    forged = jwt.encode(
        {"sub": "user-42", "tenant_id": "tenant-a"}, "another-secret-of-sufficient-length", algorithm="HS256"
    )
    with pytest.raises(AuthenticationError):
        get_current_user(forged)


def test_identity_claims_are_required():
    with pytest.raises(AuthenticationError):
        get_current_user(make_token(tenant_id=None))


def test_development_mode_is_flagged_at_startup(monkeypatch, caplog):
    self_minted = jwt.encode(
        {"sub": "intruder", "tenant_id": "tenant-a", "role": "hr_manager"},
        "not-the-configured-secret-but-long-enough", algorithm="HS256"
    )

    monkeypatch.setattr(settings, "environment", "development")
    with caplog.at_level(logging.WARNING):
        assert warn_if_signatures_unverified() is True
    assert "NOT verified" in caplog.text
    assert get_current_user(self_minted).role == "hr_manager"

    monkeypatch.setattr(settings, "environment", "staging")
    assert warn_if_signatures_unverified() is False
    with pytest.raises(AuthenticationError):
        get_current_user(self_minted)


# ============================================================================
# Logging
# ============================================================================

def test_json_formatter_includes_context():
    record = logging.LogRecord("hrflow.test", logging.INFO, __file__, 1, "Advanced %s", ("WFI-1",), None)
    record.instance_id = "WFI-1"
    record.trigger = "timeout"
    set_correlation_id("COR-test")
    try:
        payload = json.loads(JsonFormatter().format(record))
    finally:
        set_correlation_id(None)

    assert payload["message"] == "Advanced WFI-1"
    assert payload["level"] == "INFO"
    assert payload["correlation_id"] == "COR-test"
    assert payload["instance_id"] == "WFI-1"
    assert payload["trigger"] == "timeout"
    assert "tenant_id" not in payload


def test_json_formatter_tags_actor_context():
    record = logging.LogRecord("hrflow.test", logging.WARNING, __file__, 1, "Denied", (), None)
    set_actor_context("tenant-a", "user-42")
    try:
        payload = json.loads(JsonFormatter().format(record))
    finally:
        set_actor_context(None)

    assert payload["tenant_id"] == "tenant-a"
    assert payload["actor_id"] == "user-42"
