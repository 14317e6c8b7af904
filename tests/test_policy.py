"""Unit tests for renewal/policy.py — pure function, explicit clock."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from config import RenewalOptions
from renewal.cache import CertificateMetadata
from renewal.policy import Decision, evaluate

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def _options(before_days: float | None = 30, after_days: float | None = None) -> RenewalOptions:
    return RenewalOptions(
        email="admin@example.com",
        domains=("example.com",),
        time_until_expiry_before_renewal=timedelta(days=before_days) if before_days else None,
        time_after_issue_date_before_renewal=timedelta(days=after_days) if after_days else None,
    )


def _meta(not_before: datetime, not_after: datetime) -> CertificateMetadata:
    return CertificateMetadata(not_before=not_before, not_after=not_after, domains=("example.com",))


def test_no_certificate_is_due():
    assert evaluate(None, _options(), NOW) is Decision.DUE


def test_fresh_certificate_is_not_due():
    meta = _meta(NOW - timedelta(days=1), NOW + timedelta(days=89))
    assert evaluate(meta, _options(), NOW) is Decision.NOT_DUE


def test_expiring_within_threshold_is_due():
    meta = _meta(NOW - timedelta(days=80), NOW + timedelta(days=10))
    assert evaluate(meta, _options(before_days=30), NOW) is Decision.DUE


def test_expiry_threshold_boundary_is_inclusive():
    meta = _meta(NOW - timedelta(days=60), NOW + timedelta(days=30))
    assert evaluate(meta, _options(before_days=30), NOW) is Decision.DUE
    assert evaluate(meta, _options(before_days=30), NOW - timedelta(seconds=1)) is Decision.NOT_DUE


def test_already_expired_is_due():
    meta = _meta(NOW - timedelta(days=100), NOW - timedelta(days=10))
    assert evaluate(meta, _options(), NOW) is Decision.DUE


def test_age_threshold_is_due():
    meta = _meta(NOW - timedelta(days=61), NOW + timedelta(days=29, hours=23))
    options = _options(before_days=None, after_days=60)
    assert evaluate(meta, options, NOW) is Decision.DUE


def test_age_threshold_not_reached():
    meta = _meta(NOW - timedelta(days=20), NOW + timedelta(days=70))
    assert evaluate(meta, _options(before_days=None, after_days=60), NOW) is Decision.NOT_DUE


@pytest.mark.parametrize(
    "issued_days_ago, expires_in_days, expected",
    [
        (10, 80, Decision.NOT_DUE),   # neither threshold
        (65, 25, Decision.DUE),       # both thresholds
        (65, 80, Decision.DUE),       # age only
        (5, 20, Decision.DUE),        # expiry only
    ],
)
def test_either_threshold_triggers(issued_days_ago, expires_in_days, expected):
    meta = _meta(NOW - timedelta(days=issued_days_ago), NOW + timedelta(days=expires_in_days))
    assert evaluate(meta, _options(before_days=30, after_days=60), NOW) is expected


def test_same_inputs_same_answer():
    meta = _meta(NOW - timedelta(days=50), NOW + timedelta(days=40))
    options = _options()
    assert {evaluate(meta, options, NOW) for _ in range(5)} == {Decision.NOT_DUE}


def test_defaults_to_current_clock():
    now = datetime.now(tz=timezone.utc)
    meta = _meta(now - timedelta(days=1), now + timedelta(days=89))
    assert evaluate(meta, _options()) is Decision.NOT_DUE
