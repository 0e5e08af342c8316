from __future__ import annotations

import pytest

from conftest import T0

from download_entitlements.errors import ValidationError
from download_entitlements.models import EligibilityState, EntitlementRecord
from download_entitlements.policy import (
    DEFAULT_POLICY,
    HOUR_MS,
    DownloadPolicy,
    check_cooldown,
    evaluate,
    merge_alias_records,
    reconcile_download_count,
)
from download_entitlements.config import EngineSettings


def _record(purchase_offset_ms=0, count=0, last=None, key="prod-1"):
    return EntitlementRecord(
        product_key=key,
        purchase_timestamp=T0 - purchase_offset_ms,
        download_count=count,
        last_download_timestamp=last,
    )


def test_fresh_purchase_is_active_with_full_window():
    snapshot = evaluate(_record(), T0)

    assert snapshot.state is EligibilityState.ACTIVE
    assert snapshot.remaining_downloads == 3
    assert snapshot.remaining_time_ms == 48 * HOUR_MS
    assert snapshot.can_download is True


def test_three_downloads_within_window_is_limit_reached():
    snapshot = evaluate(_record(purchase_offset_ms=HOUR_MS, count=3), T0)

    assert snapshot.state is EligibilityState.LIMIT_REACHED
    assert snapshot.remaining_downloads == 0
    assert snapshot.remaining_time_ms == 0


def test_purchase_older_than_window_is_expired():
    snapshot = evaluate(_record(purchase_offset_ms=49 * HOUR_MS, count=1), T0)

    assert snapshot.state is EligibilityState.EXPIRED
    assert snapshot.remaining_time_ms == 0
    assert snapshot.remaining_downloads == 0


def test_expiry_checked_before_limit():
    snapshot = evaluate(_record(purchase_offset_ms=49 * HOUR_MS, count=3), T0)
    assert snapshot.state is EligibilityState.EXPIRED


def test_window_boundary_is_inclusive():
    at_boundary = evaluate(_record(purchase_offset_ms=48 * HOUR_MS), T0)
    past_boundary = evaluate(_record(purchase_offset_ms=48 * HOUR_MS + 1), T0)

    assert at_boundary.state is EligibilityState.ACTIVE
    assert at_boundary.remaining_time_ms == 0
    assert past_boundary.state is EligibilityState.EXPIRED


def test_missing_record_is_no_entitlement():
    snapshot = evaluate(None, T0)

    assert snapshot.state is EligibilityState.NO_ENTITLEMENT
    assert snapshot.remaining_downloads == 0
    assert snapshot.remaining_time_ms == 0
    assert snapshot.evaluated_at == T0


def test_evaluate_is_deterministic():
    record = _record(purchase_offset_ms=5 * HOUR_MS, count=1)
    assert evaluate(record, T0) == evaluate(record, T0)


def test_purchase_in_the_future_never_reports_more_than_window():
    # clock skew between processes
    record = EntitlementRecord(product_key="prod-1", purchase_timestamp=T0 + 5000)
    snapshot = evaluate(record, T0)

    assert snapshot.state is EligibilityState.ACTIVE
    assert snapshot.remaining_time_ms == 48 * HOUR_MS + 5000


def test_cooldown_ten_seconds_after_download_blocks_for_twenty():
    status = check_cooldown(T0 - 10_000, T0)

    assert status.allowed is False
    assert status.seconds_left == 20


def test_cooldown_allows_exactly_at_thirty_seconds():
    status = check_cooldown(T0 - 30_000, T0)

    assert status.allowed is True
    assert status.seconds_left == 0


def test_cooldown_blocks_one_ms_before_boundary():
    status = check_cooldown(T0 - 29_999, T0)

    assert status.allowed is False
    assert status.seconds_left == 1


def test_cooldown_without_previous_download_is_allowed():
    assert check_cooldown(None, T0).allowed is True


@pytest.mark.parametrize(
    "local_count,server_remaining,expected",
    [
        (0, 2, 1),
        (1, 2, 2),  # local ahead of server: monotonic
        (0, 0, 3),
        (2, 5, 3),  # server remaining clamped to max
        (3, 0, 3),
        (0, -4, 3),
    ],
)
def test_reconcile_download_count(local_count, server_remaining, expected):
    assert reconcile_download_count(local_count, server_remaining) == expected


def test_reconcile_never_exceeds_max():
    count = 0
    for _ in range(10):
        count = reconcile_download_count(count, 0)
    assert count == DEFAULT_POLICY.max_downloads


def test_policy_from_settings():
    policy = DownloadPolicy.from_settings(EngineSettings(window_hours=24, max_downloads=5, cooldown_seconds=10))

    assert policy.window_ms == 24 * HOUR_MS
    assert policy.max_downloads == 5
    assert policy.cooldown_ms == 10_000
    assert evaluate(_record(purchase_offset_ms=25 * HOUR_MS), T0, policy).state is EligibilityState.EXPIRED


def test_merge_alias_records_most_restrictive_wins():
    merged = merge_alias_records(
        [
            _record(purchase_offset_ms=HOUR_MS, count=1, last=T0 - 60_000, key="cat-1"),
            None,
            _record(purchase_offset_ms=2 * HOUR_MS, count=2, last=T0 - 5_000, key="price_abc"),
        ],
        "cat-1",
    )

    assert merged.product_key == "cat-1"
    assert merged.purchase_timestamp == T0 - 2 * HOUR_MS
    assert merged.download_count == 2
    assert merged.last_download_timestamp == T0 - 5_000


def test_merge_alias_records_rekeys_single_alias_record():
    merged = merge_alias_records([None, _record(count=1, key="prod_x")], "cat-1")
    assert merged.product_key == "cat-1"
    assert merged.download_count == 1


def test_merge_alias_records_empty():
    assert merge_alias_records([None, None], "cat-1") is None


def test_record_rejects_blank_key_and_negative_count():
    with pytest.raises(ValidationError, match="product_key is required"):
        EntitlementRecord(product_key="   ", purchase_timestamp=T0)

    with pytest.raises(ValidationError) as exc:
        EntitlementRecord(product_key="prod-1", purchase_timestamp=T0, download_count=-1)
    assert exc.value.field == "download_count"


def test_record_rejects_non_numeric_fields_as_validation_errors():
    with pytest.raises(ValidationError) as exc:
        EntitlementRecord(product_key="prod-1", purchase_timestamp="yesterday")
    assert exc.value.field == "purchase_timestamp"

    with pytest.raises(ValidationError) as exc:
        EntitlementRecord(product_key="prod-1", purchase_timestamp=T0, download_count=None)
    assert exc.value.field == "download_count"

    with pytest.raises(ValidationError) as exc:
        EntitlementRecord(product_key="prod-1", purchase_timestamp=T0, last_download_timestamp=float("nan"))
    assert exc.value.field == "last_download_timestamp"

    with pytest.raises(ValidationError):
        EntitlementRecord(product_key="prod-1", purchase_timestamp=True)
