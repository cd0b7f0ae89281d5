"""TenantDataStore tests.

WHAT: Claims, transitions, forwarding records and tenant isolation
WHY: These queries are the only guard against double processing and
     cross-tenant reads
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from attribution_engine.config import Settings, load_tenant_config
from attribution_engine.exceptions import InvalidTransitionError
from attribution_engine.models import ConversionStatusEnum, ForwardingStatusEnum
from attribution_engine.store import TenantDataStore, identity_keys_for, list_active_tenants
from attribution_engine.tests.fakes import CONVERSION_AT, TENANT

LEASE = timedelta(minutes=5)
PENDING = [ConversionStatusEnum.pending]


def _conversion(store, order_id="1001", **fields):
    conversion, _ = store.upsert_conversion(
        order_id=order_id,
        revenue_cents=10000,
        occurred_at=CONVERSION_AT,
        **fields,
    )
    return conversion


class TestClaim:
    def test_only_one_session_wins(self, session_factory):
        first_db = session_factory()
        second_db = session_factory()
        try:
            first = TenantDataStore(first_db, TENANT)
            second = TenantDataStore(second_db, TENANT)
            conversion = _conversion(first)

            assert first.claim_conversion(conversion.id, CONVERSION_AT, LEASE, PENDING) is True
            assert second.claim_conversion(conversion.id, CONVERSION_AT, LEASE, PENDING) is False

            claimed = second.get_conversion(conversion.id)
            assert claimed.status == ConversionStatusEnum.processing.value
            assert claimed.lease_expires_at == CONVERSION_AT + LEASE
        finally:
            first_db.close()
            second_db.close()

    def test_attempts_counted_only_when_asked(self, store):
        conversion = _conversion(store)

        store.claim_conversion(conversion.id, CONVERSION_AT, LEASE, PENDING)
        store.release_conversion(conversion, ConversionStatusEnum.pending, CONVERSION_AT)
        store.claim_conversion(conversion.id, CONVERSION_AT, LEASE, PENDING, count_attempt=True)

        store.db.refresh(conversion)
        assert conversion.attempts == 1

    def test_review_flag_blocks_claim(self, store):
        conversion = _conversion(store)
        store.flag_for_review(conversion.id, "AllocationInvariantError: mismatch", CONVERSION_AT)

        assert store.claim_conversion(conversion.id, CONVERSION_AT, LEASE, PENDING) is False

    def test_illegal_source_status_rejected(self, store):
        conversion = _conversion(store)
        with pytest.raises(InvalidTransitionError):
            store.claim_conversion(conversion.id, CONVERSION_AT, LEASE, [ConversionStatusEnum.quarantined])


class TestTransitions:
    def test_release_checks_state_machine(self, store):
        conversion = _conversion(store)
        with pytest.raises(InvalidTransitionError):
            store.release_conversion(conversion, ConversionStatusEnum.attributed, CONVERSION_AT)

    def test_save_attribution_requires_claim(self, store):
        conversion = _conversion(store)
        with pytest.raises(InvalidTransitionError):
            store.save_attribution(conversion, [], CONVERSION_AT)

    def test_quarantine_happens_once(self, store):
        conversion = _conversion(store)

        assert store.quarantine(conversion.id, CONVERSION_AT, "gave up") is True
        assert store.quarantine(conversion.id, CONVERSION_AT, "gave up") is False

        store.db.refresh(conversion)
        assert conversion.status == ConversionStatusEnum.quarantined.value
        assert conversion.requires_review is True


class TestConversions:
    def test_duplicate_order_fills_missing_visitor(self, store):
        first = _conversion(store)
        second, created = store.upsert_conversion(
            order_id="1001", revenue_cents=1, occurred_at=CONVERSION_AT, visitor_id="v9",
        )

        assert created is False
        assert second.id == first.id
        assert second.visitor_id == "v9"
        assert second.revenue_cents == 10000

    def test_failed_fill_in_commit_is_rolled_back(self, store, db_session, monkeypatch):
        conversion = _conversion(store)

        def locked_commit():
            raise OperationalError("COMMIT", {}, Exception("database is locked"))

        monkeypatch.setattr(db_session, "commit", locked_commit)
        with pytest.raises(OperationalError):
            _conversion(store, visitor_id="v9")
        monkeypatch.undo()

        assert store.get_conversion(conversion.id).visitor_id is None
        assert _conversion(store, visitor_id="v9").visitor_id == "v9"

    def test_order_identity_keys_are_indexed_under_visitor(self, store):
        _conversion(store, visitor_id="v1", customer_id="cust-1", click_ids={"gclid": "g-7"})

        assert store.visitors_for_key("customer_id", "cust-1") == ["v1"]
        assert store.visitors_for_key("click_id", "gclid:g-7") == ["v1"]

    def test_tenants_are_isolated(self, db_session, store):
        conversion = _conversion(store)
        other = TenantDataStore(db_session, "shop-2")

        assert other.get_conversion(conversion.id) is None
        assert other.get_conversion_by_order("1001") is None
        _, created = other.upsert_conversion(order_id="1001", revenue_cents=500, occurred_at=CONVERSION_AT)
        assert created is True

    def test_tenant_id_required(self, db_session):
        with pytest.raises(ValueError):
            TenantDataStore(db_session, "")

    def test_active_tenants(self, db_session, store):
        _conversion(store)
        assert list_active_tenants(db_session, CONVERSION_AT + timedelta(days=1)) == [TENANT]


class TestTouchpoints:
    def test_window_is_half_open_and_ordered(self, store):
        store.add_touchpoint("v1", CONVERSION_AT - timedelta(days=2), channel="google")
        store.add_touchpoint("v1", CONVERSION_AT - timedelta(days=30), channel="meta")
        store.add_touchpoint("v1", CONVERSION_AT, channel="direct")

        touchpoints = store.touchpoints_for_visitors(["v1"], CONVERSION_AT - timedelta(days=30), CONVERSION_AT)

        assert [tp.channel for tp in touchpoints] == ["meta", "google"]

    def test_identity_keys_are_indexed(self, store):
        store.add_touchpoint("v1", CONVERSION_AT, email_hash="ABC", click_ids={"gclid": "g-1"})

        assert store.visitors_for_key("email_hash", "abc") == ["v1"]
        assert store.visitors_for_key("click_id", "gclid:g-1") == ["v1"]

    def test_click_ids_namespaced_by_platform(self):
        keys = identity_keys_for(None, None, {"gclid": "x", "fbclid": "x"})
        assert keys == [("click_id", "fbclid:x"), ("click_id", "gclid:x")]


class TestForwardingRecords:
    def test_sent_record_is_never_downgraded(self, store):
        conversion = _conversion(store)
        store.record_forward_attempt(conversion, "meta", "key-1", ForwardingStatusEnum.sent, CONVERSION_AT)

        record = store.record_forward_attempt(
            conversion, "meta", "key-1", ForwardingStatusEnum.failed, CONVERSION_AT, error="late failure",
        )

        assert record.status == ForwardingStatusEnum.sent.value
        assert record.last_error is None
        assert store.is_sent("key-1") is True

    def test_attempts_accumulate(self, store):
        conversion = _conversion(store)
        store.record_forward_attempt(conversion, "ga4", "key-2", ForwardingStatusEnum.failed, CONVERSION_AT, attempts=3)
        record = store.record_forward_attempt(conversion, "ga4", "key-2", ForwardingStatusEnum.sent, CONVERSION_AT)

        assert record.attempts == 4
        assert record.status == ForwardingStatusEnum.sent.value


class TestTenantConfig:
    def test_sweep_and_forwarding_knobs_persist(self, db_session, tenant_settings):
        tenant_settings(sweep_batch_size=10, forward_max_retries=5, rate_limit_per_second=2.5, rate_limit_burst=4)

        config = load_tenant_config(db_session, TENANT)

        assert (config.sweep_batch_size, config.forward_max_retries) == (10, 5)
        assert (config.rate_limit_per_second, config.rate_limit_burst) == (2.5, 4)

    def test_rate_limit_falls_back_to_process_settings(self, db_session, tenant_settings):
        tenant_settings(max_attempts=2)
        settings = Settings(FORWARD_RATE_LIMIT_PER_SECOND=1.5, FORWARD_RATE_LIMIT_BURST=3)

        config = load_tenant_config(db_session, TENANT, settings)

        assert (config.rate_limit_per_second, config.rate_limit_burst) == (1.5, 3)
        assert (config.sweep_batch_size, config.forward_max_retries) == (100, 3)
