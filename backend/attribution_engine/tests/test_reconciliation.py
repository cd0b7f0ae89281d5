"""Reconciliation sweeper tests.

WHAT: Stuck re-drives, quarantine after exhausted attempts, recalculation
WHY: Every conversion must end up attributed or quarantined, and a
     quarantine must page someone exactly once
"""

import asyncio
from datetime import timedelta

import pytest

from attribution_engine.config import AttributionConfig
from attribution_engine.exceptions import PermanentForwardingError
from attribution_engine.models import AttributionModelEnum, ConversionStatusEnum
from attribution_engine.services.conversion_pipeline import PipelineResult
from attribution_engine.services.reconciliation import ReconciliationSweeper, SweepMode
from attribution_engine.tests.fakes import CONVERSION_AT, TENANT


def _record(service, order_id="1001", visitor_id="v1", occurred_at=CONVERSION_AT):
    conversion, _ = service.record_conversion(
        TENANT, order_id=order_id, revenue_cents=10000, occurred_at=occurred_at, visitor_id=visitor_id,
    )
    return conversion


def _sweep(service, mode=SweepMode.stuck, date_range=None):
    return asyncio.run(service.run_reconciliation_sweep(TENANT, mode, date_range))


class TestStuckSweep:
    def test_permanent_failure_is_quarantined_with_one_alert(
        self, service, journey, store, tenant_settings, meta_client, alert_sink,
    ):
        tenant_settings(max_attempts=2)
        meta_client.outcomes = [PermanentForwardingError("meta rejected event (401)", platform="meta", status_code=401)]
        conversion = _record(service)

        assert asyncio.run(service.process_conversion(TENANT, conversion.id)) == ConversionStatusEnum.forward_failed

        first = _sweep(service)
        second = _sweep(service)
        assert (first.redriven, second.redriven) == (1, 1)
        assert store.get_conversion(conversion.id).attempts == 2

        third = _sweep(service)
        fourth = _sweep(service)

        assert third.quarantined == 1
        assert fourth.scanned == 0
        refreshed = store.get_conversion(conversion.id)
        assert refreshed.status == ConversionStatusEnum.quarantined.value
        assert refreshed.requires_review is True
        assert len(alert_sink.alerts) == 1
        alert = alert_sink.alerts[0]
        assert alert["severity"] == "critical"
        assert alert["order_id"] == "1001"
        assert alert["conversion_id"] == str(conversion.id)
        # Permanent failures are never re-sent by re-drives
        assert len(meta_client.calls) == 1

    def test_stale_pending_becomes_unattributed_then_attributed(self, service, store, clock):
        conversion = _record(service)
        assert asyncio.run(service.process_conversion(TENANT, conversion.id)) == ConversionStatusEnum.pending

        # Fresh pending conversions are left alone
        assert _sweep(service).scanned == 0

        clock.advance(hours=3)
        report = _sweep(service)
        assert report.redriven == 1
        assert report.statuses == {"unattributed": 1}

        # Late-arriving touchpoint from before the purchase
        service.record_touchpoint(TENANT, "v1", CONVERSION_AT - timedelta(hours=6), channel="google")
        report = _sweep(service)

        assert report.statuses == {"attributed": 1}
        refreshed = store.get_conversion(conversion.id)
        assert refreshed.status == ConversionStatusEnum.attributed.value
        assert refreshed.attempts == 2

    def test_abandoned_lease_is_redriven(self, service, journey, store, clock):
        conversion = _record(service)
        store.claim_conversion(conversion.id, clock(), timedelta(minutes=5), [ConversionStatusEnum.pending])
        clock.advance(minutes=10)

        report = _sweep(service)

        assert report.redriven == 1
        assert store.get_conversion(conversion.id).status == ConversionStatusEnum.attributed.value

    def test_one_failure_does_not_stop_the_batch(self, store, clock, alert_sink):
        stale = CONVERSION_AT - timedelta(days=1)
        broken, _ = store.upsert_conversion(order_id="1", revenue_cents=100, occurred_at=stale)
        healthy, _ = store.upsert_conversion(order_id="2", revenue_cents=100, occurred_at=stale + timedelta(minutes=1))

        class FlakyPipeline:
            def __init__(self):
                self.processed = []

            async def process(self, conversion_id, count_attempt=False):
                if conversion_id == broken.id:
                    raise RuntimeError("connection reset")
                self.processed.append(conversion_id)
                return PipelineResult(conversion_id=str(conversion_id), status=ConversionStatusEnum.unattributed)

        pipeline = FlakyPipeline()
        sweeper = ReconciliationSweeper(store, AttributionConfig(), pipeline, alert_sink, clock=clock)

        report = asyncio.run(sweeper.run(SweepMode.stuck))

        assert report.scanned == 2
        assert report.errors == 1
        assert report.redriven == 1
        assert report.error_details == [{"conversion_id": str(broken.id), "error": "connection reset"}]
        assert pipeline.processed == [healthy.id]


class TestRecalculateSweep:
    def test_picks_up_late_touchpoint_without_forwarding_again(self, service, journey, meta_client):
        conversion = _record(service)
        asyncio.run(service.process_conversion(TENANT, conversion.id))

        service.record_touchpoint(TENANT, "v1", CONVERSION_AT - timedelta(days=20), channel="email")
        report = _sweep(service, SweepMode.recalculate)

        assert report.recalculated == 1
        first = service.get_attribution(TENANT, conversion.id, AttributionModelEnum.first_touch)
        assert first.allocations[0]["channel"] == "email"
        assert first.total_touchpoints == 4
        assert len(meta_client.calls) == 1

    def test_narrowed_window_withdraws_stale_results(self, service, store, tenant_settings, meta_client):
        service.record_touchpoint(TENANT, "v1", CONVERSION_AT - timedelta(days=10), channel="meta")
        service.record_touchpoint(TENANT, "v1", CONVERSION_AT - timedelta(days=5), channel="google")
        conversion = _record(service)
        asyncio.run(service.process_conversion(TENANT, conversion.id))

        tenant_settings(lookback_days=7)
        report = _sweep(service, SweepMode.recalculate)

        assert report.statuses == {"attributed": 1}
        linear = service.get_attribution(TENANT, conversion.id, AttributionModelEnum.linear)
        assert [a["channel"] for a in linear.allocations] == ["google"]
        assert linear.attribution_window == "7d"

        tenant_settings(lookback_days=2)
        report = _sweep(service, SweepMode.recalculate)

        assert report.statuses == {"unattributed": 1}
        refreshed = store.get_conversion(conversion.id)
        assert refreshed.status == ConversionStatusEnum.unattributed.value
        assert refreshed.attributed_at is None
        assert store.list_results(conversion.id) == []
        assert len(meta_client.calls) == 1

    def test_withdrawn_conversion_is_not_forwarded_twice(self, service, store, tenant_settings, meta_client):
        service.record_touchpoint(TENANT, "v1", CONVERSION_AT - timedelta(days=5), channel="google")
        conversion = _record(service)
        asyncio.run(service.process_conversion(TENANT, conversion.id))
        tenant_settings(lookback_days=2)
        _sweep(service, SweepMode.recalculate)

        tenant_settings(lookback_days=30)
        report = _sweep(service)

        assert report.statuses == {"attributed": 1}
        assert store.get_conversion(conversion.id).attributed_at is not None
        assert len(meta_client.calls) == 1

    def test_explicit_range_excludes_older_conversions(self, service, journey):
        conversion = _record(service)
        asyncio.run(service.process_conversion(TENANT, conversion.id))

        report = _sweep(
            service,
            SweepMode.recalculate,
            (CONVERSION_AT + timedelta(minutes=1), CONVERSION_AT + timedelta(days=1)),
        )

        assert report.scanned == 0

    def test_inverted_range_rejected(self, service):
        with pytest.raises(ValueError):
            _sweep(service, SweepMode.recalculate, (CONVERSION_AT, CONVERSION_AT - timedelta(days=1)))
