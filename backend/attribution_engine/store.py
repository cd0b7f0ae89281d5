"""Tenant-scoped data access for the attribution engine.

WHAT:
    `TenantDataStore` is the only place that queries or writes attribution
    tables. Every query is filtered by the tenant it was built for.

WHY:
    - Tenant isolation lives in one class instead of every caller
    - Multi-row writes (result upserts + conversion stamp) need one explicit
      transaction boundary
    - The claim ("take the row unless someone else holds a live lease") is a
      single conditional UPDATE checked by rowcount, safe across processes

HOW:
    Sessions come from `attribution_engine.database`. Methods that change state
    commit before returning; on failure they roll back and re-raise.

REFERENCES:
    - attribution_engine/models.py
    - attribution_engine/services/conversion_state.py (transition table)
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from attribution_engine.exceptions import (
    ConversionNotFoundError,
    DuplicateConversionError,
    InvalidTransitionError,
)
from attribution_engine.models import (
    AttributionResult,
    Conversion,
    ConversionStatusEnum,
    ForwardingRecord,
    ForwardingStatusEnum,
    IdentityKey,
    IdentityKeyTypeEnum,
    IdentityMember,
    StitchedIdentity,
    Touchpoint,
)
from attribution_engine.services.conversion_state import can_transition, ensure_transition
from attribution_engine.utils.time import as_naive_utc, utcnow

logger = logging.getLogger(__name__)


def _as_uuid(value) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def identity_keys_for(customer_id: Optional[str], email_hash: Optional[str], click_ids: Optional[Dict[str, str]]) -> List[Tuple[str, str]]:
    """Strong identity keys carried by a touchpoint or conversion.

    Click ids are namespaced by platform so a gclid can never collide with an
    fbclid of the same value.
    """
    keys = []
    if customer_id:
        keys.append((IdentityKeyTypeEnum.customer_id.value, str(customer_id)))
    if email_hash:
        keys.append((IdentityKeyTypeEnum.email_hash.value, str(email_hash).lower()))
    for platform, click_id in sorted((click_ids or {}).items()):
        if click_id:
            keys.append((IdentityKeyTypeEnum.click_id.value, f"{platform}:{click_id}"))
    return keys


class TenantDataStore:
    """
    Per-tenant persistence for touchpoints, conversions, results and forwarding.

    Usage:
        store = TenantDataStore(db, tenant_id="shop-123")
        conversion, created = store.upsert_conversion(order_id="1001", ...)
        if store.claim_conversion(conversion.id, now, lease=timedelta(minutes=5)):
            ...
    """

    def __init__(self, db: Session, tenant_id: str):
        if not tenant_id:
            raise ValueError("tenant_id is required")
        self.db = db
        self.tenant_id = str(tenant_id)

    # ------------------------------------------------------------------
    # Touchpoints (append-only)
    # ------------------------------------------------------------------

    def add_touchpoint(
        self,
        visitor_id: str,
        occurred_at: datetime,
        channel: str = "direct",
        click_ids: Optional[Dict[str, str]] = None,
        customer_id: Optional[str] = None,
        email_hash: Optional[str] = None,
        touchpoint_id: Optional[uuid.UUID] = None,
        **fields: Any,
    ) -> Touchpoint:
        """Insert a touchpoint and index its strong identity keys.

        Touchpoints are never updated afterwards (except the identity stamp
        written by the resolver).
        """
        touchpoint = Touchpoint(
            id=_as_uuid(touchpoint_id) if touchpoint_id else uuid.uuid4(),
            tenant_id=self.tenant_id,
            visitor_id=str(visitor_id),
            occurred_at=as_naive_utc(occurred_at),
            channel=channel or "direct",
            click_ids=dict(click_ids or {}),
            customer_id=customer_id,
            email_hash=email_hash.lower() if email_hash else None,
            **fields,
        )
        try:
            self.db.add(touchpoint)
            self._index_identity_keys(
                touchpoint.visitor_id,
                identity_keys_for(customer_id, email_hash, click_ids),
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(touchpoint)
        return touchpoint

    def _index_identity_keys(self, visitor_id: str, keys: Iterable[Tuple[str, str]]) -> None:
        for key_type, key_value in keys:
            exists = self.db.query(IdentityKey.id).filter(
                IdentityKey.tenant_id == self.tenant_id,
                IdentityKey.key_type == key_type,
                IdentityKey.key_value == key_value,
                IdentityKey.visitor_id == visitor_id,
            ).first()
            if not exists:
                self.db.add(IdentityKey(
                    tenant_id=self.tenant_id,
                    key_type=key_type,
                    key_value=key_value,
                    visitor_id=visitor_id,
                ))

    def key_rows_for_visitors(self, visitor_ids: Iterable[str]) -> List[Tuple[str, str, str]]:
        """(key_type, key_value, visitor_id) for every visitor sharing a key with `visitor_ids`.

        Includes the rows of the given visitors themselves.
        """
        visitor_ids = list(visitor_ids)
        if not visitor_ids:
            return []
        keys = self.db.query(IdentityKey.key_type, IdentityKey.key_value).filter(
            IdentityKey.tenant_id == self.tenant_id,
            IdentityKey.visitor_id.in_(visitor_ids),
        ).distinct().all()
        if not keys:
            return []
        rows = self.db.query(IdentityKey.key_type, IdentityKey.key_value, IdentityKey.visitor_id).filter(
            IdentityKey.tenant_id == self.tenant_id,
            or_(*[
                and_(IdentityKey.key_type == key_type, IdentityKey.key_value == key_value)
                for key_type, key_value in keys
            ]),
        ).distinct().all()
        return sorted((row[0], row[1], row[2]) for row in rows)

    # ------------------------------------------------------------------
    # Stitched identities
    # ------------------------------------------------------------------

    def memberships(self, visitor_ids: Iterable[str]) -> List[IdentityMember]:
        visitor_ids = list(visitor_ids)
        if not visitor_ids:
            return []
        return self.db.query(IdentityMember).filter(
            IdentityMember.tenant_id == self.tenant_id,
            IdentityMember.visitor_id.in_(visitor_ids),
        ).all()

    def members_of(self, identity_ids: Iterable[uuid.UUID]) -> List[IdentityMember]:
        identity_ids = list(identity_ids)
        if not identity_ids:
            return []
        return self.db.query(IdentityMember).filter(
            IdentityMember.tenant_id == self.tenant_id,
            IdentityMember.identity_id.in_(identity_ids),
        ).all()

    def get_identities(self, identity_ids: Iterable[uuid.UUID]) -> List[StitchedIdentity]:
        identity_ids = list(identity_ids)
        if not identity_ids:
            return []
        return self.db.query(StitchedIdentity).filter(
            StitchedIdentity.tenant_id == self.tenant_id,
            StitchedIdentity.id.in_(identity_ids),
        ).all()

    def get_identity(self, identity_id) -> Optional[StitchedIdentity]:
        return self.db.query(StitchedIdentity).filter(
            StitchedIdentity.tenant_id == self.tenant_id,
            StitchedIdentity.id == _as_uuid(identity_id),
        ).first()

    def save_identity(
        self,
        identity_id: uuid.UUID,
        visitor_ids: Sequence[str],
        absorbed_ids: Sequence[uuid.UUID],
        now: datetime,
    ) -> Tuple[StitchedIdentity, bool]:
        """Make `identity_id` the identity of every visitor in `visitor_ids`.

        Absorbed identities are emptied and deleted; touchpoints of the
        visitors are stamped with the surviving id. One transaction.

        Returns:
            (identity, changed)
        """
        changed = False
        try:
            identity = self.get_identity(identity_id)
            if identity is None:
                identity = StitchedIdentity(id=identity_id, tenant_id=self.tenant_id, merged_at=now, created_at=now)
                self.db.add(identity)
                self.db.flush()
                changed = True

            current = {member.visitor_id: member for member in self.memberships(visitor_ids)}
            for visitor_id in visitor_ids:
                member = current.get(visitor_id)
                if member is None:
                    self.db.add(IdentityMember(
                        tenant_id=self.tenant_id,
                        visitor_id=visitor_id,
                        identity_id=identity.id,
                    ))
                    changed = True
                elif member.identity_id != identity.id:
                    member.identity_id = identity.id
                    changed = True
            self.db.flush()

            stamped = self.db.query(Touchpoint).filter(
                Touchpoint.tenant_id == self.tenant_id,
                Touchpoint.visitor_id.in_(list(visitor_ids)),
                or_(
                    Touchpoint.stitched_identity_id.is_(None),
                    Touchpoint.stitched_identity_id != identity.id,
                ),
            ).update({Touchpoint.stitched_identity_id: identity.id}, synchronize_session=False)

            absorbed_ids = [i for i in absorbed_ids if i != identity.id]
            if absorbed_ids:
                deleted = self.db.query(StitchedIdentity).filter(
                    StitchedIdentity.tenant_id == self.tenant_id,
                    StitchedIdentity.id.in_(absorbed_ids),
                ).delete(synchronize_session=False)
                changed = changed or deleted > 0

            if changed:
                identity.merged_at = now
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(identity)
        return identity, changed or bool(stamped)

    def visitors_for_key(self, key_type: str, key_value: str) -> List[str]:
        rows = self.db.query(IdentityKey.visitor_id).filter(
            IdentityKey.tenant_id == self.tenant_id,
            IdentityKey.key_type == key_type,
            IdentityKey.key_value == key_value,
        ).distinct().all()
        return sorted(row[0] for row in rows)

    def touchpoints_for_visitors(
        self,
        visitor_ids: Sequence[str],
        start: datetime,
        end: datetime,
    ) -> List[Touchpoint]:
        """Touchpoints of the given visitors with start <= occurred_at < end, ordered."""
        if not visitor_ids:
            return []
        return self.db.query(Touchpoint).filter(
            Touchpoint.tenant_id == self.tenant_id,
            Touchpoint.visitor_id.in_(list(visitor_ids)),
            Touchpoint.occurred_at >= start,
            Touchpoint.occurred_at < end,
        ).order_by(Touchpoint.occurred_at.asc(), Touchpoint.id.asc()).all()

    def get_touchpoint(self, touchpoint_id) -> Optional[Touchpoint]:
        return self.db.query(Touchpoint).filter(
            Touchpoint.tenant_id == self.tenant_id,
            Touchpoint.id == _as_uuid(touchpoint_id),
        ).first()

    # ------------------------------------------------------------------
    # Conversions
    # ------------------------------------------------------------------

    def upsert_conversion(
        self,
        order_id: str,
        revenue_cents: int,
        occurred_at: datetime,
        currency: str = "USD",
        visitor_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        email_hash: Optional[str] = None,
        click_ids: Optional[Dict[str, str]] = None,
    ) -> Tuple[Conversion, bool]:
        """Create the conversion for an order, or return the existing one.

        A second report of the same order never inserts a row. Identity fields
        missing on the existing row are filled in; everything else is left as is.
        When the order names a visitor, its strong keys are indexed under that
        visitor so the buyer links to devices seen with the same customer.

        Returns:
            (conversion, created)
        """
        order_id = str(order_id)
        existing = self.get_conversion_by_order(order_id)
        if existing:
            changed = False
            for field_name, value in (
                ("visitor_id", visitor_id),
                ("customer_id", customer_id),
                ("email_hash", email_hash.lower() if email_hash else None),
            ):
                if value and not getattr(existing, field_name):
                    setattr(existing, field_name, value)
                    changed = True
            try:
                if existing.visitor_id:
                    self._index_identity_keys(
                        existing.visitor_id,
                        identity_keys_for(
                            existing.customer_id,
                            existing.email_hash,
                            {**(click_ids or {}), **(existing.click_ids or {})},
                        ),
                    )
                    changed = changed or bool(self.db.new)
                if changed:
                    self.db.commit()
            except Exception:
                self.db.rollback()
                raise
            logger.info(
                "[STORE] Conversion already exists for order",
                extra={"tenant_id": self.tenant_id, "order_id": order_id, "conversion_id": str(existing.id)},
            )
            return existing, False

        conversion = Conversion(
            tenant_id=self.tenant_id,
            order_id=order_id,
            revenue_cents=int(revenue_cents),
            currency=(currency or "USD").upper(),
            occurred_at=as_naive_utc(occurred_at),
            visitor_id=visitor_id,
            customer_id=customer_id,
            email_hash=email_hash.lower() if email_hash else None,
            click_ids=dict(click_ids or {}),
            status=ConversionStatusEnum.pending.value,
            attempts=0,
        )
        try:
            self.db.add(conversion)
            if visitor_id:
                self._index_identity_keys(str(visitor_id), identity_keys_for(customer_id, email_hash, click_ids))
            self.db.commit()
        except IntegrityError:
            # Lost an insert race with another writer for the same order
            self.db.rollback()
            existing = self.get_conversion_by_order(order_id)
            if existing is None:
                raise DuplicateConversionError(self.tenant_id, order_id)
            return existing, False
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(conversion)
        logger.info(
            "[STORE] Created conversion",
            extra={"tenant_id": self.tenant_id, "order_id": order_id, "conversion_id": str(conversion.id)},
        )
        return conversion, True

    def get_conversion(self, conversion_id) -> Optional[Conversion]:
        return self.db.query(Conversion).filter(
            Conversion.tenant_id == self.tenant_id,
            Conversion.id == _as_uuid(conversion_id),
        ).first()

    def require_conversion(self, conversion_id) -> Conversion:
        conversion = self.get_conversion(conversion_id)
        if conversion is None:
            raise ConversionNotFoundError(self.tenant_id, str(conversion_id))
        return conversion

    def get_conversion_by_order(self, order_id: str) -> Optional[Conversion]:
        return self.db.query(Conversion).filter(
            Conversion.tenant_id == self.tenant_id,
            Conversion.order_id == str(order_id),
        ).first()

    def claim_conversion(
        self,
        conversion_id,
        now: datetime,
        lease: timedelta,
        from_statuses: Sequence[ConversionStatusEnum],
        count_attempt: bool = False,
        reclaim_abandoned: bool = True,
    ) -> bool:
        """Atomically move a conversion to `processing` with a lease.

        The row is taken only if its status is one of `from_statuses`, or (when
        `reclaim_abandoned`) it is `processing` with an expired lease. Rows
        flagged for review are never claimed.

        Returns:
            True if this caller now owns the conversion.
        """
        for status in from_statuses:
            ensure_transition(status, ConversionStatusEnum.processing)

        claimable = Conversion.status.in_([s.value for s in from_statuses])
        if reclaim_abandoned:
            claimable = or_(
                claimable,
                and_(
                    Conversion.status == ConversionStatusEnum.processing.value,
                    Conversion.lease_expires_at.isnot(None),
                    Conversion.lease_expires_at < now,
                ),
            )

        values: Dict[Any, Any] = {
            Conversion.status: ConversionStatusEnum.processing.value,
            Conversion.lease_expires_at: now + lease,
            Conversion.updated_at: now,
        }
        if count_attempt:
            values[Conversion.attempts] = Conversion.attempts + 1

        try:
            claimed = self.db.query(Conversion).filter(
                Conversion.tenant_id == self.tenant_id,
                Conversion.id == _as_uuid(conversion_id),
                Conversion.requires_review == False,  # noqa: E712
                claimable,
            ).update(values, synchronize_session=False)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        return claimed == 1

    def release_conversion(
        self,
        conversion: Conversion,
        status: ConversionStatusEnum,
        now: datetime,
        error: Optional[str] = None,
    ) -> Conversion:
        """Move a claimed conversion out of `processing` and drop the lease."""
        self.db.refresh(conversion)
        ensure_transition(conversion.status, status)
        conversion.status = ConversionStatusEnum(status).value
        conversion.lease_expires_at = None
        conversion.last_error = error
        conversion.updated_at = now
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(conversion)
        return conversion

    def save_attribution(self, conversion: Conversion, results: Sequence[Any], now: datetime) -> None:
        """Overwrite all model results and stamp `attributed_at` in one transaction.

        Models not present in `results` are deleted so the stored set always
        matches the latest computation.
        """
        if conversion.status != ConversionStatusEnum.processing.value:
            raise InvalidTransitionError(conversion.status, "attributed")

        try:
            existing = {
                row.model: row
                for row in self.db.query(AttributionResult).filter(
                    AttributionResult.tenant_id == self.tenant_id,
                    AttributionResult.conversion_id == conversion.id,
                ).all()
            }

            kept = set()
            for result in results:
                model = getattr(result.model, "value", result.model)
                row = existing.get(model)
                if row is None:
                    row = AttributionResult(
                        tenant_id=self.tenant_id,
                        conversion_id=conversion.id,
                        model=model,
                    )
                    self.db.add(row)
                row.attribution_window = result.attribution_window
                row.allocations = [allocation.to_dict() for allocation in result.allocations]
                row.total_touchpoints = result.total_touchpoints
                row.calculated_at = now
                kept.add(model)

            for model, row in existing.items():
                if model not in kept:
                    self.db.delete(row)

            conversion.attributed_at = now
            conversion.last_error = None
            conversion.updated_at = now
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def withdraw_attribution(self, conversion: Conversion, now: datetime, reason: str) -> Conversion:
        """Delete every model result and release the claimed conversion as `unattributed`.

        Used when a recomputation finds no eligible touchpoint: results from an
        older configuration must not outlive it. Forwarding records are kept,
        so a later attribution never sends the purchase twice.
        """
        self.db.refresh(conversion)
        ensure_transition(conversion.status, ConversionStatusEnum.unattributed)
        try:
            self.db.query(AttributionResult).filter(
                AttributionResult.tenant_id == self.tenant_id,
                AttributionResult.conversion_id == conversion.id,
            ).delete(synchronize_session=False)
            conversion.status = ConversionStatusEnum.unattributed.value
            conversion.attributed_at = None
            conversion.lease_expires_at = None
            conversion.last_error = reason
            conversion.updated_at = now
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(conversion)
        return conversion

    def flag_for_review(self, conversion_id, error: str, now: Optional[datetime] = None) -> None:
        """Leave the conversion in `processing` and exclude it from automatic re-drive."""
        self.db.rollback()
        try:
            self.db.query(Conversion).filter(
                Conversion.tenant_id == self.tenant_id,
                Conversion.id == _as_uuid(conversion_id),
            ).update(
                {
                    Conversion.requires_review: True,
                    Conversion.last_error: error,
                    Conversion.lease_expires_at: None,
                    Conversion.updated_at: now or utcnow(),
                },
                synchronize_session=False,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def quarantine(self, conversion_id, now: datetime, reason: str) -> bool:
        """Park a conversion permanently.

        Conditional on the current status, so concurrent sweeps quarantine
        (and alert for) a conversion exactly once.
        """
        sources = [
            status.value for status in ConversionStatusEnum
            if can_transition(status, ConversionStatusEnum.quarantined)
        ]
        try:
            updated = self.db.query(Conversion).filter(
                Conversion.tenant_id == self.tenant_id,
                Conversion.id == _as_uuid(conversion_id),
                Conversion.status.in_(sources),
                Conversion.requires_review == False,  # noqa: E712
            ).update(
                {
                    Conversion.status: ConversionStatusEnum.quarantined.value,
                    Conversion.requires_review: True,
                    Conversion.lease_expires_at: None,
                    Conversion.last_error: reason,
                    Conversion.updated_at: now,
                },
                synchronize_session=False,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return updated == 1

    def stuck_candidates(self, now: datetime, freshness: timedelta, limit: int) -> List[Conversion]:
        """Conversions the stuck sweep should look at, oldest first."""
        cutoff = now - freshness
        return self.db.query(Conversion).filter(
            Conversion.tenant_id == self.tenant_id,
            Conversion.requires_review == False,  # noqa: E712
            or_(
                and_(
                    Conversion.status == ConversionStatusEnum.pending.value,
                    Conversion.occurred_at <= cutoff,
                ),
                Conversion.status.in_([
                    ConversionStatusEnum.unattributed.value,
                    ConversionStatusEnum.forward_failed.value,
                ]),
                and_(
                    Conversion.status == ConversionStatusEnum.processing.value,
                    Conversion.lease_expires_at.isnot(None),
                    Conversion.lease_expires_at < now,
                ),
            ),
        ).order_by(Conversion.occurred_at.asc(), Conversion.id.asc()).limit(limit).all()

    def attributed_between(self, start: datetime, end: datetime, limit: int) -> List[Conversion]:
        """Attributed conversions with start <= occurred_at < end, oldest first."""
        return self.db.query(Conversion).filter(
            Conversion.tenant_id == self.tenant_id,
            Conversion.status == ConversionStatusEnum.attributed.value,
            Conversion.requires_review == False,  # noqa: E712
            Conversion.occurred_at >= start,
            Conversion.occurred_at < end,
        ).order_by(Conversion.occurred_at.asc(), Conversion.id.asc()).limit(limit).all()

    # ------------------------------------------------------------------
    # Attribution results
    # ------------------------------------------------------------------

    def get_result(self, conversion_id, model: str) -> Optional[AttributionResult]:
        return self.db.query(AttributionResult).filter(
            AttributionResult.tenant_id == self.tenant_id,
            AttributionResult.conversion_id == _as_uuid(conversion_id),
            AttributionResult.model == getattr(model, "value", model),
        ).first()

    def list_results(self, conversion_id) -> List[AttributionResult]:
        return self.db.query(AttributionResult).filter(
            AttributionResult.tenant_id == self.tenant_id,
            AttributionResult.conversion_id == _as_uuid(conversion_id),
        ).order_by(AttributionResult.model.asc()).all()

    # ------------------------------------------------------------------
    # Forwarding records
    # ------------------------------------------------------------------

    def get_forwarding_record(self, conversion_id, platform: str) -> Optional[ForwardingRecord]:
        return self.db.query(ForwardingRecord).filter(
            ForwardingRecord.tenant_id == self.tenant_id,
            ForwardingRecord.conversion_id == _as_uuid(conversion_id),
            ForwardingRecord.platform == platform,
        ).first()

    def list_forwarding_records(self, conversion_id) -> List[ForwardingRecord]:
        return self.db.query(ForwardingRecord).filter(
            ForwardingRecord.tenant_id == self.tenant_id,
            ForwardingRecord.conversion_id == _as_uuid(conversion_id),
        ).order_by(ForwardingRecord.platform.asc()).all()

    def is_sent(self, dedupe_key: str) -> bool:
        return self.db.query(ForwardingRecord.id).filter(
            ForwardingRecord.tenant_id == self.tenant_id,
            ForwardingRecord.dedupe_key == dedupe_key,
            ForwardingRecord.status == ForwardingStatusEnum.sent.value,
        ).first() is not None

    def record_forward_attempt(
        self,
        conversion: Conversion,
        platform: str,
        dedupe_key: str,
        status: ForwardingStatusEnum,
        now: datetime,
        attempts: int = 1,
        error: Optional[str] = None,
        retryable: bool = True,
        response: Optional[dict] = None,
    ) -> ForwardingRecord:
        """Persist the outcome of one forward() call for (conversion, platform).

        A record that is already `sent` is never downgraded.
        """
        try:
            record = self.get_forwarding_record(conversion.id, platform)
            if record is None:
                record = ForwardingRecord(
                    tenant_id=self.tenant_id,
                    conversion_id=conversion.id,
                    platform=platform,
                    dedupe_key=dedupe_key,
                    attempts=0,
                )
                self.db.add(record)
            elif record.status == ForwardingStatusEnum.sent.value:
                return record

            record.status = ForwardingStatusEnum(status).value
            record.attempts = (record.attempts or 0) + attempts
            record.last_attempt_at = now
            record.last_error = error
            record.retryable = retryable
            if response is not None:
                record.response_payload = response
            self.db.commit()
        except IntegrityError:
            # Concurrent writer created the record first
            self.db.rollback()
            record = self.get_forwarding_record(conversion.id, platform)
            if record is None:
                raise
            return record
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(record)
        return record


def list_active_tenants(db: Session, since: datetime) -> List[str]:
    """Tenants with unfinished conversions or conversions since `since`."""
    rows = db.query(Conversion.tenant_id).filter(
        or_(
            Conversion.status.in_([
                ConversionStatusEnum.pending.value,
                ConversionStatusEnum.processing.value,
                ConversionStatusEnum.unattributed.value,
                ConversionStatusEnum.forward_failed.value,
            ]),
            Conversion.occurred_at >= since,
        ),
    ).distinct().all()
    return sorted(row[0] for row in rows)
