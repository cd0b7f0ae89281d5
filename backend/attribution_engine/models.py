"""SQLAlchemy ORM models and enums.

This module defines the attribution schema using UUID primary keys and a
`tenant_id` column on every table. Tenant isolation is enforced by the
store (`attribution_engine.store.TenantDataStore`), which scopes every query.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import Column, String, DateTime, Integer, ForeignKey, Numeric, JSON, Text, Boolean, UniqueConstraint, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class ConversionStatusEnum(str, enum.Enum):
    """Conversion lifecycle.

    pending -> processing -> attributed | unattributed | forward_failed
    unattributed / forward_failed -> processing (sweeper re-drive)
    unattributed / forward_failed -> quarantined (attempts exhausted)
    """
    pending = "pending"
    processing = "processing"
    attributed = "attributed"
    unattributed = "unattributed"
    forward_failed = "forward_failed"
    quarantined = "quarantined"


class AttributionModelEnum(str, enum.Enum):
    """Attribution model types."""
    first_touch = "first_touch"
    last_touch = "last_touch"
    linear = "linear"
    time_decay = "time_decay"
    position_based = "position_based"
    last_non_direct = "last_non_direct"  # Last touchpoint that isn't direct traffic
    data_driven = "data_driven"  # Only when external weight overrides are supplied


class ForwardingStatusEnum(str, enum.Enum):
    pending = "pending"
    sent = "sent"
    failed = "failed"
    skipped_duplicate = "skipped_duplicate"


class PlatformEnum(str, enum.Enum):
    """Ad-measurement platforms that receive purchase events."""
    meta = "meta"
    ga4 = "ga4"


class TouchpointTypeEnum(str, enum.Enum):
    click = "click"
    view = "view"
    engagement = "engagement"


class IdentityKeyTypeEnum(str, enum.Enum):
    """Strong keys that may merge two visitors into one identity."""
    customer_id = "customer_id"
    email_hash = "email_hash"
    click_id = "click_id"


# Touchpoints & identity ------------------------------------------
# WHAT: Append-only record of marketing interactions, plus identity stitching
# WHY: Attribution models need every touchpoint of the real person, not
#      just the browser that converted


class Touchpoint(Base):
    """One marketing interaction (UTMs, click IDs).

    WHAT: Immutable record written by the ingestion collaborator (pixel/webhook)
    WHY: Attribution models need all touchpoints to determine credit
    NOTE: Only `stitched_identity_id` is written after insert (identity resolution)
    """
    __tablename__ = "attribution_touchpoints"
    __table_args__ = (
        Index("ix_touchpoint_tenant_visitor_time", "tenant_id", "visitor_id", "occurred_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String, nullable=False)
    visitor_id = Column(String, nullable=False)
    stitched_identity_id = Column(UUID(as_uuid=True), ForeignKey("stitched_identities.id"), nullable=True)
    session_id = Column(String, nullable=True)

    # Authoritative ordering key - never updated
    occurred_at = Column(DateTime, nullable=False)

    channel = Column(String, nullable=False, default="direct")
    platform = Column(String, nullable=True)
    touchpoint_type = Column(String, nullable=False, default=TouchpointTypeEnum.click.value)
    campaign = Column(String, nullable=True)
    adset_id = Column(String, nullable=True)
    ad_id = Column(String, nullable=True)

    # {"fbclid": "...", "gclid": "...", "ttclid": "..."}
    click_ids = Column(JSON, default=dict)

    source_url = Column(String, nullable=True)
    utm_source = Column(String, nullable=True)
    utm_medium = Column(String, nullable=True)
    utm_campaign = Column(String, nullable=True)
    utm_content = Column(String, nullable=True)
    utm_term = Column(String, nullable=True)

    # Strong identity keys (when the visitor was identified at touch time)
    customer_id = Column(String, nullable=True)
    email_hash = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    def __str__(self):
        return f"{self.channel} touch by {self.visitor_id} at {self.occurred_at}"


class StitchedIdentity(Base):
    """Equivalence class of visitor ids believed to be the same person.

    WHAT: Union-find root persisted per tenant
    WHY: Cross-device / cross-session journeys for attribution
    NOTE: Identities only ever grow (merge); they are never split
    """
    __tablename__ = "stitched_identities"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String, nullable=False)
    merged_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    members = relationship("IdentityMember", back_populates="identity")

    @property
    def visitor_ids(self):
        return sorted(m.visitor_id for m in self.members)

    def __str__(self):
        return f"Identity {self.id} ({len(self.members)} visitors)"


class IdentityMember(Base):
    """Visitor -> identity membership (one identity per visitor)."""
    __tablename__ = "identity_members"
    __table_args__ = (
        UniqueConstraint("tenant_id", "visitor_id", name="uq_identity_member_visitor"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String, nullable=False)
    visitor_id = Column(String, nullable=False)
    identity_id = Column(UUID(as_uuid=True), ForeignKey("stitched_identities.id"), nullable=False)

    identity = relationship("StitchedIdentity", back_populates="members")


class IdentityKey(Base):
    """Index of strong keys observed per visitor.

    WHAT: (key_type, key_value) -> visitor rows written alongside touchpoints
    WHY: Lets the resolver find colliding visitors without scanning JSON columns
    """
    __tablename__ = "identity_keys"
    __table_args__ = (
        UniqueConstraint("tenant_id", "key_type", "key_value", "visitor_id", name="uq_identity_key"),
        Index("ix_identity_key_lookup", "tenant_id", "key_type", "key_value"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String, nullable=False)
    key_type = Column(String, nullable=False)
    key_value = Column(String, nullable=False)
    visitor_id = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


# Conversions & results --------------------------------------------

class Conversion(Base):
    """A completed purchase eligible for attribution.

    WHAT: One row per (tenant, order); driven through the status machine
    WHY: Reprocessing must update the same row, never insert a duplicate
    """
    __tablename__ = "attribution_conversions"
    __table_args__ = (
        UniqueConstraint("tenant_id", "order_id", name="uq_conversion_tenant_order"),
        Index("ix_conversion_tenant_status", "tenant_id", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String, nullable=False)
    order_id = Column(String, nullable=False)

    visitor_id = Column(String, nullable=True)
    customer_id = Column(String, nullable=True)
    email_hash = Column(String, nullable=True)
    click_ids = Column(JSON, default=dict)

    revenue_cents = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="USD")
    occurred_at = Column(DateTime, nullable=False)

    status = Column(String, nullable=False, default=ConversionStatusEnum.pending.value)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    # Claim lease (status == processing until this time)
    lease_expires_at = Column(DateTime, nullable=True)
    # Set in the same transaction as the result upserts; results are valid from here on
    attributed_at = Column(DateTime, nullable=True)
    # Invariant violations and quarantine: excluded from automatic re-drive
    requires_review = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    results = relationship("AttributionResult", back_populates="conversion", cascade="all, delete-orphan")
    forwarding_records = relationship("ForwardingRecord", back_populates="conversion", cascade="all, delete-orphan")

    def __str__(self):
        return f"Order {self.order_id} ({self.status})"


class AttributionResult(Base):
    """One model's credit allocation for one conversion.

    WHAT: allocations = [{touchpoint_id, channel, credit_fraction, revenue_cents, position}]
    WHY: Reporting reads per-model splits; rows are overwritten wholesale on recompute
    """
    __tablename__ = "attribution_results"
    __table_args__ = (
        # One result per conversion per model
        UniqueConstraint("conversion_id", "model", name="uq_result_conversion_model"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String, nullable=False)
    conversion_id = Column(UUID(as_uuid=True), ForeignKey("attribution_conversions.id", ondelete="CASCADE"), nullable=False)
    model = Column(String, nullable=False)
    attribution_window = Column(String, nullable=False, default="30d")
    allocations = Column(JSON, nullable=False, default=list)
    total_touchpoints = Column(Integer, nullable=False, default=0)
    calculated_at = Column(DateTime, default=datetime.utcnow)

    conversion = relationship("Conversion", back_populates="results")

    def __str__(self):
        return f"{self.model} for {self.conversion_id} ({len(self.allocations or [])} touchpoints)"


class ForwardingRecord(Base):
    """Tracks whether a conversion's purchase event was sent to a platform.

    WHAT: Persisted retry state per (conversion, platform)
    WHY: Crashes must not lose forwarding state; at most one `sent` per pair
    """
    __tablename__ = "forwarding_records"
    __table_args__ = (
        UniqueConstraint("conversion_id", "platform", name="uq_forwarding_conversion_platform"),
        UniqueConstraint("tenant_id", "dedupe_key", name="uq_forwarding_tenant_dedupe_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String, nullable=False)
    conversion_id = Column(UUID(as_uuid=True), ForeignKey("attribution_conversions.id", ondelete="CASCADE"), nullable=False)
    platform = Column(String, nullable=False)
    dedupe_key = Column(String, nullable=False)

    status = Column(String, nullable=False, default=ForwardingStatusEnum.pending.value)
    # False for permanent failures (auth/validation): never retried automatically
    retryable = Column(Boolean, nullable=False, default=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    response_payload = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    conversion = relationship("Conversion", back_populates="forwarding_records")

    def __str__(self):
        return f"{self.platform} forward for {self.conversion_id} ({self.status})"


class AttributionSettings(Base):
    """Per-tenant attribution configuration.

    WHAT: Persisted knobs loaded into `AttributionConfig`
    WHY: Tenants override window, half-life and retry budget independently
    """
    __tablename__ = "attribution_settings"

    tenant_id = Column(String, primary_key=True)
    lookback_days = Column(Integer, nullable=False, default=30)
    half_life_days = Column(Numeric(6, 2), nullable=False, default=7)
    position_first = Column(Numeric(5, 4), nullable=False, default=0.4)
    position_middle = Column(Numeric(5, 4), nullable=False, default=0.2)
    position_last = Column(Numeric(5, 4), nullable=False, default=0.4)
    max_attempts = Column(Integer, nullable=False, default=5)
    freshness_threshold_minutes = Column(Integer, nullable=False, default=120)
    lease_timeout_seconds = Column(Integer, nullable=False, default=300)
    recalculation_days = Column(Integer, nullable=False, default=3)
    sweep_batch_size = Column(Integer, nullable=False, default=100)
    forward_max_retries = Column(Integer, nullable=False, default=3)
    # None = process-wide FORWARD_RATE_LIMIT_PER_SECOND / FORWARD_RATE_LIMIT_BURST
    rate_limit_per_second = Column(Numeric(8, 2), nullable=True)
    rate_limit_burst = Column(Integer, nullable=True)
    # None = use process-wide FORWARDING_PLATFORMS
    platforms = Column(JSON, nullable=True)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __str__(self):
        return f"Attribution settings for {self.tenant_id}"
