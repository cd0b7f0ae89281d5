"""
Identity Resolver
=================

WHAT:
    Merges visitor ids that belong to the same person into one stitched
    identity, using deterministic strong keys only:
    - customer id
    - verified email hash
    - platform click id (same fbclid/gclid seen from two visitors)

WHY:
    Attribution must see the whole journey (mobile ad click, desktop purchase),
    not only the touchpoints of the browser that converted.

HOW:
    1. Walk outwards from the visitor through shared keys and existing
       memberships (bounded by MAX_CLUSTER_SIZE)
    2. Union-find over the collected visitors (root = smallest visitor id)
    3. Persist: the oldest existing identity absorbs the others; a brand new
       identity gets a UUIDv5 derived from (tenant, root visitor) so repeated
       runs produce the same id
    Identities only grow; nothing here ever splits one.

REFERENCES:
    - attribution_engine/store.py (key index, membership persistence)
    - attribution_engine/services/conversion_pipeline.py (consumer)
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy.exc import IntegrityError

from attribution_engine.models import IdentityKeyTypeEnum
from attribution_engine.store import TenantDataStore
from attribution_engine.utils.time import utcnow

logger = logging.getLogger(__name__)


# Namespace for deterministic identity ids
IDENTITY_NAMESPACE = uuid.UUID("6f1c2d2e-8d0b-5b8e-9a43-2f6c1e7d4a10")

# Safety valve against pathological key collisions (e.g. a shared test email)
MAX_CLUSTER_SIZE = 500


def cluster_visitors(visitor_ids: Iterable[str], links: Iterable[Tuple[str, str]]) -> Dict[str, str]:
    """Union-find over visitor ids.

    Returns:
        visitor_id -> root visitor id, where the root is the smallest id of its class
    """
    parent: Dict[str, str] = {}

    def find(x: str) -> str:
        # Path compression
        if parent[x] != x:
            parent[x] = find(parent[x])
        return parent[x]

    def union(x: str, y: str) -> None:
        root_x = find(x)
        root_y = find(y)
        if root_x == root_y:
            return
        # Smallest id wins so the root is independent of link order
        if root_y < root_x:
            root_x, root_y = root_y, root_x
        parent[root_y] = root_x

    for visitor_id in visitor_ids:
        parent.setdefault(visitor_id, visitor_id)
    for a, b in links:
        parent.setdefault(a, a)
        parent.setdefault(b, b)
        union(a, b)

    return {visitor_id: find(visitor_id) for visitor_id in parent}


def deterministic_identity_id(tenant_id: str, root_visitor_id: str) -> uuid.UUID:
    return uuid.uuid5(IDENTITY_NAMESPACE, f"{tenant_id}:{root_visitor_id}")


@dataclass
class ResolvedIdentity:
    """Result of resolving one visitor."""

    identity_id: uuid.UUID
    visitor_ids: List[str] = field(default_factory=list)
    merged: bool = False


class IdentityResolver:
    """
    Resolve visitors to stitched identities for one tenant.

    Usage:
        resolver = IdentityResolver(TenantDataStore(db, tenant_id))
        identity_id = resolver.resolve("visitor-abc")
    """

    def __init__(self, store: TenantDataStore, max_cluster_size: int = MAX_CLUSTER_SIZE):
        self.store = store
        self.max_cluster_size = max_cluster_size

    def resolve(self, visitor_id: str, now: Optional[datetime] = None) -> uuid.UUID:
        """Return the stitched identity id of `visitor_id` (creating/merging as needed)."""
        return self.resolve_identity(visitor_id, now=now).identity_id

    def resolve_identity(self, visitor_id: str, now: Optional[datetime] = None) -> ResolvedIdentity:
        now = now or utcnow()
        try:
            return self._resolve(visitor_id, now)
        except IntegrityError:
            # A concurrent resolver inserted the same membership; its result is
            # visible now, so one more pass converges.
            logger.info(
                "[IDENTITY] Membership race, retrying",
                extra={"tenant_id": self.store.tenant_id, "visitor_id": visitor_id},
            )
            return self._resolve(visitor_id, now)

    def resolve_for_conversion(
        self,
        visitor_id: Optional[str],
        customer_id: Optional[str] = None,
        email_hash: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[ResolvedIdentity]:
        """Resolve the buyer of a conversion.

        When the order carries no visitor id, a visitor seen with the same
        customer id (or email hash) stands in for it. Returns None when the
        buyer cannot be linked to any visitor.
        """
        if not visitor_id:
            candidates: List[str] = []
            if customer_id:
                candidates = self.store.visitors_for_key(IdentityKeyTypeEnum.customer_id.value, str(customer_id))
            if not candidates and email_hash:
                candidates = self.store.visitors_for_key(IdentityKeyTypeEnum.email_hash.value, email_hash.lower())
            if not candidates:
                return None
            visitor_id = candidates[0]

        return self.resolve_identity(visitor_id, now=now)

    # ------------------------------------------------------------------

    def _collect(self, visitor_id: str) -> Tuple[Set[str], List[Tuple[str, str]], Set[uuid.UUID]]:
        """Bounded walk over shared keys and existing memberships."""
        visitors: Set[str] = {visitor_id}
        links: List[Tuple[str, str]] = []
        identity_ids: Set[uuid.UUID] = set()
        frontier: Set[str] = {visitor_id}

        while frontier:
            discovered: Set[str] = set()

            by_key: Dict[Tuple[str, str], List[str]] = {}
            for key_type, key_value, other in self.store.key_rows_for_visitors(sorted(frontier)):
                by_key.setdefault((key_type, key_value), []).append(other)
            for members in by_key.values():
                members = sorted(set(members))
                for other in members[1:]:
                    links.append((members[0], other))
                discovered.update(members)

            memberships = self.store.memberships(sorted(frontier))
            new_identities = {m.identity_id for m in memberships} - identity_ids
            identity_ids.update(new_identities)
            by_identity: Dict[uuid.UUID, List[str]] = {}
            for member in self.store.members_of(sorted(new_identities, key=str)):
                by_identity.setdefault(member.identity_id, []).append(member.visitor_id)
            for members in by_identity.values():
                members = sorted(members)
                for other in members[1:]:
                    links.append((members[0], other))
                discovered.update(members)

            frontier = discovered - visitors
            visitors.update(frontier)

            if len(visitors) >= self.max_cluster_size:
                logger.warning(
                    "[IDENTITY] Cluster size limit reached, stopping expansion",
                    extra={"tenant_id": self.store.tenant_id, "visitor_id": visitor_id, "size": len(visitors)},
                )
                break

        return visitors, links, identity_ids

    def _resolve(self, visitor_id: str, now: datetime) -> ResolvedIdentity:
        visitors, links, identity_ids = self._collect(visitor_id)
        roots = cluster_visitors(visitors, links)
        root = roots[visitor_id]
        cluster = sorted(v for v, r in roots.items() if r == root)

        # Memberships of the actual class (the walk may have over-collected)
        existing_ids = {m.identity_id for m in self.store.memberships(cluster)}
        existing = self.store.get_identities(existing_ids)

        if existing:
            survivor = min(existing, key=lambda identity: (identity.created_at, str(identity.id)))
            survivor_id = survivor.id
        else:
            survivor_id = deterministic_identity_id(self.store.tenant_id, root)

        absorbed = sorted((i for i in existing_ids if i != survivor_id), key=str)
        identity, changed = self.store.save_identity(survivor_id, cluster, absorbed, now)

        if absorbed:
            logger.info(
                "[IDENTITY] Merged identities",
                extra={
                    "tenant_id": self.store.tenant_id,
                    "identity_id": str(identity.id),
                    "absorbed": [str(i) for i in absorbed],
                    "visitors": len(cluster),
                },
            )
        elif changed:
            logger.debug(
                "[IDENTITY] Identity updated",
                extra={"tenant_id": self.store.tenant_id, "identity_id": str(identity.id), "visitors": len(cluster)},
            )

        return ResolvedIdentity(identity_id=identity.id, visitor_ids=cluster, merged=bool(absorbed))
