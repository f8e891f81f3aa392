"""Memory store: learned wholesale-name -> product bindings.

The store keeps exactly one ACTIVE binding per (normalized name, template).
The partial unique index on matching_memory is the only concurrency guard:
a learn that loses a race sees an IntegrityError, re-reads the winner and
resolves it by deprecation instead of locking.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID, uuid4

from sqlalchemy import and_, func, literal, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from matching.normalizer import normalize
from models.base import utcnow
from models.matching_memory import (
    MatchingMemory,
    MemoryStatus,
    LearnSource,
    MIN_WEIGHT,
    MAX_WEIGHT,
    REJECTIONS_BEFORE_CONFLICTED,
)
from observability.metrics import memory_operations_total

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
LOOSE_MIN_CONFIDENCE = 40
LOOSE_MIN_CONFIRMATIONS = 3

SORT_OPTIONS = (
    "trust_score_desc",
    "trust_score_asc",
    "confirm_count_desc",
    "last_used_desc",
    "created_desc",
)


class MemoryStoreError(Exception):
    """Exception raised for invalid memory store operations."""
    pass


class MemoryNotFoundError(MemoryStoreError):
    """Memory record does not exist."""
    pass


@dataclass
class LearnProvenance:
    """Where a learn event came from (audit only, no ownership)."""
    source: LearnSource = LearnSource.MANUAL
    task_id: Optional[UUID] = None
    record_id: Optional[UUID] = None


@dataclass
class CleanupResult:
    duplicate_groups: int = 0
    deprecated: int = 0
    kept_ids: List[str] = field(default_factory=list)


class MemoryStore:
    """Learned bindings for one database session.

    Every public mutation commits, mirroring the other services.

    Args:
        db: Database session
        clock: Returns the current UTC time (injectable for tests)
    """

    def __init__(self, db: Session, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def find_active(self, normalized_name: str, template_id: UUID) -> Optional[MatchingMemory]:
        return (
            self.db.query(MatchingMemory)
            .filter(
                MatchingMemory.normalized_name == normalized_name,
                MatchingMemory.template_id == template_id,
                MatchingMemory.status == MemoryStatus.ACTIVE.value,
            )
            .first()
        )

    def find_matching(
        self,
        normalized_name: str,
        template_id: UUID,
        min_confidence: float = 60,
        limit: int = 5,
        include_deprecated: bool = False,
    ) -> List[MatchingMemory]:
        """Tiered lookup of bindings for a normalized name.

        1. exact normalized name at or above min_confidence
        2. containment either way at the same confidence
        3. only when min_confidence > 40: containment with at least three
           confirmations at confidence >= 40

        Args:
            normalized_name: Output of normalize()
            template_id: Catalog template
            min_confidence: Minimum stored confidence (0-100)
            limit: Maximum records returned
            include_deprecated: Also consider deprecated and conflicted records

        Returns:
            Records ordered by confirm_count, weight, last_confirmed_at (desc)
        """
        if not normalized_name:
            return []

        base = self.db.query(MatchingMemory).filter(MatchingMemory.template_id == template_id)
        if not include_deprecated:
            base = base.filter(MatchingMemory.status == MemoryStatus.ACTIVE.value)
        ordering = (
            MatchingMemory.confirm_count.desc(),
            MatchingMemory.weight.desc(),
            MatchingMemory.last_confirmed_at.desc(),
        )

        exact = (
            base.filter(
                MatchingMemory.normalized_name == normalized_name,
                MatchingMemory.confidence >= min_confidence,
            )
            .order_by(*ordering)
            .limit(limit)
            .all()
        )
        if exact:
            return exact

        contains = or_(
            MatchingMemory.normalized_name.contains(normalized_name),
            and_(
                func.length(MatchingMemory.normalized_name) >= 2,
                literal(normalized_name).contains(MatchingMemory.normalized_name),
            ),
        )
        contained = (
            base.filter(contains, MatchingMemory.confidence >= min_confidence)
            .order_by(*ordering)
            .limit(limit)
            .all()
        )
        if contained or min_confidence <= LOOSE_MIN_CONFIDENCE:
            return contained

        return (
            base.filter(
                contains,
                MatchingMemory.confirm_count >= LOOSE_MIN_CONFIRMATIONS,
                MatchingMemory.confidence >= LOOSE_MIN_CONFIDENCE,
            )
            .order_by(*ordering)
            .limit(limit)
            .all()
        )

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def learn(
        self,
        original_name: str,
        product_id: UUID,
        template_id: UUID,
        actor_id: Optional[str],
        confidence: float = 100,
        provenance: Optional[LearnProvenance] = None,
    ) -> MatchingMemory:
        """Remember that original_name means product_id within template_id.

        Re-learning the active binding confirms it again (a repeat from the
        same task only counts as usage). Learning a different product
        deprecates the active binding and creates a new one. A learn that
        loses the race on the unique index twice returns the winning binding.

        Raises:
            MemoryStoreError: If the name normalizes to nothing, or if a
                concurrent writer keeps winning and leaves no active binding
        """
        normalized = normalize(original_name)
        if not normalized:
            raise MemoryStoreError(f"Cannot learn an empty name: {original_name!r}")
        if not 0 <= confidence <= 100:
            raise MemoryStoreError(f"Confidence must be within 0-100, got {confidence}")
        provenance = provenance or LearnProvenance()

        for attempt in range(2):
            try:
                with self.db.begin_nested():
                    memory, operation = self._learn_once(
                        normalized, original_name, product_id, template_id,
                        actor_id, float(confidence), provenance,
                    )
                    self.db.flush()
            except IntegrityError:
                # A concurrent learn created the active binding first
                logger.warning(
                    "Concurrent learn on the same name, resolving by deprecation",
                    extra={"template_id": template_id, "product_id": product_id},
                )
                if attempt:
                    return self._concurrent_winner(normalized, template_id, product_id)
                continue

            self.db.commit()
            self.db.refresh(memory)
            memory_operations_total.labels(operation=operation).inc()
            logger.info(
                f"Memory {operation}: {normalized}",
                extra={"memory_id": memory.id, "product_id": product_id, "actor_id": actor_id},
            )
            return memory

    def _concurrent_winner(self, normalized: str, template_id: UUID, product_id: UUID) -> MatchingMemory:
        """Active binding written by the concurrent learn that beat this one twice."""
        self.db.expire_all()
        winner = self.find_active(normalized, template_id)
        if winner is None:
            raise MemoryStoreError(
                f"Could not store binding for '{normalized}' after a concurrent write"
            )
        memory_operations_total.labels(operation="concurrent").inc()
        logger.warning(
            f"Concurrent learn lost twice, keeping the active binding: {normalized}",
            extra={"memory_id": winner.id, "product_id": product_id},
        )
        return winner

    def _learn_once(
        self,
        normalized: str,
        original_name: str,
        product_id: UUID,
        template_id: UUID,
        actor_id: Optional[str],
        confidence: float,
        provenance: LearnProvenance,
    ) -> Tuple[MatchingMemory, str]:
        now = self._now()
        task_key = str(provenance.task_id) if provenance.task_id else None
        record_key = str(provenance.record_id) if provenance.record_id else None

        active = self.find_active(normalized, template_id)
        if active is not None:
            if active.product_id == product_id:
                if task_key and task_key in active.related_task_ids:
                    active.record_usage(task_key, record_key, now)
                    return active, "usage"
                active.add_confirmation(actor_id, task_key, record_key, now)
                return active, "confirm"

            active.deprecate(
                actor_id,
                "reassigned",
                now,
                {"replaced_by_product_id": str(product_id)},
            )
            # The deprecation must reach the index before the new row does
            self.db.flush()
            memory_operations_total.labels(operation="reassign").inc()

        source = LearnSource(provenance.source)
        weight = (
            settings.MEMORY_MANUAL_WEIGHT if source == LearnSource.MANUAL
            else settings.MEMORY_DEFAULT_WEIGHT
        )
        memory = MatchingMemory(
            id=uuid4(),
            template_id=template_id,
            product_id=product_id,
            normalized_name=normalized,
            original_name=original_name,
            confidence=confidence,
            source=source.value,
            confirm_count=1,
            weight=min(MAX_WEIGHT, max(MIN_WEIGHT, weight)),
            is_user_preference=False,
            status=MemoryStatus.ACTIVE.value,
            last_confirmed_at=now,
            confirmed_by=actor_id,
            source_task_id=provenance.task_id,
            usage_count=0,
            conflicts=[],
            audit_trail=[],
            related_records=[],
            created_at=now,
            updated_at=now,
        )
        if task_key or record_key:
            memory.record_usage(task_key, record_key, now)
        memory.append_audit(
            "created",
            actor_id,
            now,
            {"source": source.value, "task_id": task_key, "record_id": record_key},
        )
        self.db.add(memory)
        return memory, "create"

    def reject(
        self,
        original_name: str,
        rejected_product_id: UUID,
        actor_id: Optional[str],
        template_id: Optional[UUID] = None,
        reason: Optional[str] = None,
        task_id: Optional[UUID] = None,
        record_id: Optional[UUID] = None,
    ) -> List[MatchingMemory]:
        """Weaken the active binding(s) of original_name to rejected_product_id.

        Each rejection scales weight by 0.7 and confidence by 0.8 and logs a
        conflict; the third rejection marks the binding conflicted.

        Returns:
            The weakened records (empty when nothing was bound)
        """
        normalized = normalize(original_name)
        query = self.db.query(MatchingMemory).filter(
            MatchingMemory.normalized_name == normalized,
            MatchingMemory.product_id == rejected_product_id,
            MatchingMemory.status == MemoryStatus.ACTIVE.value,
        )
        if template_id is not None:
            query = query.filter(MatchingMemory.template_id == template_id)
        memories = query.all()
        if not memories:
            logger.info(
                f"No active binding to reject for '{normalized}'",
                extra={"product_id": rejected_product_id, "actor_id": actor_id},
            )
            return []

        now = self._now()
        for memory in memories:
            memory.apply_rejection(
                actor_id,
                reason or "user rejected the suggested product",
                str(task_id) if task_id else None,
                str(record_id) if record_id else None,
                now,
            )
            operation = "conflicted" if memory.status == MemoryStatus.CONFLICTED.value else "reject"
            memory_operations_total.labels(operation=operation).inc()
        self.db.commit()

        for memory in memories:
            logger.info(
                f"Memory rejected: {normalized}",
                extra={"memory_id": memory.id, "product_id": rejected_product_id, "actor_id": actor_id},
            )
        return memories

    def handle_match_change(
        self,
        original_name: str,
        old_product_id: Optional[UUID],
        new_product_id: UUID,
        template_id: UUID,
        actor_id: Optional[str],
        task_id: Optional[UUID] = None,
        record_id: Optional[UUID] = None,
    ) -> MatchingMemory:
        """A reviewer replaced old_product_id with new_product_id."""
        if old_product_id is not None and old_product_id != new_product_id:
            self.reject(
                original_name,
                old_product_id,
                actor_id,
                template_id=template_id,
                reason="replaced by reviewer",
                task_id=task_id,
                record_id=record_id,
            )
        return self.learn(
            original_name,
            new_product_id,
            template_id,
            actor_id,
            confidence=100,
            provenance=LearnProvenance(LearnSource.MANUAL, task_id, record_id),
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup_duplicates(
        self,
        template_id: Optional[UUID] = None,
        actor_id: str = SYSTEM_ACTOR,
    ) -> CleanupResult:
        """Repair groups holding more than one ACTIVE binding.

        Keeps the most recently confirmed record (then confirm_count, then
        confidence) and deprecates the rest.
        """
        groups_query = (
            self.db.query(MatchingMemory.normalized_name, MatchingMemory.template_id)
            .filter(MatchingMemory.status == MemoryStatus.ACTIVE.value)
        )
        if template_id is not None:
            groups_query = groups_query.filter(MatchingMemory.template_id == template_id)
        groups = (
            groups_query
            .group_by(MatchingMemory.normalized_name, MatchingMemory.template_id)
            .having(func.count(MatchingMemory.id) > 1)
            .all()
        )

        result = CleanupResult(duplicate_groups=len(groups))
        now = self._now()
        for normalized_name, group_template_id in groups:
            records = (
                self.db.query(MatchingMemory)
                .filter(
                    MatchingMemory.normalized_name == normalized_name,
                    MatchingMemory.template_id == group_template_id,
                    MatchingMemory.status == MemoryStatus.ACTIVE.value,
                )
                .order_by(
                    MatchingMemory.last_confirmed_at.desc(),
                    MatchingMemory.confirm_count.desc(),
                    MatchingMemory.confidence.desc(),
                )
                .all()
            )
            keep, losers = records[0], records[1:]
            result.kept_ids.append(str(keep.id))
            for loser in losers:
                loser.deprecate(actor_id, "duplicate_cleanup", now, {"kept_memory_id": str(keep.id)})
                result.deprecated += 1
                memory_operations_total.labels(operation="deprecate").inc()

        self.db.commit()
        logger.info(
            f"Duplicate cleanup: {result.duplicate_groups} groups, {result.deprecated} deprecated",
            extra={"template_id": template_id},
        )
        return result

    def cleanup_stale(
        self,
        older_than_days: Optional[int] = None,
        template_id: Optional[UUID] = None,
        actor_id: str = SYSTEM_ACTOR,
    ) -> int:
        """Deprecate single-confirmation bindings nobody confirmed for a long time."""
        days = settings.MEMORY_STALE_DAYS if older_than_days is None else older_than_days
        now = self._now()
        cutoff = now - timedelta(days=days)
        query = self.db.query(MatchingMemory).filter(
            MatchingMemory.status == MemoryStatus.ACTIVE.value,
            MatchingMemory.confirm_count < 2,
            MatchingMemory.last_confirmed_at < cutoff,
        )
        if template_id is not None:
            query = query.filter(MatchingMemory.template_id == template_id)

        stale = query.all()
        for memory in stale:
            memory.deprecate(actor_id, "stale", now, {"older_than_days": days})
            memory_operations_total.labels(operation="deprecate").inc()
        self.db.commit()
        return len(stale)

    def purge(
        self,
        force: bool = False,
        template_id: Optional[UUID] = None,
        actor_id: str = SYSTEM_ACTOR,
    ) -> Dict[str, int]:
        """Delete deprecated bindings.

        With force, also deletes bindings conflicted by three or more
        rejections and weak single-confirmation bindings older than the
        stale window.
        """
        query = self.db.query(MatchingMemory)
        if template_id is not None:
            query = query.filter(MatchingMemory.template_id == template_id)

        removed = {"deprecated": 0, "conflicted": 0, "stale": 0}
        for memory in query.filter(MatchingMemory.status == MemoryStatus.DEPRECATED.value).all():
            self.db.delete(memory)
            removed["deprecated"] += 1

        if force:
            for memory in query.filter(MatchingMemory.status == MemoryStatus.CONFLICTED.value).all():
                if memory.rejection_count >= REJECTIONS_BEFORE_CONFLICTED:
                    self.db.delete(memory)
                    removed["conflicted"] += 1

            cutoff = self._now() - timedelta(days=settings.MEMORY_STALE_DAYS)
            weak = query.filter(
                MatchingMemory.status == MemoryStatus.ACTIVE.value,
                MatchingMemory.confirm_count == 1,
                MatchingMemory.weight < 1.0,
                MatchingMemory.last_confirmed_at < cutoff,
            ).all()
            for memory in weak:
                self.db.delete(memory)
                removed["stale"] += 1

        self.db.commit()
        total = sum(removed.values())
        memory_operations_total.labels(operation="delete").inc(total)
        logger.info(f"Purged {total} memory records", extra={"actor_id": actor_id})
        return removed

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def get(self, memory_id: UUID) -> MatchingMemory:
        memory = self.db.get(MatchingMemory, memory_id)
        if memory is None:
            raise MemoryNotFoundError(f"Memory {memory_id} not found")
        return memory

    def list_memories(
        self,
        template_id: Optional[UUID] = None,
        status: Optional[str] = None,
        source: Optional[str] = None,
        search: Optional[str] = None,
        sort: str = "trust_score_desc",
        page: int = 1,
        per_page: int = 50,
    ) -> Tuple[List[MatchingMemory], int]:
        """Filtered, sorted page of memory records and the total count."""
        if sort not in SORT_OPTIONS:
            raise MemoryStoreError(f"Unknown sort '{sort}'. Known: {list(SORT_OPTIONS)}")

        query = self.db.query(MatchingMemory)
        if template_id is not None:
            query = query.filter(MatchingMemory.template_id == template_id)
        if status:
            query = query.filter(MatchingMemory.status == status)
        if source:
            query = query.filter(MatchingMemory.source == source)
        if search:
            normalized = normalize(search)
            conditions = [MatchingMemory.original_name.contains(search)]
            if normalized:
                conditions.append(MatchingMemory.normalized_name.contains(normalized))
            query = query.filter(or_(*conditions))

        total = query.count()
        offset = (page - 1) * per_page

        if sort.startswith("trust_score"):
            now = self._now()
            records = sorted(
                query.all(),
                key=lambda m: m.trust_score_at(now),
                reverse=sort.endswith("desc"),
            )
            return records[offset: offset + per_page], total

        order = {
            "confirm_count_desc": MatchingMemory.confirm_count.desc(),
            "last_used_desc": MatchingMemory.last_used_at.desc(),
            "created_desc": MatchingMemory.created_at.desc(),
        }[sort]
        records = query.order_by(order, MatchingMemory.id).offset(offset).limit(per_page).all()
        return records, total

    def statistics(self, template_id: Optional[UUID] = None) -> Dict[str, Any]:
        query = self.db.query(MatchingMemory)
        if template_id is not None:
            query = query.filter(MatchingMemory.template_id == template_id)

        counts = dict(
            query.with_entities(MatchingMemory.status, func.count(MatchingMemory.id))
            .group_by(MatchingMemory.status)
            .all()
        )
        now = self._now()
        active = query.filter(MatchingMemory.status == MemoryStatus.ACTIVE.value).all()
        trust_scores = [m.trust_score_at(now) for m in active]
        total_usage = query.with_entities(func.coalesce(func.sum(MatchingMemory.usage_count), 0)).scalar()

        return {
            "total": sum(counts.values()),
            "active": counts.get(MemoryStatus.ACTIVE.value, 0),
            "deprecated": counts.get(MemoryStatus.DEPRECATED.value, 0),
            "conflicted": counts.get(MemoryStatus.CONFLICTED.value, 0),
            "high_trust": sum(1 for m in active if m.is_high_trust),
            "user_preferences": sum(1 for m in active if m.is_user_preference),
            "average_trust_score": (
                round(sum(trust_scores) / len(trust_scores), 2) if trust_scores else 0.0
            ),
            "total_usage": int(total_usage or 0),
        }

    def update(self, memory_id: UUID, actor_id: Optional[str], changes: Dict[str, Any]) -> MatchingMemory:
        """Manual edit of confidence, weight, status or preference flag.

        Reactivating a binding deprecates whichever binding is active for the
        same name, keeping a single active record.
        """
        memory = self.get(memory_id)
        now = self._now()
        applied: Dict[str, Any] = {}

        if changes.get("confidence") is not None:
            confidence = float(changes["confidence"])
            if not 0 <= confidence <= 100:
                raise MemoryStoreError("confidence must be within 0-100")
            memory.confidence = applied["confidence"] = confidence

        if changes.get("weight") is not None:
            weight = float(changes["weight"])
            if not MIN_WEIGHT <= weight <= MAX_WEIGHT:
                raise MemoryStoreError(f"weight must be within {MIN_WEIGHT}-{MAX_WEIGHT}")
            memory.weight = applied["weight"] = weight

        if changes.get("is_user_preference") is not None:
            memory.is_user_preference = applied["is_user_preference"] = bool(changes["is_user_preference"])

        new_status = changes.get("status")
        if new_status is not None and new_status != memory.status:
            try:
                status = MemoryStatus(new_status)
            except ValueError:
                raise MemoryStoreError(f"Unknown status '{new_status}'")
            if status == MemoryStatus.ACTIVE:
                current = self.find_active(memory.normalized_name, memory.template_id)
                if current is not None and current.id != memory.id:
                    current.deprecate(actor_id, "superseded_by_manual_reactivation", now,
                                      {"reactivated_memory_id": str(memory.id)})
                    self.db.flush()
            memory.status = applied["status"] = status.value

        memory.append_audit("updated", actor_id, now, applied)
        self.db.commit()
        self.db.refresh(memory)
        return memory

    def delete(self, memory_id: UUID, actor_id: Optional[str]) -> None:
        memory = self.get(memory_id)
        self.db.delete(memory)
        self.db.commit()
        memory_operations_total.labels(operation="delete").inc()
        logger.info(
            f"Memory deleted: {memory.normalized_name}",
            extra={"memory_id": memory_id, "actor_id": actor_id},
        )

    def touch(self, memory_id: UUID, task_id: Optional[UUID] = None, record_id: Optional[UUID] = None) -> None:
        """Count a use of a binding by an auto-confirmed record (no commit)."""
        memory = self.db.get(MatchingMemory, memory_id)
        if memory is not None:
            memory.record_usage(
                str(task_id) if task_id else None,
                str(record_id) if record_id else None,
                self._now(),
            )
            memory_operations_total.labels(operation="usage").inc()
