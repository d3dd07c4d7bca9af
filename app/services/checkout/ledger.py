"""
Redemption Ledger: the only code that changes a discount rule's used_count.

Every redemption is a compare-and-increment ("used_count < usage_limit, then
+1") done as one indivisible step, all-or-nothing across the rules of one
order, and idempotent per checkout attempt id. Release is the compensating
operation and is idempotent too.
"""
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from threading import Lock
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.discount_rule import DiscountRule
from app.models.redemption import RuleRedemption
from app.services.checkout.types import DiscountRuleSnapshot, RedemptionResult

logger = logging.getLogger(__name__)


class RedemptionLedger(ABC):
    @abstractmethod
    def try_redeem(self, rule_ids: Iterable[int], attempt_id: str) -> RedemptionResult:
        """Consume one use of every rule, or none of them."""

    @abstractmethod
    def release(self, attempt_id: str) -> List[int]:
        """Give back the uses consumed by an attempt. Returns the released rule ids."""

    @abstractmethod
    def held_rule_ids(self, attempt_id: str) -> List[int]:
        """Rules the attempt currently holds a use of (redeemed and not released)."""


# ===================== IN-PROCESS LEDGER =====================

# attempt ids hash onto a fixed pool of locks
_ATTEMPT_LOCK_STRIPES = 64


class InMemoryRedemptionLedger(RedemptionLedger):
    """
    Ledger for usage that is not persisted externally: one lock per rule id,
    always acquired in ascending id order so multi-rule redemptions never
    deadlock. Only live redemptions are remembered; a release forgets the
    attempt.
    """

    def __init__(self, rules: Iterable[DiscountRuleSnapshot] = ()):
        self._registry_lock = Lock()
        self._rule_locks: Dict[int, Lock] = defaultdict(Lock)
        self._attempt_locks: List[Lock] = [Lock() for _ in range(_ATTEMPT_LOCK_STRIPES)]
        self._limits: Dict[int, Optional[int]] = {}
        self._used: Dict[int, int] = {}
        self._redeemed: Dict[str, Tuple[int, ...]] = {}
        for rule in rules:
            self.register(rule.id, rule.usage_limit, rule.used_count)

    def register(self, rule_id: int, usage_limit: Optional[int], used_count: int = 0) -> None:
        with self._registry_lock:
            self._limits[rule_id] = usage_limit
            self._used[rule_id] = used_count

    def used_count(self, rule_id: int) -> int:
        return self._used.get(rule_id, 0)

    def held_rule_ids(self, attempt_id: str) -> List[int]:
        with self._attempt_lock(attempt_id):
            return list(self._redeemed.get(attempt_id, ()))

    def _locks_for(self, rule_ids: Iterable[int]) -> List[Lock]:
        with self._registry_lock:
            return [self._rule_locks[rule_id] for rule_id in rule_ids]

    def _attempt_lock(self, attempt_id: str) -> Lock:
        return self._attempt_locks[hash(attempt_id) % _ATTEMPT_LOCK_STRIPES]

    def try_redeem(self, rule_ids: Iterable[int], attempt_id: str) -> RedemptionResult:
        ordered = sorted(set(rule_ids))
        with self._attempt_lock(attempt_id):
            if attempt_id in self._redeemed:
                return RedemptionResult(committed=True)

            locks = self._locks_for(ordered)
            for lock in locks:
                lock.acquire()
            try:
                for rule_id in ordered:
                    if rule_id not in self._limits:
                        return RedemptionResult(committed=False, failed_rule_id=rule_id)
                    limit = self._limits[rule_id]
                    if limit is not None and self._used[rule_id] >= limit:
                        logger.info(
                            "Redemption for attempt %s lost on rule %s (%s/%s used)",
                            attempt_id, rule_id, self._used[rule_id], limit,
                        )
                        return RedemptionResult(committed=False, failed_rule_id=rule_id)
                for rule_id in ordered:
                    self._used[rule_id] += 1
                self._redeemed[attempt_id] = tuple(ordered)
                return RedemptionResult(committed=True)
            finally:
                for lock in reversed(locks):
                    lock.release()

    def release(self, attempt_id: str) -> List[int]:
        with self._attempt_lock(attempt_id):
            rule_ids = self._redeemed.pop(attempt_id, ())
            locks = self._locks_for(rule_ids)
            for lock in locks:
                lock.acquire()
            try:
                for rule_id in rule_ids:
                    self._used[rule_id] = max(self._used[rule_id] - 1, 0)
            finally:
                for lock in reversed(locks):
                    lock.release()
        if rule_ids:
            logger.info("Released rules %s for attempt %s", list(rule_ids), attempt_id)
        return list(rule_ids)


# ===================== DATABASE LEDGER =====================


class SqlRedemptionLedger(RedemptionLedger):
    """
    Row-level atomic ledger:

        UPDATE discount_rules SET used_count = used_count + 1
        WHERE id = :id AND is_active AND (usage_limit IS NULL OR used_count < usage_limit)

    rowcount 1 means the use was won. The increments and the redemption rows of
    one attempt share a transaction, so a lost race on any rule rolls back the
    others.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def try_redeem(self, rule_ids: Iterable[int], attempt_id: str) -> RedemptionResult:
        ordered = sorted(set(rule_ids))
        db = self._session_factory()
        try:
            if self._already_redeemed(db, attempt_id):
                return RedemptionResult(committed=True)

            for rule_id in ordered:
                upd = (
                    update(DiscountRule)
                    .where(
                        and_(
                            DiscountRule.id == rule_id,
                            DiscountRule.is_active.is_(True),
                            or_(
                                DiscountRule.usage_limit.is_(None),
                                DiscountRule.used_count < DiscountRule.usage_limit,
                            ),
                        )
                    )
                    .values(used_count=DiscountRule.used_count + 1)
                    .execution_options(synchronize_session=False)
                )
                res = db.execute(upd)
                if res.rowcount != 1:
                    db.rollback()
                    logger.info(
                        "Redemption for attempt %s lost on rule %s; rolled back", attempt_id, rule_id
                    )
                    return RedemptionResult(committed=False, failed_rule_id=rule_id)
                # a released attempt (compensated failure) may be redeemed again
                reclaimed = db.execute(
                    update(RuleRedemption)
                    .where(
                        RuleRedemption.attempt_id == attempt_id,
                        RuleRedemption.rule_id == rule_id,
                        RuleRedemption.released_at.isnot(None),
                    )
                    .values(released_at=None, redeemed_at=datetime.utcnow())
                    .execution_options(synchronize_session=False)
                )
                if reclaimed.rowcount != 1:
                    db.add(RuleRedemption(attempt_id=attempt_id, rule_id=rule_id))

            try:
                db.commit()
            except IntegrityError:
                # a concurrent retry of the same attempt committed first
                db.rollback()
                logger.info("Attempt %s was redeemed concurrently; not consuming again", attempt_id)
            return RedemptionResult(committed=True)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def release(self, attempt_id: str) -> List[int]:
        db = self._session_factory()
        try:
            rule_ids = db.execute(
                select(RuleRedemption.rule_id).where(
                    RuleRedemption.attempt_id == attempt_id,
                    RuleRedemption.released_at.is_(None),
                )
            ).scalars().all()

            released: List[int] = []
            now = datetime.utcnow()
            for rule_id in sorted(rule_ids):
                # compare-and-set on the redemption row keeps release idempotent
                claim = db.execute(
                    update(RuleRedemption)
                    .where(
                        RuleRedemption.attempt_id == attempt_id,
                        RuleRedemption.rule_id == rule_id,
                        RuleRedemption.released_at.is_(None),
                    )
                    .values(released_at=now)
                    .execution_options(synchronize_session=False)
                )
                if claim.rowcount != 1:
                    continue
                db.execute(
                    update(DiscountRule)
                    .where(DiscountRule.id == rule_id, DiscountRule.used_count > 0)
                    .values(used_count=DiscountRule.used_count - 1)
                    .execution_options(synchronize_session=False)
                )
                released.append(rule_id)

            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if released:
            logger.info("Released rules %s for attempt %s", released, attempt_id)
        return released

    def held_rule_ids(self, attempt_id: str) -> List[int]:
        db = self._session_factory()
        try:
            rule_ids = db.execute(
                select(RuleRedemption.rule_id).where(
                    RuleRedemption.attempt_id == attempt_id,
                    RuleRedemption.released_at.is_(None),
                )
            ).scalars().all()
        finally:
            db.close()
        return sorted(rule_ids)

    def _already_redeemed(self, db: Session, attempt_id: str) -> bool:
        row = db.execute(
            select(RuleRedemption.id)
            .where(RuleRedemption.attempt_id == attempt_id, RuleRedemption.released_at.is_(None))
            .limit(1)
        ).first()
        # end the read so the first UPDATE opens the write transaction
        db.rollback()
        return row is not None
