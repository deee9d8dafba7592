"""
dgtledger.services.rate_guard — Cooldown & Rolling-Cap Guard
=============================================================

Per ``(user, action)`` usage counters stored in ``rate_usage`` so that they
survive restarts and are shared by every worker.

``check_and_reserve`` is one atomic read-modify-write: the row is locked,
the window reset if it expired, the cooldown then the cap checked, and the
counters incremented — all in a single database transaction guarded by the
optimistic ``version`` column.  Two concurrent reservations for the same
user can therefore never both pass a cap that only one of them fits under.

A reservation is handed back on failure with :meth:`RateGuard.release`.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from dgtledger.config import ActionLimit
from dgtledger.constants import as_utc, utcnow
from dgtledger.database.models import RateUsageRecord
from dgtledger.engine.errors import CooldownActive, DailyCapExceeded, TransactionFailed

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Reservation:
    """Proof of a successful reservation, needed for an exact release."""

    user_id: int
    action: str
    amount: int
    reserved_at: datetime
    previous_action_at: datetime | None
    window_start: datetime


class RateGuard:
    """Enforces cooldowns and rolling caps per ``(user, action)``."""

    def __init__(
        self,
        engine: Engine,
        limits: Mapping[str, ActionLimit],
        *,
        clock: Callable[[], datetime] = utcnow,
        max_retries: int = 3,
    ) -> None:
        self.engine = engine
        self.limits = limits
        self.clock = clock
        self.max_retries = max_retries

    def _limit(self, action: str) -> ActionLimit:
        try:
            return self.limits[action]
        except KeyError:
            raise KeyError(f"No rate limit configured for action {action!r}") from None

    # ------------------------------------------------------------------
    # Reserve
    # ------------------------------------------------------------------
    def check_and_reserve(self, user_id: int, action: str, amount: int) -> Reservation:
        """Check cooldown and cap, then count *amount* against the window.

        Raises
        ------
        CooldownActive
            The previous action was less than ``cooldown_seconds`` ago.
        DailyCapExceeded
            ``window_sum + amount`` would exceed ``daily_cap``.
        TransactionFailed
            Concurrent updates kept conflicting past the retry budget.
        """
        limit = self._limit(action)
        self._ensure_record(user_id, action)

        for attempt in range(1, self.max_retries + 2):
            try:
                return self._reserve_once(user_id, action, amount, limit)
            except (StaleDataError, OperationalError) as exc:
                logger.warning(
                    "Rate reserve conflict for user %s/%s (attempt %d): %s",
                    user_id, action, attempt, exc,
                )
        raise TransactionFailed(
            f"Could not reserve {action} allowance for user {user_id}",
            action=action,
        )

    def _reserve_once(
        self, user_id: int, action: str, amount: int, limit: ActionLimit
    ) -> Reservation:
        with Session(self.engine) as session:
            record = self._lock_record(session, user_id, action)
            now = self.clock()
            self._roll_window(record, limit, now)

            last = as_utc(record.last_action_at)
            if last is not None and limit.cooldown_seconds > 0:
                elapsed = (now - last).total_seconds()
                if elapsed <= limit.cooldown_seconds:
                    remaining = max(1, math.ceil(limit.cooldown_seconds - elapsed))
                    logger.warning(
                        "Cooldown active for user %s/%s: %ss left", user_id, action, remaining
                    )
                    raise CooldownActive(action, remaining)

            if record.window_sum + amount > limit.daily_cap:
                remaining = max(0, limit.daily_cap - record.window_sum)
                logger.warning(
                    "Cap exceeded for user %s/%s: requested %d, %d remaining",
                    user_id, action, amount, remaining,
                )
                raise DailyCapExceeded(action, remaining)

            reservation = Reservation(
                user_id=user_id,
                action=action,
                amount=amount,
                reserved_at=now,
                previous_action_at=last,
                window_start=as_utc(record.window_start),
            )
            record.window_count += 1
            record.window_sum += amount
            record.last_action_at = now
            session.commit()
            return reservation

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------
    def release(
        self,
        user_id: int,
        action: str,
        amount: int,
        *,
        reservation: Reservation | None = None,
    ) -> None:
        """Undo a reservation after the guarded action failed.

        Counters are clamped at zero.  A reservation made in a window that
        has since rolled over is not released against the new window.
        """
        limit = self._limit(action)
        for attempt in range(1, self.max_retries + 2):
            try:
                self._release_once(user_id, action, amount, limit, reservation)
                return
            except (StaleDataError, OperationalError) as exc:
                logger.warning(
                    "Rate release conflict for user %s/%s (attempt %d): %s",
                    user_id, action, attempt, exc,
                )
        raise TransactionFailed(
            f"Could not release {action} allowance for user {user_id}",
            action=action,
        )

    def _release_once(
        self,
        user_id: int,
        action: str,
        amount: int,
        limit: ActionLimit,
        reservation: Reservation | None,
    ) -> None:
        with Session(self.engine) as session:
            record = session.scalar(
                select(RateUsageRecord)
                .where(RateUsageRecord.user_id == user_id, RateUsageRecord.action == action)
                .with_for_update()
            )
            if record is None:
                logger.warning("Release for user %s/%s with no usage record", user_id, action)
                return

            window_start = as_utc(record.window_start)
            if reservation is not None and reservation.window_start != window_start:
                return
            if self.clock() - window_start >= timedelta(seconds=limit.window_seconds):
                return

            new_sum = record.window_sum - amount
            if new_sum < 0:
                logger.warning(
                    "Rate usage for user %s/%s would go negative (%d - %d); clamping",
                    user_id, action, record.window_sum, amount,
                )
                new_sum = 0
            record.window_sum = new_sum
            record.window_count = max(0, record.window_count - 1)

            if (
                reservation is not None
                and as_utc(record.last_action_at) == reservation.reserved_at
            ):
                record.last_action_at = reservation.previous_action_at
            session.commit()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    def remaining_allowance(self, user_id: int, action: str) -> dict[str, Any]:
        """Current window usage for *action*, without reserving anything."""
        limit = self._limit(action)
        now = self.clock()
        with Session(self.engine) as session:
            record = session.get(RateUsageRecord, (user_id, action))
            used = 0
            cooldown_left = 0
            if record is not None:
                window_start = as_utc(record.window_start)
                if now - window_start < timedelta(seconds=limit.window_seconds):
                    used = record.window_sum
                last = as_utc(record.last_action_at)
                if last is not None and limit.cooldown_seconds > 0:
                    elapsed = (now - last).total_seconds()
                    if elapsed <= limit.cooldown_seconds:
                        cooldown_left = max(1, math.ceil(limit.cooldown_seconds - elapsed))
        return {
            "daily_cap": limit.daily_cap,
            "used": used,
            "remaining": max(0, limit.daily_cap - used),
            "cooldown_remaining_seconds": cooldown_left,
        }

    def allowances(self, user_id: int) -> dict[str, dict[str, Any]]:
        """:meth:`remaining_allowance` for every configured action."""
        return {action: self.remaining_allowance(user_id, action) for action in self.limits}

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _ensure_record(self, user_id: int, action: str) -> None:
        with Session(self.engine) as session:
            if session.get(RateUsageRecord, (user_id, action)) is not None:
                return
        try:
            with Session(self.engine) as session:
                session.add(RateUsageRecord(
                    user_id=user_id,
                    action=action,
                    window_count=0,
                    window_sum=0,
                    window_start=self.clock(),
                    last_action_at=None,
                ))
                session.commit()
        except IntegrityError:
            # Created concurrently; the reserve step locks whichever row won.
            logger.debug("Rate record for user %s/%s created concurrently", user_id, action)

    @staticmethod
    def _lock_record(session: Session, user_id: int, action: str) -> RateUsageRecord:
        return session.scalars(
            select(RateUsageRecord)
            .where(RateUsageRecord.user_id == user_id, RateUsageRecord.action == action)
            .with_for_update()
        ).one()

    @staticmethod
    def _roll_window(record: RateUsageRecord, limit: ActionLimit, now: datetime) -> None:
        if now - as_utc(record.window_start) >= timedelta(seconds=limit.window_seconds):
            record.window_start = now
            record.window_count = 0
            record.window_sum = 0
