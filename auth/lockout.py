"""
auth/lockout.py -- In-memory brute-force lockout counters keyed by email.

Policy: after max_attempts consecutive failures, further attempts for that
email are refused until lockout_minutes have passed since the LAST failure.
Once the window has elapsed the counter is cleared and the email starts over.

Concurrency:
  FastAPI runs sync dependencies and handlers in a thread pool, so many
  login attempts for one email can arrive at once. Every read-modify-write
  for a key runs under that key's own threading.Lock. A lost increment would
  hand an attacker free guesses.

  Checking and counting are not enough on their own: requests that pass
  check() together would all get a guess before any failure is recorded.
  begin_attempt() therefore reserves a slot under the key lock, and
  reservations still in flight count toward max_attempts until
  end_attempt() turns them into a failure or a reset.

  The table-level lock only guards creation of per-key locks and is never
  held while a key lock is being waited on.

Scaling note:
  Counters live in this process only. Behind several workers each worker
  counts separately; moving them to a shared store with an atomic increment
  is the fix if that matters.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from auth.errors import AccountLocked

logger = logging.getLogger("gatehouse.lockout")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Counter:
    count: int
    last_attempt: datetime
    # password checks reserved by begin_attempt() and not yet finished
    in_flight: int = 0


@dataclass
class LockoutStatus:
    attempts: int
    locked: bool
    minutes_remaining: int = 0


class LockoutTracker:
    """Per-email failed-attempt counters with time-bounded lockout.

    Usage:
        tracker = LockoutTracker(max_attempts=5, lockout_minutes=15)
        tracker.begin_attempt("a@x.com")  # raises AccountLocked when locked
        ok = verify(...)
        tracker.end_attempt("a@x.com", ok)  # failure counted or counter cleared
    """

    def __init__(
        self,
        max_attempts: int = 5,
        lockout_minutes: int = 15,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.max_attempts = max_attempts
        self.lockout = timedelta(minutes=lockout_minutes)
        self._clock = clock
        self._counters: dict[str, _Counter] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._table_lock = threading.Lock()

    @staticmethod
    def _key(email: str) -> str:
        return email.strip().lower()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._table_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _minutes_left(self, counter: _Counter, now: datetime) -> int:
        """Minutes until unlock, rounded up, or 0 if not locked."""
        if counter.count < self.max_attempts:
            return 0
        unlock_at = counter.last_attempt + self.lockout
        if now >= unlock_at:
            return 0
        return math.ceil((unlock_at - now).total_seconds() / 60)

    def _refresh(self, key: str, counter: _Counter, now: datetime) -> _Counter | None:
        """Raise AccountLocked if locked; reset a counter whose window has elapsed.

        Caller holds the key lock. Returns the counter, or None if it was dropped.
        """
        remaining = self._minutes_left(counter, now)
        if remaining:
            raise AccountLocked(remaining)
        if counter.count >= self.max_attempts:
            logger.info("Lockout window elapsed for %s; counter cleared", key)
            counter.count = 0
        if counter.count == 0 and counter.in_flight == 0:
            del self._counters[key]
            return None
        return counter

    def check(self, email: str) -> None:
        """Raise AccountLocked if email is inside its lockout window.

        A counter whose window has elapsed is cleared here, so the next
        failure starts again from one.
        """
        key = self._key(email)
        with self._lock_for(key):
            counter = self._counters.get(key)
            if counter is not None:
                self._refresh(key, counter, self._clock())

    def begin_attempt(self, email: str) -> None:
        """Reserve one password check for email, or raise AccountLocked.

        Attempts still being verified count against max_attempts together
        with recorded failures, so parallel requests cannot get more guesses
        than a sequential caller would. Every successful call must be paired
        with end_attempt().
        """
        key = self._key(email)
        with self._lock_for(key):
            now = self._clock()
            counter = self._counters.get(key)
            if counter is not None:
                counter = self._refresh(key, counter, now)
            if counter is None:
                counter = self._counters[key] = _Counter(count=0, last_attempt=now)
            if counter.count + counter.in_flight >= self.max_attempts:
                # the outstanding checks would lock the account if they all fail
                raise AccountLocked(math.ceil(self.lockout.total_seconds() / 60))
            counter.in_flight += 1

    def end_attempt(self, email: str, succeeded: bool | None) -> None:
        """Release a reservation made by begin_attempt().

        succeeded=True clears the failure count, False records a failure,
        None (the check itself errored) only releases the slot.
        """
        key = self._key(email)
        with self._lock_for(key):
            now = self._clock()
            counter = self._counters.get(key)
            if counter is None:
                # cleared by an admin reset while the check was running
                counter = self._counters[key] = _Counter(count=0, last_attempt=now)
            counter.in_flight = max(0, counter.in_flight - 1)
            if succeeded:
                counter.count = 0
            elif succeeded is False:
                self._count_failure(key, counter, now)
            if counter.count == 0 and counter.in_flight == 0:
                del self._counters[key]

    def _count_failure(self, key: str, counter: _Counter, now: datetime) -> int:
        counter.count += 1
        counter.last_attempt = now
        if counter.count == self.max_attempts:
            logger.warning("Account %s locked after %d failed attempts", key, counter.count)
        return counter.count

    def record_failure(self, email: str) -> int:
        """Count one failed attempt and return the new total."""
        key = self._key(email)
        with self._lock_for(key):
            now = self._clock()
            counter = self._counters.get(key)
            if counter is None:
                counter = self._counters[key] = _Counter(count=0, last_attempt=now)
            return self._count_failure(key, counter, now)

    def clear(self, email: str) -> None:
        key = self._key(email)
        with self._lock_for(key):
            counter = self._counters.get(key)
            if counter is None:
                return
            if counter.in_flight:
                counter.count = 0
            else:
                del self._counters[key]

    # Administrative unlock is the same operation under a clearer name.
    reset = clear

    def status(self, email: str) -> LockoutStatus:
        key = self._key(email)
        with self._lock_for(key):
            counter = self._counters.get(key)
            if counter is None:
                return LockoutStatus(attempts=0, locked=False)
            remaining = self._minutes_left(counter, self._clock())
            return LockoutStatus(attempts=counter.count, locked=remaining > 0, minutes_remaining=remaining)

    def prune(self) -> int:
        """Drop counters whose lockout window has passed. Returns the number removed.

        Failures that never reached max_attempts are also dropped once they
        are older than one window, so the table does not grow without bound.
        """
        now = self._clock()
        with self._table_lock:
            keys = list(self._counters)
        removed = 0
        for key in keys:
            with self._lock_for(key):
                counter = self._counters.get(key)
                if counter is not None and not counter.in_flight and now >= counter.last_attempt + self.lockout:
                    del self._counters[key]
                    removed += 1
        return removed
