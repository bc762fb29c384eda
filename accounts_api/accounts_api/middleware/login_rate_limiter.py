"""Lockout bookkeeping for password checks.

Failures are counted per ``(subject, client IP)``, where the subject is the
email address on login and the user ID when a password is re-verified
before account deletion.  Counters live in process memory, so each replica
enforces its own limits.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)

FREE_ATTEMPTS = 5
# Seconds locked for the 1st, 2nd, ... failure at or past FREE_ATTEMPTS; the last step repeats.
LOCKOUT_STEPS: tuple[int, ...] = (30, 60, 120, 240, 900)

_Key = tuple[str, str]


@dataclass
class _Failures:
    count: int = 0
    last_at: float = 0.0
    locked_until: float = 0.0

    def lockout_seconds(self) -> int:
        step = min(self.count - FREE_ATTEMPTS, len(LOCKOUT_STEPS) - 1)
        return LOCKOUT_STEPS[step]


class LoginRateLimiter:
    """Escalating lockout after repeated password failures; a success resets the key."""

    def __init__(self) -> None:
        self._failures: dict[_Key, _Failures] = {}

    @staticmethod
    def _key(subject: str, client_ip: str) -> _Key:
        return subject.strip().lower(), client_ip

    def check_rate_limit(self, subject: str, client_ip: str) -> tuple[bool, int]:
        """Return ``(allowed, retry_after_seconds)`` for the next attempt."""
        failures = self._failures.get(self._key(subject, client_ip))
        if failures is None:
            return True, 0
        remaining = failures.locked_until - time.monotonic()
        if remaining > 0:
            return False, int(remaining) + 1
        return True, 0

    def record_failure(self, subject: str, client_ip: str) -> None:
        now = time.monotonic()
        failures = self._failures.setdefault(self._key(subject, client_ip), _Failures())
        failures.count += 1
        failures.last_at = now
        if failures.count < FREE_ATTEMPTS:
            return

        seconds = failures.lockout_seconds()
        failures.locked_until = now + seconds
        logger.warning(
            "Locked password attempts for %s from %s for %ds (%d failures)",
            subject,
            client_ip,
            seconds,
            failures.count,
        )

    def record_success(self, subject: str, client_ip: str) -> None:
        self._failures.pop(self._key(subject, client_ip), None)

    def cleanup_stale(self, max_age_seconds: float = 3600) -> int:
        """Forget keys that are unlocked and idle for *max_age_seconds*; return the count removed."""
        now = time.monotonic()
        stale = [
            key
            for key, failures in self._failures.items()
            if failures.locked_until <= now and now - failures.last_at > max_age_seconds
        ]
        for key in stale:
            del self._failures[key]
        return len(stale)
