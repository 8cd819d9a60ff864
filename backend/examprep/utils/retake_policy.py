"""Retake policy guard for new quiz attempts.

The guard is a pure decision: callers gather the prior result count and
the latest completion time for (user, quiz) and only create a session after
`check_retake` returns without raising.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ..errors import PolicyViolation


@dataclass(frozen=True)
class RetakePolicy:
    max_attempts: Optional[int] = None
    cooldown_minutes: int = 0

    @property
    def unlimited(self) -> bool:
        return not self.max_attempts


def next_allowed_at(policy: RetakePolicy, last_completed_at: Optional[datetime]) -> Optional[datetime]:
    """Earliest time a retake is allowed by the cooldown alone."""
    if last_completed_at is None or not policy.cooldown_minutes:
        return None
    return last_completed_at + timedelta(minutes=policy.cooldown_minutes)


def check_retake(
    policy: RetakePolicy,
    prior_count: int,
    last_completed_at: Optional[datetime],
    now: datetime,
) -> None:
    """Raise `PolicyViolation` if a new attempt is not allowed at `now`."""
    if not policy.unlimited and prior_count >= policy.max_attempts:
        raise PolicyViolation(
            f"maximum attempts reached ({policy.max_attempts})",
            details={"max_attempts": policy.max_attempts, "prior_attempts": prior_count},
        )
    allowed_at = next_allowed_at(policy, last_completed_at)
    if allowed_at is not None and now < allowed_at:
        wait_seconds = int((allowed_at - now).total_seconds())
        raise PolicyViolation(
            "retake cooldown has not elapsed",
            details={"retry_after_seconds": wait_seconds, "next_allowed_at": allowed_at.isoformat()},
        )
