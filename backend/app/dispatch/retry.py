"""
retry.py — Bounded retry for single attachment transfers.

═══════════════════════════════════════════════════════════════════════════
RETRY POLICY
═══════════════════════════════════════════════════════════════════════════

    Attempts       Backoff base     Backoff type
    ────────       ────────────     ────────────
    3              2 units          Linear

Backoff formula (linear):
    delay = base × attempt × time_unit

    Attempt 1 fails → wait 2 units, attempt 2 fails → wait 4 units,
    attempt 3 fails → give up with the last error.

Used by the chat-bot sender for document uploads. The social-graph sender
does not retry: it falls back once to a second upload strategy with a
different transport encoding instead.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

Pause = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry parameters for one kind of transfer."""
    max_attempts: int = 3
    backoff_base_units: float = 2.0
    backoff_type: str = "linear"  # "linear" or "exponential"


ATTACHMENT_RETRY_POLICY = RetryPolicy()


def compute_backoff(policy: RetryPolicy, attempt: int, time_unit: float = 1.0) -> float:
    """
    Delay in seconds after failed attempt number ``attempt`` (1-based).
    """
    if policy.backoff_type == "exponential":
        units = policy.backoff_base_units * (2 ** (attempt - 1))
    else:
        units = policy.backoff_base_units * attempt
    return units * time_unit


@dataclass
class TransferOutcome:
    success: bool
    attempts: int
    value: Any = None
    error: Optional[str] = None


async def retry_transfer(
    operation: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy = ATTACHMENT_RETRY_POLICY,
    time_unit: float = 1.0,
    pause: Pause = asyncio.sleep,
    label: str = "transfer",
) -> TransferOutcome:
    """
    Run ``operation`` until it completes without raising or attempts run out.

    Parameters
    ----------
    operation : async callable
        Performs one complete transfer; any exception counts as a failure.
    policy : RetryPolicy
    time_unit : float
        Seconds per backoff unit.
    pause : async callable
        Sleep function, injectable for tests.
    label : str
        Name used in log lines (usually the attachment name).

    Returns
    -------
    TransferOutcome
        ``success`` with the operation's return value, or failure carrying
        the last error message.
    """
    last_error: Optional[str] = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            value = await operation()
        except Exception as exc:
            last_error = str(exc) or type(exc).__name__
            logger.warning(
                "Attempt %d/%d for %s failed: %s",
                attempt, policy.max_attempts, label, last_error,
            )
            if attempt < policy.max_attempts:
                await pause(compute_backoff(policy, attempt, time_unit))
            continue
        return TransferOutcome(success=True, attempts=attempt, value=value)

    logger.error("%s not transferred after %d attempts", label, policy.max_attempts)
    return TransferOutcome(
        success=False,
        attempts=policy.max_attempts,
        error=last_error,
    )
