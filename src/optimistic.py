"""Bounded optimistic-write loop shared by every state transition.

Usage:
    intent = await optimistic_update(db.intents, payment_id, lambda i: advance(i))

The transition callable receives a private copy of the freshly read record
and returns the next record, ``None`` for "nothing to write", or raises
CoreError. It must not perform I/O: a lost race re-runs it against the new
version.
"""

import asyncio
import random
from typing import Callable, Optional, TypeVar

from .config import config
from .database import VersionedStore
from .errors import CoreError, ErrorKind
from .logging_utils import get_logger

logger = get_logger(__name__)

RecordT = TypeVar("RecordT")

Transition = Callable[[RecordT], Optional[RecordT]]


def backoff_delay(attempt: int, base_delay: float, jitter: float = 0.25) -> float:
    """Exponential backoff with jitter for the given 0-based attempt."""
    delay = base_delay * (2 ** attempt)
    if jitter > 0:
        jitter_range = delay * jitter
        delay = delay + random.uniform(-jitter_range, jitter_range)
    return max(0.0, delay)


async def optimistic_update(
    store: VersionedStore,
    record_id: str,
    transition: Transition,
    attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
):
    """Read, transform and conditionally write one record.

    Args:
        store: Versioned store holding the record.
        record_id: Record to mutate.
        transition: Pure function computing the next state.
        attempts: Maximum write attempts. Defaults to config.optimistic_write_attempts.
        base_delay: First backoff delay in seconds. Defaults to config.optimistic_backoff_seconds.

    Returns:
        The persisted record, or the unchanged record when the transition was a no-op.

    Raises:
        CoreError: NOT_FOUND if the record does not exist, CONTENTION after
            exhausting attempts, or whatever the transition raises.
    """
    attempts = config.optimistic_write_attempts if attempts is None else attempts
    base_delay = config.optimistic_backoff_seconds if base_delay is None else base_delay

    for attempt in range(attempts):
        current = await store.get(record_id)
        if current is None:
            raise CoreError(ErrorKind.NOT_FOUND, f"{store.table}: {record_id} not found")

        proposed = transition(current.model_copy(deep=True))
        if proposed is None:
            return current

        if await store.put_if_version(proposed, current.version):
            return proposed

        if attempt + 1 < attempts:
            delay = backoff_delay(attempt, base_delay)
            logger.debug(
                f"Lost write race on {record_id} (attempt {attempt + 1}/{attempts}), "
                f"retrying in {delay:.3f}s"
            )
            await asyncio.sleep(delay)

    logger.warning(f"Giving up on {record_id} after {attempts} conflicting writes")
    raise CoreError(
        ErrorKind.CONTENTION,
        f"Too many concurrent updates to {record_id}",
        {"attempts": attempts},
    )
