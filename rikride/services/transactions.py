"""
Optimistic Transactions
Read / validate / conditional-write loop over a versioned document.

`apply` validates its guards against the loaded snapshot and mutates it in
memory. It may raise a ServiceError to reject the transition, or return
False to signal that nothing needs writing (idempotent no-op). The write is
conditional on the version that was read; if another writer got there
first the document is reloaded and `apply` runs again on the fresh snapshot.
"""

import logging
from typing import Callable, Optional, TypeVar

from mongoengine import Document
from mongoengine.errors import SaveConditionError

from rikride import config
from rikride.services.errors import ConcurrencyConflictError
from rikride.utils.helpers import utc_now

logger = logging.getLogger(__name__)

D = TypeVar("D", bound=Document)


def run_transition(
    load: Callable[[], D],
    apply: Callable[[D], Optional[bool]],
    label: str = "transition",
    max_attempts: Optional[int] = None,
) -> D:
    """
    Run `apply` against a fresh snapshot from `load` and commit it atomically

    Args:
        load: Returns the current document (raises NotFoundError if missing)
        apply: Guard + mutation; returns False to skip the write
        label: Operation name used in log messages
        max_attempts: Conflict retries before giving up (default CAS_MAX_RETRIES)

    Returns:
        The committed (or unchanged) document

    Raises:
        ConcurrencyConflictError: if every attempt lost the race
    """
    attempts = max_attempts or config.CAS_MAX_RETRIES

    for attempt in range(1, attempts + 1):
        document = load()
        expected_version = document.version or 0

        if apply(document) is False:
            return document

        document.version = expected_version + 1
        document.updated_at = utc_now()

        try:
            document.save(save_condition={"version": expected_version})
            return document
        except SaveConditionError:
            logger.warning(
                f"{label}: version conflict on {document.pk} "
                f"(attempt {attempt}/{attempts}), retrying"
            )

    logger.error(f"{label}: giving up after {attempts} conflicting attempts")
    raise ConcurrencyConflictError(
        "This ride was updated by someone else at the same time. Please try again."
    )
