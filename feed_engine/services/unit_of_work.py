"""Transaction runner with retry for transient store failures."""

from collections.abc import Callable
from time import sleep
from typing import TYPE_CHECKING, TypeVar

from feed_engine.config.logging_config import get_logger
from feed_engine.domain.exceptions import TransientStoreError
from feed_engine.domain.protocols import FeedRepositoryProtocol, FeedTransactionProtocol
from feed_engine.observability.metrics import STORE_RETRIES_TOTAL

if TYPE_CHECKING:
    from feed_engine.config.settings import Settings

T = TypeVar("T")

logger = get_logger(__name__)


def run_in_transaction(
    repository: FeedRepositoryProtocol,
    work: Callable[[FeedTransactionProtocol], T],
    *,
    operation: str,
    settings: "Settings | None" = None,
    read_only: bool = False,
    sleeper: Callable[[float], None] = sleep,
) -> T:
    """Run ``work`` in a fresh transaction, retrying on TransientStoreError.

    The whole unit is replayed on retry, so ``work`` must derive everything it
    writes from what it reads inside the transaction.

    Raises:
        TransientStoreError: If every attempt failed
    """
    max_attempts = settings.store_retry_max_attempts if settings else 3
    delay = settings.store_retry_base_delay_seconds if settings else 0.05
    max_delay = settings.store_retry_max_delay_seconds if settings else 1.0

    attempt = 0
    while True:
        attempt += 1
        try:
            with repository.transaction(read_only=read_only) as tx:
                return work(tx)
        except TransientStoreError as exc:
            if attempt >= max_attempts:
                logger.error(
                    "store_transaction_failed",
                    operation=operation,
                    attempts=attempt,
                    error=str(exc),
                )
                raise

            STORE_RETRIES_TOTAL.labels(operation=operation).inc()
            logger.warning(
                "store_transaction_retry",
                operation=operation,
                attempt=attempt,
                wait_seconds=delay,
                error=str(exc),
            )
            sleeper(delay)
            delay = min(delay * 2, max_delay)
