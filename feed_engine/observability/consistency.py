"""Reporting for detected feed inconsistencies."""

from typing import Any

from feed_engine.config.logging_config import get_logger
from feed_engine.domain.exceptions import ConsistencyWarning
from feed_engine.observability.metrics import CONSISTENCY_WARNINGS_TOTAL

logger = get_logger(__name__)


def report_consistency_warning(
    kind: str, feed_id: str, group_id: str | None = None, **context: Any
) -> ConsistencyWarning:
    """Log and count an inconsistency without interrupting the caller."""
    warning = ConsistencyWarning(kind, feed_id, group_id)
    CONSISTENCY_WARNINGS_TOTAL.labels(kind=kind).inc()
    logger.warning(
        "consistency_warning",
        kind=kind,
        feed_id=feed_id,
        group_id=group_id,
        detail=str(warning),
        **context,
    )
    return warning
