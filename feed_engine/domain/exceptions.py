"""Custom exception hierarchy for the event feed engine.

Following error taxonomy: retryable, non-retryable, validation, authorization.
"""


class FeedEngineError(Exception):
    """Base exception for all application errors."""

    pass


class RetryableError(FeedEngineError):
    """Errors that can be retried (lock contention, dropped connections)."""

    pass


class NonRetryableError(FeedEngineError):
    """Errors that should not be retried (validation, auth, logic errors)."""

    pass


class ValidationError(NonRetryableError):
    """Malformed feed id, cursor, or event payload."""

    pass


class AuthorizationError(NonRetryableError):
    """Caller is not allowed to read the requested feed."""

    def __init__(self, feed_id: str, viewer_id: str | None) -> None:
        self.feed_id = feed_id
        self.viewer_id = viewer_id
        super().__init__(f"Viewer {viewer_id or '<anonymous>'} may not read {feed_id}")


class NotFoundError(NonRetryableError):
    """Referenced event, user or list does not exist."""

    pass


class RepositoryError(RetryableError):
    """Database/storage errors."""

    pass


class TransientStoreError(RepositoryError):
    """Index scan or write failed for a reason that may clear on retry."""

    pass


class ConsistencyWarning(Warning):
    """Materialized row and membership set disagree.

    Never raised to callers. Emitted into the log stream and metrics when the
    materializer finds a grouped row with no backing members (or the reverse),
    which means an earlier write broke atomicity.
    """

    def __init__(self, kind: str, feed_id: str, group_id: str | None) -> None:
        self.kind = kind
        self.feed_id = feed_id
        self.group_id = group_id
        super().__init__(f"{kind}: feed={feed_id} group={group_id}")
