"""Backfill and repair jobs for the feed engine.

Every job processes one fixed-size batch per call in a stable key order,
stores its checkpoint in the same transaction as the batch's writes, and can
run as a dry run that reports the diff without writing anything (checkpoints
included). All writes are compare-and-set or full recomputations, so a job
can be re-run from any point and never clobbers values written by live
traffic in the meantime.

Jobs:
1. backfill_event_similarity_groups: group ids for events lacking one
2. backfill_membership_groups: copy group ids onto membership rows
3. derive_grouped_entries: materialize grouped rows for every (feed, group)
4. repair_feed_timestamps: fix denormalized start/end times in the bad range
5. refresh_has_ended_flags: recompute has_ended against the clock
6. detect_split_groups: report distinct groups with mutually similar events
7. reconcile_grouped_entries: drop orphaned grouped rows, recompute drifted ones
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Final

import pytz

from feed_engine.adapters.query_builders import GROUPED_TABLE, MEMBERSHIP_TABLE
from feed_engine.adapters.sql_feed_store import (
    datetime_to_db,
    decode_resume_key,
    encode_resume_key,
)
from feed_engine.config.logging_config import get_logger
from feed_engine.config.settings import Settings
from feed_engine.domain.exceptions import NotFoundError, ValidationError
from feed_engine.domain.models import (
    GroupedFeedEntry,
    MigrationReport,
    RowChange,
    SkippedRow,
    SplitGroupPair,
)
from feed_engine.domain.protocols import Clock, FeedRepositoryProtocol, FeedTransactionProtocol
from feed_engine.domain.timing import FeedTiming, to_epoch_millis
from feed_engine.observability.consistency import report_consistency_warning
from feed_engine.observability.metrics import MIGRATION_ROWS_TOTAL
from feed_engine.observability.tracing import correlation_scope
from feed_engine.services.group_resolver import GroupResolver
from feed_engine.services.materializer import GroupedFeedMaterializer
from feed_engine.services.unit_of_work import run_in_transaction

logger = get_logger(__name__)

JOB_BACKFILL_EVENT_GROUPS: Final[str] = "backfill_event_similarity_groups"
JOB_BACKFILL_MEMBERSHIP_GROUPS: Final[str] = "backfill_membership_groups"
JOB_DERIVE_GROUPED_ENTRIES: Final[str] = "derive_grouped_entries"
JOB_REPAIR_FEED_TIMESTAMPS: Final[str] = "repair_feed_timestamps"
JOB_REFRESH_HAS_ENDED: Final[str] = "refresh_has_ended_flags"
JOB_DETECT_SPLIT_GROUPS: Final[str] = "detect_split_groups"
JOB_RECONCILE_GROUPED_ENTRIES: Final[str] = "reconcile_grouped_entries"

PHASE_REPAIR_MEMBERSHIPS: Final[str] = f"{JOB_REPAIR_FEED_TIMESTAMPS}.memberships"
PHASE_REPAIR_GROUPED: Final[str] = f"{JOB_REPAIR_FEED_TIMESTAMPS}.grouped"
PHASE_REFRESH_MEMBERSHIPS: Final[str] = f"{JOB_REFRESH_HAS_ENDED}.memberships"
PHASE_REFRESH_GROUPED: Final[str] = f"{JOB_REFRESH_HAS_ENDED}.grouped"


def _utc_now() -> datetime:
    return datetime.now(pytz.UTC)


@dataclass
class MigrationContext:
    """Shared state for the batches of one job run."""

    repository: FeedRepositoryProtocol
    settings: Settings
    dry_run: bool = False
    batch_size: int | None = None
    clock: Clock = _utc_now
    known_groups: dict[str, str] = field(default_factory=dict)
    """Group ids decided by earlier dry-run batches, keyed by event id"""

    resolver: GroupResolver = field(init=False)
    materializer: GroupedFeedMaterializer = field(init=False)

    def __post_init__(self) -> None:
        if self.batch_size is not None and self.batch_size <= 0:
            raise ValidationError("batch_size must be positive")
        self.resolver = GroupResolver(self.repository, self.settings)
        self.materializer = GroupedFeedMaterializer(self.clock)

    @property
    def size(self) -> int:
        return self.batch_size or self.settings.migration_batch_size

    def run(
        self, name: str, work: Callable[[FeedTransactionProtocol], MigrationReport]
    ) -> MigrationReport:
        report = run_in_transaction(
            self.repository,
            work,
            operation=name,
            settings=self.settings,
            read_only=self.dry_run,
        )
        _record_metrics(report)
        return report


def _record_metrics(report: MigrationReport) -> None:
    unchanged = report.processed - report.changed - len(report.skipped)
    MIGRATION_ROWS_TOTAL.labels(job=report.job, result="changed").inc(report.changed)
    MIGRATION_ROWS_TOTAL.labels(job=report.job, result="skipped").inc(len(report.skipped))
    MIGRATION_ROWS_TOTAL.labels(job=report.job, result="unchanged").inc(max(unchanged, 0))


def _finish_batch(
    ctx: MigrationContext,
    tx: FeedTransactionProtocol,
    name: str,
    rows: Sequence[object],
    last_key_parts: tuple[str, ...] | None,
    after_key: str | None,
    changes: list[RowChange],
    skipped: list[SkippedRow],
    split_groups: list[SplitGroupPair] | None = None,
) -> MigrationReport:
    is_done = len(rows) < ctx.size
    last_key = encode_resume_key(last_key_parts) if last_key_parts else after_key
    if not ctx.dry_run:
        tx.save_checkpoint(name, None if is_done else last_key)
    return MigrationReport(
        job=name,
        dry_run=ctx.dry_run,
        processed=len(rows),
        changes=changes,
        skipped=skipped,
        split_groups=split_groups or [],
        last_processed_key=last_key,
        is_done=is_done,
    )


def _membership_key(feed_id: str, event_id: str) -> str:
    return f"{feed_id}:{event_id}"


def _bad_year_range(settings: Settings) -> tuple[int, int]:
    lower = datetime(settings.repair_bad_year_start, 1, 1, tzinfo=pytz.UTC)
    upper = datetime(settings.repair_bad_year_end, 1, 1, tzinfo=pytz.UTC)
    return to_epoch_millis(lower), to_epoch_millis(upper)


def _timing_dump(start: int, end: int) -> dict[str, int]:
    return {"event_start_time": start, "event_end_time": end}


# === 1. Event group ids ===


def backfill_event_similarity_groups(
    ctx: MigrationContext, after_key: str | None = None
) -> MigrationReport:
    """Assign group ids to events lacking one, in creation order.

    The resolver only looks backward in time and new groups get ids derived
    from their founding event, so the outcome depends only on the data.
    The window scan runs in its own read-only transaction; the assignments
    are written afterwards with compare-and-set.
    """
    name = JOB_BACKFILL_EVENT_GROUPS
    after = decode_resume_key(after_key)

    def _plan(tx: FeedTransactionProtocol) -> MigrationReport:
        events = tx.scan_events_by_creation(after, ctx.size)
        overlay = dict(ctx.known_groups)
        changes: list[RowChange] = []
        for event in events:
            if event.similarity_group_id is not None:
                continue
            match = ctx.resolver.find_group(tx, event, backfill=True, known_groups=overlay)
            resolution = ctx.resolver.resolution_from_match(event, match, backfill=True)
            overlay[event.id] = resolution.group_id
            changes.append(
                RowChange(
                    table="events",
                    key=event.id,
                    before={"similarity_group_id": None},
                    after={"similarity_group_id": resolution.group_id},
                )
            )
        last = events[-1] if events else None
        return MigrationReport(
            job=name,
            dry_run=ctx.dry_run,
            processed=len(events),
            changes=changes,
            last_processed_key=(
                encode_resume_key((datetime_to_db(last.created_at), last.id))
                if last
                else after_key
            ),
            is_done=len(events) < ctx.size,
        )

    plan = run_in_transaction(
        ctx.repository, _plan, operation=name, settings=ctx.settings, read_only=True
    )
    if ctx.dry_run:
        for change in plan.changes:
            ctx.known_groups[change.key] = change.after["similarity_group_id"]
        _record_metrics(plan)
        return plan

    def _apply(tx: FeedTransactionProtocol) -> MigrationReport:
        applied: list[RowChange] = []
        skipped: list[SkippedRow] = []
        for change in plan.changes:
            proposed = change.after["similarity_group_id"]
            try:
                stored = ctx.resolver.assign_group(tx, change.key, proposed)
            except NotFoundError:
                skipped.append(SkippedRow(table="events", key=change.key, reason="event_missing"))
                continue
            if stored != proposed:
                skipped.append(
                    SkippedRow(table="events", key=change.key, reason="assigned_concurrently")
                )
                continue
            applied.append(change)
        tx.save_checkpoint(name, None if plan.is_done else plan.last_processed_key)
        return plan.model_copy(update={"changes": applied, "skipped": skipped})

    return ctx.run(name, _apply)


# === 2. Membership group ids ===


def backfill_membership_groups(
    ctx: MigrationContext, after_key: str | None = None
) -> MigrationReport:
    """Copy each event's group id onto its membership rows that lack one.

    Each touched (feed, group) pair is materialized in the same transaction.
    """
    name = JOB_BACKFILL_MEMBERSHIP_GROUPS
    after = decode_resume_key(after_key)

    def _work(tx: FeedTransactionProtocol) -> MigrationReport:
        rows = tx.scan_memberships(after, ctx.size)
        pending = [row for row in rows if row.similarity_group_id is None]
        events = tx.get_events([row.event_id for row in pending])
        changes: list[RowChange] = []
        skipped: list[SkippedRow] = []
        touched: set[tuple[str, str]] = set()

        for row in pending:
            key = _membership_key(row.feed_id, row.event_id)
            event = events.get(row.event_id)
            if event is None:
                skipped.append(SkippedRow(table=MEMBERSHIP_TABLE, key=key, reason="event_missing"))
                continue
            group_id = event.similarity_group_id or ctx.known_groups.get(event.id)
            if group_id is None:
                skipped.append(
                    SkippedRow(table=MEMBERSHIP_TABLE, key=key, reason="event_ungrouped")
                )
                continue
            if not ctx.dry_run:
                if not tx.set_membership_group(row.feed_id, row.event_id, group_id):
                    skipped.append(
                        SkippedRow(table=MEMBERSHIP_TABLE, key=key, reason="assigned_concurrently")
                    )
                    continue
                touched.add((row.feed_id, group_id))
            changes.append(
                RowChange(
                    table=MEMBERSHIP_TABLE,
                    key=key,
                    before={"similarity_group_id": None},
                    after={"similarity_group_id": group_id},
                )
            )

        for feed_id, group_id in sorted(touched):
            ctx.materializer.upsert(tx, feed_id, group_id)

        last = rows[-1] if rows else None
        return _finish_batch(
            ctx,
            tx,
            name,
            rows,
            (last.feed_id, last.event_id) if last else None,
            after_key,
            changes,
            skipped,
        )

    return ctx.run(name, _work)


# === 3. Grouped rows ===


def _rederive_grouped_row(
    ctx: MigrationContext,
    tx: FeedTransactionProtocol,
    feed_id: str,
    group_id: str,
    existing: GroupedFeedEntry | None,
) -> RowChange | None:
    """Recompute one grouped row through the materializer and diff it."""
    if ctx.dry_run:
        entry = ctx.materializer.compute_entry(tx, feed_id, group_id)
    else:
        entry = ctx.materializer.upsert(tx, feed_id, group_id)
    if entry == existing:
        return None
    return RowChange(
        table=GROUPED_TABLE,
        key=_membership_key(feed_id, group_id),
        before=existing.model_dump() if existing else {},
        after=entry.model_dump() if entry else {},
    )


def derive_grouped_entries(
    ctx: MigrationContext, after_key: str | None = None
) -> MigrationReport:
    """Materialize the grouped row of every (feed, group) pair in membership.

    Uses the live materializer under its per-pair lock, so a concurrent live
    write and this job always converge on the same row.
    """
    name = JOB_DERIVE_GROUPED_ENTRIES
    after = decode_resume_key(after_key)

    def _work(tx: FeedTransactionProtocol) -> MigrationReport:
        pairs = tx.scan_feed_group_pairs(after, ctx.size)
        changes: list[RowChange] = []
        for feed_id, group_id in pairs:
            change = _rederive_grouped_row(
                ctx, tx, feed_id, group_id, tx.get_grouped_entry(feed_id, group_id)
            )
            if change is not None:
                changes.append(change)
        return _finish_batch(
            ctx, tx, name, pairs, pairs[-1] if pairs else None, after_key, changes, []
        )

    return ctx.run(name, _work)


# === 4. Timestamp repair ===


def repair_membership_timestamps(
    ctx: MigrationContext, after_key: str | None = None
) -> MigrationReport:
    """Re-copy event times onto membership rows whose start lies in the bad range."""
    name = PHASE_REPAIR_MEMBERSHIPS
    after = decode_resume_key(after_key)
    bad_range = _bad_year_range(ctx.settings)

    def _work(tx: FeedTransactionProtocol) -> MigrationReport:
        rows = tx.scan_memberships(after, ctx.size, start_time_range=bad_range)
        events = tx.get_events([row.event_id for row in rows])
        now = ctx.clock()
        changes: list[RowChange] = []
        skipped: list[SkippedRow] = []
        touched: set[tuple[str, str]] = set()

        for row in rows:
            key = _membership_key(row.feed_id, row.event_id)
            event = events.get(row.event_id)
            if event is None:
                skipped.append(SkippedRow(table=MEMBERSHIP_TABLE, key=key, reason="event_missing"))
                continue
            timing = FeedTiming.from_event(event, now)
            if (row.event_start_time, row.event_end_time) == (
                timing.event_start_time,
                timing.event_end_time,
            ):
                continue
            if not ctx.dry_run:
                patched = tx.update_membership_timing(
                    row.feed_id, row.event_id, timing, expected_start_time=row.event_start_time
                )
                if not patched:
                    skipped.append(
                        SkippedRow(table=MEMBERSHIP_TABLE, key=key, reason="modified_concurrently")
                    )
                    continue
                if row.similarity_group_id is not None:
                    touched.add((row.feed_id, row.similarity_group_id))
            changes.append(
                RowChange(
                    table=MEMBERSHIP_TABLE,
                    key=key,
                    before=_timing_dump(row.event_start_time, row.event_end_time),
                    after=_timing_dump(timing.event_start_time, timing.event_end_time),
                )
            )

        for feed_id, group_id in sorted(touched):
            ctx.materializer.upsert(tx, feed_id, group_id)

        last = rows[-1] if rows else None
        return _finish_batch(
            ctx,
            tx,
            name,
            rows,
            (last.feed_id, last.event_id) if last else None,
            after_key,
            changes,
            skipped,
        )

    return ctx.run(name, _work)


def repair_grouped_timestamps(
    ctx: MigrationContext, after_key: str | None = None
) -> MigrationReport:
    """Re-derive grouped rows whose start lies in the bad range."""
    name = PHASE_REPAIR_GROUPED
    after = decode_resume_key(after_key)
    bad_range = _bad_year_range(ctx.settings)

    def _work(tx: FeedTransactionProtocol) -> MigrationReport:
        rows = tx.scan_grouped_entries(after, ctx.size, start_time_range=bad_range)
        changes: list[RowChange] = []
        for row in rows:
            change = _rederive_grouped_row(ctx, tx, row.feed_id, row.similarity_group_id, row)
            if change is not None:
                changes.append(change)

        last = rows[-1] if rows else None
        return _finish_batch(
            ctx,
            tx,
            name,
            rows,
            (last.feed_id, last.similarity_group_id) if last else None,
            after_key,
            changes,
            [],
        )

    return ctx.run(name, _work)


# === 5. has_ended refresh ===


def refresh_membership_has_ended(
    ctx: MigrationContext, after_key: str | None = None
) -> MigrationReport:
    """Recompute ``has_ended`` on membership rows."""
    name = PHASE_REFRESH_MEMBERSHIPS
    after = decode_resume_key(after_key)

    def _work(tx: FeedTransactionProtocol) -> MigrationReport:
        rows = tx.scan_memberships(after, ctx.size)
        now = ctx.clock()
        changes: list[RowChange] = []
        for row in rows:
            timing = FeedTiming(row.event_start_time, row.event_end_time, row.has_ended)
            refreshed = timing.refreshed(now)
            if refreshed.has_ended == row.has_ended:
                continue
            if not ctx.dry_run and not tx.update_membership_timing(
                row.feed_id, row.event_id, refreshed, expected_start_time=row.event_start_time
            ):
                continue
            changes.append(
                RowChange(
                    table=MEMBERSHIP_TABLE,
                    key=_membership_key(row.feed_id, row.event_id),
                    before={"has_ended": row.has_ended},
                    after={"has_ended": refreshed.has_ended},
                )
            )
        last = rows[-1] if rows else None
        return _finish_batch(
            ctx,
            tx,
            name,
            rows,
            (last.feed_id, last.event_id) if last else None,
            after_key,
            changes,
            [],
        )

    return ctx.run(name, _work)


def refresh_grouped_has_ended(
    ctx: MigrationContext, after_key: str | None = None
) -> MigrationReport:
    """Re-derive grouped rows whose ``has_ended`` is out of date."""
    name = PHASE_REFRESH_GROUPED
    after = decode_resume_key(after_key)

    def _work(tx: FeedTransactionProtocol) -> MigrationReport:
        rows = tx.scan_grouped_entries(after, ctx.size)
        now = ctx.clock()
        changes: list[RowChange] = []
        for row in rows:
            timing = FeedTiming(row.event_start_time, row.event_end_time, row.has_ended)
            if timing.refreshed(now).has_ended == row.has_ended:
                continue
            change = _rederive_grouped_row(ctx, tx, row.feed_id, row.similarity_group_id, row)
            if change is not None:
                changes.append(change)
        last = rows[-1] if rows else None
        return _finish_batch(
            ctx,
            tx,
            name,
            rows,
            (last.feed_id, last.similarity_group_id) if last else None,
            after_key,
            changes,
            [],
        )

    return ctx.run(name, _work)


# === 6. Split group diagnostics ===


def detect_split_groups(ctx: MigrationContext, after_key: str | None = None) -> MigrationReport:
    """Report distinct groups whose members are similar to each other.

    These come from near-simultaneous submissions that each minted a group.
    Groups are never merged; the report is for operators only.
    """
    name = JOB_DETECT_SPLIT_GROUPS
    after = decode_resume_key(after_key)

    def _work(tx: FeedTransactionProtocol) -> MigrationReport:
        events = tx.scan_events_by_creation(after, ctx.size)
        found: dict[tuple[str, str], SplitGroupPair] = {}
        for event in events:
            if event.similarity_group_id is None:
                continue
            for other in ctx.resolver.find_similar_events(tx, event, earlier_only=True):
                if other.similarity_group_id in (None, event.similarity_group_id):
                    continue
                pair = SplitGroupPair(
                    group_id=event.similarity_group_id,
                    other_group_id=other.similarity_group_id or "",
                    event_id=event.id,
                    other_event_id=other.id,
                )
                found.setdefault(pair.key, pair)
        last = events[-1] if events else None
        return _finish_batch(
            ctx,
            tx,
            name,
            events,
            (datetime_to_db(last.created_at), last.id) if last else None,
            after_key,
            [],
            [],
            list(found.values()),
        )

    report = ctx.run(name, _work)
    for pair in report.split_groups:
        logger.warning(
            "split_similarity_groups_detected",
            group_id=pair.group_id,
            other_group_id=pair.other_group_id,
            event_id=pair.event_id,
            other_event_id=pair.other_event_id,
        )
    return report


# === 7. Grouped row reconciliation ===


def _same_ignoring_has_ended(entry: GroupedFeedEntry | None, row: GroupedFeedEntry) -> bool:
    if entry is None:
        return False
    return entry.model_copy(update={"has_ended": row.has_ended}) == row


def reconcile_grouped_entries(
    ctx: MigrationContext, after_key: str | None = None
) -> MigrationReport:
    """Remove grouped rows without members and recompute rows that drifted.

    Each finding is logged as a consistency warning because it means an
    earlier write broke the membership/grouped-row atomicity.
    """
    name = JOB_RECONCILE_GROUPED_ENTRIES
    after = decode_resume_key(after_key)

    def _work(tx: FeedTransactionProtocol) -> MigrationReport:
        rows = tx.scan_grouped_entries(after, ctx.size)
        changes: list[RowChange] = []
        for row in rows:
            expected = ctx.materializer.compute_entry(tx, row.feed_id, row.similarity_group_id)
            if _same_ignoring_has_ended(expected, row):
                continue
            kind = "orphan_grouped_entry" if expected is None else "grouped_entry_drift"
            report_consistency_warning(kind, row.feed_id, row.similarity_group_id)
            if not ctx.dry_run:
                ctx.materializer.upsert(tx, row.feed_id, row.similarity_group_id)
            changes.append(
                RowChange(
                    table=GROUPED_TABLE,
                    key=_membership_key(row.feed_id, row.similarity_group_id),
                    before=row.model_dump(),
                    after=expected.model_dump() if expected else {},
                )
            )
        last = rows[-1] if rows else None
        return _finish_batch(
            ctx,
            tx,
            name,
            rows,
            (last.feed_id, last.similarity_group_id) if last else None,
            after_key,
            changes,
            [],
        )

    return ctx.run(name, _work)


# === Runner ===

BatchFn = Callable[[MigrationContext, str | None], MigrationReport]


@dataclass(frozen=True)
class MigrationPhase:
    """One resumable scan of a job, checkpointed under ``checkpoint_name``."""

    checkpoint_name: str
    run_batch: BatchFn


JOBS: Final[dict[str, tuple[MigrationPhase, ...]]] = {
    JOB_BACKFILL_EVENT_GROUPS: (
        MigrationPhase(JOB_BACKFILL_EVENT_GROUPS, backfill_event_similarity_groups),
    ),
    JOB_BACKFILL_MEMBERSHIP_GROUPS: (
        MigrationPhase(JOB_BACKFILL_MEMBERSHIP_GROUPS, backfill_membership_groups),
    ),
    JOB_DERIVE_GROUPED_ENTRIES: (
        MigrationPhase(JOB_DERIVE_GROUPED_ENTRIES, derive_grouped_entries),
    ),
    JOB_REPAIR_FEED_TIMESTAMPS: (
        MigrationPhase(PHASE_REPAIR_MEMBERSHIPS, repair_membership_timestamps),
        MigrationPhase(PHASE_REPAIR_GROUPED, repair_grouped_timestamps),
    ),
    JOB_REFRESH_HAS_ENDED: (
        MigrationPhase(PHASE_REFRESH_MEMBERSHIPS, refresh_membership_has_ended),
        MigrationPhase(PHASE_REFRESH_GROUPED, refresh_grouped_has_ended),
    ),
    JOB_DETECT_SPLIT_GROUPS: (MigrationPhase(JOB_DETECT_SPLIT_GROUPS, detect_split_groups),),
    JOB_RECONCILE_GROUPED_ENTRIES: (
        MigrationPhase(JOB_RECONCILE_GROUPED_ENTRIES, reconcile_grouped_entries),
    ),
}


def run_job_to_completion(
    ctx: MigrationContext,
    job_name: str,
    *,
    resume: bool = True,
    max_batches: int | None = None,
    correlation_id: str | None = None,
) -> MigrationReport:
    """Run every batch of a job until its scans are exhausted.

    Args:
        ctx: Migration context (repository, settings, dry-run flag, batch size)
        job_name: Key of ``JOBS``
        resume: Continue from stored checkpoints; ignored for dry runs, which
            always start from the beginning
        max_batches: Stop after this many batches (the checkpoint survives)

    Returns:
        Combined report; ``is_done`` is False when stopped by ``max_batches``

    Raises:
        ValidationError: Unknown job name
    """
    phases = JOBS.get(job_name)
    if phases is None:
        raise ValidationError(f"Unknown migration job: {job_name}")

    total = MigrationReport(job=job_name, dry_run=ctx.dry_run)
    batches = 0

    with correlation_scope(correlation_id, job=job_name):
        logger.info("migration_started", job=job_name, dry_run=ctx.dry_run, resume=resume)
        for phase in phases:
            after_key: str | None = None
            if not ctx.dry_run:
                if resume:
                    after_key = run_in_transaction(
                        ctx.repository,
                        lambda tx, name=phase.checkpoint_name: tx.get_checkpoint(name),
                        operation="read_checkpoint",
                        settings=ctx.settings,
                        read_only=True,
                    )
                else:
                    run_in_transaction(
                        ctx.repository,
                        lambda tx, name=phase.checkpoint_name: tx.save_checkpoint(name, None),
                        operation="reset_checkpoint",
                        settings=ctx.settings,
                    )
            if after_key is not None:
                logger.info(
                    "migration_resumed", phase=phase.checkpoint_name, after_key=after_key
                )

            while True:
                if max_batches is not None and batches >= max_batches:
                    logger.info("migration_paused", job=job_name, batches=batches)
                    return total.model_copy(update={"is_done": False})
                batch = phase.run_batch(ctx, after_key)
                total = total.merge(batch)
                batches += 1
                logger.info(
                    "migration_batch_done",
                    phase=phase.checkpoint_name,
                    processed=batch.processed,
                    changed=batch.changed,
                    skipped=len(batch.skipped),
                    last_processed_key=batch.last_processed_key,
                )
                if batch.is_done:
                    break
                after_key = batch.last_processed_key

        logger.info(
            "migration_completed",
            job=job_name,
            dry_run=ctx.dry_run,
            processed=total.processed,
            changed=total.changed,
            skipped=len(total.skipped),
        )
        return total.model_copy(update={"is_done": True})
