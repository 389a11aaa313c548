"""Run a feed engine backfill or repair job.

Examples:
    python scripts/run_migration.py --job backfill_event_similarity_groups --dry-run
    python scripts/run_migration.py --job derive_grouped_entries --batch-size 500
    python scripts/run_migration.py --job repair_feed_timestamps --restart
"""

import argparse
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from feed_engine.adapters.repository_factory import create_repository
from feed_engine.config.logging_config import get_logger, setup_logging
from feed_engine.config.settings import get_settings
from feed_engine.domain.exceptions import FeedEngineError
from feed_engine.use_cases.migrations import JOBS, MigrationContext, run_job_to_completion

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a feed engine migration job")
    parser.add_argument(
        "--job",
        required=True,
        choices=sorted(JOBS),
        help="Job to run",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Rows per batch (default: migrations.batch_size from config)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report the changes without writing anything",
    )
    resume_group = parser.add_mutually_exclusive_group()
    resume_group.add_argument(
        "--resume",
        dest="resume",
        action="store_true",
        default=True,
        help="Continue from the stored checkpoint (default)",
    )
    resume_group.add_argument(
        "--restart",
        dest="resume",
        action="store_false",
        help="Clear the checkpoint and start from the beginning",
    )
    parser.add_argument(
        "--max-batches",
        type=int,
        default=None,
        help="Stop after this many batches; rerun to continue",
    )
    parser.add_argument(
        "--show-changes",
        action="store_true",
        help="Include every changed and skipped row in the printed report",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs in JSON format",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    settings = get_settings()
    setup_logging(log_level=settings.log_level, json_logs=args.json_logs or settings.log_json)

    repository = create_repository(settings)
    try:
        ctx = MigrationContext(
            repository=repository,
            settings=settings,
            dry_run=args.dry_run,
            batch_size=args.batch_size,
        )
        report = run_job_to_completion(
            ctx, args.job, resume=args.resume, max_batches=args.max_batches
        )
    except FeedEngineError as exc:
        logger.error("migration_failed", job=args.job, error=str(exc))
        return 1
    finally:
        repository.close()

    summary = {
        "job": report.job,
        "dry_run": report.dry_run,
        "processed": report.processed,
        "changed": report.changed,
        "skipped": len(report.skipped),
        "split_groups": [pair.model_dump() for pair in report.split_groups],
        "is_done": report.is_done,
    }
    if args.show_changes:
        summary["changes"] = [change.model_dump() for change in report.changes]
        summary["skipped_rows"] = [row.model_dump() for row in report.skipped]
    print(json.dumps(summary, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
