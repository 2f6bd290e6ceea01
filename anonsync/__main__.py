"""CLI entry-point:  python -m anonsync [OPTIONS]

Examples:
    python -m anonsync --config sync.yaml
    python -m anonsync --config sync.yaml --from staging --workers 8 -v
    MIGRATION_FROM=production python -m anonsync
"""

import argparse
import logging
import os
import sys

from .client import Replicator, succeeded
from .errors import SyncConnectionError

logger = logging.getLogger(__name__)


def _log_summary(results: list) -> None:
    """Print a human-readable summary of sync results."""
    totals = {"rows_fetched": 0, "rows_upserted": 0, "rows_deleted": 0}
    failed = []
    skipped = 0

    logger.info("=" * 72)
    logger.info("SYNC SUMMARY")
    logger.info("=" * 72)

    for r in results:
        hop = f"{r.get('source', '?')}->{r.get('target', '?')}"
        name = f"{hop} {r['table']}"
        status = r.get("status")

        if status == "skipped":
            skipped += 1
            logger.info("  %-40s  skipped", name)
            continue
        if status in ("error", "partial"):
            failed.append(r)
            for err in r.get("errors", []):
                logger.error("  %-40s  %s: %s", name, status.upper(), err)
            if status == "error":
                continue

        for k in totals:
            totals[k] += r.get(k, 0)
        logger.info(
            "  %-40s  %8d fetched | %8d upserted | %6d deleted | %6.1fs",
            name, r["rows_fetched"], r["rows_upserted"], r["rows_deleted"],
            r.get("duration_seconds", 0),
        )

    logger.info("-" * 72)
    logger.info(
        "Completed: %d table(s) | %d skipped | %d fetched | %d upserted | %d deleted",
        len(results) - len(failed) - skipped, skipped,
        totals["rows_fetched"], totals["rows_upserted"], totals["rows_deleted"],
    )
    if failed:
        logger.warning("Failed: %d table(s)", len(failed))
    logger.info("=" * 72)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="anonsync",
        description="Copy a database down a chain of environments, anonymizing sensitive columns.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to YAML or JSON config file (default: DB_* environment variables)",
    )
    direction = parser.add_mutually_exclusive_group()
    direction.add_argument(
        "--from",
        dest="source",
        choices=["production", "staging"],
        default=None,
        help="Run one hop: production->staging or staging->local "
             "(default: $MIGRATION_FROM)",
    )
    direction.add_argument(
        "--chain",
        default=None,
        help="Comma-separated database names to sync in order (overrides config)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of chunks of one table to sync in parallel (overrides config)",
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=None,
        help="Rows per chunk (overrides config)",
    )
    parser.add_argument(
        "--strategy",
        choices=["native", "case"],
        default=None,
        help="Upsert strategy (overrides config)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug-level logging",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    chain = args.chain.split(",") if args.chain else None
    source = args.source or (None if chain else os.environ.get("MIGRATION_FROM"))

    try:
        overrides = dict(
            max_workers=args.workers,
            chunk_size=args.chunk_size,
            update_strategy=args.strategy,
        )
        if args.config:
            rep = Replicator.from_config(args.config, chain=chain, **overrides)
        else:
            rep = Replicator.from_env(
                chain=chain,
                **{k: v for k, v in overrides.items() if v is not None},
            )
    except Exception as exc:
        logger.error("Failed to load config: %s", exc)
        sys.exit(1)

    logger.info("Replicator: %s", rep)

    try:
        with rep:
            results = rep.sync_from(source) if source else rep.sync_chain()
    except SyncConnectionError as exc:
        _log_summary(getattr(exc, "results", []))
        logger.error("Sync aborted: %s", exc)
        sys.exit(1)
    except Exception as exc:
        logger.error("Sync failed: %s", exc)
        sys.exit(1)

    _log_summary(results)

    if not succeeded(results):
        logger.error("Sync finished with failures")
        sys.exit(1)
    logger.info("Sync finished successfully")


if __name__ == "__main__":
    main()
