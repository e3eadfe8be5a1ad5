#!/usr/bin/env python3
"""
Run the job dispatcher against the configured database.

Loads configuration through get_active_config(), initializes the engine,
and runs the dispatcher loop until interrupted (or a single pass with
--once).  Uses the in-memory provider; a real cluster provider is wired
in the same place.

Usage:
    python3 scripts/run_worker.py --create-tables
    python3 scripts/run_worker.py --once
    SHEPHERD_CONFIG=/etc/shepherd.yaml DATABASE_URL=postgresql://... python3 scripts/run_worker.py
    python3 scripts/run_worker.py --retention
"""

import argparse
import signal
import sys
import threading
from datetime import timedelta
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from shepherd_config import get_active_config, log_level  # noqa: E402
from shepherd_engines.backoff import BackoffPolicy  # noqa: E402
from shepherd_kernel.db.engine import (  # noqa: E402
    create_tables,
    get_session_factory,
    init_engine_from_url,
)
from shepherd_kernel.domain.clock import SystemClock  # noqa: E402
from shepherd_kernel.logging_config import configure_logging, get_logger  # noqa: E402
from shepherd_kernel.services.retention import RetentionService  # noqa: E402
from shepherd_worker.dispatcher import JobDispatcher  # noqa: E402
from shepherd_worker.provider.memory import InMemoryProvider  # noqa: E402

logger = get_logger("scripts.run_worker")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run the VM governance job dispatcher.")
    parser.add_argument("--config", type=Path, default=None, help="YAML config file")
    parser.add_argument("--worker-id", default=None, help="Lease owner name (default: random)")
    parser.add_argument("--create-tables", action="store_true", help="Create tables before starting")
    parser.add_argument("--once", action="store_true", help="Run a single dispatch pass and exit")
    parser.add_argument("--retention", action="store_true", help="Run one retention pass and exit")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    config = get_active_config(args.config)
    configure_logging(level=log_level(config))

    db = config.database
    engine = init_engine_from_url(
        db.url,
        echo=db.echo,
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
        pool_timeout=db.pool_timeout,
        sqlite_busy_timeout=db.sqlite_busy_timeout,
    )
    if args.create_tables:
        create_tables(engine)
        logger.info("tables_created")

    session_factory = get_session_factory()
    clock = SystemClock()

    if args.retention:
        retention = RetentionService(
            session_factory, clock,
            conflict_attempts=config.retry.transaction_conflict_attempts,
        )
        archived = retention.archive_terminal_events(
            timedelta(days=config.retention.archive_events_after_days)
        )
        pruned = retention.prune_finished_jobs(
            timedelta(days=config.retention.prune_jobs_after_days)
        )
        print(f"archived {archived} events, pruned {pruned} jobs")
        return 0

    worker, retry = config.worker, config.retry
    dispatcher = JobDispatcher(
        session_factory,
        InMemoryProvider(),
        clock=clock,
        worker_id=args.worker_id,
        poll_interval=worker.poll_interval_seconds,
        lease_seconds=worker.lease_seconds,
        provider_timeout=worker.provider_timeout_seconds,
        backoff=BackoffPolicy(
            base_seconds=retry.backoff_base_seconds,
            multiplier=retry.backoff_multiplier,
            max_seconds=retry.backoff_max_seconds,
        ),
        conflict_attempts=retry.transaction_conflict_attempts,
        general_pool_size=worker.general_pool_size,
        provider_pool_size=worker.provider_pool_size,
    )

    if args.once:
        cycle = dispatcher.run_once(wait=True)
        dispatcher.stop(timeout=worker.shutdown_timeout_seconds)
        print(
            f"leased {cycle.leased} job(s); reclaimed {cycle.maintenance.reclaimed}, "
            f"promoted {cycle.maintenance.promoted}"
        )
        return 0

    shutdown = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: shutdown.set())
    signal.signal(signal.SIGTERM, lambda *_: shutdown.set())

    dispatcher.start()
    print(f"dispatcher {dispatcher.worker_id} running; Ctrl-C to stop")
    shutdown.wait()
    clean = dispatcher.stop(timeout=worker.shutdown_timeout_seconds)
    return 0 if clean else 1


if __name__ == "__main__":
    sys.exit(main())
