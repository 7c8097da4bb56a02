#!/usr/bin/env python3
"""
Worker process — runs the Scheduler and the conversation sweeper until
SIGINT/SIGTERM, then drains and exits.

Usage:
    converse-worker
    converse-worker --config config/settings.yaml --workers 4
    python -m job_queue.runner --check      # connectivity check only

Several processes may run against the same Redis: the queue hands each
job to exactly one of them.
"""
from __future__ import annotations

import argparse
import asyncio
import signal
import sys

import structlog
from dotenv import load_dotenv

from config.settings import load_settings
from core.bootstrap import build_runtime
from database.conversation_store import ConversationSweeper
from job_queue.scheduler import Scheduler
from models.errors import TransientInfraError
from utils.log_setup import configure_logging

logger = structlog.get_logger()


async def main(config_path: str = None, workers: int = None, check_only: bool = False) -> int:
    settings = load_settings(config_path)
    configure_logging(settings.log_level, settings.log_format)
    if workers:
        settings.worker.max_workers = workers

    runtime = build_runtime(settings)
    try:
        await runtime.connect()
        await runtime.check_connections()
    except TransientInfraError as e:
        logger.error("worker_startup_failed", error=str(e))
        await runtime.close()
        return 1

    if check_only:
        await runtime.close()
        return 0

    cfg = settings.worker
    scheduler = Scheduler(
        runtime.queue,
        runtime.build_workers(),
        audit=runtime.audit,
        poll_interval=cfg.poll_interval,
        batch_cap=cfg.batch_cap,
        monitor_interval=cfg.monitor_interval,
        overload_factor=cfg.overload_factor,
        cleanup_interval_hours=cfg.cleanup_interval_hours,
        cleanup_max_age_hours=cfg.cleanup_max_age_hours,
        stale_after_seconds=cfg.stale_after_seconds,
    )
    sweeper = ConversationSweeper(runtime.conversations, settings.conversation.sweep_interval)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await scheduler.start_background()
    await sweeper.start_background()
    logger.info("worker_process_started",
                app=settings.app_name,
                workers=cfg.max_workers,
                store=settings.store.backend)

    await stop.wait()
    logger.info("worker_process_stopping")

    # Drain in-flight jobs before closing the store connections
    await scheduler.stop()
    await sweeper.stop()
    await runtime.close()
    logger.info("worker_process_stopped")
    return 0


def run():
    load_dotenv()
    parser = argparse.ArgumentParser(description="Conversation job worker")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    parser.add_argument("--workers", type=int, default=None, help="Override worker.max_workers")
    parser.add_argument("--check", action="store_true", help="Check connectivity and exit")
    args = parser.parse_args()

    sys.exit(asyncio.run(main(args.config, args.workers, args.check)))


if __name__ == "__main__":
    run()
