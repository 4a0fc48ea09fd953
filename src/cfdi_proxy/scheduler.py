"""
Scheduler — periodic polling of a submitted bulk request.

Infrastructure layer — uses APScheduler (3.x) for lightweight in-process
scheduling driven by a fixed interval.

A bulk request can take from minutes to days to finish. The poller
verifies it every `interval_minutes` (5 by default) and stops itself once
the request reaches a terminal state or `max_hours` (72 by default) have
elapsed since the poller was created.

Each tick is wrapped in a LoggingExecutionContext for structured
observability (timing, success/failure logging).

Graceful shutdown: handles SIGINT/SIGTERM to stop the scheduler cleanly.
"""

from __future__ import annotations

import signal
import sys
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from cfdi_proxy.jobs import PollReport
from cfdi_proxy.railway import LoggingExecutionContext, Result

log = structlog.get_logger()

JOB_ID = "bulk_poll"


def _utc_now() -> datetime:
    return datetime.now(UTC)


def create_bulk_poller(
    poll_fn: Callable[[], Result[PollReport]],
    interval_minutes: int = 5,
    max_hours: int = 72,
    poll_on_startup: bool = True,
    clock: Callable[[], datetime] = _utc_now,
) -> BlockingScheduler:
    """
    Create a configured APScheduler that polls one bulk request.

    Args:
        poll_fn: Zero-argument callable running one poll tick.
        interval_minutes: Minutes between two ticks.
        max_hours: Give up after this many hours without a terminal state.
        poll_on_startup: If True, poll once immediately before entering the loop.
        clock: Source of the current time.

    Returns:
        A configured BlockingScheduler (call .start() to begin). When the
        startup poll already reached a terminal state the scheduler holds
        no job and there is nothing to start.
    """
    scheduler = BlockingScheduler()
    ctx = LoggingExecutionContext(operation="BulkPoll")
    deadline = clock() + timedelta(hours=max_hours)

    def _stop(reason: str) -> None:
        log.info("scheduler.poll_stopped", reason=reason)
        if scheduler.get_job(JOB_ID) is not None:
            scheduler.remove_job(JOB_ID)
        if scheduler.running:
            scheduler.shutdown(wait=False)

    def _job() -> None:
        """Run one tick within the logging context and stop when done."""
        result = ctx.execute(poll_fn)
        if result.is_success():
            report = result.value()
            log.info(
                "scheduler.poll_completed",
                status=report.verification.status.value,
                packages_written=len(report.written),
                packages_failed=len(report.failures),
            )
            if report.is_terminal:
                _stop(f"request {report.verification.status.value}")
                return
        else:
            log.error("scheduler.poll_failed", failure=str(result.error()))

        if clock() >= deadline:
            log.warning("scheduler.poll_deadline_reached", max_hours=max_hours)
            _stop("deadline reached")

    scheduler.add_job(
        _job,
        trigger=IntervalTrigger(minutes=interval_minutes),
        id=JOB_ID,
        name="Bulk request poll",
        replace_existing=True,
    )

    if poll_on_startup:
        log.info("scheduler.startup_poll", message="Polling the bulk request immediately")
        _job()

    _register_shutdown_signals(scheduler)

    return scheduler


def _register_shutdown_signals(scheduler: BlockingScheduler) -> None:
    """Register SIGINT and SIGTERM handlers for graceful shutdown."""

    def _shutdown(signum: int, frame: object) -> None:
        sig_name = signal.Signals(signum).name
        log.info("scheduler.shutdown_requested", signal=sig_name)
        if scheduler.running:
            scheduler.shutdown(wait=False)
        sys.exit(0)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
