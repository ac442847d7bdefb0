# ==== SLA MONITOR FLOW ==== #

"""
Scheduled deadline sweep.

Runs one ``DeadlineMonitor`` pass per flow run: escalates NDRs past their
resolution deadline (auto-triggering RTOs where the workflow says so),
flags return orders that missed a pickup, QC or refund deadline, and runs
NDR workflow actions that have come due. Every claim is a conditional
update, so overlapping runs never act on the same entity twice.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

from prefect import flow, get_run_logger, task

from reverse_logistics.integrations.http_clients import close_collaborators, get_collaborators
from reverse_logistics.observability.logging import init_logging
from reverse_logistics.services.rto_engine import RTOEngine
from reverse_logistics.services.sla_monitor import DeadlineMonitor
from reverse_logistics.settings import settings
from reverse_logistics.storage.db import init_database


@task(retries=1, retry_delay_seconds=30)
async def sweep_deadlines(batch_size: Optional[int] = None, concurrency: Optional[int] = None) -> Dict[str, Any]:
    """
    Run a single sweep over every deadline kind.

    Args:
        batch_size: Candidates fetched per kind (defaults to settings)
        concurrency: Entities processed in parallel (defaults to settings)

    Returns:
        Sweep counters (escalations, auto RTOs, breaches, actions, failures)
    """
    logger = get_run_logger()
    collaborators = get_collaborators()
    monitor = DeadlineMonitor(
        collaborators,
        rto_engine=RTOEngine(collaborators),
        batch_size=batch_size,
        concurrency=concurrency,
    )

    report = await monitor.sweep_once()
    counters = report.to_dict()
    if report.failures:
        logger.warning(f"Deadline sweep finished with {report.failures} failed entities: {counters}")
    else:
        logger.info(f"Deadline sweep completed: {counters}")
    return counters


@flow(name="sla-deadline-monitor")
async def sla_monitor_flow(batch_size: Optional[int] = None, concurrency: Optional[int] = None) -> Dict[str, Any]:
    """
    Deadline monitor entry point, scheduled every few minutes.

    Args:
        batch_size: Candidates fetched per deadline kind
        concurrency: Entities processed in parallel

    Returns:
        Sweep counters with the run timestamp
    """
    logger = get_run_logger()
    logger.info("Starting deadline monitor sweep")

    init_database()
    counters = await sweep_deadlines(batch_size, concurrency)

    return {
        "swept_at": datetime.utcnow().isoformat(),
        "report": counters,
    }


async def _run_once() -> Dict[str, Any]:
    try:
        return await sla_monitor_flow()
    finally:
        await close_collaborators()


# ==== COMMAND LINE INTERFACE ==== #


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="SLA deadline monitor")
    parser.add_argument("--serve", action="store_true", help="Serve the flow on its cron schedule")
    parser.add_argument("--run", action="store_true", help="Run one sweep locally")
    parser.add_argument("--cron", default=settings.PREFECT_SLA_MONITOR_CRON, help="Cron schedule for --serve")

    args = parser.parse_args()
    init_logging(settings.LOG_LEVEL, None)

    if args.serve:
        print(f"Serving deadline monitor on schedule '{args.cron}'...")
        sla_monitor_flow.serve(
            name="sla-deadline-monitor",
            tags=["sla", "ndr", "returns"],
            cron=args.cron,
        )

    elif args.run:
        result = asyncio.run(_run_once())
        print(f"Flow completed: {result}")

    else:
        print("Usage: python flows/sla_monitor_flow.py [--run|--serve] [--cron EXPR]")
        print("  --run: Execute one sweep locally")
        print("  --serve: Start flow server with the cron schedule")
