# ==== NDR TRACKING FLOW ==== #

"""
Batch intake of courier tracking updates.

Couriers that deliver tracking as files or polling batches instead of
per-event webhooks go through this flow. Each update runs in its own
transaction so one bad update never rolls back the rest.
"""

import asyncio
import json
from typing import Any, Dict, List, Tuple

from prefect import flow, get_run_logger, task
from pydantic import ValidationError

from reverse_logistics.business.access import Actor
from reverse_logistics.integrations.http_clients import close_collaborators, get_collaborators
from reverse_logistics.observability.logging import init_logging
from reverse_logistics.schemas.ndr import TrackingUpdateRequest
from reverse_logistics.services.ndr_detector import TrackingUpdate
from reverse_logistics.services.ndr_pipeline import NDRPipeline
from reverse_logistics.settings import settings
from reverse_logistics.storage.db import init_database


@task
def parse_tracking_updates(raw_updates: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Validate raw tracking payloads.

    Returns:
        ``valid`` payloads in normalized JSON form and the ``rejected``
        payloads with their validation errors
    """
    logger = get_run_logger()
    valid: List[Dict[str, Any]] = []
    rejected: List[Dict[str, Any]] = []

    for raw in raw_updates:
        try:
            request = TrackingUpdateRequest.model_validate(raw)
        except ValidationError as e:
            rejected.append({"payload": raw, "errors": e.errors(include_url=False)})
            continue
        valid.append(request.model_dump(mode="json"))

    if rejected:
        logger.warning(f"Rejected {len(rejected)} malformed tracking updates")
    return {"valid": valid, "rejected": rejected}


@task(retries=2, retry_delay_seconds=60)
async def process_tracking_updates(payloads: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Run updates through detection, classification and workflow start."""
    logger = get_run_logger()
    pipeline = NDRPipeline(get_collaborators())
    updates: List[Tuple[str, TrackingUpdate]] = []
    for payload in payloads:
        request = TrackingUpdateRequest.model_validate(payload)
        updates.append((request.shipment_id, request.to_domain()))

    summary = await pipeline.process_batch(updates, Actor.system("tracking-ingest"))
    logger.info(
        f"Processed {summary['processed']} tracking updates, "
        f"{len(summary['ndrs'])} NDRs touched, {len(summary['errors'])} errors"
    )
    return summary


@flow(name="ndr-tracking-ingest")
async def ndr_tracking_flow(raw_updates: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Ingest a batch of tracking updates.

    Args:
        raw_updates: Tracking payloads shaped like ``POST /ndr/tracking`` bodies

    Returns:
        Processing summary with rejected payloads
    """
    logger = get_run_logger()
    logger.info(f"Starting tracking ingest for {len(raw_updates)} updates")

    init_database()
    parsed = parse_tracking_updates(raw_updates)
    summary = await process_tracking_updates(parsed["valid"])

    return {
        "received": len(raw_updates),
        "processed": summary["processed"],
        "ndr_ids": summary["ndrs"],
        "errors": summary["errors"],
        "rejected": len(parsed["rejected"]),
    }


async def _run_file(path: str) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as handle:
        raw_updates = json.load(handle)
    try:
        return await ndr_tracking_flow(raw_updates)
    finally:
        await close_collaborators()


# ==== COMMAND LINE INTERFACE ==== #


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Batch courier tracking ingest")
    parser.add_argument("file", help="JSON file holding a list of tracking updates")

    args = parser.parse_args()
    init_logging(settings.LOG_LEVEL, None)

    result = asyncio.run(_run_file(args.file))
    print(f"Flow completed: {result}")
