"""
Admin/Operator API

Outbox status and dead-letter management.
"""

from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Header, Query

from ...core.database.adapter import get_database
from ...core.outbox.dlq import DLQManager
from ...core.outbox.relay import get_outbox_relay
from ...core.outbox.store import OutboxStore
from ..shared.exceptions import NotFoundError

router = APIRouter(prefix="/api/admin", tags=["admin"])


async def _dlq_manager() -> DLQManager:
    return DLQManager(await get_database())


# Outbox Status Endpoints

@router.get("/outbox/stats")
async def outbox_stats() -> Dict[str, Any]:
    """Get outbox record counts per status and relay counters."""
    store = OutboxStore(await get_database())
    relay = get_outbox_relay()
    return {
        "outbox": await store.stats(),
        "relay": {
            "running": relay.is_running if relay else False,
            **(relay.stats.to_dict() if relay else {}),
        },
    }


# DLQ Management Endpoints

@router.get("/dlq")
async def list_dlq_entries(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    aggregate_id: Optional[str] = None,
) -> Dict[str, Any]:
    """List dead outbox records, newest first."""
    manager = await _dlq_manager()
    entries = await manager.get_entries(limit=limit, offset=offset, aggregate_id=aggregate_id)
    total = await manager.get_count(aggregate_id)
    return {
        "entries": [entry.to_dict() for entry in entries],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/dlq/stats")
async def dlq_stats() -> Dict[str, Any]:
    """Get DLQ statistics."""
    manager = await _dlq_manager()
    return await manager.get_stats()


@router.post("/dlq/retry-all")
async def retry_all_dlq(
    aggregate_id: Optional[str] = None,
    x_operator_id: Optional[str] = Header(None),
) -> Dict[str, Any]:
    """Retry all DLQ entries."""
    manager = await _dlq_manager()
    count = await manager.retry_all(aggregate_id=aggregate_id, operator_id=x_operator_id)
    return {"status": "queued_for_retry", "count": count}


@router.post("/dlq/{entry_id}/retry")
async def retry_dlq_entry(
    entry_id: UUID,
    x_operator_id: Optional[str] = Header(None),
) -> Dict[str, Any]:
    """Return a dead record to pending with its attempts reset."""
    manager = await _dlq_manager()
    if not await manager.retry_entry(entry_id, operator_id=x_operator_id):
        raise NotFoundError("DLQ entry", str(entry_id))
    return {"status": "queued_for_retry", "entry_id": str(entry_id)}


@router.delete("/dlq/{entry_id}")
async def purge_dlq_entry(
    entry_id: UUID,
    x_operator_id: Optional[str] = Header(None),
) -> Dict[str, Any]:
    """Permanently delete a DLQ entry."""
    manager = await _dlq_manager()
    if not await manager.purge_entry(entry_id, operator_id=x_operator_id):
        raise NotFoundError("DLQ entry", str(entry_id))
    return {"status": "purged", "entry_id": str(entry_id)}
