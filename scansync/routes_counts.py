import logging
from typing import Optional, Dict, Any

from fastapi import APIRouter, Body, Depends, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from scansync.auth_utils import get_store, get_team_member, require_count_permission, request_info
from scansync.config import COUNT_LIST_DEFAULT, COUNT_LIST_MAX
from scansync.conflicts import Accepted, Conflict, Rejected, record_count, CONFLICT_DETECTED
from scansync.pubsub_utils import _broadcast
from scansync.schemas import CountEntry, BatchCountRequest, validation_details

router = APIRouter(prefix="/api/inventory")
log = logging.getLogger(__name__)


def _validation_response(e: ValidationError) -> JSONResponse:
    return JSONResponse(
        {"error": "Validation error", "details": validation_details(e.errors())},
        status_code=400,
    )


@router.post("/count")
def submit_count(
    request: Request,
    body: Dict[str, Any] = Body(...),
    member: Dict[str, Any] = Depends(require_count_permission),
    store=Depends(get_store),
):
    """
    Records one count, or a batch of counts when the body carries a `counts`
    list (devices flushing their offline queue).
    """
    try:
        if isinstance(body.get("counts"), list):
            batch = BatchCountRequest.model_validate(body)
            return _handle_batch(store, member, batch, request_info(request))
        entry = CountEntry.model_validate(body)
    except ValidationError as e:
        return _validation_response(e)

    return _handle_single(store, member, entry, request_info(request))


def _handle_single(store, member, entry: CountEntry, info) -> JSONResponse:
    outcome = record_count(store, member, entry, request_info=info)

    if isinstance(outcome, Conflict):
        return JSONResponse(
            {"error": CONFLICT_DETECTED, "conflict_data": outcome.conflict_data()},
            status_code=409,
        )
    if isinstance(outcome, Rejected):
        if outcome.status_code == 404:
            return JSONResponse({"error": outcome.reason}, status_code=404)
        return JSONResponse({"error": "Failed to record count"}, status_code=outcome.status_code or 500)

    saved = outcome.data["data"]
    _broadcast("count.created", saved)
    return JSONResponse(
        jsonable_encoder(outcome.data),
        status_code=201,
        headers={"X-Sync-Status": "synced", "X-Count-ID": str(saved["id"])},
    )


def _handle_batch(store, member, batch: BatchCountRequest, info) -> JSONResponse:
    results: Dict[str, Any] = {
        "processed": 0,
        "failed": 0,
        "conflicts": 0,
        "errors": [],
        "count_ids": [],
    }
    batch_session_id = str(batch.session_id) if batch.session_id else None

    # Entries are independent: one failure never blocks the ones after it
    for index, entry in enumerate(batch.counts):
        try:
            outcome = record_count(
                store, member, entry,
                request_info=info,
                batch=batch.sync_metadata,
                batch_session_id=batch_session_id,
            )
        except Exception as e:
            log.exception("Batch %s entry %d failed", batch.sync_metadata.batch_id, index)
            outcome = Rejected(reason=str(e) or "Unknown error", status_code=500, retryable=True)

        if isinstance(outcome, Accepted):
            saved = outcome.data["data"]
            results["processed"] += 1
            results["count_ids"].append(str(saved["id"]))
            _broadcast("count.created", saved)
        elif isinstance(outcome, Conflict):
            results["conflicts"] += 1
            results["errors"].append({
                "index": index,
                "product_id": str(entry.product_id),
                "error": CONFLICT_DETECTED,
                "conflict_data": outcome.conflict_data(),
            })
        else:
            results["failed"] += 1
            results["errors"].append({
                "index": index,
                "product_id": str(entry.product_id),
                "error": outcome.reason,
            })

    log.info(
        "Batch %s from device %s: %d processed, %d failed, %d conflicts",
        batch.sync_metadata.batch_id, batch.sync_metadata.device_id,
        results["processed"], results["failed"], results["conflicts"],
    )

    return JSONResponse(
        jsonable_encoder({"batch_result": results, "sync_metadata": batch.sync_metadata}),
        # 207 Multi-Status if some failed
        status_code=201 if results["failed"] == 0 else 207,
        headers={
            "X-Batch-Size": str(len(batch.counts)),
            "X-Processed": str(results["processed"]),
            "X-Failed": str(results["failed"]),
            "X-Conflicts": str(results["conflicts"]),
        },
    )


@router.get("/count")
def list_counts(
    product_id: Optional[str] = Query(None),
    session_id: Optional[str] = Query(None),
    limit: int = Query(COUNT_LIST_DEFAULT, ge=1),
    offset: int = Query(0, ge=0),
    member: Dict[str, Any] = Depends(get_team_member),
    store=Depends(get_store),
):
    limit = min(limit, COUNT_LIST_MAX)
    counts = store.list_counts(
        member["business_id"],
        product_id=product_id,
        session_id=session_id,
        limit=limit,
        offset=offset,
    )
    return {
        "data": counts,
        "pagination": {"limit": limit, "offset": offset, "has_more": len(counts) == limit},
    }
