# conflicts.py
"""
Conflict detection and the tagged outcome shared by the count endpoints and
the device sync agent.

Every count submission ends as exactly one of:

    Accepted  -> the count was recorded (and applied if verified)
    Conflict  -> expected_previous_quantity did not match the stored quantity
    Rejected  -> anything else; `retryable` tells the agent whether replaying
                 the same payload later can succeed
"""
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Union, Literal
from uuid import uuid4

from pydantic import BaseModel

from scansync.schemas import CountEntry, SyncMetadata

log = logging.getLogger(__name__)

PRODUCT_NOT_FOUND = "Product not found"
SESSION_NOT_FOUND = "Session not found"
CONFLICT_DETECTED = "Conflict detected"
INSERT_FAILED = "Database insert failed"

# --- Tagged outcome ---
class Accepted(BaseModel):
    kind: Literal["accepted"] = "accepted"
    data: Dict[str, Any] = {}
    status_code: int = 200

class Conflict(BaseModel):
    kind: Literal["conflict"] = "conflict"
    expected: int
    actual: int
    product_name: Optional[str] = None

    def conflict_data(self) -> Dict[str, Any]:
        return {"expected": self.expected, "actual": self.actual, "product_name": self.product_name}

class Rejected(BaseModel):
    kind: Literal["rejected"] = "rejected"
    reason: str
    status_code: Optional[int] = None
    retryable: bool = False

Outcome = Union[Accepted, Conflict, Rejected]


def detect_conflict(product: Dict[str, Any], expected_previous_quantity: Optional[int]) -> Optional[Conflict]:
    """
    Compare the client's assumed prior quantity with the authoritative one.
    No expectation means a blind count: nothing to compare.
    """
    if expected_previous_quantity is None:
        return None
    actual = int(product.get("current_quantity") or 0)
    if actual == expected_previous_quantity:
        return None
    return Conflict(expected=expected_previous_quantity, actual=actual, product_name=product.get("name"))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def merge_device_info(
    entry: CountEntry,
    request_info: Optional[Dict[str, Any]] = None,
    batch: Optional[SyncMetadata] = None,
) -> Dict[str, Any]:
    info: Dict[str, Any] = entry.device_info.model_dump(exclude_none=True) if entry.device_info else {}
    request_info = request_info or {}
    info["user_agent"] = request_info.get("user_agent")
    info["ip"] = request_info.get("ip")
    info["received_at"] = _now_iso()
    if batch is not None:
        info["batch_id"] = batch.batch_id
        info["device_id"] = batch.device_id
    return info


def build_count_record(
    entry: CountEntry,
    product: Dict[str, Any],
    member: Dict[str, Any],
    request_info: Optional[Dict[str, Any]] = None,
    batch: Optional[SyncMetadata] = None,
    batch_session_id: Optional[str] = None,
) -> Dict[str, Any]:
    previous = int(product.get("current_quantity") or 0)
    session_id = entry.session_id or batch_session_id
    return {
        "id": str(uuid4()),
        "business_id": member["business_id"],
        "product_id": str(entry.product_id),
        "quantity": entry.quantity,
        "previous_quantity": previous,
        "difference": entry.quantity - previous,
        "counted_by": member["user_id"],
        "location": entry.location,
        "notes": entry.notes,
        "session_id": str(session_id) if session_id else None,
        "device_info": merge_device_info(entry, request_info, batch),
        "gps_coordinates": entry.gps_coordinates.model_dump() if entry.gps_coordinates else None,
        "images": list(entry.images),
        "voice_notes": list(entry.voice_notes),
        "network_quality": entry.device_info.network_quality if entry.device_info else None,
        "sync_priority": entry.sync_priority,
        "verified": entry.verified,
        "offline_synced": True,
        "counted_at": entry.offline_timestamp.isoformat() if entry.offline_timestamp else _now_iso(),
    }


def record_count(
    store,
    member: Dict[str, Any],
    entry: CountEntry,
    *,
    request_info: Optional[Dict[str, Any]] = None,
    batch: Optional[SyncMetadata] = None,
    batch_session_id: Optional[str] = None,
) -> Outcome:
    """
    Evaluate one count against the store. Used for single submissions and for
    every entry of a batch, so both paths share the same ownership check,
    conflict rule and metadata merge.
    """
    product = store.get_product(member["business_id"], str(entry.product_id))
    if not product:
        return Rejected(reason=PRODUCT_NOT_FOUND, status_code=404, retryable=False)

    session_id = entry.session_id or batch_session_id
    if session_id and not store.get_session(member["business_id"], str(session_id)):
        return Rejected(reason=SESSION_NOT_FOUND, status_code=404, retryable=False)

    conflict = detect_conflict(product, entry.expected_previous_quantity)
    if conflict is not None:
        return conflict

    record = build_count_record(entry, product, member, request_info, batch, batch_session_id)
    try:
        saved = store.insert_count(record, apply_quantity=entry.verified)
    except Exception:
        log.exception("Failed to record count for product %s", record["product_id"])
        return Rejected(reason=INSERT_FAILED, status_code=500, retryable=True)

    return Accepted(
        status_code=201,
        data={
            "data": saved,
            "previous_quantity": record["previous_quantity"],
            "quantity_change": record["difference"],
        },
    )
