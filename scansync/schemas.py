# schemas.py
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field

from scansync.config import BATCH_MAX_COUNTS

# --- Count models ---
class DeviceInfo(BaseModel):
    device_id: Optional[str] = None
    device_type: Optional[str] = None
    app_version: Optional[str] = None
    network_quality: Optional[Literal["excellent", "good", "poor", "offline"]] = None

class GpsCoordinates(BaseModel):
    latitude: float
    longitude: float
    accuracy: float

class CountEntry(BaseModel):
    product_id: UUID
    quantity: int = Field(ge=0)
    location: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    session_id: Optional[UUID] = None

    device_info: Optional[DeviceInfo] = None
    gps_coordinates: Optional[GpsCoordinates] = None
    # Evidence: max 3 photos, max 1 voice note
    images: List[str] = Field(default_factory=list, max_length=3)
    voice_notes: List[str] = Field(default_factory=list, max_length=1)

    offline_timestamp: Optional[datetime] = None
    client_timestamp: Optional[datetime] = None
    sync_priority: int = Field(default=1, ge=1, le=10)

    expected_previous_quantity: Optional[int] = None
    verified: bool = False

class SyncMetadata(BaseModel):
    device_id: str
    batch_id: str
    offline_duration_ms: Optional[int] = None
    network_quality: Optional[str] = None

class BatchCountRequest(BaseModel):
    counts: List[CountEntry] = Field(min_length=1, max_length=BATCH_MAX_COUNTS)
    session_id: Optional[UUID] = None
    sync_metadata: SyncMetadata

# --- Product models ---
class ProductCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    barcode: Optional[str] = None
    sku: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    quantity: int = Field(default=0, ge=0)
    min_stock: int = Field(default=0, ge=0)
    max_stock: Optional[int] = Field(default=None, ge=0)
    cost: Optional[float] = None
    price: Optional[float] = None
    location: Optional[str] = None
    supplier: Optional[str] = None

class ProductUpdate(BaseModel):
    id: UUID
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    barcode: Optional[str] = None
    sku: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    quantity: Optional[int] = Field(default=None, ge=0)
    min_stock: Optional[int] = Field(default=None, ge=0)
    max_stock: Optional[int] = Field(default=None, ge=0)
    cost: Optional[float] = None
    price: Optional[float] = None
    location: Optional[str] = None
    supplier: Optional[str] = None

class ProductDelete(BaseModel):
    id: UUID

# --- Counting sessions ---
class CountingSessionCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    location: Optional[str] = None
    auto_start: bool = False

# --- Queued operations (device side) ---
class OperationKind(str, Enum):
    COUNT = "count"
    PRODUCT_CREATE = "product_create"
    PRODUCT_UPDATE = "product_update"
    PRODUCT_DELETE = "product_delete"

PAYLOAD_MODELS = {
    OperationKind.COUNT: CountEntry,
    OperationKind.PRODUCT_CREATE: ProductCreate,
    OperationKind.PRODUCT_UPDATE: ProductUpdate,
    OperationKind.PRODUCT_DELETE: ProductDelete,
}

def normalize_payload(kind: OperationKind, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate a payload against the model for its kind and return the
    JSON-ready dict that gets queued and sent. Raises pydantic.ValidationError.
    """
    model = PAYLOAD_MODELS[OperationKind(kind)]
    return model.model_validate(payload).model_dump(mode="json", exclude_none=True)

def validation_details(errors: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Strip pydantic error dicts down to JSON-safe fields."""
    return [
        {"loc": [str(p) for p in err.get("loc", ())], "msg": err.get("msg"), "type": err.get("type")}
        for err in errors
    ]
