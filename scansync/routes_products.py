import logging
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Query

from scansync.auth_utils import get_store, get_team_member
from scansync.config import PRODUCT_LIST_MAX
from scansync.db_utils import is_uuid_like
from scansync.pubsub_utils import _broadcast
from scansync.schemas import ProductCreate, ProductUpdate

router = APIRouter(prefix="/api/products")
log = logging.getLogger(__name__)

# Wire name -> store column
FIELD_MAP = {"quantity": "current_quantity"}


def _to_store_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    return {FIELD_MAP.get(k, k): v for k, v in data.items() if k != "id"}


@router.get("")
def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    search: Optional[str] = Query(None),
    barcode: Optional[str] = Query(None),
    member: Dict[str, Any] = Depends(get_team_member),
    store=Depends(get_store),
):
    limit = min(limit, PRODUCT_LIST_MAX)
    rows, total = store.list_products(
        member["business_id"],
        search=search,
        barcode=barcode,
        limit=limit,
        offset=(page - 1) * limit,
    )
    return {
        "data": rows,
        "pagination": {"page": page, "limit": limit, "total": total, "has_more": page * limit < total},
    }


@router.post("", status_code=201)
def create_product(
    payload: ProductCreate,
    member: Dict[str, Any] = Depends(get_team_member),
    store=Depends(get_store),
):
    product = store.create_product(member["business_id"], _to_store_fields(payload.model_dump(exclude_none=True)))
    _broadcast("product.created", product)
    return {"data": product}


@router.put("")
def update_product(
    payload: ProductUpdate,
    member: Dict[str, Any] = Depends(get_team_member),
    store=Depends(get_store),
):
    data = _to_store_fields(payload.model_dump(exclude_unset=True))
    product = store.update_product(member["business_id"], str(payload.id), data)
    if not product:
        raise HTTPException(404, "Product not found")
    _broadcast("product.updated", product)
    return {"data": product}


@router.delete("")
def delete_product(
    id: Optional[str] = Query(None),
    member: Dict[str, Any] = Depends(get_team_member),
    store=Depends(get_store),
):
    if not id:
        raise HTTPException(400, "Product ID required")
    if not is_uuid_like(id) or not store.delete_product(member["business_id"], id):
        raise HTTPException(404, "Product not found")
    _broadcast("product.deleted", {"id": id})
    return {"ok": True, "id": id}
