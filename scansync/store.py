# store.py
"""
The Product/Inventory Store collaborator.

The count endpoints only ever talk to the store through `InventoryStore`.
`InMemoryStore` backs development runs and the test-suite; the Postgres
implementation lives in db_utils.py.
"""
import copy
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Tuple
from uuid import uuid4

ACTIVE_SESSION_STATUSES = ("planning", "active")
PRODUCT_SUMMARY_FIELDS = ("id", "name", "barcode", "sku")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ts(value) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class InventoryStore(ABC):
    """Small CRUD surface over products, counts and counting sessions."""

    @abstractmethod
    def get_member(self, user_id: int) -> Optional[Dict[str, Any]]:
        """Active team membership: {user_id, business_id, role, permissions}."""

    @abstractmethod
    def get_product(self, business_id: str, product_id: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def list_products(
        self,
        business_id: str,
        search: Optional[str] = None,
        barcode: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Dict[str, Any]], int]: ...

    @abstractmethod
    def create_product(self, business_id: str, data: Dict[str, Any]) -> Dict[str, Any]: ...

    @abstractmethod
    def update_product(self, business_id: str, product_id: str, data: Dict[str, Any]) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def delete_product(self, business_id: str, product_id: str) -> bool: ...

    @abstractmethod
    def insert_count(self, record: Dict[str, Any], apply_quantity: bool = False) -> Dict[str, Any]:
        """
        Persist an inventory count. With apply_quantity the product's
        current_quantity is set to the counted quantity in the same write.
        """

    @abstractmethod
    def list_counts(
        self,
        business_id: str,
        product_id: Optional[str] = None,
        session_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Newest first, each row carrying a `product` summary."""

    @abstractmethod
    def create_session(self, business_id: str, data: Dict[str, Any]) -> Dict[str, Any]: ...

    @abstractmethod
    def get_session(self, business_id: str, session_id: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def list_active_sessions(self, business_id: str) -> List[Dict[str, Any]]: ...

    @abstractmethod
    def start_session(self, business_id: str, session_id: str) -> Optional[Dict[str, Any]]: ...


class InMemoryStore(InventoryStore):
    def __init__(self):
        self._lock = threading.RLock()
        self._members: Dict[int, Dict[str, Any]] = {}
        self._products: Dict[str, Dict[str, Any]] = {}
        self._counts: List[Dict[str, Any]] = []
        self._sessions: Dict[str, Dict[str, Any]] = {}

    # --- seeding ---
    def add_member(
        self,
        user_id: int,
        business_id: str,
        role: str = "counter",
        permissions: Optional[Dict[str, bool]] = None,
        active: bool = True,
    ) -> Dict[str, Any]:
        member = {
            "user_id": int(user_id),
            "business_id": str(business_id),
            "role": role,
            "permissions": permissions if permissions is not None else {"count": True},
            "status": "active" if active else "inactive",
        }
        with self._lock:
            self._members[int(user_id)] = member
        return copy.deepcopy(member)

    def add_product(self, business_id: str, **fields) -> Dict[str, Any]:
        data = dict(fields)
        data.setdefault("current_quantity", data.pop("quantity", 0))
        return self.create_product(business_id, data)

    # --- members ---
    def get_member(self, user_id: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            member = self._members.get(int(user_id))
            if not member or member["status"] != "active":
                return None
            return copy.deepcopy(member)

    # --- products ---
    def get_product(self, business_id: str, product_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            product = self._products.get(str(product_id))
            if not product or product["business_id"] != str(business_id):
                return None
            return copy.deepcopy(product)

    def list_products(self, business_id, search=None, barcode=None, limit=20, offset=0):
        needle = (search or "").strip().lower()
        with self._lock:
            rows = [p for p in self._products.values() if p["business_id"] == str(business_id)]
            if barcode:
                rows = [p for p in rows if p.get("barcode") == barcode]
            if needle:
                rows = [
                    p for p in rows
                    if any(needle in str(p.get(k) or "").lower() for k in ("name", "sku", "barcode"))
                ]
            rows.sort(key=lambda p: (p.get("name") or "").lower())
            total = len(rows)
            return copy.deepcopy(rows[offset:offset + limit]), total

    def create_product(self, business_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        product = {
            "id": str(data.get("id") or uuid4()),
            "business_id": str(business_id),
            "name": data.get("name"),
            "sku": data.get("sku"),
            "barcode": data.get("barcode"),
            "category": data.get("category"),
            "description": data.get("description"),
            "current_quantity": int(data.get("current_quantity") or 0),
            "min_stock": int(data.get("min_stock") or 0),
            "max_stock": data.get("max_stock"),
            "cost": data.get("cost"),
            "price": data.get("price"),
            "location": data.get("location"),
            "supplier": data.get("supplier"),
            "created_at": _now(),
            "updated_at": _now(),
        }
        with self._lock:
            self._products[product["id"]] = product
            return copy.deepcopy(product)

    def update_product(self, business_id, product_id, data):
        with self._lock:
            product = self._products.get(str(product_id))
            if not product or product["business_id"] != str(business_id):
                return None
            for key, value in data.items():
                if key in ("id", "business_id", "created_at"):
                    continue
                product[key] = value
            product["updated_at"] = _now()
            return copy.deepcopy(product)

    def delete_product(self, business_id, product_id) -> bool:
        with self._lock:
            product = self._products.get(str(product_id))
            if not product or product["business_id"] != str(business_id):
                return False
            del self._products[str(product_id)]
            return True

    # --- counts ---
    def insert_count(self, record, apply_quantity=False):
        with self._lock:
            saved = copy.deepcopy(record)
            saved.setdefault("id", str(uuid4()))
            saved["created_at"] = _now()
            self._counts.append(saved)
            if apply_quantity:
                product = self._products.get(saved["product_id"])
                if product is not None:
                    product["current_quantity"] = saved["quantity"]
                    product["last_counted"] = saved["counted_at"]
                    product["updated_at"] = _now()
            return copy.deepcopy(saved)

    def list_counts(self, business_id, product_id=None, session_id=None, limit=50, offset=0):
        with self._lock:
            indexed = [
                (i, c) for i, c in enumerate(self._counts)
                if c["business_id"] == str(business_id)
                and (not product_id or c["product_id"] == str(product_id))
                and (not session_id or c.get("session_id") == str(session_id))
            ]
            indexed.sort(key=lambda pair: (_ts(pair[1]["counted_at"]), pair[0]), reverse=True)
            out = []
            for _, count in indexed[offset:offset + limit]:
                row = copy.deepcopy(count)
                product = self._products.get(count["product_id"])
                row["product"] = {k: product.get(k) for k in PRODUCT_SUMMARY_FIELDS} if product else None
                out.append(row)
            return out

    # --- counting sessions ---
    def create_session(self, business_id, data):
        session = {
            "id": str(uuid4()),
            "business_id": str(business_id),
            "name": data.get("name"),
            "description": data.get("description"),
            "location": data.get("location"),
            "assigned_users": list(data.get("assigned_users") or []),
            "status": "planning",
            "created_at": _now(),
            "started_at": None,
        }
        with self._lock:
            self._sessions[session["id"]] = session
            return copy.deepcopy(session)

    def get_session(self, business_id, session_id):
        with self._lock:
            session = self._sessions.get(str(session_id))
            if not session or session["business_id"] != str(business_id):
                return None
            return copy.deepcopy(session)

    def list_active_sessions(self, business_id):
        with self._lock:
            rows = [
                s for s in self._sessions.values()
                if s["business_id"] == str(business_id) and s["status"] in ACTIVE_SESSION_STATUSES
            ]
            rows.sort(key=lambda s: s["created_at"], reverse=True)
            return copy.deepcopy(rows)

    def start_session(self, business_id, session_id):
        with self._lock:
            session = self._sessions.get(str(session_id))
            if not session or session["business_id"] != str(business_id):
                return None
            session["status"] = "active"
            session["started_at"] = _now()
            return copy.deepcopy(session)
