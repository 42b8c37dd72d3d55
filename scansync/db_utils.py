import json
from contextlib import contextmanager
from typing import Optional, Dict, Any
from uuid import UUID

import psycopg2
from psycopg2 import pool
from psycopg2.extras import RealDictCursor, register_uuid as _pg_register_uuid

from scansync.config import DATABASE_URL, PGSSLMODE, DB_POOL_MAX
from scansync.store import InventoryStore, ACTIVE_SESSION_STATUSES


try:
    _pg_register_uuid()
except Exception:
    pass

PRODUCT_COLUMNS = (
    "name", "sku", "barcode", "category", "description", "current_quantity",
    "min_stock", "max_stock", "cost", "price", "location", "supplier",
)
JSON_COUNT_COLUMNS = ("device_info", "gps_coordinates", "images", "voice_notes")


def is_uuid_like(s) -> bool:
    try:
        UUID(str(s))
        return True
    except Exception:
        return False


def make_pool(database_url: Optional[str] = None, maxconn: int = DB_POOL_MAX):
    url = database_url or DATABASE_URL
    if not url:
        raise RuntimeError("DATABASE_URL not set")
    return psycopg2.pool.ThreadedConnectionPool(1, maxconn, url, sslmode=PGSSLMODE)


@contextmanager
def db(pg_pool):
    """
    Context manager that gets a connection from the pool,
    yields (con, cur), and ensures the connection is returned to the pool.
    """
    con = pg_pool.getconn()
    cur = con.cursor(cursor_factory=RealDictCursor)
    try:
        yield con, cur
        con.commit()
    except Exception:
        con.rollback()
        raise
    finally:
        cur.close()
        pg_pool.putconn(con)


def _row(r) -> Optional[Dict[str, Any]]:
    if r is None:
        return None
    out = dict(r)
    for k in ("id", "business_id", "product_id", "session_id"):
        if out.get(k) is not None:
            out[k] = str(out[k])
    return out


class PostgresStore(InventoryStore):
    """InventoryStore over the products / inventory_counts / team_members tables."""

    def __init__(self, database_url: Optional[str] = None, pg_pool=None):
        self._database_url = database_url
        self._pg_pool = pg_pool

    @property
    def _pool(self):
        # Connect on first use so importing the app never needs a live database
        if self._pg_pool is None:
            self._pg_pool = make_pool(self._database_url)
        return self._pg_pool

    def close(self):
        if self._pg_pool is not None:
            self._pg_pool.closeall()
            self._pg_pool = None

    def get_member(self, user_id):
        with db(self._pool) as (con, cur):
            cur.execute("""
                SELECT user_id, business_id, role, permissions
                FROM team_members
                WHERE user_id = %s AND status = 'active'
                LIMIT 1
            """, (int(user_id),))
            member = _row(cur.fetchone())
        if member and isinstance(member.get("permissions"), str):
            member["permissions"] = json.loads(member["permissions"])
        return member

    def get_product(self, business_id, product_id):
        if not is_uuid_like(product_id):
            return None
        with db(self._pool) as (con, cur):
            cur.execute(
                "SELECT * FROM products WHERE id = %s::uuid AND business_id = %s::uuid",
                (str(product_id), str(business_id)),
            )
            return _row(cur.fetchone())

    def list_products(self, business_id, search=None, barcode=None, limit=20, offset=0):
        where = ["business_id = %(business_id)s::uuid"]
        params: Dict[str, Any] = {"business_id": str(business_id), "limit": limit, "offset": offset}
        if barcode:
            where.append("barcode = %(barcode)s")
            params["barcode"] = barcode
        if search:
            params["needle"] = "%" + search.replace("%", r"\%").replace("_", r"\_") + "%"
            where.append("""
                (name ILIKE %(needle)s ESCAPE '\\'
                 OR sku ILIKE %(needle)s ESCAPE '\\'
                 OR barcode ILIKE %(needle)s ESCAPE '\\')
            """)
        where_sql = " AND ".join(where)
        with db(self._pool) as (con, cur):
            cur.execute(f"SELECT COUNT(*) AS total FROM products WHERE {where_sql}", params)
            total = int(cur.fetchone()["total"])
            cur.execute(
                f"SELECT * FROM products WHERE {where_sql} ORDER BY name LIMIT %(limit)s OFFSET %(offset)s",
                params,
            )
            rows = [_row(r) for r in cur.fetchall()]
        return rows, total

    def create_product(self, business_id, data):
        cols = [c for c in PRODUCT_COLUMNS if c in data]
        vals = [data[c] for c in cols]
        with db(self._pool) as (con, cur):
            cur.execute(
                f"INSERT INTO products (business_id, {', '.join(cols)}) "
                f"VALUES (%s::uuid, {', '.join(['%s'] * len(cols))}) RETURNING *",
                [str(business_id)] + vals,
            )
            return _row(cur.fetchone())

    def update_product(self, business_id, product_id, data):
        if not is_uuid_like(product_id):
            return None
        fields = [c for c in PRODUCT_COLUMNS if c in data]
        if not fields:
            return self.get_product(business_id, product_id)
        assignments = ", ".join(f"{c} = %s" for c in fields)
        with db(self._pool) as (con, cur):
            cur.execute(
                f"UPDATE products SET {assignments}, updated_at = NOW() "
                "WHERE id = %s::uuid AND business_id = %s::uuid RETURNING *",
                [data[c] for c in fields] + [str(product_id), str(business_id)],
            )
            return _row(cur.fetchone())

    def delete_product(self, business_id, product_id):
        if not is_uuid_like(product_id):
            return False
        with db(self._pool) as (con, cur):
            cur.execute(
                "DELETE FROM products WHERE id = %s::uuid AND business_id = %s::uuid",
                (str(product_id), str(business_id)),
            )
            return cur.rowcount > 0

    def insert_count(self, record, apply_quantity=False):
        data = dict(record)
        for k in JSON_COUNT_COLUMNS:
            data[k] = json.dumps(data.get(k)) if data.get(k) is not None else None
        cols = list(data.keys())
        with db(self._pool) as (con, cur):
            cur.execute(
                f"INSERT INTO inventory_counts ({', '.join(cols)}) "
                f"VALUES ({', '.join(['%s'] * len(cols))}) RETURNING *",
                [data[c] for c in cols],
            )
            saved = _row(cur.fetchone())
            if apply_quantity:
                cur.execute("""
                    UPDATE products
                       SET current_quantity = %s, last_counted = %s, updated_at = NOW()
                     WHERE id = %s::uuid AND business_id = %s::uuid
                """, (record["quantity"], record["counted_at"], record["product_id"], record["business_id"]))
        return saved

    def list_counts(self, business_id, product_id=None, session_id=None, limit=50, offset=0):
        where = ["c.business_id = %(business_id)s::uuid"]
        params: Dict[str, Any] = {"business_id": str(business_id), "limit": limit, "offset": offset}
        if product_id:
            if not is_uuid_like(product_id):
                return []
            where.append("c.product_id = %(product_id)s::uuid")
            params["product_id"] = str(product_id)
        if session_id:
            if not is_uuid_like(session_id):
                return []
            where.append("c.session_id = %(session_id)s::uuid")
            params["session_id"] = str(session_id)

        with db(self._pool) as (con, cur):
            cur.execute(f"""
                SELECT c.*,
                       json_build_object('id', p.id, 'name', p.name, 'barcode', p.barcode, 'sku', p.sku) AS product
                FROM inventory_counts c
                LEFT JOIN products p ON p.id = c.product_id
                WHERE {" AND ".join(where)}
                ORDER BY c.counted_at DESC
                LIMIT %(limit)s OFFSET %(offset)s
            """, params)
            return [_row(r) for r in cur.fetchall()]

    def create_session(self, business_id, data):
        with db(self._pool) as (con, cur):
            cur.execute("""
                INSERT INTO cycle_count_sessions (business_id, name, description, location, assigned_users, status)
                VALUES (%s::uuid, %s, %s, %s, %s, 'planning')
                RETURNING *
            """, (
                str(business_id), data.get("name"), data.get("description"),
                data.get("location"), json.dumps(data.get("assigned_users") or []),
            ))
            return _row(cur.fetchone())

    def get_session(self, business_id, session_id):
        if not is_uuid_like(session_id):
            return None
        with db(self._pool) as (con, cur):
            cur.execute(
                "SELECT * FROM cycle_count_sessions WHERE id = %s::uuid AND business_id = %s::uuid",
                (str(session_id), str(business_id)),
            )
            return _row(cur.fetchone())

    def list_active_sessions(self, business_id):
        with db(self._pool) as (con, cur):
            cur.execute("""
                SELECT * FROM cycle_count_sessions
                WHERE business_id = %s::uuid AND status = ANY(%s)
                ORDER BY created_at DESC
            """, (str(business_id), list(ACTIVE_SESSION_STATUSES)))
            return [_row(r) for r in cur.fetchall()]

    def start_session(self, business_id, session_id):
        if not is_uuid_like(session_id):
            return None
        with db(self._pool) as (con, cur):
            cur.execute("""
                UPDATE cycle_count_sessions
                   SET status = 'active', started_at = NOW()
                 WHERE id = %s::uuid AND business_id = %s::uuid
                RETURNING *
            """, (str(session_id), str(business_id)))
            return _row(cur.fetchone())
