# sync_client.py
import logging
from typing import Optional, List, Dict, Any, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from scansync.config import SYNC_API_URL, SYNC_API_TOKEN, SYNC_USER_ID, http_timeout
from scansync.conflicts import Accepted, Conflict, Rejected, Outcome, PRODUCT_NOT_FOUND, SESSION_NOT_FOUND

log = logging.getLogger(__name__)

COUNT_PATH = "/api/inventory/count"
PRODUCTS_PATH = "/api/products"
HEALTH_PATH = "/health"

# Replaying these unchanged can never succeed
TERMINAL_STATUSES = frozenset({400, 401, 403, 404, 422})


def make_session() -> requests.Session:
    """
    HTTP session for the sync agent. Only idempotent reads are retried by the
    transport; writes are retried by the sync executor, which tracks attempts.
    """
    session = requests.Session()
    session.headers.update({"Accept": "application/json"})
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(502, 503, 504),
        allowed_methods=frozenset({"GET", "HEAD"}),
        raise_on_status=False,
    )
    session.mount("https://", HTTPAdapter(max_retries=retry))
    session.mount("http://", HTTPAdapter(max_retries=retry))
    return session


def _json(resp) -> Any:
    try:
        return resp.json()
    except ValueError:
        return None


def classify_response(resp) -> Outcome:
    code = resp.status_code
    body = _json(resp)
    if 200 <= code < 300:
        return Accepted(data=body if isinstance(body, dict) else {}, status_code=code)

    if code == 409 and isinstance(body, dict) and isinstance(body.get("conflict_data"), dict):
        cd = body["conflict_data"]
        return Conflict(
            expected=int(cd.get("expected") or 0),
            actual=int(cd.get("actual") or 0),
            product_name=cd.get("product_name"),
        )

    reason = (body.get("error") if isinstance(body, dict) else None) or f"HTTP {code}"
    return Rejected(reason=str(reason), status_code=code, retryable=code not in TERMINAL_STATUSES)


class SyncClient:
    """Talks to the count/product API on behalf of one device."""

    def __init__(
        self,
        base_url: str = SYNC_API_URL,
        token: str = SYNC_API_TOKEN,
        user_id: str = SYNC_USER_ID,
        session=None,
        timeout: Tuple[float, float] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session if session is not None else make_session()
        self.timeout = timeout or http_timeout()
        self.headers = {"Content-Type": "application/json"}
        if token:
            self.headers["Authorization"] = f"Bearer {token}"
        if user_id:
            self.headers["X-User-ID"] = str(user_id)

    def _request(self, method: str, path: str, json: Any = None, params: Optional[Dict[str, Any]] = None):
        return self.session.request(
            method,
            f"{self.base_url}{path}",
            json=json,
            params=params,
            headers=self.headers,
            timeout=self.timeout,
        )

    def _send(self, method: str, path: str, json: Any = None, params: Optional[Dict[str, Any]] = None) -> Outcome:
        try:
            resp = self._request(method, path, json=json, params=params)
        except requests.RequestException as e:
            # No structured response: transient by definition
            return Rejected(reason=f"{type(e).__name__}: {e}", retryable=True)
        return classify_response(resp)

    # --- writes replayed from the queue ---
    def submit_count(self, payload: Dict[str, Any]) -> Outcome:
        return self._send("POST", COUNT_PATH, json=payload)

    def create_product(self, payload: Dict[str, Any]) -> Outcome:
        return self._send("POST", PRODUCTS_PATH, json=payload)

    def update_product(self, payload: Dict[str, Any]) -> Outcome:
        return self._send("PUT", PRODUCTS_PATH, json=payload)

    def delete_product(self, payload: Dict[str, Any]) -> Outcome:
        return self._send("DELETE", PRODUCTS_PATH, params={"id": payload["id"]})

    def submit_count_batch(
        self,
        counts: List[Dict[str, Any]],
        sync_metadata: Dict[str, Any],
        session_id: Optional[str] = None,
    ) -> List[Outcome]:
        """
        Submit several counts in one request. Returns one outcome per entry,
        in the same order; a request-level failure applies to every entry.
        """
        body: Dict[str, Any] = {"counts": counts, "sync_metadata": sync_metadata}
        if session_id:
            body["session_id"] = session_id
        try:
            resp = self._request("POST", COUNT_PATH, json=body)
        except requests.RequestException as e:
            failure = Rejected(reason=f"{type(e).__name__}: {e}", retryable=True)
            return [failure] * len(counts)

        data = _json(resp)
        if resp.status_code not in (201, 207) or not isinstance(data, dict) or "batch_result" not in data:
            outcome = classify_response(resp)
            if isinstance(outcome, Accepted):
                outcome = Rejected(reason="Malformed batch response", status_code=resp.status_code, retryable=True)
            return [outcome] * len(counts)

        result = data["batch_result"]
        errors = {e["index"]: e for e in result.get("errors", []) if "index" in e}
        count_ids = iter(result.get("count_ids", []))
        outcomes: List[Outcome] = []
        for index in range(len(counts)):
            err = errors.get(index)
            if err is None:
                outcomes.append(Accepted(status_code=201, data={"count_id": next(count_ids, None)}))
            elif isinstance(err.get("conflict_data"), dict):
                cd = err["conflict_data"]
                outcomes.append(Conflict(
                    expected=int(cd.get("expected") or 0),
                    actual=int(cd.get("actual") or 0),
                    product_name=cd.get("product_name"),
                ))
            elif err.get("error") in (PRODUCT_NOT_FOUND, SESSION_NOT_FOUND):
                outcomes.append(Rejected(reason=err["error"], status_code=404, retryable=False))
            else:
                outcomes.append(Rejected(reason=str(err.get("error")), status_code=resp.status_code, retryable=True))
        return outcomes

    # --- reads ---
    def list_counts(self, **filters) -> List[Dict[str, Any]]:
        resp = self._request("GET", COUNT_PATH, params={k: v for k, v in filters.items() if v is not None})
        resp.raise_for_status()
        return resp.json().get("data", [])

    def ping(self) -> bool:
        try:
            resp = self._request("GET", HEALTH_PATH)
        except requests.RequestException as e:
            log.debug("Health probe failed: %s", e)
            return False
        return 200 <= resp.status_code < 300
