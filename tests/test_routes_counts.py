from uuid import uuid4

from tests.conftest import USER_ID, VIEWER_ID


def post_count(client, auth, **body):
    return client.post("/api/inventory/count", json=body, headers=auth)


def test_count_is_recorded_with_authoritative_previous_quantity(client, auth, widget, store):
    r = post_count(client, auth, product_id=widget["id"], quantity=12, notes="shelf A")
    assert r.status_code == 201
    body = r.json()
    assert body["previous_quantity"] == 10
    assert body["quantity_change"] == 2
    assert body["data"]["difference"] == 2
    assert body["data"]["counted_by"] == USER_ID
    assert body["data"]["offline_synced"] is True
    assert r.headers["X-Sync-Status"] == "synced"
    assert r.headers["X-Count-ID"] == body["data"]["id"]
    # Unverified counts do not move the stock level
    assert store.get_product(widget["business_id"], widget["id"])["current_quantity"] == 10


def test_verified_count_updates_product_quantity(client, auth, widget, store):
    r = post_count(client, auth, product_id=widget["id"], quantity=45, verified=True)
    assert r.status_code == 201
    assert store.get_product(widget["business_id"], widget["id"])["current_quantity"] == 45

    r = post_count(client, auth, product_id=widget["id"], quantity=40, verified=True)
    assert r.status_code == 201
    assert r.json()["previous_quantity"] == 45
    assert r.json()["quantity_change"] == -5


def test_matching_expectation_is_accepted(client, auth, widget):
    r = post_count(client, auth, product_id=widget["id"], quantity=9, expected_previous_quantity=10)
    assert r.status_code == 201


def test_conflict_is_reported_without_writing(client, auth, widget, store):
    r = post_count(client, auth, product_id=widget["id"], quantity=5, expected_previous_quantity=8)
    assert r.status_code == 409
    assert r.json() == {
        "error": "Conflict detected",
        "conflict_data": {"expected": 8, "actual": 10, "product_name": "Widget"},
    }
    assert store.list_counts(widget["business_id"]) == []
    assert store.get_product(widget["business_id"], widget["id"])["current_quantity"] == 10


def test_unknown_product_is_404(client, auth):
    r = post_count(client, auth, product_id=str(uuid4()), quantity=1)
    assert r.status_code == 404
    assert r.json() == {"error": "Product not found"}


def test_product_of_another_business_is_404(client, auth, foreign_product):
    r = post_count(client, auth, product_id=foreign_product["id"], quantity=1)
    assert r.status_code == 404


def test_validation_errors_are_400(client, auth, widget):
    r = post_count(client, auth, product_id=widget["id"], quantity=-1)
    assert r.status_code == 400
    body = r.json()
    assert body["error"] == "Validation error"
    assert any(d["loc"] == ["quantity"] for d in body["details"])

    r = post_count(client, auth, product_id="not-a-uuid", quantity=1)
    assert r.status_code == 400


def test_evidence_limits(client, auth, widget):
    r = post_count(client, auth, product_id=widget["id"], quantity=1, images=["a", "b", "c", "d"])
    assert r.status_code == 400
    r = post_count(client, auth, product_id=widget["id"], quantity=1, voice_notes=["a", "b"])
    assert r.status_code == 400
    r = post_count(client, auth, product_id=widget["id"], quantity=1, notes="x" * 501)
    assert r.status_code == 400
    r = post_count(client, auth, product_id=widget["id"], quantity=1, sync_priority=11)
    assert r.status_code == 400
    r = post_count(client, auth, product_id=widget["id"], quantity=1, images=["a", "b", "c"], voice_notes=["v"])
    assert r.status_code == 201


def test_device_info_is_merged_with_request_metadata(client, auth, widget):
    r = post_count(
        client, auth,
        product_id=widget["id"], quantity=3,
        device_info={"device_id": "scanner-7", "network_quality": "poor"},
    )
    assert r.status_code == 201
    saved = r.json()["data"]
    assert saved["device_info"]["device_id"] == "scanner-7"
    assert saved["device_info"]["user_agent"] == "testclient"
    assert "received_at" in saved["device_info"]
    assert saved["network_quality"] == "poor"


def test_offline_timestamp_becomes_counted_at(client, auth, widget):
    r = post_count(client, auth, product_id=widget["id"], quantity=3, offline_timestamp="2026-01-02T03:04:05+00:00")
    assert r.json()["data"]["counted_at"] == "2026-01-02T03:04:05+00:00"


def test_requires_identity_and_permission(client, widget):
    r = client.post("/api/inventory/count", json={"product_id": widget["id"], "quantity": 1})
    assert r.status_code == 401
    assert r.json() == {"error": "Unauthorized"}

    r = client.post(
        "/api/inventory/count",
        json={"product_id": widget["id"], "quantity": 1},
        headers={"X-User-ID": str(VIEWER_ID)},
    )
    assert r.status_code == 403
    assert r.json() == {"error": "Insufficient permissions"}

    r = client.post(
        "/api/inventory/count",
        json={"product_id": widget["id"], "quantity": 1},
        headers={"X-User-ID": "999"},
    )
    assert r.status_code == 403
    assert r.json() == {"error": "Insufficient permissions"}

    r = client.get("/api/inventory/count", headers={"X-User-ID": "999"})
    assert r.status_code == 403
    assert r.json() == {"error": "No business access"}


def test_bearer_token_identifies_user(client, widget):
    from scansync.auth_utils import create_access_token

    token = create_access_token({"sub": USER_ID})
    r = client.post(
        "/api/inventory/count",
        json={"product_id": widget["id"], "quantity": 1},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert r.status_code == 201


def test_list_counts_newest_first(client, auth, widget, gadget):
    post_count(client, auth, product_id=widget["id"], quantity=1, offline_timestamp="2026-01-01T10:00:00+00:00")
    post_count(client, auth, product_id=gadget["id"], quantity=2, offline_timestamp="2026-01-01T12:00:00+00:00")
    post_count(client, auth, product_id=widget["id"], quantity=3, offline_timestamp="2026-01-01T11:00:00+00:00")

    r = client.get("/api/inventory/count", headers=auth)
    assert r.status_code == 200
    body = r.json()
    assert [c["quantity"] for c in body["data"]] == [2, 3, 1]
    assert body["data"][0]["product"]["name"] == "Gadget"
    assert body["pagination"] == {"limit": 50, "offset": 0, "has_more": False}

    r = client.get("/api/inventory/count", params={"product_id": widget["id"]}, headers=auth)
    assert [c["quantity"] for c in r.json()["data"]] == [3, 1]

    r = client.get("/api/inventory/count", params={"limit": 2}, headers=auth)
    assert r.json()["pagination"]["has_more"] is True


def test_list_counts_limit_is_capped(client, auth):
    r = client.get("/api/inventory/count", params={"limit": 500}, headers=auth)
    assert r.json()["pagination"]["limit"] == 100


def test_store_failure_is_a_500(client, auth, widget, store, monkeypatch):
    def boom(record, apply_quantity=False):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "insert_count", boom)
    r = post_count(client, auth, product_id=widget["id"], quantity=1)
    assert r.status_code == 500
    assert r.json() == {"error": "Failed to record count"}
