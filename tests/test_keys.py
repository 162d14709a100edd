import re

from conftest import make_key, make_service


def test_create_single_use_key(admin_client):
    key = make_key(admin_client, name="promo")
    assert re.fullmatch(r"[A-Z0-9]{12}", key["value"])
    assert key["type"] == "single-use"
    assert key["name"] == "promo"
    assert key["isUsed"] is False
    assert key["usedQuantity"] == 0
    assert key["createdBy"] == "admin"
    assert key["maxQuantity"] is None
    assert key["remainingQuantity"] is None


def test_create_multi_use_requires_quota(admin_client):
    r = admin_client.post("/api/keys", json={"type": "multi-use"})
    assert r.status_code == 400
    assert "maxQuantity" in r.json()["message"]

    key = make_key(admin_client, type="multi-use", maxQuantity=500)
    assert key["maxQuantity"] == 500
    assert key["remainingQuantity"] == 500


def test_create_rejects_unknown_type_and_bad_quota(admin_client):
    assert admin_client.post(
        "/api/keys", json={"type": "forever"}).status_code == 400
    assert admin_client.post(
        "/api/keys", json={"maxQuantity": 0}).status_code == 400


def test_create_batch(admin_client):
    r = admin_client.post("/api/keys", json={"count": 5, "name": "batch"})
    assert r.status_code == 200
    keys = r.json()["keys"]
    assert len(keys) == 5
    assert len({k["value"] for k in keys}) == 5

    logs = admin_client.get("/api/logs?type=key_created").json()
    assert len(logs) == 5


def test_create_bound_to_service(admin_client):
    service = make_service(admin_client)
    key = make_key(admin_client, serviceId=service["id"])
    assert key["serviceId"] == service["id"]

    r = admin_client.post("/api/keys", json={"serviceId": 404})
    assert r.status_code == 404
    assert admin_client.get("/api/keys").json() == [key]


def test_list_newest_first(admin_client):
    first = make_key(admin_client)
    second = make_key(admin_client)
    values = [k["value"] for k in admin_client.get("/api/keys").json()]
    assert values == [second["value"], first["value"]]


def test_delete_key(admin_client):
    key = make_key(admin_client)
    r = admin_client.delete(f"/api/keys/{key['id']}")
    assert r.status_code == 200
    assert r.json() == {"success": True}
    assert admin_client.get("/api/keys").json() == []

    r = admin_client.delete(f"/api/keys/{key['id']}")
    assert r.status_code == 404
    assert r.json() == {"message": "Key not found"}

    assert len(admin_client.get("/api/logs?type=key_deleted").json()) == 1


def test_stats(admin_client):
    service = make_service(admin_client)
    k1 = make_key(admin_client)
    make_key(admin_client)
    admin_client.post("/api/orders", json={
        "keyValue": k1["value"],
        "serviceId": service["id"],
        "targetUrl": "https://instagram.com/someone",
        "quantity": 10,
    })
    assert admin_client.get("/api/keys/stats").json() == {
        "total": 2, "used": 1, "unused": 1,
    }


def test_validate_key(admin_client, client):
    key = make_key(admin_client, type="multi-use", maxQuantity=30)
    r = client.post("/api/validate-key", json={"key": key["value"]})
    assert r.status_code == 200
    assert r.json() == {
        "valid": True,
        "keyId": key["id"],
        "type": "multi-use",
        "maxQuantity": 30,
        "usedQuantity": 0,
        "remainingQuantity": 30,
        "serviceId": None,
    }


def test_validate_unknown_and_used_keys(admin_client):
    r = admin_client.post("/api/validate-key", json={"key": "MISSING"})
    assert r.status_code == 404
    assert r.json() == {"message": "Invalid key"}

    service = make_service(admin_client)
    key = make_key(admin_client)
    admin_client.post("/api/orders", json={
        "keyValue": key["value"],
        "serviceId": service["id"],
        "targetUrl": "https://instagram.com/someone",
        "quantity": 10,
    })
    r = admin_client.post("/api/validate-key", json={"key": key["value"]})
    assert r.status_code == 409
    assert r.json() == {"message": "Key has already been used"}


def test_validate_requires_key(client):
    assert client.post("/api/validate-key", json={}).status_code == 400
