import asyncio

import httpx

from keygate.infra.sql import Database
from keygate.model import Storage, create_schema

from conftest import PROVIDER_URL, make_service


def test_public_list_hides_inactive_and_credentials(admin_client, client):
    active = make_service(admin_client, name="A followers")
    make_service(admin_client, name="B likes", isActive=False)

    listed = client.get("/api/services").json()
    assert [s["id"] for s in listed] == [active["id"]]
    assert set(listed[0]) == {"id", "name", "platform", "type", "icon"}

    everything = admin_client.get("/api/services/all").json()
    assert len(everything) == 2
    assert everything[0]["requestTemplate"]["key"] == "pk-123"


def test_create_defaults(admin_client):
    r = admin_client.post("/api/services", json={
        "name": "Views", "platform": "YouTube", "type": "views"})
    assert r.status_code == 200
    s = r.json()
    assert s["isActive"] is True
    assert s["apiMethod"] == "POST"
    assert s["apiEndpoint"] is None
    assert s["apiHeaders"] == {}
    assert s["requestTemplate"] == {}


def test_create_validation(admin_client):
    base = {"name": "Views", "platform": "YouTube", "type": "views"}
    for bad in ({"apiMethod": "FETCH"}, {"apiEndpoint": "ftp://x"},
                {"name": ""}):
        r = admin_client.post("/api/services", json={**base, **bad})
        assert r.status_code == 400, bad


def test_get_update_delete(admin_client):
    service = make_service(admin_client)
    sid = service["id"]

    assert admin_client.get(f"/api/services/{sid}").json() == service

    r = admin_client.put(f"/api/services/{sid}",
                         json={"isActive": False, "apiMethod": "get"})
    assert r.status_code == 200
    updated = r.json()
    assert updated["isActive"] is False
    assert updated["apiMethod"] == "GET"
    assert updated["name"] == service["name"]
    assert updated["requestTemplate"] == service["requestTemplate"]

    r = admin_client.put(f"/api/services/{sid}", json={"apiEndpoint": None})
    assert r.json()["apiEndpoint"] is None

    assert admin_client.delete(f"/api/services/{sid}").status_code == 200
    assert admin_client.get(f"/api/services/{sid}").status_code == 404
    assert admin_client.put(f"/api/services/{sid}",
                            json={"name": "x"}).status_code == 404
    assert admin_client.delete(f"/api/services/{sid}").status_code == 404

    types = [e["type"] for e in admin_client.get("/api/logs").json()]
    for t in ("service_created", "service_updated", "service_deleted"):
        assert t in types


def test_import_skips_invalid_items(admin_client):
    services = [
        {"name": "One", "apiEndpoint": PROVIDER_URL},
        {"title": "Two"},
        {"name": "Three", "apiMethod": "FETCH"},
        {"name": "Four", "platform": "TikTok", "type": "likes"},
        {},
    ]
    r = admin_client.post("/api/services/import", json={"services": services})
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["total"] == 5
    assert body["imported"] == 4
    assert len(body["errors"]) == 1
    assert body["errors"][0].startswith("Service 3 (Three)")

    names = sorted(s["name"] for s in
                   admin_client.get("/api/services/all").json())
    assert names == ["Four", "One", "Service 5", "Two"]

    imported = {s["name"]: s for s in body["services"]}
    assert imported["Two"]["platform"] == "External API"
    assert imported["Two"]["icon"] == "Settings"
    assert imported["Four"]["platform"] == "TikTok"

    logs = admin_client.get("/api/logs?type=services_imported").json()
    assert logs[0]["data"] == {"imported": 4, "errors": 1}


def test_import_requires_items(admin_client):
    r = admin_client.post("/api/services/import", json={"services": []})
    assert r.status_code == 400


def test_bulk_create_skips_failed_chunk(tmp_path):
    async def scenario():
        db = Database(f"sqlite:///{tmp_path / 'bulk.db'}")
        await create_schema(db)
        items = [
            {"name": f"S{i}", "platform": "P", "type": "t"} for i in range(5)
        ]
        items[2]["name"] = None  # NOT NULL violation sinks chunk 3-4
        async with db.sessionmaker() as session:
            storage = Storage(session=session, gated=db.gated)
            created, errors = await storage.services.bulk_create(
                items, chunk_size=2)
            async with storage.transaction():
                stored = await storage.services.list_all()
        await db.dispose()
        return created, errors, stored

    created, errors, stored = asyncio.run(scenario())
    assert [s.name for s in created] == ["S0", "S1", "S4"]
    assert errors == ["Services 3-4: batch insert failed"]
    assert sorted(s.name for s in stored) == ["S0", "S1", "S4"]


def test_fetch_provider_services(admin_client, upstream):
    upstream.queue(httpx.Response(200, json=[
        {"service": 1, "name": "Followers", "category": "Instagram",
         "rate": "0.90", "min": "10", "max": "5000"},
        {"service": 2, "name": "Likes"},
    ]))
    r = admin_client.post("/api/services/fetch", json={
        "apiUrl": "https://panel.example.com/api/v2", "apiKey": "secret"})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["count"] == 2
    first = body["services"][0]
    assert first["platform"] == "Example"
    assert first["type"] == "Instagram"
    assert first["minQuantity"] == 10
    assert first["maxQuantity"] == 5000
    assert first["requestTemplate"] == {
        "key": "secret", "action": "add", "service": 1,
        "link": "{{link}}", "quantity": "{{quantity}}",
    }

    sent = upstream.requests[0]
    assert sent.method == "POST"
    assert sent.content.decode() in ("key=secret&action=services",
                                     "action=services&key=secret")


def test_fetch_falls_back_to_get(admin_client, upstream):
    upstream.queue(httpx.Response(405),
                   httpx.Response(200, json={"data": [{"id": 9, "name": "X"}]}))
    r = admin_client.post("/api/services/fetch", json={
        "apiUrl": "https://panel.example.com/api/v2", "apiKey": "secret"})
    assert r.status_code == 200
    assert r.json()["services"][0]["providerServiceId"] == "9"
    assert [q.method for q in upstream.requests] == ["POST", "GET"]
    assert upstream.requests[1].url.params["action"] == "services"


def test_fetch_all_formats_fail(admin_client, upstream):
    upstream.queue(httpx.Response(401), httpx.Response(401))
    r = admin_client.post("/api/services/fetch", json={
        "apiUrl": "https://panel.example.com/api/v2", "apiKey": "secret"})
    assert r.status_code == 500
    assert r.json()["message"].startswith("All API request formats failed")


def test_fetch_empty_list(admin_client, upstream):
    upstream.queue(httpx.Response(200, json={"services": []}))
    r = admin_client.post("/api/services/fetch", json={
        "apiUrl": "https://panel.example.com/api/v2", "apiKey": "secret"})
    assert r.status_code == 500
    assert r.json()["message"] == "No services found in the API response"


def test_fetch_skips_html_answer(admin_client, upstream):
    upstream.queue(httpx.Response(200, text="<html>login</html>"),
                   httpx.Response(200, json=[{"service": 3, "name": "Views"}]))
    r = admin_client.post("/api/services/fetch", json={
        "apiUrl": "https://panel.example.com/api/v2", "apiKey": "secret"})
    assert r.status_code == 200, r.text
    assert [s["name"] for s in r.json()["services"]] == ["Views"]
    assert [q.method for q in upstream.requests] == ["POST", "GET"]
