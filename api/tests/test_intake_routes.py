from __future__ import annotations

import json
from typing import Any

import pytest
from fastapi.testclient import TestClient

from intake_ledger.core.config import Settings
from intake_ledger.main import app, create_app
from intake_ledger.services.geocoding import GeocodeResult, GeocodingError, get_geocoder
from intake_ledger.services.kv import InMemoryKeyValueStore, PostgresKeyValueStore, get_store
from intake_ledger.services.object_store import S3ObjectStore, get_object_store


class FakeGeocoder:
    def __init__(self) -> None:
        self.error: str | None = None

    async def geocode(self, address: str) -> GeocodeResult:
        if self.error:
            raise GeocodingError(self.error)
        return GeocodeResult(coordinates=[-122.42, 37.77], place_name=address)


class FakeS3Client:
    def __init__(self) -> None:
        self.objects: dict[str, dict[str, Any]] = {}

    def put_object(self, **kwargs: Any) -> dict[str, Any]:
        self.objects[kwargs["Key"]] = kwargs
        return {"ETag": '"etag"'}


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def geocoder() -> FakeGeocoder:
    return FakeGeocoder()


@pytest.fixture
def s3_client() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def api_client(store: InMemoryKeyValueStore, geocoder: FakeGeocoder, s3_client: FakeS3Client) -> TestClient:
    object_store = S3ObjectStore("intake-uploads", public_base_url="https://cdn.example.test/", client=s3_client)
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_geocoder] = lambda: geocoder
    app.dependency_overrides[get_object_store] = lambda: object_store

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


def _payload(order_id: str = "1001") -> list[dict[str, Any]]:
    return [
        {
            "orderId": order_id,
            "intakeMethods": "dropoff",
            "clientInfo": {"name": "Ada", "address": "1 Market St"},
        }
    ]


def test_additem_then_pending_listing(api_client: TestClient) -> None:
    response = api_client.post("/api/additem", json=_payload())
    assert response.status_code == 200
    assert response.json() == {"key": "pending:1001", "order_id": "1001", "status": "pending"}

    pending = api_client.get("/api/pending")
    assert pending.status_code == 200
    assert pending.json() == [{"key": "pending:1001", "order_id": "1001", "value": _payload()}]


def test_additem_without_order_id_is_unprocessable(api_client: TestClient, store: InMemoryKeyValueStore) -> None:
    response = api_client.post("/api/additem", json=[{"intakeMethods": "dropoff"}])
    assert response.status_code == 422
    assert response.json()["detail"] == "orderId is required"
    assert store.entries == {}


def test_approve_flow_moves_item_to_approved(api_client: TestClient, store: InMemoryKeyValueStore) -> None:
    api_client.post("/api/additem", json=_payload())

    response = api_client.post("/api/approve/1001")
    assert response.status_code == 200
    assert response.json() == {
        "order_id": "1001",
        "key": "approved:1001",
        "mapbox_data": [-122.42, 37.77],
        "already_approved": False,
    }
    assert api_client.get("/api/pending").json() == []

    approved = api_client.get("/api/approved").json()
    assert [row["key"] for row in approved] == ["approved:1001"]
    assert approved[0]["value"][0]["mapboxData"] == [-122.42, 37.77]

    order = api_client.get("/api/list/1001")
    assert order.status_code == 200
    assert [(row["stage"], row["key"]) for row in order.json()] == [("approved", "approved:1001")]
    assert sorted(store.entries) == ["approved:1001"]


def test_approve_unknown_item_returns_404(api_client: TestClient) -> None:
    response = api_client.post("/api/approve/missing")
    assert response.status_code == 404
    assert response.json()["detail"] == "Item not found"


def test_approve_with_geocoding_failure_returns_500(
    api_client: TestClient,
    store: InMemoryKeyValueStore,
    geocoder: FakeGeocoder,
) -> None:
    api_client.post("/api/additem", json=_payload())
    geocoder.error = "geocoding service returned status 503"

    response = api_client.post("/api/approve/1001")
    assert response.status_code == 500
    assert response.json()["detail"].startswith("geocoding failed")
    assert sorted(store.entries) == ["pending:1001"]


def test_approve_malformed_record_returns_generic_500(api_client: TestClient, store: InMemoryKeyValueStore) -> None:
    store.entries["pending:1001"] = json.dumps([{"orderId": "1001"}])

    response = api_client.post("/api/approve/1001")
    assert response.status_code == 500
    assert response.json()["detail"] == "Internal Server Error"


def test_approved_pickup_listing_reads_nested_stage(api_client: TestClient, store: InMemoryKeyValueStore) -> None:
    store.entries["approved:pickup:3003"] = json.dumps(_payload("3003"))
    store.entries["approved:4004"] = json.dumps(_payload("4004"))

    response = api_client.get("/api/approvedpickup")
    assert response.status_code == 200
    assert [row["order_id"] for row in response.json()] == ["3003"]


def test_list_unknown_order_returns_404(api_client: TestClient) -> None:
    assert api_client.get("/api/list/9999").status_code == 404


def test_preflight_returns_cors_headers(api_client: TestClient) -> None:
    response = api_client.options(
        "/api/additem",
        headers={
            "Origin": "https://kind.example.test",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "Content-Type",
        },
    )
    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "*"
    assert response.headers["access-control-max-age"] == "86400"


def test_upload_passes_body_to_object_store(api_client: TestClient, s3_client: FakeS3Client) -> None:
    response = api_client.put("/api/upload", content=b"\x89PNG-bytes", headers={"Content-Type": "image/png"})
    assert response.status_code == 200
    body = response.json()
    assert body["key"].startswith("uploads/")
    assert body["key"].endswith(".png")
    assert body["url"] == f"https://cdn.example.test/{body['key']}"
    assert s3_client.objects[body["key"]]["Body"] == b"\x89PNG-bytes"
    assert s3_client.objects[body["key"]]["Bucket"] == "intake-uploads"


def test_upload_rejects_empty_body(api_client: TestClient) -> None:
    response = api_client.put("/api/upload", content=b"", headers={"Content-Type": "image/png"})
    assert response.status_code == 422


def test_upload_over_limit_is_rejected_before_storage(api_client: TestClient, s3_client: FakeS3Client) -> None:
    small_store = S3ObjectStore("intake-uploads", max_bytes=8, client=s3_client)
    app.dependency_overrides[get_object_store] = lambda: small_store

    declared = api_client.put("/api/upload", content=b"0123456789", headers={"Content-Type": "text/plain"})
    chunked = api_client.put(
        "/api/upload",
        content=iter([b"01234", b"56789"]),
        headers={"Content-Type": "text/plain"},
    )
    within_limit = api_client.put("/api/upload", content=b"01234567", headers={"Content-Type": "text/plain"})

    assert declared.status_code == 413
    assert declared.json() == {"detail": "upload exceeds 8 bytes"}
    assert chunked.status_code == 413
    assert within_limit.status_code == 200
    assert [stored["Body"] for stored in s3_client.objects.values()] == [b"01234567"]


def test_unconfigured_store_returns_503() -> None:
    app.dependency_overrides[get_store] = lambda: PostgresKeyValueStore(None, 1, 1)
    try:
        client = TestClient(app)
        response = client.get("/api/pending")
    finally:
        app.dependency_overrides.clear()
    assert response.status_code == 503
    assert response.json()["detail"] == "IL_DATABASE_URL is required"


def test_disallowed_host_is_rejected() -> None:
    restricted = create_app(Settings(allowed_hosts=["kindapi.gusweb.dev"], otel_enabled=False))

    rejected = TestClient(restricted).get("/healthz")
    assert rejected.status_code == 403
    assert rejected.text == "testserver not allowed"

    allowed = TestClient(restricted, base_url="https://kindapi.gusweb.dev").get("/healthz")
    assert allowed.status_code == 200
