from __future__ import annotations

import time

import httpx
import pytest

from avatar_ingest.domain import SourceFetcher, compute_fingerprint
from avatar_ingest.ingest.errors import (
    CatalogError,
    DecodeError,
    FetchError,
    PolicyViolation,
    SourceError,
    StorageError,
    TransientStorageError,
)
from avatar_ingest.main import status_for
from tests.conftest import BASE_URL, build_token

ATTACHMENT_URL = "https://cdn.discordapp.com/attachments/123/456/avatar.png"


def _use_cdn(client, handler) -> None:
    client.app.state.ingest_service.fetcher = SourceFetcher(transport=httpx.MockTransport(handler))


def _upload(client, headers, data: bytes, *, kind: str = "avatar", **form):
    return client.post(
        "/v1/upload",
        files={"file": ("avatar.png", data, "image/png")},
        data={"kind": kind, **form},
        headers=headers,
    )


def test_v1_health_ok(client):
    resp = client.get("/v1/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["storage_backend"] == "local"
    assert body["inflight"] == 0


def test_mutating_endpoints_require_token(client, make_image):
    assert client.post("/v1/upload", files={"file": ("a.png", make_image(), "image/png")}).status_code == 401
    assert client.post("/v1/pull", json={"url": ATTACHMENT_URL}).status_code == 401
    bad = {"Authorization": "Bearer not-a-jwt"}
    assert client.post("/v1/pull", json={"url": ATTACHMENT_URL}, headers=bad).status_code == 401


def test_upload_flow(client, auth_headers, make_image):
    data = make_image((1200, 600), "PNG", noise=True)

    first = _upload(client, auth_headers, data)
    assert first.status_code == 200, first.text
    body = first.json()
    assert body["new"] is True
    assert (body["width"], body["height"]) == (512, 256)
    assert body["kind"] == "avatar"
    assert body["content_type"] == "image/webp"
    assert body["url"] == f"{BASE_URL}images/{body['id'][:2]}/{body['id'][2:]}.webp"

    again = _upload(client, auth_headers, data)
    assert again.status_code == 200
    assert again.json()["id"] == body["id"]
    assert again.json()["new"] is False

    record = client.get(f"/v1/images/{body['id']}")
    assert record.status_code == 200
    record_json = record.json()
    assert record_json["source_fingerprint"] == compute_fingerprint(data)
    assert record_json["original_file_size"] == len(data)
    assert record_json["original_type"] == "image/png"
    assert record_json["uploaded_by_account"] == 466378653216014359

    stats = client.get("/v1/stats").json()
    assert stats == {"total_images": 1, "total_file_size": body["file_size"]}


def test_upload_banner_with_explicit_uploader(client, auth_headers, make_image):
    resp = _upload(client, auth_headers, make_image((2048, 512), "PNG"), kind="banner", uploaded_by="7")
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["kind"] == "banner"
    assert (body["width"], body["height"]) == (1024, 256)
    assert client.get(f"/v1/images/{body['id']}").json()["uploaded_by_account"] == 7


def test_upload_garbage_returns_structured_error(client, auth_headers):
    payload = b"this is not an image"
    resp = _upload(client, auth_headers, payload)
    assert resp.status_code == 400
    assert resp.json() == {
        "error": "could not detect image format",
        "stage": "decoding",
        "fingerprint": compute_fingerprint(payload),
        "retryable": False,
    }
    assert client.get("/v1/stats").json()["total_images"] == 0


def test_unknown_image_is_404(client):
    resp = client.get("/v1/images/" + "0" * 64)
    assert resp.status_code == 404
    assert resp.json()["detail"] == "image_not_found"


def test_lookup_requires_a_key(client):
    assert client.get("/v1/images").status_code == 400
    assert client.get("/v1/images", params={"attachment_id": 1}).status_code == 404


def test_pull_flow(client, auth_headers, make_image):
    payload = make_image((300, 300), "PNG")
    _use_cdn(client, lambda request: httpx.Response(200, content=payload, headers={"Content-Type": "image/png"}))

    resp = client.post("/v1/pull", json={"url": ATTACHMENT_URL, "kind": "avatar", "system_id": "sys-1"}, headers=auth_headers)
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["new"] is True
    assert (body["width"], body["height"]) == (300, 300)

    by_url = client.get("/v1/images", params={"original_url": ATTACHMENT_URL})
    assert by_url.status_code == 200
    assert by_url.json()["id"] == body["id"]
    assert by_url.json()["uploaded_by_system"] == "sys-1"

    by_attachment = client.get("/v1/images", params={"attachment_id": 456})
    assert by_attachment.json()["original_attachment_id"] == 456


def test_pull_rejects_foreign_hosts(client, auth_headers):
    resp = client.post("/v1/pull", json={"url": "https://example.com/a/1/2/x.png"}, headers=auth_headers)
    assert resp.status_code == 400
    assert resp.json()["stage"] == "requested"
    assert resp.json()["retryable"] is False


def test_pull_rejects_non_ascii_digits(client, auth_headers):
    resp = client.post(
        "/v1/pull",
        json={"url": "https://cdn.discordapp.com/attachments/12\u00b2/456/avatar.png"},
        headers=auth_headers,
    )
    assert resp.status_code == 400
    assert resp.json()["stage"] == "requested"


def test_pull_upstream_outage_is_bad_gateway(client, auth_headers):
    _use_cdn(client, lambda request: httpx.Response(503))
    resp = client.post("/v1/pull", json={"url": ATTACHMENT_URL}, headers=auth_headers)
    assert resp.status_code == 502
    assert resp.json()["retryable"] is True


def test_migrate_requires_admin(client, auth_headers):
    resp = client.post("/v1/migrate", json={"urls": [ATTACHMENT_URL]}, headers=auth_headers)
    assert resp.status_code == 403


def _wait_for_empty_queue(client, attempts: int = 100) -> bool:
    for _ in range(attempts):
        if client.get("/v1/migrate").json()["queue_length"] == 0:
            return True
        time.sleep(0.05)
    return False


def test_migrate_skips_unusable_urls(client, admin_headers):
    resp = client.post(
        "/v1/migrate",
        json={"urls": ["http://example.com/legacy/avatar.png"], "kind": "avatar"},
        headers=admin_headers,
    )
    assert resp.status_code == 202, resp.text
    assert len(resp.json()["queued"]) == 1
    assert _wait_for_empty_queue(client)


def test_openapi_lists_v1_routes(client):
    document = client.get("/openapi.json").json()
    paths = document["paths"]
    for path in ("/v1/health", "/v1/pull", "/v1/upload", "/v1/images/{image_id}", "/v1/stats", "/v1/migrate"):
        assert path in paths
    assert "ErrorResponse" in document["components"]["schemas"]
    for path in ("/v1/pull", "/v1/upload"):
        assert {"400", "500", "502", "503"} <= set(paths[path]["post"]["responses"])


@pytest.mark.parametrize(
    "error, status",
    [
        (DecodeError("bad"), 400),
        (PolicyViolation("too big"), 400),
        (SourceError("bad url"), 400),
        (FetchError("cdn down", status_code=503), 502),
        (TransientStorageError("slow down"), 503),
        (CatalogError("db down"), 503),
        (StorageError("denied"), 500),
    ],
)
def test_error_status_mapping(error, status):
    assert status_for(error) == status


def test_admin_token_is_accepted_for_reads_and_writes(client, make_image):
    headers = {"Authorization": f"Bearer {build_token(None, scopes=['admin'])}"}
    resp = _upload(client, headers, make_image((32, 32), "PNG"))
    assert resp.status_code == 200
    assert client.get(f"/v1/images/{resp.json()['id']}").json()["uploaded_by_account"] is None
