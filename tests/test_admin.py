from __future__ import annotations

import asyncio
import hashlib

import pytest
from fastapi.testclient import TestClient

from trove.api.main import app
from trove.core.config import get_settings
from trove.services.repository import get_repository

ADMIN_KEY = "operator-key"
ADMIN_HEADERS = {"X-API-Key": ADMIN_KEY}


@pytest.fixture
def api_client(repository, settings):
    settings.admin_api_key_hash = hashlib.sha256(ADMIN_KEY.encode("utf-8")).hexdigest()
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_settings] = lambda: settings
    yield TestClient(app)
    app.dependency_overrides.clear()


def _raw_item(repository) -> str:
    return asyncio.run(
        repository.enqueue_raw_item(
            source="webhook", platform="strava", event_type="activity.create", payload={"object_id": 1}, external_id="e-1"
        )
    )


def test_admin_requires_api_key(api_client, repository) -> None:
    item_id = _raw_item(repository)

    missing = api_client.post(f"/admin/items/raw_item/{item_id}/dead-letter")
    wrong = api_client.post(f"/admin/items/raw_item/{item_id}/dead-letter", headers={"X-API-Key": "nope"})

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert repository.raw_items[item_id].status == "pending"


def test_admin_unconfigured_is_unavailable(api_client, settings, repository) -> None:
    settings.admin_api_key_hash = None
    response = api_client.post(f"/admin/items/raw_item/{_raw_item(repository)}/dead-letter", headers=ADMIN_HEADERS)
    assert response.status_code == 503


def test_dead_letter_then_reinject(api_client, repository) -> None:
    item_id = _raw_item(repository)

    marked = api_client.post(
        f"/admin/items/raw_item/{item_id}/dead-letter",
        json={"reason": "poison payload"},
        headers=ADMIN_HEADERS,
    )
    assert marked.status_code == 200
    assert marked.json()["status"] == "dead_letter"
    assert marked.json()["last_error"] == "poison payload"

    again = api_client.post(f"/admin/items/raw_item/{item_id}/dead-letter", headers=ADMIN_HEADERS)
    assert again.status_code == 409

    reinjected = api_client.post(f"/admin/raw-items/{item_id}/reinject", headers=ADMIN_HEADERS)
    assert reinjected.status_code == 201
    body = reinjected.json()
    assert body["retry_of"] == item_id
    assert body["source"] == "retry"
    assert body["status"] == "pending"
    assert repository.raw_items[body["id"]].payload == {"object_id": 1}


def test_reinject_requires_dead_letter(api_client, repository) -> None:
    item_id = _raw_item(repository)
    response = api_client.post(f"/admin/raw-items/{item_id}/reinject", headers=ADMIN_HEADERS)
    assert response.status_code == 409


def test_dead_letter_media_download(api_client, repository) -> None:
    download_id = asyncio.run(
        repository.enqueue_media_reference(
            user_id="user-1", platform="strava", extracted_post_id=None, url="https://cdn.example.com/a.jpg"
        )
    )

    response = api_client.post(f"/admin/items/media_download/{download_id}/dead-letter", headers=ADMIN_HEADERS)

    assert response.status_code == 200
    assert response.json()["status"] == "failed"
    assert response.json()["attempts"] == 3


def test_unknown_items_are_not_found(api_client) -> None:
    assert api_client.post("/admin/items/extracted_post/missing/dead-letter", headers=ADMIN_HEADERS).status_code == 404
    assert api_client.post("/admin/raw-items/missing/reinject", headers=ADMIN_HEADERS).status_code == 404
    assert api_client.post("/admin/items/canonical_post/x/dead-letter", headers=ADMIN_HEADERS).status_code == 422
