import time

import pytest
from jose import jwt

from config import settings
from routers.auth_scope import issue_session_token
from services.enhancement_queue import run_enhancement_job


PHOTO_USER_ID = "router-user"
OTHER_USER_ID = "router-user-other"
PHOTO_AUTH_HEADER = {"Authorization": f"Bearer {issue_session_token(PHOTO_USER_ID)}"}
OTHER_AUTH_HEADER = {"Authorization": f"Bearer {issue_session_token(OTHER_USER_ID)}"}
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


async def _upload(client, headers=PHOTO_AUTH_HEADER, data: bytes = PNG_BYTES, mode: str = "restore"):
    return await client.post(
        "/photos",
        files={"file": ("old-family-photo.png", data, "image/png")},
        data={"mode": mode},
        headers=headers,
    )


@pytest.mark.asyncio
async def test_upload_enhance_and_download_flow(api_client, services):
    upload_resp = await _upload(api_client)
    assert upload_resp.status_code == 201
    photo = upload_resp.json()
    assert photo["status"] == "PENDING"
    assert photo["enhancement_mode"] == "restore"
    assert photo["has_enhanced"] is False

    enhance_resp = await api_client.post(f"/photos/{photo['photo_id']}/enhance", headers=PHOTO_AUTH_HEADER)
    assert enhance_resp.status_code == 202
    assert enhance_resp.json()["status"] == "PROCESSING"
    assert enhance_resp.json()["charged_with"] == "free_tier"
    assert services.dispatcher.dispatched == [photo["photo_id"]]

    not_ready = await api_client.get(f"/photos/{photo['photo_id']}/enhanced", headers=PHOTO_AUTH_HEADER)
    assert not_ready.status_code == 409
    assert not_ready.json()["code"] == "conflict"

    assert await run_enhancement_job(services, photo["photo_id"]) == "COMPLETED"

    status_resp = await api_client.get(f"/photos/{photo['photo_id']}", headers=PHOTO_AUTH_HEADER)
    assert status_resp.status_code == 200
    assert status_resp.json()["status"] == "COMPLETED"
    assert status_resp.json()["has_enhanced"] is True

    enhanced_resp = await api_client.get(f"/photos/{photo['photo_id']}/enhanced", headers=PHOTO_AUTH_HEADER)
    assert enhanced_resp.status_code == 200
    assert enhanced_resp.headers["content-type"] == "image/png"
    assert enhanced_resp.content == PNG_BYTES

    original_resp = await api_client.get(f"/photos/{photo['photo_id']}/original", headers=PHOTO_AUTH_HEADER)
    assert original_resp.content == PNG_BYTES


@pytest.mark.asyncio
async def test_third_enhancement_without_credits_returns_402(api_client):
    photo_ids = []
    for _ in range(3):
        resp = await _upload(api_client)
        photo_ids.append(resp.json()["photo_id"])

    for photo_id in photo_ids[:2]:
        resp = await api_client.post(f"/photos/{photo_id}/enhance", headers=PHOTO_AUTH_HEADER)
        assert resp.status_code == 202

    rejected = await api_client.post(f"/photos/{photo_ids[2]}/enhance", headers=PHOTO_AUTH_HEADER)
    assert rejected.status_code == 402
    assert rejected.json()["code"] == "insufficient_credits"
    assert "Top up credits" in rejected.json()["detail"]

    status_resp = await api_client.get(f"/photos/{photo_ids[2]}", headers=PHOTO_AUTH_HEADER)
    assert status_resp.json()["status"] == "PENDING"

    credits_resp = await api_client.get("/billing/credits", headers=PHOTO_AUTH_HEADER)
    assert credits_resp.json()["free_tier"] == {"limit": 2, "used": 2, "remaining": 0}


@pytest.mark.asyncio
async def test_duplicate_enhance_request_conflicts(api_client):
    photo_id = (await _upload(api_client)).json()["photo_id"]
    first = await api_client.post(f"/photos/{photo_id}/enhance", headers=PHOTO_AUTH_HEADER)
    second = await api_client.post(f"/photos/{photo_id}/enhance", headers=PHOTO_AUTH_HEADER)

    assert first.status_code == 202
    assert second.status_code == 409
    assert second.json()["code"] == "conflict"


@pytest.mark.asyncio
async def test_failed_photo_can_be_retried(api_client, services):
    photo_id = (await _upload(api_client)).json()["photo_id"]
    await api_client.post(f"/photos/{photo_id}/enhance", headers=PHOTO_AUTH_HEADER)
    async with services.session_maker() as db:
        await services.lifecycle(db).on_enhancement_failed(photo_id, "provider rejected image", True)

    failed = (await api_client.get(f"/photos/{photo_id}", headers=PHOTO_AUTH_HEADER)).json()
    assert failed["status"] == "FAILED"
    assert failed["retryable"] is True
    assert failed["error_reason"] == "provider rejected image"

    retry_resp = await api_client.post(f"/photos/{photo_id}/retry", headers=PHOTO_AUTH_HEADER)
    assert retry_resp.status_code == 202
    assert retry_resp.json()["attempt_count"] == 2


@pytest.mark.asyncio
async def test_upload_validation_errors(api_client):
    not_image = await _upload(api_client, data=b"plain text, not a photo")
    assert not_image.status_code == 422
    assert not_image.json()["code"] == "validation_error"

    bad_mode = await _upload(api_client, mode="sharpen")
    assert bad_mode.status_code == 422


@pytest.mark.asyncio
async def test_photos_are_scoped_to_their_owner(api_client):
    photo_id = (await _upload(api_client)).json()["photo_id"]

    other_get = await api_client.get(f"/photos/{photo_id}", headers=OTHER_AUTH_HEADER)
    other_enhance = await api_client.post(f"/photos/{photo_id}/enhance", headers=OTHER_AUTH_HEADER)
    other_list = await api_client.get("/photos", headers=OTHER_AUTH_HEADER)
    own_list = await api_client.get("/photos", headers=PHOTO_AUTH_HEADER)

    assert other_get.status_code == 404
    assert other_get.json()["code"] == "not_found"
    assert other_enhance.status_code == 404
    assert other_list.json()["photos"] == []
    assert [item["photo_id"] for item in own_list.json()["photos"]] == [photo_id]


@pytest.mark.asyncio
async def test_requests_without_session_are_rejected(api_client):
    assert (await api_client.get("/photos")).status_code == 401
    assert (await _upload(api_client, headers={"Authorization": "Bearer not-a-token"})).status_code == 401


@pytest.mark.asyncio
async def test_expired_or_foreign_tokens_are_rejected(api_client):
    now = int(time.time())
    expired = jwt.encode(
        {"sub": PHOTO_USER_ID, "type": "photo_session", "iat": now - 7200, "exp": now - 3600},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    foreign = jwt.encode(
        {"sub": PHOTO_USER_ID, "type": "oauth_state", "exp": now + 3600},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )

    for token in (expired, foreign):
        resp = await api_client.get("/photos", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == "Bearer"

    assert (await api_client.get("/photos", headers=PHOTO_AUTH_HEADER)).status_code == 200
