import httpx
import pytest
import pytest_asyncio

from spark.main import create_app

CONV = "conv-ab"


@pytest_asyncio.fixture
async def client(core):
    app = create_app(core)
    core.accepting = True
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


@pytest.fixture
def auth(issue_token):
    def _auth(user_id, **kwargs):
        return {"Authorization": f"Bearer {issue_token(user_id, **kwargs)}"}

    return _auth


@pytest.mark.asyncio
async def test_rest_send_reaches_socket_members(client, auth, core, joined, wait_for):
    b, b_channel = await joined(core, "user-b")
    resp = await client.post(f"/chats/{CONV}/messages", json={"content": "sent over http"}, headers=auth("user-a"))
    assert resp.status_code == 201
    message = resp.json()["message"]
    assert message["content"] == "sent over http"
    assert message["sender_user_id"] == "user-a"
    await wait_for(lambda: b_channel.events("message:new"))
    assert b_channel.data("message:new")[0]["message"]["message_id"] == message["message_id"]


@pytest.mark.asyncio
async def test_missing_or_bad_token_is_401(client):
    resp = await client.post(f"/chats/{CONV}/messages", json={"content": "hi"})
    assert resp.status_code == 401
    resp = await client.post(f"/chats/{CONV}/messages", json={"content": "hi"}, headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401
    assert resp.json()["detail"] == "invalid_token"


@pytest.mark.asyncio
async def test_outsider_gets_403(client, auth):
    resp = await client.post(f"/chats/{CONV}/messages", json={"content": "let me in"}, headers=auth("user-c"))
    assert resp.status_code == 403
    assert resp.json()["detail"]["code"] == "NOT_A_MEMBER"
    assert "request_id" in resp.json()


@pytest.mark.asyncio
async def test_blocked_content_is_422(client, auth):
    resp = await client.post(f"/chats/{CONV}/messages", json={"content": "kys"}, headers=auth("user-a"))
    assert resp.status_code == 422
    assert resp.json()["detail"]["code"] == "CONTENT_BLOCKED"


@pytest.mark.asyncio
async def test_long_text_is_413_and_system_type_is_rejected(client, auth):
    resp = await client.post(f"/chats/{CONV}/messages", json={"content": "ab " * 700}, headers=auth("user-a"))
    assert resp.status_code == 413
    assert resp.json()["detail"]["code"] == "MESSAGE_TOO_LARGE"
    resp = await client.post(f"/chats/{CONV}/messages", json={"content": "x", "type": "system"}, headers=auth("user-a"))
    assert resp.status_code == 422
    assert resp.json()["detail"] == "validation_error"


@pytest.mark.asyncio
async def test_rate_limit_is_429_with_retry_after(client, auth):
    headers = auth("user-a")
    for index in range(30):
        resp = await client.post(f"/chats/{CONV}/messages", json={"content": f"note {index}"}, headers=headers)
        assert resp.status_code == 201
    resp = await client.post(f"/chats/{CONV}/messages", json={"content": "one more"}, headers=headers)
    assert resp.status_code == 429
    assert int(resp.headers["Retry-After"]) >= 1
    assert resp.json()["detail"]["retry_after_ms"] > 0


@pytest.mark.asyncio
async def test_history_paginates(client, auth):
    headers = auth("user-a")
    for word in ("one", "two", "three"):
        await client.post(f"/chats/{CONV}/messages", json={"content": word}, headers=headers)

    first = (await client.get(f"/chats/{CONV}/messages", params={"limit": 2}, headers=auth("user-b"))).json()
    assert [item["content"] for item in first["items"]] == ["three", "two"]
    assert first["next_cursor"] == first["items"][-1]["message_id"]
    second = (
        await client.get(f"/chats/{CONV}/messages", params={"limit": 2, "cursor": first["next_cursor"]}, headers=auth("user-b"))
    ).json()
    assert [item["content"] for item in second["items"]] == ["one"]
    assert second["next_cursor"] is None


@pytest.mark.asyncio
async def test_mark_read_over_http(client, auth, core, joined, wait_for):
    a, a_channel = await joined(core, "user-a")
    sent = (await client.post(f"/chats/{CONV}/messages", json={"content": "read it"}, headers=auth("user-a"))).json()
    message_id = sent["message"]["message_id"]

    resp = await client.post(f"/chats/{CONV}/read", json={"up_to_message_id": message_id}, headers=auth("user-b"))
    assert resp.status_code == 200
    assert resp.json() == {"conversation_id": CONV, "up_to_message_id": message_id, "updated": True}
    again = await client.post(f"/chats/{CONV}/read", json={"up_to_message_id": message_id}, headers=auth("user-b"))
    assert again.json()["updated"] is False
    await wait_for(lambda: a_channel.events("message:read"))
    assert len(a_channel.events("message:read")) == 1


@pytest.mark.asyncio
async def test_delete_over_http(client, auth):
    sent = (await client.post(f"/chats/{CONV}/messages", json={"content": "temporary"}, headers=auth("user-a"))).json()
    message_id = sent["message"]["message_id"]

    resp = await client.delete(f"/chats/{CONV}/messages/{message_id}", headers=auth("user-b"))
    assert resp.status_code == 403
    assert resp.json()["detail"]["code"] == "UNAUTHORIZED"
    resp = await client.delete(f"/chats/{CONV}/messages/{message_id}", headers=auth("user-a"))
    assert resp.status_code == 204
    resp = await client.delete(f"/chats/{CONV}/messages/{message_id}", headers=auth("user-a"))
    assert resp.status_code == 410
    listed = (await client.get(f"/chats/{CONV}/messages", headers=auth("user-a"))).json()
    assert listed["items"] == []


@pytest.mark.asyncio
async def test_ephemeral_photo_over_http(client, auth, core):
    photo = await core.photos.register_upload(owner_user_id="user-a", thumbnail_ref="thumbs/h.jpg", storage_ref="photos/h.jpg")

    sent = await client.post(f"/chats/{CONV}/ephemeral-photos", json={"photo_id": photo.photo_id}, headers=auth("user-a"))
    assert sent.status_code == 201
    assert sent.json()["message"]["metadata"]["thumbnail_ref"] == "thumbs/h.jpg"
    assert "storage_ref" not in sent.json()["message"]["metadata"]

    resp = await client.post(f"/ephemeral-photos/{photo.photo_id}/access", headers=auth("user-a"))
    assert resp.status_code == 403
    grant = await client.post(f"/ephemeral-photos/{photo.photo_id}/access", headers=auth("user-b"))
    assert grant.status_code == 201
    access_key = grant.json()["access_key"]

    view = await client.post(f"/ephemeral-photos/{photo.photo_id}/view", json={"access_key": access_key}, headers=auth("user-b"))
    assert view.status_code == 200
    assert view.json()["photo_ref"] == "photos/h.jpg"
    replay = await client.post(f"/ephemeral-photos/{photo.photo_id}/view", json={"access_key": access_key}, headers=auth("user-b"))
    assert replay.status_code == 410

    status = await client.get(f"/ephemeral-photos/{photo.photo_id}", headers=auth("user-a"))
    assert status.json()["state"] == "viewed"
    assert [view["viewer_user_id"] for view in status.json()["views"]] == ["user-b"]
    assert (await client.get(f"/ephemeral-photos/{photo.photo_id}", headers=auth("user-c"))).status_code == 403

    assert (await client.delete(f"/ephemeral-photos/{photo.photo_id}", headers=auth("user-b"))).status_code == 403
    assert (await client.delete(f"/ephemeral-photos/{photo.photo_id}", headers=auth("user-a"))).status_code == 410


@pytest.mark.asyncio
async def test_owner_can_delete_an_unviewed_photo(client, auth, core):
    photo = await core.photos.register_upload(owner_user_id="user-a", thumbnail_ref="t", storage_ref="s")
    assert (await client.delete(f"/ephemeral-photos/{photo.photo_id}", headers=auth("user-a"))).status_code == 204
    assert (await client.get(f"/ephemeral-photos/{photo.photo_id}", headers=auth("user-a"))).json()["state"] == "deleted"


@pytest.mark.asyncio
async def test_blocked_pair_cannot_message_over_http(client, auth, block_list, repository):
    await block_list.block("user-b", "user-a")
    resp = await client.post(f"/chats/{CONV}/messages", json={"content": "hello?"}, headers=auth("user-a"))
    assert resp.status_code == 403
    assert resp.json()["detail"]["code"] == "UNAUTHORIZED"
    assert await repository.list_messages(CONV, None, 10) == []
