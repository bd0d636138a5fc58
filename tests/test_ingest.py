from __future__ import annotations

import pytest
from aiohttp import BasicAuth
from aiohttp.test_utils import TestClient, TestServer

from lora_endpoint.delivery import DeliveryQueue
from lora_endpoint.exceptions import EndpointStoreError
from lora_endpoint.ingest import create_app
from lora_endpoint.models import Message
from lora_endpoint.state import SqliteMessageStore

_BODY = {"id": "m1", "eui": "0004A30B001C0530", "payload": {"rssi": -87}}


@pytest.mark.asyncio
async def test_post_message_queues_once() -> None:
    store = SqliteMessageStore(":memory:")
    queue = DeliveryQueue(store)
    try:
        async with TestClient(TestServer(create_app(queue))) as client:
            resp = await client.post("/messages", json=_BODY)
            assert resp.status == 202
            assert await resp.json() == {"id": "m1"}

            resp = await client.post("/messages", json=_BODY)
            assert resp.status == 202

        assert store.get_messages() == [Message.model_validate(_BODY)]
    finally:
        await queue.aclose()


@pytest.mark.asyncio
async def test_post_message_rejects_invalid_bodies() -> None:
    queue = DeliveryQueue(SqliteMessageStore(":memory:"))
    try:
        async with TestClient(TestServer(create_app(queue))) as client:
            resp = await client.post("/messages", data=b"{not json", headers={"Content-Type": "application/json"})
            assert resp.status == 400

            resp = await client.post("/messages", json={"id": "m1"})
            assert resp.status == 400
            body = await resp.json()
            assert body["error"] == "invalid message"
            assert body["details"][0]["loc"] == ["eui"]

            resp = await client.post("/messages", json={"id": " ", "eui": "x"})
            assert resp.status == 400

            resp = await client.post("/messages", json=[_BODY])
            assert resp.status == 400

        assert queue.pending_count() == 0
    finally:
        await queue.aclose()


@pytest.mark.asyncio
async def test_post_message_requires_basic_auth_when_configured() -> None:
    queue = DeliveryQueue(SqliteMessageStore(":memory:"))
    try:
        app = create_app(queue, credentials={"gateway": "s3cret"})
        async with TestClient(TestServer(app)) as client:
            resp = await client.post("/messages", json=_BODY)
            assert resp.status == 401
            assert resp.headers["WWW-Authenticate"].startswith("Basic")

            resp = await client.post("/messages", json=_BODY, auth=BasicAuth("gateway", "wrong"))
            assert resp.status == 401

            resp = await client.post("/messages", json=_BODY, auth=BasicAuth("gateway", "s3cret"))
            assert resp.status == 202
    finally:
        await queue.aclose()


class _FailingStore:
    def is_seen(self, message_id: str) -> bool:
        return False

    def set_seen(self, message_id: str) -> None:
        return None

    def enqueue(self, message: Message) -> None:
        return None

    def dequeue(self, message: Message) -> None:
        return None

    def get_messages(self) -> list[Message]:
        return []

    def add(self, message: Message) -> bool:
        raise EndpointStoreError("database is locked")


@pytest.mark.asyncio
async def test_post_message_reports_store_failure() -> None:
    queue = DeliveryQueue(_FailingStore())
    async with TestClient(TestServer(create_app(queue))) as client:
        resp = await client.post("/messages", json=_BODY)
        assert resp.status == 503
    await queue.aclose()
