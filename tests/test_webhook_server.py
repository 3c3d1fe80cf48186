"""
Тесты для сервера вебхуков Mercuryo
"""
import hashlib
import hmac
import json

import pytest
from aiohttp.test_utils import TestClient, TestServer

from services.mercuryo_service import MercuryoService, MercuryoSettings
from webhook_server import SIGNATURE_HEADER, create_app

WEBHOOK_SECRET = "whsec-server"

BODY = json.dumps({
    "id": "pay_9",
    "status": "completed",
    "amount": 1999,
    "currency": "EUR",
    "user_id": "user-3",
}, indent=2).encode()


def sign(payload: bytes) -> str:
    return hmac.new(WEBHOOK_SECRET.encode(), payload, hashlib.sha256).hexdigest()


@pytest.fixture
async def webhook_client():
    """Клиент к серверу вебхуков и список полученных событий"""
    events = []

    async def on_settlement(event):
        events.append(event)

    mercuryo = MercuryoService(MercuryoSettings(
        api_key="key", secret="secret", webhook_secret=WEBHOOK_SECRET,
    ))
    client = TestClient(TestServer(create_app(mercuryo, on_settlement)))
    await client.start_server()
    yield client, events
    await client.close()


class TestWebhookRoute:
    """Тесты маршрута /webhooks/mercuryo"""

    @pytest.mark.asyncio
    async def test_valid_webhook(self, webhook_client):
        """Подпись верна — событие передано дальше"""
        client, events = webhook_client
        resp = await client.post(
            "/webhooks/mercuryo",
            data=BODY,
            headers={SIGNATURE_HEADER: sign(BODY), "Content-Type": "application/json"},
        )

        assert resp.status == 200
        assert len(events) == 1
        assert events[0].id == "pay_9"
        assert events[0].amount == 1999

    @pytest.mark.asyncio
    async def test_raw_body_is_signed(self, webhook_client):
        """Подпись считается от сырого тела, а не от пересобранного JSON"""
        client, events = webhook_client
        compact = json.dumps(json.loads(BODY)).encode()
        resp = await client.post(
            "/webhooks/mercuryo",
            data=BODY,
            headers={SIGNATURE_HEADER: sign(compact)},
        )
        assert resp.status == 401
        assert events == []

    @pytest.mark.asyncio
    async def test_missing_signature(self, webhook_client):
        client, events = webhook_client
        resp = await client.post("/webhooks/mercuryo", data=BODY)
        assert resp.status == 401
        assert events == []

    @pytest.mark.asyncio
    async def test_signed_garbage(self, webhook_client):
        client, events = webhook_client
        body = b"not json at all"
        resp = await client.post("/webhooks/mercuryo", data=body, headers={SIGNATURE_HEADER: sign(body)})
        assert resp.status == 400
        assert events == []

    @pytest.mark.asyncio
    async def test_health(self, webhook_client):
        client, _ = webhook_client
        resp = await client.get("/health")
        assert resp.status == 200
        assert await resp.text() == "OK"
