"""
Tests for the App Store Server Notifications webhook.

Requests go through httpx.ASGITransport into a FastAPI app carrying only the
webhook router, with its components placed on app.state.
"""

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from conftest import TEST_APP_USER_ID, unsigned_jws
from fastapi import FastAPI

from app.api.webhook_routes import router
from app.exceptions import SignatureVerificationError
from app.services.background import BackgroundTaskRunner
from app.services.payload_verifier import FastDecode

NOTIFICATION = {
    "notificationType": "SUBSCRIBED",
    "notificationUUID": "0b2d1c6e-0000-4000-8000-000000000002",
    "signedDate": 1738756801000,
    "data": {
        "productId": "p1",
        "transactionId": "1000",
        "originalTransactionId": "orig-1",
        "appAccountToken": TEST_APP_USER_ID,
    },
}


def _app(**components: Any) -> FastAPI:
    app = FastAPI()
    app.include_router(router)
    for name, component in components.items():
        setattr(app.state, name, component)
    return app


def _client(app: FastAPI) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.fixture
def decoder() -> AsyncMock:
    decoder = AsyncMock()
    decoder.decode.return_value = NOTIFICATION
    return decoder


@pytest.fixture
def task_runner() -> MagicMock:
    return MagicMock(spec=BackgroundTaskRunner)


@pytest.fixture
def mock_reconciler() -> MagicMock:
    reconciler = MagicMock()
    reconciler.handle_payload = MagicMock(return_value="reconcile-coroutine")
    return reconciler


@pytest.fixture
def webhook_app(decoder, task_runner, mock_reconciler) -> FastAPI:
    return _app(payload_decoder=decoder, task_runner=task_runner, reconciler=mock_reconciler)


class TestMissingSignedPayload:
    """Bodies without a usable signedPayload get a 400."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            b"{}",
            b'{"signedPayload": ""}',
            b'{"signedPayload": 42}',
            b'{"other": "field"}',
            b"[]",
            b"not json",
            b"",
        ],
    )
    async def test_returns_400(self, webhook_app, task_runner, decoder, body):
        async with _client(webhook_app) as client:
            response = await client.post(
                "/webhooks/apple", content=body, headers={"Content-Type": "application/json"}
            )

        assert response.status_code == 400
        assert response.json() == {"error": "Missing signedPayload"}
        decoder.decode.assert_not_awaited()
        task_runner.spawn.assert_not_called()


class TestAcceptedPayload:
    """A decodable payload is acknowledged and reconciled in the background."""

    @pytest.mark.asyncio
    async def test_returns_empty_200_and_spawns(
        self, webhook_app, decoder, task_runner, mock_reconciler
    ):
        async with _client(webhook_app) as client:
            response = await client.post("/webhooks/apple", json={"signedPayload": "a.b.c"})

        assert response.status_code == 200
        assert response.content == b""
        decoder.decode.assert_awaited_once_with("a.b.c")
        mock_reconciler.handle_payload.assert_called_once_with(NOTIFICATION)
        task_runner.spawn.assert_called_once()
        args, kwargs = task_runner.spawn.call_args
        assert args[0] == "reconcile-coroutine"
        assert kwargs["name"] == f"reconcile-{NOTIFICATION['notificationUUID']}"


class TestRejectedPayload:
    """Payloads that fail decoding still get 200 so Apple stops retrying."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error", [SignatureVerificationError("bad signature"), RuntimeError("unexpected")]
    )
    async def test_decode_failure_returns_200(self, webhook_app, decoder, task_runner, error):
        decoder.decode.side_effect = error

        async with _client(webhook_app) as client:
            response = await client.post("/webhooks/apple", json={"signedPayload": "a.b.c"})

        assert response.status_code == 200
        assert response.content == b""
        task_runner.spawn.assert_not_called()


class TestComponentsMissing:
    """Requests before startup finishes are refused."""

    @pytest.mark.asyncio
    async def test_returns_503(self):
        async with _client(_app()) as client:
            response = await client.post("/webhooks/apple", json={"signedPayload": "a.b.c"})
        assert response.status_code == 503


class TestEndToEnd:
    """Webhook through the real decoder, runner and reconciler."""

    @pytest.mark.asyncio
    async def test_notification_updates_customer(self, reconciler, customer_store):
        runner = BackgroundTaskRunner()
        app = _app(payload_decoder=FastDecode(), task_runner=runner, reconciler=reconciler)

        async with _client(app) as client:
            response = await client.post(
                "/webhooks/apple", json={"signedPayload": unsigned_jws(NOTIFICATION)}
            )
        await runner.drain(timeout=1.0)

        assert response.status_code == 200
        info = await customer_store.get_by_app_user_id(TEST_APP_USER_ID)
        assert info.active_subscriptions == ["p1"]

    @pytest.mark.asyncio
    async def test_unknown_customer_still_200(self, reconciler, customer_store):
        runner = BackgroundTaskRunner()
        app = _app(payload_decoder=FastDecode(), task_runner=runner, reconciler=reconciler)
        notification = {**NOTIFICATION, "data": {**NOTIFICATION["data"], "appAccountToken": "x"}}

        async with _client(app) as client:
            response = await client.post(
                "/webhooks/apple", json={"signedPayload": unsigned_jws(notification)}
            )
        await runner.drain(timeout=1.0)

        assert response.status_code == 200
        assert await customer_store.get_by_app_user_id("x") is None
