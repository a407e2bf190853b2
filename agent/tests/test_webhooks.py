import hashlib
import hmac
import json

import httpx
import pytest

from liquidity_guard.webhooks import WebhookEmitter


def emitter(status: int = 200, secret: str = ""):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookEmitter("https://validator.test/", secret, client=client), seen


@pytest.mark.asyncio
async def test_routes_kinds_to_paths():
    webhooks, seen = emitter()

    for kind in ("DEPEG_START", "DEPEG_END", "DEPEG_LIQ", "POOL_STATE"):
        assert await webhooks.emit(kind, {"type": kind})

    assert [r.url.path for r in seen] == [
        "/internal/validator/anchors",
        "/internal/validator/anchors",
        "/internal/validator/anchors",
        "/internal/validator/pool-state",
    ]
    assert json.loads(seen[0].content) == {"type": "DEPEG_START"}
    assert "x-lg-signature" not in seen[0].headers


@pytest.mark.asyncio
async def test_signs_body_when_secret_set():
    webhooks, seen = emitter(secret="topsecret")

    await webhooks.emit("DEPEG_END", {"riskId": "p|1", "timestamp": 1})

    [request] = seen
    expected = hmac.new(b"topsecret", request.content, hashlib.sha256).hexdigest()
    assert request.headers["x-lg-signature"] == expected


@pytest.mark.asyncio
async def test_failures_are_swallowed():
    webhooks, seen = emitter(status=500)

    assert await webhooks.emit("DEPEG_START", {}) is False
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_unknown_kind_and_disabled_emitter_send_nothing():
    webhooks, seen = emitter()

    assert await webhooks.emit("SOMETHING_ELSE", {}) is False
    assert await WebhookEmitter().emit("DEPEG_START", {}) is False
    assert seen == []
