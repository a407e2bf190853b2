"""Best-effort webhook delivery to the validator service."""

import hashlib
import hmac
import json
import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

ANCHORS_PATH = "/internal/validator/anchors"
POOL_STATE_PATH = "/internal/validator/pool-state"

WEBHOOK_PATHS = {
    "DEPEG_START": ANCHORS_PATH,
    "DEPEG_END": ANCHORS_PATH,
    "DEPEG_LIQ": ANCHORS_PATH,
    "POOL_STATE": POOL_STATE_PATH,
}

SIGNATURE_HEADER = "x-lg-signature"


def sign_body(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class WebhookEmitter:
    """Delivery failures are logged and never raised."""

    def __init__(
        self,
        base_url: str = "",
        secret: str = "",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.secret = secret
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def emit(self, kind: str, payload: dict[str, Any]) -> bool:
        """Returns True when the receiver acknowledged the delivery."""
        if not self.enabled:
            return False

        path = WEBHOOK_PATHS.get(kind)
        if path is None:
            logger.warning(f"Unknown webhook kind {kind!r}; dropping")
            return False

        body = json.dumps(payload, sort_keys=True).encode("utf-8")
        headers = {"content-type": "application/json"}
        if self.secret:
            headers[SIGNATURE_HEADER] = sign_body(self.secret, body)

        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)

        try:
            resp = await self._client.post(f"{self.base_url}{path}", content=body, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Webhook delivery failed: {e!r}", extra={"kind": kind})
            return False

        logger.debug("Webhook delivered", extra={"kind": kind, "status": resp.status_code})
        return True

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
