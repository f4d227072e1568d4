import hashlib
import hmac
import asyncio
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import httpx
from standardwebhooks import Webhook, WebhookVerificationError

from core.config import (
    logger,
    GATEWAY_API_BASE,
    GATEWAY_API_KEY,
    GATEWAY_CHECKOUT_PATH,
    GATEWAY_NOTIFY_URL,
    GATEWAY_RETURN_URL,
    GATEWAY_TIMEOUT_SEC,
    GATEWAY_WEBHOOK_SECRET,
)
from core.errors import UpstreamError


# Build standard headers list including variants used across gateway deployments
def build_headers_list(api_key: str) -> list[dict]:
    api_key = (api_key or "").strip()
    return [
        {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "BlindBoxBackend/1.0",
        },
        {
            "X-API-KEY": api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "BlindBoxBackend/1.0",
        },
    ]


def build_endpoints(api_base: str, checkout_path: str) -> list[str]:
    base = (api_base or "").strip().rstrip("/")
    path = (checkout_path or "/v1/payment-links").strip()
    if not path.startswith("/"):
        path = "/" + path
    endpoints = [f"{base}{path}"]
    for fallback in ("/v1/payment-links", "/v1/checkout-sessions"):
        url = f"{base}{fallback}"
        if url not in endpoints:
            endpoints.append(url)
    return endpoints


def pick_checkout_url(data: Dict[str, Any]) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    # Common fields for session or link creation responses
    link = (
        data.get("payment_link")
        or data.get("checkout_url")
        or data.get("session_url")
        or data.get("url")
    )
    if link:
        return str(link)
    obj = data.get("data")
    if isinstance(obj, dict):
        inner = (
            obj.get("payment_link")
            or obj.get("checkout_url")
            or obj.get("session_url")
            or obj.get("url")
            or ""
        )
        return str(inner) or None
    return None


def sign_params(params: Mapping[str, Any], secret: str) -> str:
    """HMAC-SHA256 over the sorted, non-empty params (excluding sign fields)."""
    pairs = [
        f"{k}={params[k]}"
        for k in sorted(params)
        if k not in ("sign", "sign_type") and params[k] not in (None, "")
    ]
    return hmac.new(secret.encode("utf-8"), "&".join(pairs).encode("utf-8"), hashlib.sha256).hexdigest()


class GatewayClient:
    """
    Payment gateway collaborator: issues payment links and checks callback
    signatures. Link creation failures surface as UpstreamError.
    """

    def __init__(
        self,
        api_base: str = GATEWAY_API_BASE,
        api_key: str = GATEWAY_API_KEY,
        checkout_path: str = GATEWAY_CHECKOUT_PATH,
        webhook_secret: str = GATEWAY_WEBHOOK_SECRET,
        return_url: str = GATEWAY_RETURN_URL,
        timeout: float = GATEWAY_TIMEOUT_SEC,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_base = api_base
        self.api_key = api_key
        self.checkout_path = checkout_path
        self.webhook_secret = (webhook_secret or "").strip()
        self.return_url = return_url
        self.timeout = timeout
        self.transport = transport

    async def create_payment_link(
        self,
        order_ref: str,
        amount: Decimal,
        callback_url: str = GATEWAY_NOTIFY_URL,
        subject: str = "Blind Box Order",
    ) -> str:
        payload = {
            "out_trade_no": order_ref,
            "total_amount": f"{Decimal(str(amount)):.2f}",
            "subject": subject,
            "notify_url": callback_url,
            "return_url": self.return_url,
        }
        last_error: Optional[dict] = None
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            for url in build_endpoints(self.api_base, self.checkout_path):
                for headers in build_headers_list(self.api_key):
                    try:
                        logger.info(f"[gateway] creating payment link for {order_ref} via {url}")
                        resp = await client.post(url, headers=headers, json=payload)
                        if resp.status_code in (200, 201):
                            try:
                                data = resp.json()
                            except ValueError:
                                data = {}
                            link = pick_checkout_url(data)
                            if link:
                                logger.info(f"[gateway] payment link ready for {order_ref}")
                                return link
                            last_error = {"status": resp.status_code, "endpoint": url, "body": "no link in response"}
                            continue
                        # Handle rate limiting
                        if resp.status_code == 429:
                            logger.warning(f"[gateway] rate limited at {url}; backing off briefly")
                            await asyncio.sleep(0.5)
                        last_error = {"status": resp.status_code, "endpoint": url, "body": resp.text[:2000]}
                    except httpx.HTTPError as ex:
                        last_error = {"exception": str(ex), "endpoint": url}
        logger.warning(f"[gateway] payment link creation failed: {last_error}")
        raise UpstreamError(f"Payment gateway did not return a payment link for {order_ref}")

    def verify_signature(self, params: Mapping[str, Any], raw_body: bytes = b"", headers: Optional[Mapping[str, str]] = None) -> bool:
        """
        whsec_ secrets: Standard Webhooks headers over the raw body.
        Other secrets: HMAC-SHA256 of the sorted params compared to params['sign'].
        """
        secret = self.webhook_secret
        if not secret:
            logger.warning("[gateway] no webhook secret configured; signature not checked")
            return False
        if secret.startswith("whsec_"):
            hdrs = {k.lower(): v for k, v in (headers or {}).items()}
            try:
                Webhook(secret).verify(
                    data=raw_body,
                    headers={
                        "webhook-id": hdrs.get("webhook-id", ""),
                        "webhook-timestamp": hdrs.get("webhook-timestamp", ""),
                        "webhook-signature": hdrs.get("webhook-signature", ""),
                    },
                )
                return True
            except WebhookVerificationError as ex:
                logger.warning(f"[gateway] webhook signature rejected: {ex}")
                return False
        provided = str(params.get("sign") or "")
        if not provided:
            return False
        return hmac.compare_digest(provided, sign_params(params, secret))
