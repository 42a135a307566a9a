"""PayMongo payment-links gateway used by the storefront API."""
from __future__ import annotations
import hashlib
import hmac
import logging
from typing import Optional
import httpx

from config import settings

logger = logging.getLogger(__name__)


class PaymentGatewayError(Exception):
    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class PayMongoClient:
    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        app_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = settings.PAYMONGO_SECRET_KEY if secret_key is None else secret_key
        self.base_url = (base_url or settings.PAYMONGO_API_URL).rstrip("/")
        self.app_url = (app_url or settings.APP_URL).rstrip("/")
        self.transport = transport

    async def create_link(self, amount: float, description: str) -> dict:
        """Request a hosted payment link and return ``{checkout_url, link_id}``.

        ``amount`` is in pesos; PayMongo expects centavos.
        """
        payload = {
            "data": {
                "attributes": {
                    "amount": int(round(amount * 100)),
                    "currency": "PHP",
                    "description": description,
                    "success_url": f"{self.app_url}/order-success",
                    "failed_url": f"{self.app_url}/payment-failed",
                }
            }
        }
        async with httpx.AsyncClient(
            base_url=self.base_url,
            auth=(self.secret_key, ""),
            transport=self.transport,
            timeout=settings.HTTP_TIMEOUT,
        ) as client:
            try:
                response = await client.post("/links", json=payload)
            except httpx.HTTPError as e:
                logger.error("PayMongo request failed: %s", e)
                raise PaymentGatewayError(f"Server error: {e}")

        data = _json_or_empty(response)
        if response.is_error:
            errors = data.get("errors") or []
            detail = errors[0].get("detail") if errors and isinstance(errors[0], dict) else None
            message = detail or data.get("message") or data.get("error") or "PayMongo API failed"
            logger.error("PayMongo API error status=%s message=%s", response.status_code, message)
            raise PaymentGatewayError(f"PayMongo Error: {message}", status_code=response.status_code)

        link = data.get("data") or {}
        checkout_url = (link.get("attributes") or {}).get("checkout_url")
        link_id = link.get("id")
        if not checkout_url or not link_id:
            logger.error("Missing data in PayMongo response: %s", data)
            raise PaymentGatewayError("Incomplete PayMongo response")
        return {"checkout_url": checkout_url, "link_id": link_id}


def _json_or_empty(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def verify_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    if not signature:
        return False
    computed = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(computed, signature)
