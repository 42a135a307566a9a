from __future__ import annotations
import logging
from typing import Any, Optional
import httpx

from config import settings
from errors import NetworkOrServerError, NotFound, StockExceeded, StorefrontError, Unauthorized

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Something went wrong. Please try again."


class StorefrontAPI:
    """Thin async wrapper over the SoleSpace HTTP API.

    Adds the CSRF and customer headers to every request and turns error
    responses into ``errors.StorefrontError`` subclasses. No retries.
    """

    def __init__(
        self,
        base_url: str = "",
        csrf_token: Optional[str] = None,
        user_id: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        if timeout is None:
            timeout = settings.HTTP_TIMEOUT
        self._client = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)
        # Missing token is not fatal here; the server will refuse the request
        self.csrf_token = csrf_token
        self.user_id = user_id

    async def __aenter__(self) -> "StorefrontAPI":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None

    def headers(self, method: str) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if method != "GET" and self.csrf_token:
            headers["X-CSRF-TOKEN"] = self.csrf_token
        if self.user_id is not None:
            headers["X-User-Id"] = str(self.user_id)
        return headers

    async def request(self, method: str, path: str, json: Any = None) -> dict:
        try:
            response = await self._client.request(method, path, json=json, headers=self.headers(method))
        except httpx.HTTPError as e:
            logger.error("%s %s failed: %s", method, path, e)
            raise NetworkOrServerError("Network error. Please check your connection and try again.")

        data = _json_or_empty(response)
        if response.is_error:
            raise error_from_response(response.status_code, data)
        return data

    async def get(self, path: str) -> dict:
        return await self.request("GET", path)

    async def post(self, path: str, json: Any = None) -> dict:
        return await self.request("POST", path, json=json)

    async def put(self, path: str, json: Any = None) -> dict:
        return await self.request("PUT", path, json=json)

    async def delete(self, path: str) -> dict:
        return await self.request("DELETE", path)


def _json_or_empty(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def error_message(data: dict, fallback: str = GENERIC_ERROR) -> str:
    for key in ("message", "error", "detail"):
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return fallback


def error_from_response(status_code: int, data: dict) -> StorefrontError:
    message = error_message(data)
    if status_code == 400 and "available" in data:
        return StockExceeded(message, available=data.get("available"), status_code=status_code)
    if status_code == 401:
        return Unauthorized(message, status_code=status_code)
    if status_code == 404:
        return NotFound(message, status_code=status_code)
    return NetworkOrServerError(message, status_code=status_code)
