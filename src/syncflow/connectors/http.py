"""HTTP destination posting record chunks as JSON."""

import asyncio
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp

from ..utils.logging import log_async_execution_time
from .base import DestinationConnector, DestinationWriteError, WriteResult


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, bytes):
        return value.hex()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class HttpDestination(DestinationConnector):
    """Writes payloads to an HTTP endpoint.

    Configuration keys:
        destination_url: endpoint receiving the records (required)
        access_token: optional bearer token
        headers: optional extra request headers
        timeout_seconds: per-request timeout, defaults to 30
    """

    def __init__(self, configuration: Dict[str, Any], timeout_seconds: Optional[int] = None, **kwargs):
        super().__init__(configuration, **kwargs)
        self.timeout = aiohttp.ClientTimeout(
            total=timeout_seconds or configuration.get("timeout_seconds", 30)
        )
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        """Async context manager entry."""
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
        return self.session

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json"
        }
        access_token = self.configuration.get("access_token")
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        headers.update(self.configuration.get("headers") or {})
        return headers

    async def write(self, url: str, method: str, payload: Dict[str, Any]) -> WriteResult:
        session = await self._ensure_session()
        body = json.dumps(payload, default=_json_default)

        try:
            async with session.request(method.upper(), url, data=body, headers=self._headers()) as response:
                if 200 <= response.status < 300:
                    return WriteResult(success=True, status_code=response.status)

                error_text = await response.text()
                self.logger.warning(
                    "Destination rejected write",
                    url=url,
                    status_code=response.status,
                    response=error_text[:500]
                )
                return WriteResult(
                    success=False,
                    status_code=response.status,
                    error=f"HTTP {response.status}: {error_text[:500]}"
                )

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DestinationWriteError(f"Network error writing to {url}: {e}") from e

    @log_async_execution_time
    async def check(self, url: Optional[str] = None) -> bool:
        url = url or self.url
        if not url:
            self.logger.error("Destination connectivity check failed", error="destination_url is missing")
            return False

        session = await self._ensure_session()
        try:
            async with session.options(url, headers=self._headers()) as response:
                ok = 200 <= response.status < 300
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.error("Destination connectivity check failed", url=url, error=str(e))
            return False

        if not ok:
            self.logger.error("Destination connectivity check failed", url=url, status_code=response.status)
        return ok

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None
