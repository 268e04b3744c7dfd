from __future__ import annotations

import asyncio
import json
import logging
from http import HTTPStatus
from typing import Any, Optional

import aiohttp

from tenant_provisioner.services.provisioner_service import TransientProviderError
from tenant_provisioner.services.providers.base import error_for_http_status


logger = logging.getLogger(__name__)


class RestClient:
    """Minimal JSON client for bearer-token cloud control-plane APIs.

    Non-2xx answers are returned to the caller rather than raised, so callers
    can treat 404 (absent) and 409/412 (already there) as normal outcomes.
    """

    def __init__(
        self,
        *,
        session: aiohttp.ClientSession,
        endpoint: str,
        access_token: str,
        timeout_seconds: float = 30.0,
        default_params: Optional[dict[str, str]] = None,
        already_exists_statuses: tuple[int, ...] = (HTTPStatus.CONFLICT, HTTPStatus.PRECONDITION_FAILED),
    ) -> None:
        self._session = session
        self._endpoint = endpoint.rstrip("/")
        self._access_token = access_token
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._default_params = dict(default_params or {})
        self._already_exists_statuses = already_exists_statuses

    def url(self, path: str) -> str:
        if path.startswith("https://") or path.startswith("http://"):
            return path
        if not path.startswith("/"):
            path = "/" + path
        return f"{self._endpoint}{path}"

    async def request(
        self,
        *,
        method: str,
        path: str,
        body: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
        params: Optional[dict[str, str]] = None,
    ) -> tuple[int, dict[str, Any]]:
        effective_headers: dict[str, str] = {
            "Accept": "application/json",
            "Authorization": f"Bearer {self._access_token}",
        }
        if headers:
            effective_headers.update(headers)

        data: Optional[bytes] = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            effective_headers.setdefault("Content-Type", "application/json")

        try:
            async with self._session.request(
                method.upper(),
                self.url(path),
                params={**self._default_params, **(params or {})} or None,
                data=data,
                headers=effective_headers,
                timeout=self._timeout,
            ) as resp:
                payload = await resp.read()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.exception("Cloud API request failed (method=%s path=%s)", method, path)
            raise TransientProviderError(f"Cloud API request failed: {method} {path}") from exc

        try:
            parsed = json.loads(payload.decode("utf-8")) if payload else {}
        except (UnicodeDecodeError, ValueError):
            parsed = {}
        if not isinstance(parsed, dict):
            parsed = {}

        return (status, parsed)

    async def request_ok(
        self,
        *,
        method: str,
        path: str,
        body: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
        params: Optional[dict[str, str]] = None,
        what: str,
    ) -> dict[str, Any]:
        """Like request(), but raise the mapped provisioner error on non-2xx."""

        status, parsed = await self.request(method=method, path=path, body=body, headers=headers, params=params)
        if 200 <= status < 300:
            return parsed

        details = parsed.get("error") or ""
        if isinstance(details, dict):
            details = details.get("message") or details.get("code") or ""
        raise error_for_http_status(
            status,
            f"Failed to {what} HTTP {status} {details}".strip(),
            already_exists_statuses=self._already_exists_statuses,
        )
