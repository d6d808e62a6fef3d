"""Async Kubernetes API client used as the declarative record store.

This is the single point of HTTP interaction with the cluster. Records are
plain JSON objects; writes are JSON merge patches, with a separate
``/status`` subresource path for status fields.

Auth uses a service-account bearer token. Includes exponential backoff with
full jitter for 429/5xx responses and transport timeouts.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Mapping

import httpx

from .errors import (
    StoreAuthError,
    StoreConflictError,
    StoreError,
    StoreNotFoundError,
    StoreUnavailableError,
)
from .kinds import ResourceKind

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

_DEFAULT_MAX_RETRIES = 3
_DEFAULT_BASE_DELAY = 0.5  # seconds
_DEFAULT_MAX_DELAY = 10.0  # seconds

MERGE_PATCH_CONTENT_TYPE = "application/merge-patch+json"


# ── Module-level shared client ───────────────────────────────────

_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client(verify: str | bool = True) -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient(verify=verify)
    return _shared_async_client


def _label_selector(labels: Mapping[str, str] | None) -> dict[str, str] | None:
    if not labels:
        return None
    return {"labelSelector": ",".join(f"{k}={v}" for k, v in labels.items())}


# ── Client ───────────────────────────────────────────────────────


class KubernetesRecordStore:
    """``RecordStore`` implementation backed by the Kubernetes REST API."""

    def __init__(
        self,
        *,
        api_url: str,
        bearer_token: str,
        ca_file: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 15.0,
        max_retries: int = _DEFAULT_MAX_RETRIES,
        base_delay: float = _DEFAULT_BASE_DELAY,
        max_delay: float = _DEFAULT_MAX_DELAY,
    ) -> None:
        if not api_url:
            raise ValueError("api_url is required")
        if not bearer_token:
            raise ValueError("bearer_token is required")

        self._api_url = api_url.rstrip("/")
        self._bearer_token = bearer_token
        self._client = http_client or _get_shared_async_client(ca_file or True)
        self._timeout = float(timeout_seconds)
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay

    def _auth_headers(self) -> dict[str, str]:
        # Never log these headers.
        return {"Authorization": f"Bearer {self._bearer_token}"}

    def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return

        message = resp.text[:200] if resp.text else f"HTTP {resp.status_code}"
        reason = None
        try:
            payload = resp.json()
            if isinstance(payload, dict):
                message = payload.get("message") or message
                reason = payload.get("reason")
        except ValueError:
            pass

        err_cls: type[StoreError]
        if resp.status_code in (401, 403):
            err_cls = StoreAuthError
        elif resp.status_code == 404:
            err_cls = StoreNotFoundError
        elif resp.status_code == 409:
            err_cls = StoreConflictError
        else:
            err_cls = StoreError

        raise err_cls(status_code=resp.status_code, message=message, reason=reason)

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        *,
        json: Any | None = None,
        params: dict[str, str] | None = None,
        content_type: str | None = None,
    ) -> httpx.Response:
        url = f"{self._api_url}{path}"
        headers = self._auth_headers()
        if content_type:
            headers["Content-Type"] = content_type

        for attempt in range(self._max_retries + 1):
            try:
                resp = await self._client.request(
                    method,
                    url,
                    headers=headers,
                    json=json,
                    params=params,
                    timeout=self._timeout,
                )
            except httpx.TransportError as e:
                if attempt < self._max_retries:
                    delay = self._backoff_delay(attempt)
                    logger.warning(
                        "Store %s %s failed (%s, attempt %d/%d), retrying in %.1fs",
                        method,
                        path,
                        type(e).__name__,
                        attempt + 1,
                        self._max_retries + 1,
                        delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                raise StoreUnavailableError(status_code=0, message=str(e) or type(e).__name__) from e

            if resp.status_code not in _RETRYABLE_STATUS_CODES or attempt >= self._max_retries:
                return resp

            delay = self._backoff_delay(attempt)
            logger.warning(
                "Store %s %s returned %d (attempt %d/%d), retrying in %.1fs",
                method,
                path,
                resp.status_code,
                attempt + 1,
                self._max_retries + 1,
                delay,
            )
            await asyncio.sleep(delay)

        raise StoreUnavailableError(status_code=0, message="exhausted retries with no response")

    def _backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with full jitter."""
        exp_delay = self._base_delay * (2**attempt)
        return random.uniform(0, min(exp_delay, self._max_delay))

    # ── RecordStore operations ───────────────────────────────────

    async def list(
        self,
        kind: ResourceKind,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        resp = await self._request_with_retry(
            "GET", kind.collection_path(), params=_label_selector(labels),
        )
        self._raise_for_status(resp)
        return list(resp.json().get("items") or [])

    async def get(self, kind: ResourceKind, name: str) -> dict[str, Any] | None:
        resp = await self._request_with_retry("GET", kind.record_path(name))
        if resp.status_code == 404:
            return None
        self._raise_for_status(resp)
        return resp.json()

    async def create(self, kind: ResourceKind, record: dict[str, Any]) -> dict[str, Any]:
        body = {"apiVersion": kind.api_version, "kind": kind.kind, **record}
        resp = await self._request_with_retry("POST", kind.collection_path(), json=body)
        self._raise_for_status(resp)
        return resp.json()

    async def patch(
        self,
        kind: ResourceKind,
        name: str,
        patch: dict[str, Any],
    ) -> dict[str, Any]:
        resp = await self._request_with_retry(
            "PATCH",
            kind.record_path(name),
            json=patch,
            content_type=MERGE_PATCH_CONTENT_TYPE,
        )
        self._raise_for_status(resp)
        return resp.json()

    async def patch_status(
        self,
        kind: ResourceKind,
        name: str,
        status: dict[str, Any],
        *,
        resource_version: str | None = None,
    ) -> dict[str, Any]:
        """Merge-patch the status subresource.

        With ``resource_version`` the API server rejects the write with 409
        if the record changed since that version.
        """
        body: dict[str, Any] = {"status": status}
        if resource_version is not None:
            body["metadata"] = {"resourceVersion": resource_version}
        resp = await self._request_with_retry(
            "PATCH",
            f"{kind.record_path(name)}/status",
            json=body,
            content_type=MERGE_PATCH_CONTENT_TYPE,
        )
        self._raise_for_status(resp)
        return resp.json()

    async def delete(self, kind: ResourceKind, name: str) -> bool:
        """Delete a record. Idempotent: returns False if it was already gone."""
        resp = await self._request_with_retry("DELETE", kind.record_path(name))
        if resp.status_code == 404:
            return False
        self._raise_for_status(resp)
        return True
