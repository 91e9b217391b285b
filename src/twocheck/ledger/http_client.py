# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""HTTP client for a ledger gateway.

The gateway exposes two endpoints that take a chaincode-style call::

    POST /api/v1/transactions/submit    {"function": ..., "args": [...]}
    POST /api/v1/transactions/evaluate  {"function": ..., "args": [...]}

and answer with ``{"transaction_id": ..., "result": ...}``. Transport and
HTTP failures are returned as ``LedgerResult(success=False)``; the
orchestrator logs them and carries on.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from ..core.config import get_settings
from ..core.exceptions import LedgerError
from ..core.interfaces import LedgerResult

logger = logging.getLogger(__name__)


class HttpLedgerClient:
    """Thin synchronous client for the ledger gateway."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        client: httpx.Client | None = None,
    ):
        settings = get_settings()
        base_url = base_url if base_url is not None else settings.ledger_url
        if not base_url:
            raise LedgerError("Ledger URL is not configured (set TWOCHECK_LEDGER_URL)")
        self.base_url = base_url.rstrip("/")
        self.token = token if token is not None else settings.ledger_token
        self.timeout = timeout if timeout is not None else settings.ledger_timeout
        self._client = client or httpx.Client(timeout=self.timeout)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _url(self, action: str) -> str:
        return f"{self.base_url}/api/v1/transactions/{action}"

    def submit_transaction(self, name: str, args: list[str]) -> LedgerResult:
        return self._call("submit", name, args)

    def evaluate_transaction(self, name: str, args: list[str]) -> LedgerResult:
        return self._call("evaluate", name, args)

    def _call(self, action: str, name: str, args: list[str]) -> LedgerResult:
        try:
            resp = self._client.post(
                self._url(action),
                headers=self._headers(),
                json={"function": name, "args": [str(a) for a in args]},
            )
        except httpx.TimeoutException:
            logger.warning(f"Ledger {action} {name} timed out after {self.timeout}s")
            return LedgerResult(success=False, error="request timed out")
        except httpx.HTTPError as e:
            logger.warning(f"Ledger {action} {name} failed: {e}")
            return LedgerResult(success=False, error=str(e) or e.__class__.__name__)

        if resp.status_code >= 400:
            return LedgerResult(success=False, error=self._error_message(resp))
        return self._parse(resp, f"{action} {name}")

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except json.JSONDecodeError:
            return f"HTTP {resp.status_code}: {resp.text}"
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            error = error.get("message")
        return f"HTTP {resp.status_code}: {error or resp.text}"

    @staticmethod
    def _parse(resp: httpx.Response, operation: str) -> LedgerResult:
        """Turn a 2xx body into a result.

        Raises:
            LedgerError: If the body is not a JSON object
        """
        try:
            body: Any = resp.json()
        except json.JSONDecodeError as e:
            raise LedgerError(f"Unparseable ledger response: {resp.text[:200]}", operation=operation) from e
        if not isinstance(body, dict):
            raise LedgerError("Ledger response is not an object", operation=operation)
        return LedgerResult(
            success=bool(body.get("success", True)),
            transaction_id=body.get("transaction_id"),
            result=body.get("result"),
            error=body.get("error"),
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpLedgerClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def create_ledger_client():
    """Return an HTTP client when a ledger URL is configured, else an in-memory ledger."""
    from ..core.interfaces import InMemoryLedgerClient

    settings = get_settings()
    if settings.ledger_url:
        return HttpLedgerClient()
    return InMemoryLedgerClient()
