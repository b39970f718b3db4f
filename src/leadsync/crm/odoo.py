"""Async JSON-RPC client for Odoo's external API.

Every call is an ``object.execute_kw`` on the configured model. Transport
errors (connect, timeout, protocol) are retried with tenacity, bounded by
``max_attempts``; the default of 1 keeps the single-attempt behaviour a
sync run expects, where a failed page is reported rather than retried.

Failure modes, all surfaced as ExternalCRMError:
- unreachable endpoint or non-2xx status
- an HTML body (login or error page served for a wrong URL)
- a body that is not JSON
- a JSON-RPC ``error`` payload
"""

from __future__ import annotations

import itertools
import re
from typing import Any

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.leadsync.crm.client import Domain, ExternalCRMClient
from src.leadsync.sync.errors import ExternalCRMError

logger = structlog.get_logger(__name__)

_URL_SUFFIX = re.compile(r"(/web/login|/web|/jsonrpc)/*$")


def normalize_base_url(url: str) -> str:
    """Strip trailing slashes and a pasted ``/web``, ``/web/login`` or ``/jsonrpc``."""
    cleaned = url.strip().rstrip("/")
    cleaned = _URL_SUFFIX.sub("", cleaned)
    return cleaned.rstrip("/")


class OdooClient(ExternalCRMClient):
    """Read-only Odoo client over JSON-RPC.

    Args:
        url: Odoo base URL (``/web`` style suffixes are tolerated).
        database: Odoo database name.
        uid: Numeric user id the API key belongs to.
        api_key: Odoo API key.
        model: Model to read (``crm.lead``).
        timeout: Per-call deadline in seconds.
        max_attempts: Attempts per call on transport errors.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        url: str,
        database: str,
        uid: int,
        api_key: str,
        *,
        model: str = "crm.lead",
        timeout: float = 30.0,
        max_attempts: int = 1,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoint = f"{normalize_base_url(url)}/jsonrpc"
        self._database = database
        self._uid = uid
        self._api_key = api_key
        self._model = model
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)
        self._transport = transport
        self._ids = itertools.count(1)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={"Content-Type": "application/json"},
            timeout=self._timeout,
            transport=self._transport,
        )

    # ── ExternalCRMClient ───────────────────────────────────────────────────

    async def fetch_count(self, domain: Domain) -> int:
        result = await self.execute_kw("search_count", [domain])
        return int(result)

    async def fetch_page(
        self, domain: Domain, fields: list[str], limit: int, offset: int
    ) -> list[dict[str, Any]]:
        result = await self.execute_kw(
            "search_read",
            [domain],
            {"fields": fields, "limit": limit, "offset": offset},
        )
        logger.debug("odoo.page_fetched", offset=offset, limit=limit, rows=len(result or []))
        return list(result or [])

    async def fetch_by_ids(self, ids: list[str], fields: list[str]) -> list[dict[str, Any]]:
        numeric_ids = [int(i) for i in ids if str(i).isdigit()]
        if len(numeric_ids) != len(ids):
            logger.warning(
                "odoo.non_numeric_ids_skipped",
                external_ids=[i for i in ids if not str(i).isdigit()],
            )
        if not numeric_ids:
            return []
        result = await self.execute_kw(
            "search_read",
            [[["id", "in", numeric_ids]]],
            {"fields": fields},
        )
        return list(result or [])

    # ── JSON-RPC ────────────────────────────────────────────────────────────

    async def execute_kw(
        self, method: str, args: list[Any], kwargs: dict[str, Any] | None = None
    ) -> Any:
        """Call ``execute_kw(db, uid, key, model, method, args, kwargs)``.

        Raises:
            ExternalCRMError: On any transport or RPC failure.
        """
        payload = {
            "jsonrpc": "2.0",
            "method": "call",
            "params": {
                "service": "object",
                "method": "execute_kw",
                "args": [
                    self._database,
                    self._uid,
                    self._api_key,
                    self._model,
                    method,
                    args,
                    kwargs or {},
                ],
            },
            "id": next(self._ids),
        }

        try:
            response = await self._post(payload)
        except httpx.HTTPError as exc:
            logger.error("odoo.transport_error", method=method, error=str(exc))
            raise ExternalCRMError(
                f"Odoo request failed: {exc}", model=self._model, method=method
            ) from exc

        return self._parse(response, method)

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        ):
            with attempt:
                async with self._client() as client:
                    response = await client.post(self._endpoint, json=payload)
                    response.raise_for_status()
                    return response
        raise AssertionError("unreachable")  # pragma: no cover

    def _parse(self, response: httpx.Response, method: str) -> Any:
        text = response.text
        if text.lstrip()[:15].lower().startswith(("<!doctype", "<html")):
            raise ExternalCRMError(
                "Odoo returned an HTML page; the URL is incorrect or not reachable",
                model=self._model,
                method=method,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise ExternalCRMError(
                f"Odoo returned a non-JSON response: {text[:200]}",
                model=self._model,
                method=method,
            ) from exc

        error = data.get("error") if isinstance(data, dict) else None
        if error:
            detail = (error.get("data") or {}).get("message") or error.get("message") or str(error)
            logger.error("odoo.rpc_error", method=method, error=detail)
            raise ExternalCRMError(detail, model=self._model, method=method)

        return data.get("result") if isinstance(data, dict) else None
