from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx
from loguru import logger

from retail_sync.core.config import settings


# -------------------------
# Models
# -------------------------

@dataclass(frozen=True)
class RemoteCredentials:
    store_id: int
    api_url: str
    api_token: str


@dataclass
class Page:
    items: list[dict[str, Any]]
    total: int
    offset: int


PageHandler = Callable[[list[dict[str, Any]], int, int], Awaitable[None]]


# -------------------------
# Errors
# -------------------------

class RemoteApiError(Exception):
    pass


class RemoteHttpError(RemoteApiError):
    def __init__(self, message: str, status_code: int, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RemoteConnectionError(RemoteApiError):
    pass


class RemoteResponseError(RemoteApiError):
    pass


RETRYABLE_STATUS = frozenset({408, 429})


def is_retryable(exc: Exception) -> bool:
    if isinstance(exc, RemoteConnectionError):
        return True
    if isinstance(exc, RemoteHttpError):
        return exc.status_code in RETRYABLE_STATUS or exc.status_code >= 500
    return False


# -------------------------
# Helpers
# -------------------------

def normalize_base_url(api_url: str) -> str:
    """
    The remote API always lives under /api/v1, whatever form the user saved:
      https://shop.example.com          -> https://shop.example.com/api/v1
      https://shop.example.com/api/v1/  -> https://shop.example.com/api/v1
    """
    clean = api_url.strip().rstrip("/")
    if clean.endswith("/api/v1"):
        clean = clean[: -len("/api/v1")]
    if "://" not in clean:
        clean = f"https://{clean}"
    return f"{clean}/api/v1"


def _extract_items(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        raw = payload
    elif isinstance(payload, dict):
        raw = payload.get("items")
        if raw is None:
            raw = payload.get("data")
        if raw is None:
            raw = []
    else:
        raise RemoteResponseError(f"Unexpected JSON type from remote API: {type(payload).__name__}")

    if not isinstance(raw, list):
        raise RemoteResponseError(f"Remote API items are not a list: {type(raw).__name__}")
    return [item if isinstance(item, dict) else {"_value": item} for item in raw]


def _extract_total(payload: Any) -> int:
    """Reported collection size, 0 when the payload does not report one."""
    if isinstance(payload, dict):
        total = payload.get("total")
        if isinstance(total, int) and total >= 0:
            return total
    return 0


# -------------------------
# Client
# -------------------------

class RemoteApiClient:
    """
    Async client for the remote master-data API.

    Every request carries the ``x-api-key`` header. GETs are retried for
    408/429/5xx and connection failures with a linearly growing delay.
    """

    def __init__(
        self,
        credentials: RemoteCredentials,
        *,
        page_size: int | None = None,
        page_delay_s: float | None = None,
        max_retries: int | None = None,
        retry_delay_s: float | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.credentials = credentials
        self.base_url = normalize_base_url(credentials.api_url)
        self.page_size = page_size if page_size is not None else settings.REMOTE_PAGE_SIZE
        self.page_delay_s = page_delay_s if page_delay_s is not None else settings.REMOTE_PAGE_DELAY_S
        self.max_retries = max_retries if max_retries is not None else settings.REMOTE_MAX_RETRIES
        self.retry_delay_s = retry_delay_s if retry_delay_s is not None else settings.REMOTE_RETRY_DELAY_S

        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s if timeout_s is not None else settings.REMOTE_TIMEOUT_S),
            follow_redirects=True,
            transport=transport,
            headers={
                "x-api-key": credentials.api_token,
                "Accept": "application/json",
                "User-Agent": "Retail Sync",
            },
        )

    async def __aenter__(self) -> "RemoteApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def url_for(self, endpoint: str) -> str:
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    # ---- paging ----

    async def fetch_page(
        self,
        endpoint: str,
        offset: int = 0,
        count: int | None = None,
        *,
        params: dict[str, Any] | None = None,
        sort: str = "id",
    ) -> Page:
        query: dict[str, Any] = dict(params or {})
        query.update({"start": offset, "count": count or self.page_size, "sort": sort})

        payload = await self._get_json(self.url_for(endpoint), params=query)
        items = _extract_items(payload)
        return Page(items=items, total=_extract_total(payload), offset=offset)

    async def fetch_all(
        self,
        endpoint: str,
        on_page: PageHandler,
        *,
        params: dict[str, Any] | None = None,
        sort: str = "id",
    ) -> int:
        """
        Walks the collection from offset 0 and hands every page to
        ``on_page(items, offset, known_total)``. Returns the number of items fetched.
        """
        offset = 0
        known_total = 0
        fetched = 0

        while True:
            page = await self.fetch_page(endpoint, offset, self.page_size, params=params, sort=sort)

            if not page.items:
                break
            if page.total > 0:
                known_total = page.total

            await on_page(page.items, offset, known_total)

            fetched += len(page.items)
            offset += len(page.items)

            if known_total > 0 and fetched >= known_total:
                break
            if len(page.items) < self.page_size:
                break

            await asyncio.sleep(self.page_delay_s)

        logger.info(f"fetch_all [{endpoint}]: {fetched} records")
        return fetched

    async def fetch_nested(self, endpoint: str) -> list[dict[str, Any]]:
        """Single sub-resource lookup. A 404 means the parent has no children."""
        try:
            payload = await self._get_json(self.url_for(endpoint))
        except RemoteHttpError as exc:
            if exc.status_code == 404:
                return []
            raise
        return _extract_items(payload)

    # ---- writes ----

    async def send(self, method: str, endpoint: str, payload: dict[str, Any] | None = None) -> Any:
        """Single write call (POST/PUT/DELETE). Writes are never retried."""
        url = self.url_for(endpoint)
        try:
            resp = await self._client.request(method, url, json=payload)
        except httpx.TransportError as exc:
            raise RemoteConnectionError(f"Unable to reach the remote API: {exc!r}") from exc

        if resp.status_code >= 400:
            body = (resp.text or "")[:400]
            raise RemoteHttpError(f"HTTP {resp.status_code}: {body}", status_code=resp.status_code, body=body)

        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {}

    # ---- internals ----

    async def _get_json(self, url: str, *, params: dict[str, Any] | None = None) -> Any:
        attempt = 1
        while True:
            try:
                return await self._get_once(url, params=params)
            except RemoteApiError as exc:
                if attempt >= self.max_retries or not is_retryable(exc):
                    raise
                logger.warning(f"Retry {attempt}/{self.max_retries} - {url}: {exc}")
                await asyncio.sleep(self.retry_delay_s * attempt)
                attempt += 1

    async def _get_once(self, url: str, *, params: dict[str, Any] | None = None) -> Any:
        try:
            resp = await self._client.get(url, params=params)
        except httpx.TransportError as exc:
            raise RemoteConnectionError(f"Unable to reach the remote API: {exc!r}") from exc

        if resp.status_code >= 400:
            body = (resp.text or "")[:400]
            raise RemoteHttpError(f"HTTP {resp.status_code}: {body}", status_code=resp.status_code, body=body)

        ctype = (resp.headers.get("content-type") or "").lower()
        if "json" not in ctype:
            snippet = (resp.text or "")[:120]
            raise RemoteResponseError(
                f"Remote API returned {ctype or 'no content-type'} instead of JSON. "
                f"Check the configured URL: {url} snippet={snippet!r}"
            )

        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteResponseError(f"Remote API returned invalid JSON. url={url}") from exc
