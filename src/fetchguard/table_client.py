"""HTTP client for paginated table-row APIs, producing do_fetch callables."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, cast

import httpx

logger = logging.getLogger(__name__)

Row = dict[str, Any]


class TableClient:
    """Async client for a row-oriented table API.

    Pages are followed through the ``next`` link of each response and their
    ``results`` are concatenated. HTTP errors are raised as
    ``httpx.HTTPStatusError`` so a 429 reaches the orchestrator as a
    throttle signal.

    Usage:
        async with TableClient("https://api.example.com/api", token="...") as tables:
            result = await orchestrator.fetch(
                "stations", "table:623329", tables.rows(623329)
            )
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        public_token: str | None = None,
        page_size: int = 200,
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Token {token}"
        self._public_token = public_token
        self._page_size = page_size
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
        )

    def _table_path(self, table_id: int | str) -> str:
        return f"/database/rows/table/{table_id}/"

    async def _get_page(self, url: str, params: dict[str, Any] | None) -> dict[str, Any]:
        response = await self._client.get(url, params=params)
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict) or not isinstance(data.get("results"), list):
            raise ValueError(f"Invalid API response structure from {url}")
        return cast(dict[str, Any], data)

    async def fetch_rows(
        self, table_id: int | str, params: dict[str, Any] | None = None
    ) -> list[Row]:
        """Fetch every row of a table, following pagination."""
        query: dict[str, Any] = {"user_field_names": "true", "size": self._page_size}
        if self._public_token:
            query["public_token"] = self._public_token
        query.update(params or {})

        rows: list[Row] = []
        url: str | None = self._table_path(table_id)
        page_params: dict[str, Any] | None = query
        page = 1
        while url:
            data = await self._get_page(url, page_params)
            rows.extend(data["results"])
            logger.debug(
                "Table %s page %d: %d rows (total %d)",
                table_id, page, len(data["results"]), len(rows),
            )
            url = data.get("next")
            # next links already carry the query string
            page_params = None
            if url and self._public_token and "public_token" not in url:
                page_params = {"public_token": self._public_token}
            page += 1
        return rows

    def rows(
        self,
        table_id: int | str,
        params: dict[str, Any] | None = None,
        *,
        transform: Callable[[Row], Any] | None = None,
    ) -> Callable[[], Awaitable[list[Any]]]:
        """Build a do_fetch that loads (and optionally transforms) all rows."""

        async def do_fetch() -> list[Any]:
            rows = await self.fetch_rows(table_id, params)
            if transform is None:
                return rows
            return [transform(row) for row in rows]

        return do_fetch

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> TableClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()
