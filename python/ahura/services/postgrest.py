"""
An asynchronous PostgREST client used by the status reporter and the machine
inventory. Only the handful of table operations they need are exposed:
select, insert and a filtered update (PATCH), each returning the affected rows.

Filters use PostgREST operator syntax, e.g. {"cluster_id": "eq.c-1"} or
{"ip_address": "in.(10.0.0.1,10.0.0.2)"}.
"""

from __future__ import annotations

import aiohttp
from typing import Any, Dict, List, Optional, Type

from ahura.models.settings import ProvisionerSettings
from ahura.models.validator import validate_type


class AsyncPostgrestClient:
    """An asynchronous PostgREST client that manages:
      - an aiohttp session (async context manager or ensure_session)
      - apikey / bearer authentication headers
      - select, insert and update on a table
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        *,
        verify_ssl: bool = True,
    ) -> None:
        """
        Args:
            base_url (str): PostgREST root, e.g. "https://db.example.com/rest/v1".
            api_key (Optional[str]): Sent as both `apikey` and a bearer token.
            verify_ssl (bool): Verify TLS certificates.
        """
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._verify_ssl = verify_ssl
        self._session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_settings(cls, settings: ProvisionerSettings) -> AsyncPostgrestClient:
        return cls(
            settings.postgrest_url,
            settings.postgrest_key,
            verify_ssl=settings.verify_ssl,
        )

    async def __aenter__(self) -> AsyncPostgrestClient:
        """Async context manager entry, creates an aiohttp session."""
        self._session = aiohttp.ClientSession()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> None:
        """Async context manager exit, closes the aiohttp session."""
        await self.close()

    async def close(self) -> None:
        if self._session:
            await self._session.close()
        self._session = None

    async def ensure_session(self) -> aiohttp.ClientSession:
        """Ensure an aiohttp session is available, creating one if needed."""
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["apikey"] = self._api_key
            headers["Authorization"] = f"Bearer {self._api_key}"
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _url(self, table: str) -> str:
        return f"{self._base_url}/{table}"

    async def _rows(self, resp: aiohttp.ClientResponse, action: str) -> List[Dict[str, Any]]:
        try:
            raw_js: Any = await resp.json()
        except aiohttp.ContentTypeError:
            raw_js = await resp.text()
        if resp.status >= 300:
            raise RuntimeError(f"PostgREST {action} failed: {resp.status}, {raw_js}")
        if not raw_js:
            return []
        return validate_type(raw_js, List[Dict[str, Any]])

    async def select(
        self,
        table: str,
        filters: Optional[Dict[str, str]] = None,
        *,
        order: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Return rows of `table` matching `filters`.

        Raises:
            RuntimeError: If PostgREST returns an error status.
        """
        session = await self.ensure_session()
        params: Dict[str, str] = {"select": "*", **(filters or {})}
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = str(limit)
        async with session.get(
            self._url(table),
            headers=self._headers(),
            params=params,
            ssl=self._verify_ssl,
        ) as resp:
            return await self._rows(resp, f"select on {table}")

    async def insert(self, table: str, row: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Insert one row and return the stored representation."""
        session = await self.ensure_session()
        async with session.post(
            self._url(table),
            headers=self._headers("return=representation"),
            json=row,
            ssl=self._verify_ssl,
        ) as resp:
            return await self._rows(resp, f"insert into {table}")

    async def update(
        self, table: str, values: Dict[str, Any], filters: Dict[str, str]
    ) -> List[Dict[str, Any]]:
        """
        PATCH rows matching `filters` and return the rows actually changed.
        An empty result means no row matched, which callers use for
        compare-and-set style claims.
        """
        if not filters:
            raise ValueError("Refusing to update without filters.")
        session = await self.ensure_session()
        async with session.patch(
            self._url(table),
            headers=self._headers("return=representation"),
            params=filters,
            json=values,
            ssl=self._verify_ssl,
        ) as resp:
            return await self._rows(resp, f"update on {table}")
