"""PostgREST client for the hosted relational store."""
from __future__ import annotations

import logging
import ssl
from typing import Any, Optional

import aiohttp
import certifi

from ..config import StoreConfig
from ..errors import StoreError
from ..models import Balance

logger = logging.getLogger(__name__)


class PostgrestStore:
    """Row CRUD over ``<url>/rest/v1/<table>`` with the project anon key."""

    def __init__(self, config: StoreConfig, access_token: Optional[str] = None) -> None:
        self.base_url = config.rest_url
        self.api_key = config.anon_key
        self.timeout = config.timeout_seconds
        self.access_token = access_token or config.anon_key

    def _headers(self, prefer: Optional[str] = None, single: bool = False) -> dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/vnd.pgrst.object+json" if single else "application/json",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    @staticmethod
    def _params(
        filters: Optional[dict[str, Any]] = None,
        order: Optional[str] = None,
        select: str = "*",
    ) -> dict[str, str]:
        params = {"select": select} if select else {}
        for column, value in (filters or {}).items():
            params[column] = f"eq.{value}"
        if order:
            params["order"] = order
        return params

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str],
        json: Any = None,
        prefer: Optional[str] = None,
        single: bool = False,
    ) -> Any:
        url = f"{self.base_url}/{table}"
        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        async with aiohttp.ClientSession(connector=connector) as session:
            async with session.request(
                method,
                url,
                params=params,
                json=json,
                headers=self._headers(prefer=prefer, single=single),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if response.status >= 400:
                    try:
                        body = await response.json(content_type=None)
                    except (aiohttp.ContentTypeError, ValueError):
                        body = None
                    raise StoreError.from_response(response.status, body)
                if response.status == 204:
                    return None
                return await response.json(content_type=None)

    # ------------------------------------------------------------------
    # Generic CRUD
    # ------------------------------------------------------------------

    async def select(
        self,
        table: str,
        filters: Optional[dict[str, Any]] = None,
        order: Optional[str] = None,
        single: bool = False,
    ) -> Any:
        """Select rows; ``single`` raises a PGRST116 StoreError when no row matches."""
        return await self._request(
            "GET", table, params=self._params(filters, order), single=single
        )

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        rows = await self._request(
            "POST", table, params={}, json=row, prefer="return=representation"
        )
        return rows[0] if isinstance(rows, list) and rows else (rows or {})

    async def update(
        self, table: str, values: dict[str, Any], filters: dict[str, Any]
    ) -> list[dict[str, Any]]:
        rows = await self._request(
            "PATCH",
            table,
            params=self._params(filters, select=""),
            json=values,
            prefer="return=representation",
        )
        return rows or []

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def fetch_balances(self, user_id: str) -> list[Balance]:
        """All balance rows for a user, ordered by token."""
        rows = await self.select("balances", {"user_id": user_id}, order="token.asc")
        return [Balance.from_row(row) for row in rows or []]

    async def fetch_balance(self, user_id: str, token: str) -> Optional[Balance]:
        """One balance row, or None when the user holds no such token."""
        try:
            row = await self.select(
                "balances", {"user_id": user_id, "token": token}, single=True
            )
        except StoreError as e:
            if e.is_not_found():
                return None
            raise
        return Balance.from_row(row) if row else None
