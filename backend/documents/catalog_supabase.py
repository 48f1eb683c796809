"""
Supabase (PostgREST) implementation of the catalog port.

The client is duck-typed: anything exposing `.table(name)` returning an async
PostgREST request builder works (`supabase.AsyncClient` in production).
Row-level security is enforced by the platform; this adapter only shapes
queries and translates errors.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx
from postgrest.exceptions import APIError

from backend.documents.errors import CatalogError, NetworkError

_log = logging.getLogger("docshare.documents.catalog")

# Characters with meaning inside a PostgREST `or=(...)` expression or LIKE pattern.
_SEARCH_UNSAFE = re.compile(r"[,()%*\\\"]")


def _search_expression(term: str, columns: Sequence[str]) -> Optional[str]:
    cleaned = _SEARCH_UNSAFE.sub(" ", term or "").strip()
    if not cleaned or not columns:
        return None
    return ",".join(f"{col}.ilike.*{cleaned}*" for col in columns)


class SupabaseCatalog:
    def __init__(self, client: Any):
        self._client = client

    async def _execute(self, builder: Any, *, op: str) -> List[Dict[str, Any]]:
        try:
            resp = await builder.execute()
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise NetworkError(f"{op}_network_error") from exc
        except APIError as exc:
            code = getattr(exc, "code", None) or "api_error"
            _log.warning("catalog %s rejected: code=%s", op, code)
            raise CatalogError(f"{op}_failed", message=str(getattr(exc, "message", "") or code)) from exc
        data = getattr(resp, "data", None)
        if data is None:
            return []
        return list(data) if isinstance(data, list) else [data]

    async def select(
        self,
        table: str,
        *,
        eq: Optional[Mapping[str, Any]] = None,
        in_: Optional[Tuple[str, Sequence[Any]]] = None,
        search: Optional[Tuple[str, Sequence[str]]] = None,
        order_by: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        q = self._client.table(table).select("*")
        for col, value in (eq or {}).items():
            q = q.eq(col, value)
        if in_ is not None:
            col, values = in_
            q = q.in_(col, list(values))
        if search is not None:
            expr = _search_expression(*search)
            if expr:
                q = q.or_(expr)
        if order_by:
            q = q.order(order_by, desc=descending)
        if limit is not None:
            q = q.limit(int(limit))
        return await self._execute(q, op="select")

    async def insert(self, table: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        rows = await self._execute(self._client.table(table).insert(dict(record)), op="insert")
        if not rows:
            raise CatalogError("insert_failed", message="insert returned no row")
        return rows[0]

    async def update(self, table: str, *, eq: Mapping[str, Any], values: Mapping[str, Any]) -> List[Dict[str, Any]]:
        q = self._client.table(table).update(dict(values))
        for col, value in eq.items():
            q = q.eq(col, value)
        return await self._execute(q, op="update")

    async def delete(self, table: str, *, eq: Mapping[str, Any]) -> List[Dict[str, Any]]:
        if not eq:
            raise ValueError("unfiltered_delete")
        q = self._client.table(table).delete()
        for col, value in eq.items():
            q = q.eq(col, value)
        return await self._execute(q, op="delete")


__all__ = ["SupabaseCatalog"]
