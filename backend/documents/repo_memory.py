"""
In-memory catalog and object storage (development fallback).

Why:
    Local work and API tests should run without a reachable platform. These
    stand-ins honor the same ports and filter semantics as the Supabase
    adapters; they enforce no row-level security.
"""
from __future__ import annotations

from copy import deepcopy
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
from uuid import uuid4


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _matches(row: Mapping[str, Any], eq: Optional[Mapping[str, Any]]) -> bool:
    return all(row.get(col) == value for col, value in (eq or {}).items())


class InMemoryCatalog:
    def __init__(self) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = {}

    def _rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.setdefault(table, [])

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
        rows = [r for r in self._rows(table) if _matches(r, eq)]
        if in_ is not None:
            col, values = in_
            wanted = set(values)
            rows = [r for r in rows if r.get(col) in wanted]
        if search is not None:
            term, columns = search
            needle = (term or "").strip().lower()
            if needle:
                rows = [r for r in rows if any(needle in str(r.get(c) or "").lower() for c in columns)]
        if order_by:
            rows = sorted(rows, key=lambda r: str(r.get(order_by) or ""), reverse=descending)
        if limit is not None:
            rows = rows[: int(limit)]
        return deepcopy(rows)

    async def insert(self, table: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        row = dict(record)
        row.setdefault("id", str(uuid4()))
        now = _now_iso()
        row.setdefault("created_at", now)
        row.setdefault("updated_at", now)
        self._rows(table).append(row)
        return deepcopy(row)

    async def update(self, table: str, *, eq: Mapping[str, Any], values: Mapping[str, Any]) -> List[Dict[str, Any]]:
        updated = []
        for row in self._rows(table):
            if _matches(row, eq):
                row.update(values)
                updated.append(deepcopy(row))
        return updated

    async def delete(self, table: str, *, eq: Mapping[str, Any]) -> List[Dict[str, Any]]:
        if not eq:
            raise ValueError("unfiltered_delete")
        rows = self._rows(table)
        removed = [r for r in rows if _matches(r, eq)]
        self.tables[table] = [r for r in rows if not _matches(r, eq)]
        return removed


class InMemoryObjectStorage:
    def __init__(self) -> None:
        self.objects: Dict[Tuple[str, str], Tuple[bytes, str]] = {}

    async def upload(self, *, bucket: str, key: str, body: bytes, content_type: str) -> None:
        if (bucket, key) in self.objects:
            raise FileExistsError(key)
        self.objects[(bucket, key)] = (bytes(body), content_type)

    async def remove(self, *, bucket: str, keys: List[str]) -> None:
        for key in keys:
            self.objects.pop((bucket, key), None)

    async def download(self, *, bucket: str, key: str) -> bytes:
        try:
            return self.objects[(bucket, key)][0]
        except KeyError:
            raise LookupError("object_not_found") from None


__all__ = ["InMemoryCatalog", "InMemoryObjectStorage"]
