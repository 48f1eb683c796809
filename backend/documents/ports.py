"""
Catalog port: the relational side of the platform (tables `documents`, `profiles`).

Keep this small and framework-agnostic so tests can supply simple fakes.
Filtering is expressed declaratively and executed by the platform:

- eq: column -> value equality filters (AND)
- in_: (column, values) membership filter
- search: (term, columns) case-insensitive substring match on any column (OR)

Errors:
    Implementations raise `NetworkError` for transport failures and
    `CatalogError` when the platform rejects a query.
"""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple


class CatalogProtocol(Protocol):
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
    ) -> List[Dict[str, Any]]: ...

    async def insert(self, table: str, record: Mapping[str, Any]) -> Dict[str, Any]: ...

    async def update(self, table: str, *, eq: Mapping[str, Any], values: Mapping[str, Any]) -> List[Dict[str, Any]]: ...

    async def delete(self, table: str, *, eq: Mapping[str, Any]) -> List[Dict[str, Any]]: ...


__all__ = ["CatalogProtocol"]
