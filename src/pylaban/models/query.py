"""Read filters and results."""

from __future__ import annotations

import hashlib
import json
from enum import StrEnum
from typing import Any

from pydantic import Field, field_validator

from pylaban.exceptions import OfflineNoDataError
from pylaban.models._base import LabanBaseModel


class FilterSpec(LabanBaseModel):
    """Subset of a PostgREST select: projection, equality filters, ordering and limit."""

    select: str = "*"
    eq: dict[str, Any] = Field(default_factory=dict)
    order: tuple[str, bool] | None = None
    limit: int | None = None

    @field_validator("limit")
    @classmethod
    def _positive_limit(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError("limit must be positive")
        return value

    def cache_key(self, entity_type: str) -> str:
        """Stable key for caching results of this filter for *entity_type*.

        The canonical filter JSON is hashed so the key stays short enough to
        serve as a file name in a :class:`~pylaban.storage.FileStore`.
        """
        canonical = json.dumps(self.to_wire(), sort_keys=True, separators=(",", ":"), default=str)
        digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        return f"{entity_type}:query:{digest}"

    def to_query_params(self) -> dict[str, str]:
        params: dict[str, str] = {"select": self.select}
        for column, value in sorted(self.eq.items()):
            params[column] = f"eq.{_format_value(value)}"
        if self.order is not None:
            column, ascending = self.order
            params["order"] = f"{column}.{'asc' if ascending else 'desc'}"
        if self.limit is not None:
            params["limit"] = str(self.limit)
        return params


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


class QuerySource(StrEnum):
    REMOTE = "remote"
    CACHE = "cache"
    UNAVAILABLE = "unavailable"


class QueryResult(LabanBaseModel):
    """Outcome of ``SyncCoordinator.query``.

    ``source == UNAVAILABLE`` is the "no data available offline" signal; it is
    distinct from a successful read that returned no rows (``data == []``).
    """

    entity_type: str
    source: QuerySource
    data: list[dict[str, Any]] | None = None
    stored_at: float | None = None

    @property
    def available(self) -> bool:
        return self.source != QuerySource.UNAVAILABLE

    @property
    def from_cache(self) -> bool:
        return self.source == QuerySource.CACHE

    def raise_for_data(self) -> list[dict[str, Any]]:
        """Return the rows, raising :class:`OfflineNoDataError` when unavailable."""
        if self.data is None:
            raise OfflineNoDataError(self.entity_type)
        return self.data
