"""Base model for pylaban records and envelopes.

Every model inherits from :class:`LabanBaseModel` which provides
``alias_generator=to_camel`` so the camelCase wire format used by the
backend and the mesh medium maps to snake_case fields. Models serialize back
to camelCase with :meth:`LabanBaseModel.to_wire`.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class LabanBaseModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    def to_wire(self) -> dict[str, Any]:
        """Dump as a JSON-compatible camelCase dict."""
        return self.model_dump(mode="json", by_alias=True)

    def to_wire_json(self) -> str:
        return self.model_dump_json(by_alias=True)
