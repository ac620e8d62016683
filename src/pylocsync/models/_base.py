"""Base model for pylocsync data models.

Every model inherits from :class:`LocSyncBaseModel` which provides:

* ``alias_generator=to_camel`` so camelCase wire keys map
  automatically to snake_case fields.
* Frozen instances, so snapshots handed to readers can never be
  mutated behind the registry's back.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class LocSyncBaseModel(BaseModel):
    """Base for pylocsync models."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
        allow_inf_nan=False,
    )
