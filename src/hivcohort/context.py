"""
Per-run calculation context.
"""

import typing
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType

from .errors import ConfigurationError
from .temporal import as_datetime


@dataclass(frozen=True)
class CalculationContext:
    """
    Immutable bundle shared by every calculator of one report run.

    Attributes:
        now: Reference date of the run.
        location: Facility the run is restricted to; None means every facility.
        cache: Ambient named values (e.g. period start/end dates), filled once
            before any calculator runs and read-only afterwards.
    """

    now: datetime
    location: typing.Optional[int] = None
    cache: typing.Mapping[str, typing.Any] = field(default_factory=dict)

    def __post_init__(self):
        now = as_datetime(self.now)
        if now is None:
            raise ConfigurationError("A calculation context needs a reference date")
        object.__setattr__(self, "now", now)
        # copy first so later changes to the caller's dict cannot leak in
        object.__setattr__(self, "cache", MappingProxyType(dict(self.cache)))

    def get_from_cache(self, name: str, default: typing.Any = None) -> typing.Any:
        if name == "location" and name not in self.cache:
            return self.location
        return self.cache.get(name, default)

    def require(self, name: str) -> typing.Any:
        value = self.get_from_cache(name)
        if value is None:
            raise ConfigurationError(f"Missing required ambient parameter {name!r}")
        return value
