"""Counters that track an aggregated value together with its latest delta."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

MAX_UINT64 = 2**64 - 1
_UINT64_MOD = 2**64


class StatOverflowError(ArithmeticError):
    """Raised when an aggregated counter would exceed the 64-bit range."""


@dataclass
class UInt64Stat:
    """An unsigned 64-bit counter holding an aggregate and the last delta."""

    aggr: int = 0
    delta: int = 0

    def __str__(self) -> str:
        return f"{self.delta} ({self.aggr})"

    def reset_delta_values(self) -> None:
        """Reset the delta to zero."""
        self.delta = 0

    def add_new_delta(self, new_delta: int) -> None:
        """Add a freshly read delta to both the delta and the aggregate."""
        self.set_new_delta_value(new_delta, True)

    def set_new_delta(self, new_delta: int) -> None:
        """Replace the delta and add it to the aggregate."""
        self.set_new_delta_value(new_delta, False)

    def set_new_delta_value(self, new_delta: int, accumulate: bool) -> None:
        """Sum or replace the delta; a zero delta is ignored.

        Raises StatOverflowError and resets the aggregate when it would overflow.
        """
        if new_delta == 0:
            return
        if self.aggr >= MAX_UINT64 - new_delta:
            self.aggr = 0
            raise StatOverflowError("the aggregated value has overflowed")
        if accumulate:
            self.delta = (self.delta + new_delta) % _UINT64_MOD
        else:
            self.delta = new_delta
        self.aggr += new_delta

    def set_new_aggr(self, new_aggr: int) -> None:
        """Set a freshly read aggregate, deriving the delta from the previous one.

        Zero or unchanged values are ignored. Raises StatOverflowError and resets
        the aggregate when the value is the maximum 64-bit value.
        """
        if new_aggr == 0 or new_aggr == self.aggr:
            return
        if new_aggr == MAX_UINT64:
            self.aggr = 0
            raise StatOverflowError("the aggregated value has overflowed")
        if self.aggr > 0 and new_aggr > self.aggr:
            self.delta = new_aggr - self.aggr
        self.aggr = new_aggr


@dataclass
class UInt64StatCollection:
    """A set of UInt64Stat counters keyed by source (package, sensor, device...)."""

    stat: dict[str, UInt64Stat] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.sum_all_delta_values()} ({self.sum_all_aggr_values()})"

    def set_aggr_stat(self, key: str, new_aggr: int) -> None:
        """Record a new aggregate for ``key``; a new key starts with no delta."""
        instance = self.stat.get(key)
        if instance is None:
            self.stat[key] = UInt64Stat(aggr=new_aggr, delta=0)
            return
        try:
            instance.set_new_aggr(new_aggr)
        except StatOverflowError as err:
            logger.debug("%s: %s", key, err)

    def add_delta_stat(self, key: str, new_delta: int) -> None:
        """Add a delta to ``key``."""
        instance = self.stat.get(key)
        if instance is None:
            self.stat[key] = UInt64Stat(aggr=new_delta, delta=new_delta)
            return
        try:
            instance.add_new_delta(new_delta)
        except StatOverflowError as err:
            logger.debug("%s: %s", key, err)

    def set_delta_stat(self, key: str, new_delta: int) -> None:
        """Replace the delta of ``key``."""
        instance = self.stat.get(key)
        if instance is None:
            self.stat[key] = UInt64Stat(aggr=new_delta, delta=new_delta)
            return
        try:
            instance.set_new_delta(new_delta)
        except StatOverflowError as err:
            logger.debug("%s: %s", key, err)

    def sum_all_delta_values(self) -> int:
        """Sum the deltas of all sources."""
        return sum(s.delta for s in self.stat.values()) % _UINT64_MOD

    def sum_all_aggr_values(self) -> int:
        """Sum the aggregates of all sources."""
        return sum(s.aggr for s in self.stat.values()) % _UINT64_MOD

    def reset_delta_values(self) -> None:
        """Reset every delta to zero."""
        for s in self.stat.values():
            s.reset_delta_values()