"""
Period table and versioned ledger parameters.

A stake's reward weight is the 1-based position of its lock period in the
period table at the moment the stake is created:

    periods = (1, 6500, 100000, 195000, 2372500)
    weight_of(6500)    -> 2
    weight_of(2372500) -> 5

The weight is cached on the stake; replacing the table later never changes
the weight of an existing stake.

The table is accepted as given.  Duplicate entries resolve to the first
match and an unordered table simply reorders the weights; neither is
rejected, so a careless ``set_periods`` call silently changes the weight
that future stakes receive.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace

from stakepot_core.errors import UnknownPeriod


DEFAULT_PERIODS: tuple[int, ...] = (1, 6500, 100_000, 195_000, 2_372_500)
DEFAULT_PENALTY_RATE: int = 10
DEFAULT_DECIMALS: int = 18


@dataclass(frozen=True)
class PeriodTable:
    """Ordered lock durations; position + 1 is the reward weight."""
    durations: tuple[int, ...] = DEFAULT_PERIODS

    def weight_of(self, period: int) -> int:
        for i, duration in enumerate(self.durations):
            if duration == period:
                return i + 1
        raise UnknownPeriod(f"Period {period} is not in the period table")

    def has_duplicates(self) -> bool:
        return len(set(self.durations)) != len(self.durations)

    def is_ordered(self) -> bool:
        return all(a < b for a, b in zip(self.durations, self.durations[1:]))

    def __len__(self) -> int:
        return len(self.durations)

    def __iter__(self):
        return iter(self.durations)

    def to_list(self) -> list[dict]:
        return [
            {"period": duration, "weight": i + 1}
            for i, duration in enumerate(self.durations)
        ]


@dataclass(frozen=True)
class LedgerParams:
    """
    Admin-controlled configuration, read once at the start of each operation.

    Every admin mutation produces a new record with ``version + 1``.
    """
    admin: str
    pot_address: str = ""
    periods: PeriodTable = field(default_factory=PeriodTable)
    penalty_rate: int = DEFAULT_PENALTY_RATE
    decimals: int = DEFAULT_DECIMALS
    version: int = 1

    @property
    def min_stake(self) -> int:
        """One whole token in base units."""
        return 10 ** self.decimals

    def evolve(self, **changes) -> LedgerParams:
        return replace(self, version=self.version + 1, **changes)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "admin": self.admin,
            "pot_address": self.pot_address,
            "periods": list(self.periods.durations),
            "penalty_rate": self.penalty_rate,
            "decimals": self.decimals,
            "min_stake": str(self.min_stake),
        }
