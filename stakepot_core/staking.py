"""
Weighted staking ledger with pot-funded, pro-rata rewards.

Accounts lock tokens into stakes.  Each stake carries a *weight* equal to the
1-based position of its lock period in the period table.  Rewards are not
minted: they come from a pot that is topped up externally and handed out on
``distribute()``.

Distribution Algorithm
──────────────────────
For every open stake::

    reward += pot × amount × weight // total_stake_weight

    total_stake_weight = Σ amount × weight   (open stakes only)

Integer floor division throughout.  The truncated residue is kept by the
ledger as ``dust`` and never redistributed.  The pot is emptied afterwards.

Withdrawal
──────────
Only the owning account may close its stake.  When fewer blocks than the
stake's period have passed since ``start_block``::

    principal = amount - amount × penalty_rate // 100

otherwise the full amount is returned.  Accrued reward is always paid in
full.  The withheld part stays in custody as ``retained_penalties``.
A closed stake is tombstoned in place (``amount = reward = 0``,
``close_block = now``); its index is never reused.

Atomicity
─────────
Every operation validates first, then makes its single call to the transfer
service, then applies in-memory updates that cannot fail.  A refused
transfer therefore leaves the ledger exactly as it was.  All operations run
under one re-entrant lock, so a reader never sees half of a mutation.
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from stakepot_core.errors import (
    AlreadyClosed,
    BelowMinimum,
    EmptyPot,
    InsufficientFunds,
    InvalidIndex,
    InvariantViolation,
    NoStakers,
    NotAdmin,
    NotOwner,
    OutOfRange,
    Overflow,
    TransferFault,
    TransferRejected,
)
from stakepot_core.periods import LedgerParams, PeriodTable
from stakepot_core.token import TransferService

logger = logging.getLogger("stakepot_staking")

UINT256_MAX: int = 2 ** 256 - 1


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _check_bound(value: int, what: str) -> int:
    if value > UINT256_MAX:
        raise Overflow(f"{what} exceeds 256-bit range")
    return value


# ── Logical time ────────────────────────────────────────────────────────

class BlockClock:
    """Monotonic block-height counter used to time stakes."""

    def __init__(self, height: int = 1):
        if height < 0:
            raise ValueError("Block height cannot be negative")
        self.height = height

    def now(self) -> int:
        return self.height

    def advance(self, blocks: int = 1) -> int:
        if blocks < 0:
            raise ValueError("Block height only moves forward")
        self.height += blocks
        return self.height


# ── StakeRecord ─────────────────────────────────────────────────────────

@dataclass
class StakeRecord:
    """One locked deposit.  ``amount == 0`` marks a closed (tombstoned) stake."""
    amount: int
    period: int             # lock duration in blocks, as supplied
    weight: int             # cached position in the period table
    reward: int = 0
    start_block: int = 0
    close_block: int = 0

    @property
    def is_active(self) -> bool:
        return self.amount > 0

    @property
    def weighted_amount(self) -> int:
        return self.amount * self.weight

    def is_unlocked(self, now: int) -> bool:
        """True once ``period`` blocks have elapsed since ``start_block``."""
        return now - self.start_block >= self.period

    def to_dict(self, now: Optional[int] = None) -> dict:
        if not self.is_active:
            status = "Closed"
        elif now is not None and self.is_unlocked(now):
            status = "Unlocked"
        else:
            status = "Locked"
        return {
            "amount": str(self.amount),
            "period": self.period,
            "weight": self.weight,
            "reward": str(self.reward),
            "start_block": self.start_block,
            "close_block": self.close_block,
            "status": status,
        }


def penalised_principal(amount: int, penalty_rate: int) -> int:
    """Principal returned on an early withdrawal."""
    return amount - amount * penalty_rate // 100


# ── StakingPool ─────────────────────────────────────────────────────────

class StakingPool:
    """
    The whole ledger: per-account stake lists, global totals and the pot.

    Mutating entry points:
      ``add_stake()``        — lock tokens from the caller
      ``fund_pot()``         — top up the pot directly
      ``distribute()``       — split the pot across open stakes
      ``remove_stake()``     — close a stake and pay out
      ``set_periods()``, ``set_penalty_rate()``, ``set_pot_address()``,
      ``set_stake()``, ``transfer_admin()`` — admin only
    """

    def __init__(
        self,
        transfers: TransferService,
        params: LedgerParams,
        clock: Optional[BlockClock] = None,
        *,
        custody: str = "",
        auto_advance: bool = False,
        invariant_checker=None,
    ) -> None:
        self.transfers = transfers
        self.params = params
        self.clock = clock or BlockClock()
        self.custody = custody or getattr(transfers, "custody", "")
        self.auto_advance = auto_advance
        self.invariant_checker = invariant_checker

        self.accounts: dict[str, list[StakeRecord]] = {}
        self.total_stake: int = 0
        self.total_stake_weight: int = 0
        self.total_reward: int = 0
        self.pot: int = 0

        # Custody slack: value held by the ledger that belongs to no stake
        self.dust: int = 0
        self.retained_penalties: int = 0
        # Admin-written stake value that no transfer ever backed
        self.migration_deficit: int = 0

        self._lock = threading.RLock()

    # ── plumbing ────────────────────────────────────────────────────

    @contextmanager
    def _mutation(self) -> Iterator[LedgerParams]:
        """Serialise a mutation and run post-commit hooks on success."""
        with self._lock:
            yield self.params
            if self.invariant_checker is not None:
                ok, msg = self.invariant_checker.verify(self)
                if not ok:
                    logger.error(f"Invariant check failed: {msg}")
                    raise InvariantViolation(msg)
            if self.auto_advance:
                self.clock.advance()

    @staticmethod
    def _require_admin(params: LedgerParams, caller: str) -> None:
        if caller != params.admin:
            raise NotAdmin(f"{caller} is not the ledger admin")

    @staticmethod
    def _lookup(stakes: list[StakeRecord], index) -> StakeRecord:
        if not _is_int(index) or index < 0 or index >= len(stakes):
            raise InvalidIndex(f"No stake at index {index}")
        return stakes[index]

    def _pot_address_balance(self, params: LedgerParams) -> int:
        if not params.pot_address:
            return 0
        return self.transfers.balance_of(params.pot_address)

    def _pull(self, source: str, amount: int) -> None:
        try:
            self.transfers.transfer_in(source, amount)
        except InsufficientFunds as exc:
            raise TransferRejected(str(exc)) from exc

    def _push(self, destination: str, amount: int) -> None:
        try:
            self.transfers.transfer_out(destination, amount)
        except InsufficientFunds as exc:
            raise TransferFault(str(exc)) from exc

    def _open(
        self,
        account: str,
        amount: int,
        period: int,
        weight: int,
        start_block: int,
        reward: int = 0,
    ) -> int:
        stakes = self.accounts.setdefault(account, [])
        stakes.append(StakeRecord(
            amount=amount,
            period=period,
            weight=weight,
            reward=reward,
            start_block=start_block,
        ))
        self.total_stake += amount
        self.total_stake_weight += amount * weight
        self.total_reward += reward
        return len(stakes) - 1

    def _check_open_bounds(self, amount: int, weight: int, reward: int = 0) -> None:
        _check_bound(amount * weight, "Stake weight")
        _check_bound(self.total_stake + amount, "Total stake")
        _check_bound(self.total_stake_weight + amount * weight, "Total stake weight")
        _check_bound(self.total_reward + reward, "Total reward")

    # ── stake creation ──────────────────────────────────────────────

    def add_stake(self, caller: str, amount: int, period: int) -> int:
        """Lock ``amount`` base units from ``caller`` for ``period`` blocks."""
        with self._mutation() as params:
            if not _is_int(amount) or amount < params.min_stake:
                raise BelowMinimum(
                    f"Minimum stake is {params.min_stake} base units"
                )
            weight = params.periods.weight_of(period)
            self._check_open_bounds(amount, weight)

            self._pull(caller, amount)

            now = self.clock.now()
            index = self._open(caller, amount, period, weight, now)
            logger.info(
                f"Stake {caller}[{index}] opened",
                extra={"ctx": {"amount": amount, "period": period,
                               "weight": weight, "block": now}},
            )
            return index

    # ── pot & distribution ──────────────────────────────────────────

    def available_pot(self) -> int:
        """Pot held in custody plus what the pot address can supply."""
        with self._lock:
            return self.pot + self._pot_address_balance(self.params)

    def fund_pot(self, caller: str, amount: int) -> int:
        """Pull ``amount`` from ``caller`` straight into the pot."""
        with self._mutation():
            if not _is_int(amount) or amount <= 0:
                raise OutOfRange("Pot top-up must be a positive integer")
            _check_bound(self.pot + amount, "Pot")
            self._pull(caller, amount)
            self.pot += amount
            logger.info(f"Pot funded by {caller}: +{amount} (pot={self.pot})")
            return self.pot

    def distribute(self, caller: Optional[str] = None) -> int:
        """
        Split the whole available pot across open stakes.

        Returns the amount credited (pot minus floor-division residue).
        """
        with self._mutation() as params:
            swept = self._pot_address_balance(params)
            pot = self.pot + swept
            if pot == 0:
                raise EmptyPot("Nothing to distribute")
            total_weight = self.total_stake_weight
            if total_weight == 0:
                raise NoStakers("No open stakes to reward")
            _check_bound(pot * total_weight, "Distribution product")

            if swept:
                self._pull(params.pot_address, swept)

            credited = 0
            for stakes in self.accounts.values():
                for record in stakes:
                    if not record.is_active:
                        continue
                    delta = pot * record.weighted_amount // total_weight
                    record.reward += delta
                    credited += delta

            self.total_reward += credited
            self.dust += pot - credited
            self.pot = 0
            logger.info(
                f"Distributed {credited} of pot {pot} "
                f"(caller={caller or '-'}, dust={pot - credited})"
            )
            return credited

    # ── withdrawal ──────────────────────────────────────────────────

    def remove_stake(
        self, caller: str, index: int, account: Optional[str] = None,
    ) -> int:
        """
        Close ``account``'s stake at ``index`` and pay principal + reward.

        ``account`` defaults to the caller; only the owner may close a stake.
        """
        owner = caller if account is None else account
        with self._mutation() as params:
            if caller != owner:
                raise NotOwner(f"{caller} does not own stakes of {owner}")
            record = self._lookup(self.accounts.get(owner, []), index)
            if not record.is_active:
                raise AlreadyClosed(f"Stake {owner}[{index}] is already closed")

            now = self.clock.now()
            if record.is_unlocked(now):
                principal = record.amount
            else:
                principal = penalised_principal(record.amount, params.penalty_rate)
            payout = principal + record.reward

            self._push(owner, payout)

            self.total_stake -= record.amount
            self.total_stake_weight -= record.weighted_amount
            self.total_reward -= record.reward
            penalty = record.amount - principal
            self.retained_penalties += penalty

            record.amount = 0
            record.reward = 0
            record.close_block = now
            logger.info(
                f"Stake {owner}[{index}] closed",
                extra={"ctx": {"payout": payout, "penalty": penalty, "block": now}},
            )
            return payout

    # ── admin ───────────────────────────────────────────────────────

    def set_periods(self, caller: str, durations) -> None:
        with self._mutation() as params:
            self._require_admin(params, caller)
            table = PeriodTable(tuple(durations))
            if table.has_duplicates() or not table.is_ordered():
                logger.warning(
                    f"Period table {list(table)} is unordered or has duplicates; "
                    "weights follow list position"
                )
            self.params = params.evolve(periods=table)
            logger.info(f"Periods set to {list(table)} (v{self.params.version})")

    def set_penalty_rate(self, caller: str, rate: int) -> None:
        with self._mutation() as params:
            self._require_admin(params, caller)
            if not _is_int(rate) or not 0 <= rate <= 100:
                raise OutOfRange(f"Penalty rate must be within 0..100, got {rate}")
            self.params = params.evolve(penalty_rate=rate)
            logger.info(f"Penalty rate set to {rate}% (v{self.params.version})")

    def set_pot_address(self, caller: str, address: str) -> None:
        with self._mutation() as params:
            self._require_admin(params, caller)
            if self.custody and address == self.custody:
                raise OutOfRange("Pot address cannot be the custody account")
            self.params = params.evolve(pot_address=address)
            logger.info(f"Pot address set to {address} (v{self.params.version})")

    def transfer_admin(self, caller: str, new_admin: str) -> None:
        with self._mutation() as params:
            self._require_admin(params, caller)
            if not new_admin:
                raise OutOfRange("Admin address cannot be empty")
            self.params = params.evolve(admin=new_admin)
            logger.warning(f"Admin role transferred from {caller} to {new_admin}")

    def set_stake(
        self,
        caller: str,
        amount: int,
        period: int,
        account: str,
        start_block: int,
        reward: int,
    ) -> int:
        """
        Write a stake record for ``account`` without any transfer.

        Migration tool for carrying state over from a previous ledger.  It
        skips the minimum-stake check, and the value it creates is tracked in
        ``migration_deficit`` until custody is topped up.  The stake still
        belongs to ``account``; the admin cannot close it.
        """
        with self._mutation() as params:
            self._require_admin(params, caller)
            for name, value in (("amount", amount), ("start_block", start_block),
                                ("reward", reward)):
                if not _is_int(value) or value < 0:
                    raise OutOfRange(f"{name} must be a non-negative integer")
            if amount == 0:
                raise OutOfRange("amount must be positive")
            weight = params.periods.weight_of(period)
            self._check_open_bounds(amount, weight, reward)

            index = self._open(account, amount, period, weight, start_block, reward)
            self.migration_deficit += amount + reward
            logger.warning(
                f"Admin {caller} wrote stake {account}[{index}]: amount={amount} "
                f"period={period} start_block={start_block} reward={reward}"
            )
            return index

    # ── queries ─────────────────────────────────────────────────────

    def get_stakes(self, account: str) -> list[StakeRecord]:
        """Every stake of ``account``, tombstones included, as copies."""
        with self._lock:
            return [copy.copy(s) for s in self.accounts.get(account, [])]

    def get_active_stakes(self, account: str) -> list[tuple[int, StakeRecord]]:
        with self._lock:
            return [
                (i, copy.copy(s))
                for i, s in enumerate(self.accounts.get(account, []))
                if s.is_active
            ]

    def get_pending_reward(self, account: str, index: int) -> int:
        """Reward ``distribute()`` would credit to this stake right now."""
        with self._lock:
            record = self._lookup(self.accounts.get(account, []), index)
            if not record.is_active or self.total_stake_weight == 0:
                return 0
            pot = self.pot + self._pot_address_balance(self.params)
            return pot * record.weighted_amount // self.total_stake_weight

    def get_total_reward(self) -> int:
        with self._lock:
            return self.total_reward

    def external_balance(self) -> int:
        with self._lock:
            return self.transfers.balance_of(self.custody)

    def get_period_info(self) -> list[dict]:
        with self._lock:
            return self.params.periods.to_list()

    def get_summary(self) -> dict:
        with self._lock:
            stakes = [s for lst in self.accounts.values() for s in lst]
            active = sum(1 for s in stakes if s.is_active)
            return {
                "block": self.clock.now(),
                "total_stake": str(self.total_stake),
                "total_stake_weight": str(self.total_stake_weight),
                "total_reward": str(self.total_reward),
                "pot": str(self.pot),
                "available_pot": str(self.pot + self._pot_address_balance(self.params)),
                "dust": str(self.dust),
                "retained_penalties": str(self.retained_penalties),
                "migration_deficit": str(self.migration_deficit),
                "accounts": len(self.accounts),
                "active_stakes": active,
                "total_stakes": len(stakes),
                "params": self.params.to_dict(),
            }
