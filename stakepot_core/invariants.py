"""
Post-operation invariant checks for the StakePot ledger.

  - total_stake equals the sum of open stake amounts
  - total_stake_weight equals Σ amount × weight over open stakes
  - total_reward equals the sum of open stake rewards
  - closed stakes are proper tombstones (amount = reward = 0, close_block set)
  - counters never go negative
  - custody is solvent (a surplus from direct deposits is tolerated):

        balance + migration_deficit
            >= total_stake + total_reward + pot + dust + retained_penalties

The running totals are maintained incrementally by ``StakingPool``; the
checks here are the only place they are recomputed by a full scan.
"""

from __future__ import annotations


class InvariantChecker:
    """Validates ledger invariants after an operation."""

    def verify(self, pool) -> tuple[bool, str]:
        """
        Verify all invariants against the current pool state.
        Returns (passed, error_message).
        """
        errors: list[str] = []
        for check in (
            self._check_non_negative,
            self._check_stake_totals,
            self._check_tombstones,
            self._check_solvency,
        ):
            ok, msg = check(pool)
            if not ok:
                errors.append(msg)
        if errors:
            return False, "; ".join(errors)
        return True, ""

    def _check_non_negative(self, pool) -> tuple[bool, str]:
        for name in ("total_stake", "total_stake_weight", "total_reward", "pot",
                     "dust", "retained_penalties", "migration_deficit"):
            value = getattr(pool, name)
            if value < 0:
                return False, f"{name} is negative: {value}"
        return True, ""

    def _check_stake_totals(self, pool) -> tuple[bool, str]:
        stake_sum = weight_sum = reward_sum = 0
        for stakes in pool.accounts.values():
            for s in stakes:
                if s.is_active:
                    stake_sum += s.amount
                    weight_sum += s.amount * s.weight
                    reward_sum += s.reward
        if pool.total_stake != stake_sum:
            return (False,
                    f"total_stake={pool.total_stake} but open stakes sum to {stake_sum}")
        if pool.total_stake_weight != weight_sum:
            return (False,
                    f"total_stake_weight={pool.total_stake_weight} "
                    f"but open stakes weigh {weight_sum}")
        if pool.total_reward != reward_sum:
            return (False,
                    f"total_reward={pool.total_reward} but open rewards sum to {reward_sum}")
        return True, ""

    def _check_tombstones(self, pool) -> tuple[bool, str]:
        for account, stakes in pool.accounts.items():
            for i, s in enumerate(stakes):
                if s.amount < 0 or s.reward < 0:
                    return False, f"Stake {account}[{i}] has negative fields"
                if s.close_block and (s.amount or s.reward):
                    return False, f"Closed stake {account}[{i}] still holds value"
                if not s.is_active and s.reward:
                    return False, f"Empty stake {account}[{i}] carries reward {s.reward}"
        return True, ""

    def _check_solvency(self, pool) -> tuple[bool, str]:
        if not pool.custody:
            return True, ""
        held = pool.transfers.balance_of(pool.custody) + pool.migration_deficit
        owed = (pool.total_stake + pool.total_reward + pool.pot
                + pool.dust + pool.retained_penalties)
        if held < owed:
            return (False,
                    f"Custody shortfall: holds {held} (incl. migration deficit) "
                    f"but owes {owed}")
        return True, ""


def solvency_residue(pool) -> int:
    """Custody balance not owed to any stake or the pot (dust + penalties)."""
    return (pool.transfers.balance_of(pool.custody) + pool.migration_deficit
            - pool.total_stake - pool.total_reward - pool.pot)
