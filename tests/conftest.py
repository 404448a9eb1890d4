"""
Shared pytest fixtures for the StakePot test suite.
"""

import pytest

from stakepot_core.periods import LedgerParams, PeriodTable
from stakepot_core.staking import BlockClock, StakingPool
from stakepot_core.token import BankTransferService, TokenBank

UNIT = 10 ** 18

ADMIN = "0xadmin"
POT = "0xpot"
ALICE = "0xalice"
BOB = "0xbob"
CAROL = "0xcarol"
EVE = "0xeve"
CUSTODY = "stakepot"

FULL_PERIODS = (1, 6500, 100_000, 195_000, 2_372_500)


def tokens(n: int) -> int:
    """Whole tokens to base units."""
    return n * UNIT


def build_pool(
    *,
    decimals: int = 18,
    periods=FULL_PERIODS,
    pot_funding: int = 10_000,
    balance: int = 1_000,
    checker=None,
):
    """Pool with funded, approved accounts and a funded pot address."""
    unit = 10 ** decimals
    bank = TokenBank(decimals=decimals)
    for account in (ADMIN, ALICE, BOB, CAROL, EVE):
        bank.mint(account, balance * unit)
        bank.approve(account, CUSTODY, 10 ** 40)
    bank.mint(POT, pot_funding * unit)
    bank.approve(POT, CUSTODY, 10 ** 40)
    params = LedgerParams(
        admin=ADMIN,
        pot_address=POT,
        periods=PeriodTable(tuple(periods)),
        decimals=decimals,
    )
    pool = StakingPool(
        BankTransferService(bank, CUSTODY),
        params,
        BlockClock(1),
        invariant_checker=checker,
    )
    return pool, bank


@pytest.fixture
def pool_and_bank():
    """18-decimal pool: ADMIN, ALICE, BOB, CAROL, EVE hold 1000 tokens, POT holds 10000."""
    return build_pool()


@pytest.fixture
def pool(pool_and_bank):
    return pool_and_bank[0]


@pytest.fixture
def bank(pool_and_bank):
    return pool_and_bank[1]
