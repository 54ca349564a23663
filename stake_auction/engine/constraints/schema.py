"""Constraint schema — cap records and the absolute caps they are built from.

A constraint tracks one cap over a set of validators in two currencies:

- *total* stake (everything the validators hold on the network), bounded
  by network-wide concentration limits;
- *pool* stake (what the pool distributes: directed + auction targets),
  bounded by pool-level limits.

Group constraints (COUNTRY, ASO) cover every validator sharing the key;
all other types cover exactly one validator and leave ``total_left_to_cap_sol``
infinite.

Engine-level dataclasses (not Pydantic): rebuilt on every allocation round.
"""

import math
from dataclasses import dataclass

from stake_auction.config.auction import AuctionConfig
from stake_auction.models.auction import StakeAmounts
from stake_auction.models.common import ConstraintType

# Amounts below this are treated as zero (SOL).
EPSILON = 1e-4

# Tie-break order when two constraints yield the same cap: earlier wins.
CONSTRAINT_PRIORITY: tuple[ConstraintType, ...] = (
    ConstraintType.COUNTRY,
    ConstraintType.ASO,
    ConstraintType.BOND,
    ConstraintType.RISK,
    ConstraintType.WANT,
    ConstraintType.VALIDATOR,
)

_PRIORITY_RANK: dict[ConstraintType, int] = {
    constraint_type: rank for rank, constraint_type in enumerate(CONSTRAINT_PRIORITY)
}


def priority_rank(constraint_type: ConstraintType) -> int:
    """Position of ``constraint_type`` in the tie-break order."""
    return _PRIORITY_RANK[constraint_type]


@dataclass(frozen=True)
class Constraint:
    """One active cap and the validators (by index) it covers."""

    constraint_type: ConstraintType
    name: str
    total_stake_sol: float
    total_left_to_cap_sol: float
    pool_stake_sol: float
    pool_left_to_cap_sol: float
    validators: tuple[int, ...]

    @property
    def total_cap_sol(self) -> float:
        return self.total_stake_sol + self.total_left_to_cap_sol

    @property
    def pool_cap_sol(self) -> float:
        return self.pool_stake_sol + self.pool_left_to_cap_sol

    @property
    def headroom_sol(self) -> float:
        """Stake any member could still receive if it were alone."""
        return max(0.0, min(self.total_left_to_cap_sol, self.pool_left_to_cap_sol))

    def even_cap(self, subset: frozenset[int] | set[int]) -> tuple[float, int]:
        """Per-member cap when headroom is split over the covered part of ``subset``.

        Returns the cap and the number of affected members; the cap is
        infinite when no member of ``subset`` is covered.
        """
        affected = sum(1 for index in self.validators if index in subset)
        if affected == 0:
            return math.inf, 0
        return self.headroom_sol / affected, affected


@dataclass(frozen=True)
class ConstraintsConfig:
    """Absolute caps (SOL) and collateral parameters used to build constraints."""

    total_country_stake_cap_sol: float = math.inf
    total_aso_stake_cap_sol: float = math.inf
    pool_country_stake_cap_sol: float = math.inf
    pool_aso_stake_cap_sol: float = math.inf
    pool_validator_stake_cap_sol: float = math.inf
    spend_robust_reputation_mult: float | None = None
    min_bond_balance_sol: float = 0.0
    min_max_stake_wanted_sol: float | None = None
    min_bond_epochs: int = 0
    ideal_bond_epochs: int = 0
    unprotected_validator_stake_cap_sol: float = 0.0
    min_unprotected_stake_to_delegate_sol: float = 0.0
    unprotected_foundation_stake_dec: float = 0.0
    unprotected_delegated_stake_dec: float = 0.0

    @classmethod
    def from_config(
        cls, config: AuctionConfig, stake_amounts: StakeAmounts,
    ) -> "ConstraintsConfig":
        """Turn relative limits into absolute caps for the given pool sizes."""
        network_sol = stake_amounts.network_total_sol
        pool_sol = stake_amounts.pool_tvl_sol
        return cls(
            total_country_stake_cap_sol=(
                network_sol * config.max_network_stake_concentration_per_country_dec
            ),
            total_aso_stake_cap_sol=(
                network_sol * config.max_network_stake_concentration_per_aso_dec
            ),
            pool_country_stake_cap_sol=(
                pool_sol * config.max_pool_stake_concentration_per_country_dec
            ),
            pool_aso_stake_cap_sol=pool_sol * config.max_pool_stake_concentration_per_aso_dec,
            pool_validator_stake_cap_sol=pool_sol * config.max_pool_tvl_share_per_validator_dec,
            spend_robust_reputation_mult=config.spend_robust_reputation_mult,
            min_bond_balance_sol=config.min_bond_balance_sol,
            min_max_stake_wanted_sol=config.min_max_stake_wanted_sol,
            min_bond_epochs=config.min_bond_epochs,
            ideal_bond_epochs=config.ideal_bond_epochs,
            unprotected_validator_stake_cap_sol=(
                pool_sol * config.max_unprotected_stake_per_validator_dec
            ),
            min_unprotected_stake_to_delegate_sol=config.min_unprotected_stake_to_delegate_sol,
            unprotected_foundation_stake_dec=config.unprotected_foundation_stake_dec,
            unprotected_delegated_stake_dec=config.unprotected_delegated_stake_dec,
        )
