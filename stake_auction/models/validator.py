"""Validator models — static inputs, derived yield and per-round allocation state.

A validator carries three kinds of fields:

- static inputs from the data aggregator (commissions, bid, collateral,
  stake figures, history) that never change during a clearing run;
- derived values (revenue share, eligibility, bond metrics) recomputed by
  the engine;
- allocation state (targets, binding constraint, priorities) that is
  zeroed by ``ClearingEngine.reset``.

Reputation fields persist across passes and are only written by the
reputation update and rescaling steps.
"""

import math

from pydantic import Field

from stake_auction.models.common import AuctionBase, ConstraintType, Pmpe, Sol


class RevShare(AuctionBase):
    """Yield decomposition of a validator, all values in PMPE."""

    inflation_pmpe: Pmpe = 0.0
    mev_pmpe: Pmpe = 0.0
    bid_pmpe: Pmpe = 0.0
    total_pmpe: Pmpe = 0.0
    expected_max_eff_bid_pmpe: Pmpe = 0.0
    auction_effective_bid_pmpe: Pmpe = math.nan
    eff_participating_bid_pmpe: Pmpe = math.nan
    bid_too_low_penalty_pmpe: Pmpe = math.nan
    blacklist_penalty_pmpe: Pmpe = math.nan

    @property
    def rewards_pmpe(self) -> float:
        """Protocol rewards passed on to stakers (inflation + MEV)."""
        return self.inflation_pmpe + self.mev_pmpe


class AuctionStake(AuctionBase):
    """Stake amounts currently assigned to a validator."""

    external_activated_sol: Sol = 0.0
    directed_target_sol: Sol = 0.0
    auction_target_sol: Sol = 0.0

    @property
    def pool_target_sol(self) -> float:
        return self.directed_target_sol + self.auction_target_sol


class AuctionHistoryEntry(AuctionBase):
    """One past auction epoch for a validator (history is newest first)."""

    epoch: int
    clearing_pmpe: Pmpe | None = None
    bid_pmpe: Pmpe | None = None
    eff_participating_bid_pmpe: Pmpe | None = None
    auction_effective_bid_pmpe: Pmpe | None = None
    delegated_stake_sol: Sol | None = None


class EpochStats(AuctionBase):
    """Per-epoch activity of a validator, used for uptime eligibility."""

    epoch: int
    total_activated_stake_sol: Sol = 0.0
    vote_credits: float = 0.0


class CapConstraintRef(AuctionBase):
    """Identity of the constraint that stopped a validator receiving stake."""

    constraint_type: ConstraintType
    name: str

    @property
    def label(self) -> str:
        return f"{self.constraint_type.value} ({self.name})"


class ReputationState(AuctionBase):
    """Reputation of a validator and the capacity derived from it."""

    reputation: float = 0.0
    adj_reputation: float = 0.0
    inflation_factor: float = 1.0
    max_delegation_sol: Sol = math.inf
    unbounded: bool = Field(
        default=False,
        description="Reputation cap removed (counterfactual solves only).",
    )


class ForcedUndelegation(AuctionBase):
    """Linear-model forced undelegation computed by the bond risk fee."""

    base: float
    coef: float
    value: Sol
    fee_pmpe: Pmpe


class BondMetrics(AuctionBase):
    """Collateral-derived capacity and health of a validator."""

    capacity_sol: Sol = math.nan
    health: float = math.nan
    epochs_of_cover: float = math.nan
    max_delegation_sol: Sol = math.nan
    forced_undelegation: ForcedUndelegation | None = None
    risk_fee_sol: Sol = 0.0


class BidTooLowPenalty(AuctionBase):
    """Coefficient and base of the bid-too-low penalty (penalty = coef * base)."""

    coef: float = 0.0
    base: float = 0.0


class ValidatorHistory(AuctionBase):
    """State carried over from the previous run for one validator."""

    vote_account: str
    reputation: float
    inflation_factor: float = 1.0
    paid_undelegation_sol: Sol = 0.0
    last_delegated_stake_sol: Sol | None = None
    last_bond_balance_sol: Sol | None = None
    last_blacklisted: bool | None = None


class Validator(AuctionBase):
    """A validator participating in the auction."""

    # --- Identity ---
    vote_account: str
    country: str = "Unknown"
    aso: str = "Unknown"

    # --- Static inputs ---
    inflation_commission_dec: float | None = 0.0
    mev_commission_dec: float | None = None
    bid_cpmpe: float | None = None
    bond_balance_sol: Sol | None = None
    last_bond_balance_sol: Sol | None = None
    max_stake_wanted_sol: Sol | None = None
    total_activated_stake_sol: Sol = 0.0
    delegated_stake_sol: Sol = 0.0
    last_delegated_stake_sol: Sol | None = None
    self_stake_sol: Sol = 0.0
    foundation_stake_sol: Sol = 0.0
    directed_stake_ceiling_sol: Sol = 0.0
    epoch_stats: list[EpochStats] = Field(default_factory=list)
    auctions: list[AuctionHistoryEntry] = Field(default_factory=list)
    blacklisted: bool = False
    last_blacklisted: bool | None = None

    # --- Derived ---
    rev_share: RevShare = Field(default_factory=RevShare)
    directed_eligible: bool = False
    auction_eligible: bool = False

    # --- Allocation state ---
    auction_stake: AuctionStake = Field(default_factory=AuctionStake)
    blocked: bool = False
    stake_priority: int = 0
    unstake_priority: int = 0
    last_cap_constraint: CapConstraintRef | None = None
    bid_too_low_penalty: BidTooLowPenalty = Field(default_factory=BidTooLowPenalty)

    # --- Collateral, reputation and undelegation debt ---
    bond: BondMetrics = Field(default_factory=BondMetrics)
    reputation: ReputationState = Field(default_factory=ReputationState)
    paid_undelegation_sol: Sol = 0.0
