"""Shared pytest fixtures for the stake auction test suite.

Provides:
- make_validator: factory for auction-ready validators with a preset rev share
- auction_config: permissive config (no uptime window, no per-validator TVL cap)
- make_engine: ClearingEngine over fresh AuctionData with caps derived from config
"""

import pytest

from stake_auction.config.auction import AuctionConfig
from stake_auction.engine.clearing import ClearingEngine
from stake_auction.engine.constraints.engine import ConstraintEngine
from stake_auction.engine.constraints.schema import ConstraintsConfig
from stake_auction.models.auction import AuctionData, Rewards, StakeAmounts
from stake_auction.models.validator import RevShare, Validator

NETWORK_TOTAL_SOL = 1_000_000_000.0


def build_validator(
    vote_account: str,
    *,
    inflation_pmpe: float = 0.8,
    mev_pmpe: float = 0.2,
    bid_pmpe: float = 0.0,
    bond_balance_sol: float | None = 1000.0,
    auction_eligible: bool = True,
    directed_eligible: bool = False,
    **fields,
) -> Validator:
    """Validator with its own country/ASO and a rev share already computed."""
    fields.setdefault("country", f"country-{vote_account}")
    fields.setdefault("aso", f"aso-{vote_account}")
    validator = Validator(
        vote_account=vote_account,
        bond_balance_sol=bond_balance_sol,
        bid_cpmpe=bid_pmpe,
        **fields,
    )
    validator.rev_share = RevShare(
        inflation_pmpe=inflation_pmpe,
        mev_pmpe=mev_pmpe,
        bid_pmpe=bid_pmpe,
        total_pmpe=inflation_pmpe + mev_pmpe + bid_pmpe,
        expected_max_eff_bid_pmpe=bid_pmpe,
    )
    validator.auction_eligible = auction_eligible
    validator.directed_eligible = directed_eligible
    return validator


@pytest.fixture()
def make_validator():
    return build_validator


@pytest.fixture()
def auction_config() -> AuctionConfig:
    return AuctionConfig(
        validators_uptime_epochs_count=0,
        max_pool_tvl_share_per_validator_dec=1.0,
        min_bond_epochs=0,
        ideal_bond_epochs=0,
    )


@pytest.fixture()
def make_engine(auction_config):
    """Factory: ``make_engine(validators, auction_tvl_sol=..., ...)``."""

    def _make(
        validators: list[Validator],
        *,
        auction_tvl_sol: float = 0.0,
        directed_tvl_sol: float = 0.0,
        config: AuctionConfig | None = None,
        events=None,
        rewards: Rewards | None = None,
    ) -> ClearingEngine:
        cfg = config or auction_config
        data = AuctionData(
            epoch=600,
            validators=validators,
            rewards=rewards or Rewards(inflation_pmpe=0.8, mev_pmpe=0.2),
            stake_amounts=StakeAmounts.for_pools(
                network_total_sol=NETWORK_TOTAL_SOL,
                directed_tvl_sol=directed_tvl_sol,
                auction_tvl_sol=auction_tvl_sol,
            ),
        )
        constraints = ConstraintEngine(
            ConstraintsConfig.from_config(cfg, data.stake_amounts), events,
        )
        return ClearingEngine(data, constraints, cfg, events)

    return _make
