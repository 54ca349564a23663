"""Pool sizes, rewards, input data and the auction result."""

from pydantic import Field, model_validator

from stake_auction.models.common import AuctionBase, Pmpe, Sol, UUIDv7, new_uuid7
from stake_auction.models.validator import Validator


class StakeAmounts(AuctionBase):
    """Sizes and remaining amounts of both stake pools.

    ``network_total_sol`` is the total stake of the network; the pool caps
    for concentration constraints are derived from the pool sizes.
    """

    network_total_sol: Sol
    directed_tvl_sol: Sol = 0.0
    auction_tvl_sol: Sol = 0.0
    directed_remaining_sol: Sol = 0.0
    auction_remaining_sol: Sol = 0.0

    @property
    def pool_tvl_sol(self) -> float:
        return self.directed_tvl_sol + self.auction_tvl_sol

    @classmethod
    def for_pools(
        cls,
        *,
        network_total_sol: float,
        directed_tvl_sol: float,
        auction_tvl_sol: float,
    ) -> "StakeAmounts":
        """Fresh amounts with both pools fully undistributed."""
        return cls(
            network_total_sol=network_total_sol,
            directed_tvl_sol=directed_tvl_sol,
            auction_tvl_sol=auction_tvl_sol,
            directed_remaining_sol=directed_tvl_sol,
            auction_remaining_sol=auction_tvl_sol,
        )

    @classmethod
    def split_pool(
        cls,
        *,
        network_total_sol: float,
        pool_tvl_sol: float,
        directed_stake_share_dec: float,
    ) -> "StakeAmounts":
        """Split the pool TVL into directed and auction parts.

        ``directed_stake_share_dec`` is ``AuctionConfig.directed_stake_share_dec``;
        the auction pool gets the rest.
        """
        if not 0.0 <= directed_stake_share_dec <= 1.0:
            msg = f"directed_stake_share_dec must be in [0, 1], got {directed_stake_share_dec}"
            raise ValueError(msg)
        directed_tvl_sol = pool_tvl_sol * directed_stake_share_dec
        return cls.for_pools(
            network_total_sol=network_total_sol,
            directed_tvl_sol=directed_tvl_sol,
            auction_tvl_sol=pool_tvl_sol - directed_tvl_sol,
        )


class Rewards(AuctionBase):
    """Network reward rates before validator commission."""

    inflation_pmpe: Pmpe = 0.0
    mev_pmpe: Pmpe = 0.0


class AuctionData(AuctionBase):
    """Complete mutable state of one auction run."""

    epoch: int = 0
    validators: list[Validator] = Field(default_factory=list)
    rewards: Rewards = Field(default_factory=Rewards)
    stake_amounts: StakeAmounts
    blacklist: set[str] = Field(default_factory=set)

    @model_validator(mode="after")
    def _validate_unique_accounts(self) -> "AuctionData":
        seen: set[str] = set()
        for validator in self.validators:
            if validator.vote_account in seen:
                msg = f"Duplicate vote account in auction data: {validator.vote_account}"
                raise ValueError(msg)
            seen.add(validator.vote_account)
        return self

    def index_of(self, vote_account: str) -> int:
        """Position of a validator in the input order."""
        for index, validator in enumerate(self.validators):
            if validator.vote_account == vote_account:
                return index
        msg = f"Unknown vote account: {vote_account}"
        raise KeyError(msg)


class AuctionResult(AuctionBase):
    """Outcome of a full evaluation."""

    run_id: UUIDv7 = Field(default_factory=new_uuid7)
    auction_data: AuctionData
    clearing_pmpe: Pmpe = Field(
        description="Total PMPE of the last tier that received stake "
        "(negative infinity when no tier received anything).",
    )
    total_spend_sol: Sol = 0.0

    @property
    def winning_total_pmpe(self) -> float:
        return self.clearing_pmpe
