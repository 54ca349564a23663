"""Every tunable of a clearing run, loaded from the environment.

Values can be overridden through ``AUCTION_``-prefixed environment
variables (e.g. ``AUCTION_MIN_BOND_EPOCHS=2``) or passed explicitly.
Shares are decimals (0.3 == 30%), yields are PMPE, amounts are SOL.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AuctionConfig(BaseSettings):
    """Recognized auction options with their defaults."""

    model_config = SettingsConfigDict(
        env_prefix="AUCTION_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Eligibility ---
    validators_uptime_epochs_count: int = Field(
        default=3, ge=0,
        description="Number of recent epochs checked for uptime.",
    )
    validators_uptime_threshold_dec: float = Field(
        default=0.8, ge=0.0, le=1.0,
        description="Minimum vote credits relative to the stake-weighted epoch average.",
    )
    max_effective_commission_dec: float = Field(
        default=0.07, ge=0.0, le=1.0,
        description="Commission above which a validator is not eligible.",
    )
    minimal_commission_dec: float | None = Field(
        default=None,
        description="Commissions below this value are raised to it.",
    )
    min_eligible_fee_pmpe: float = Field(
        default=0.0, ge=0.0,
        description="Minimum bid on top of rewards required to join the auction pool.",
    )

    # --- Pools and concentration ---
    directed_stake_share_dec: float = Field(
        default=0.0, ge=0.0, le=1.0,
        description="Share of the pool distributed as directed stake.",
    )
    max_network_stake_concentration_per_country_dec: float = Field(default=0.3, ge=0.0)
    max_network_stake_concentration_per_aso_dec: float = Field(default=0.3, ge=0.0)
    max_pool_stake_concentration_per_country_dec: float = Field(default=1.0, ge=0.0)
    max_pool_stake_concentration_per_aso_dec: float = Field(default=1.0, ge=0.0)
    max_pool_tvl_share_per_validator_dec: float = Field(default=0.04, ge=0.0)

    # --- Collateral ---
    min_bond_epochs: int = Field(
        default=1, ge=0,
        description="Epochs of bids the bond must cover at minimum.",
    )
    ideal_bond_epochs: int = Field(
        default=1, ge=0,
        description="Epochs of bids the bond should ideally cover.",
    )
    min_bond_balance_sol: float = Field(
        default=0.0, ge=0.0,
        description="Collateral floor; below 80% of it no auction stake is given.",
    )
    min_max_stake_wanted_sol: float | None = Field(
        default=None,
        description="Lowest declared maximum honoured; None disables declared maxima.",
    )
    bond_risk_fee_mult: float = Field(default=0.0, ge=0.0)

    # --- Unprotected stake ---
    unprotected_delegated_stake_dec: float = Field(default=0.0, ge=0.0)
    unprotected_foundation_stake_dec: float = Field(default=0.0, ge=0.0)
    max_unprotected_stake_per_validator_dec: float = Field(default=0.0, ge=0.0)
    min_unprotected_stake_to_delegate_sol: float = Field(default=0.0, ge=0.0)

    # --- Reputation ---
    spend_robust_reputation_mult: float | None = Field(
        default=None,
        description="Multiplier from adjusted reputation to stake capacity; None disables.",
    )
    reputation_decay_epochs: float = Field(default=50.0, gt=0.0)
    min_reputation: float = -20.0
    max_reputation: float = 1000.0
    initial_reputation: float = 1.0
    initial_scaled_reputation: float = 100.0
    min_scaled_reputation: float = 5.0

    # --- Expected bids and penalties ---
    expected_fee_pmpe: float = Field(default=0.0, ge=0.0)
    expected_max_winning_bid_ratio: float | None = Field(default=None, ge=0.0)
    min_expected_eff_bid_pmpe: float = Field(default=0.0, ge=0.0)
    bid_too_low_penalty_history_epochs: int = Field(default=3, ge=0)
    bid_too_low_penalty_permitted_deviation_dec: float = Field(
        default=0.0, ge=0.0, le=1.0,
        description="Relative undercut of the historical bid that goes unpenalised.",
    )

    # --- Debugging ---
    debug_vote_accounts: list[str] = Field(
        default_factory=list,
        description="Validators whose per-round events are recorded.",
    )

    @model_validator(mode="after")
    def _validate_ranges(self) -> "AuctionConfig":
        if self.ideal_bond_epochs < self.min_bond_epochs:
            msg = (
                f"ideal_bond_epochs ({self.ideal_bond_epochs}) must be >= "
                f"min_bond_epochs ({self.min_bond_epochs})"
            )
            raise ValueError(msg)
        if self.min_reputation > self.max_reputation:
            msg = (
                f"min_reputation ({self.min_reputation}) must be <= "
                f"max_reputation ({self.max_reputation})"
            )
            raise ValueError(msg)
        if self.min_scaled_reputation > self.initial_scaled_reputation:
            msg = (
                f"min_scaled_reputation ({self.min_scaled_reputation}) must be <= "
                f"initial_scaled_reputation ({self.initial_scaled_reputation})"
            )
            raise ValueError(msg)
        return self
