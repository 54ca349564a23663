"""Revenue share and pool eligibility for raw validator records.

Turns validators as delivered by the data aggregator into auction
participants:

1. revenue share from network rewards and the validator's commissions;
2. external stake (total minus what the pool already delegates);
3. eligibility flags:

   - blacklisted or below the uptime threshold in any of the last
     ``validators_uptime_epochs_count`` epochs: no pool at all;
   - no bond: directed pool only;
   - directed pool: inflation + MEV share >= minimum effective rev share;
   - auction pool: total PMPE >= max(minimum effective rev share,
     rewards + minimum eligible fee).

The uptime threshold of an epoch is the stake-weighted average of vote
credits times ``validators_uptime_threshold_dec``.
"""

import logging
from collections.abc import Mapping

import numpy as np

from stake_auction.config.auction import AuctionConfig
from stake_auction.engine.revshare import calc_rev_share
from stake_auction.models.auction import AuctionData
from stake_auction.models.validator import Validator, ValidatorHistory

logger = logging.getLogger(__name__)


class ValidatorTransformer:
    """Prepares ``AuctionData`` validators for clearing (in place)."""

    def __init__(self, config: AuctionConfig) -> None:
        self.config = config

    def uptime_thresholds(self, validators: list[Validator]) -> dict[int, float]:
        """Minimum vote credits per epoch over the uptime window.

        Raises:
            ValueError: If an epoch of the window has no credits data.
        """
        window = self.config.validators_uptime_epochs_count
        stats = [s for v in validators for s in v.epoch_stats]
        if window == 0 or not stats:
            return {}

        epochs = np.array([s.epoch for s in stats], dtype=int)
        stakes = np.array([s.total_activated_stake_sol for s in stats], dtype=float)
        credits = np.array([s.vote_credits for s in stats], dtype=float)
        max_epoch = int(epochs.max())

        thresholds: dict[int, float] = {}
        for epoch in range(max_epoch - window + 1, max_epoch + 1):
            mask = epochs == epoch
            if not mask.any():
                msg = f"Validator credits data for epoch {epoch} not available"
                raise ValueError(msg)
            weight = stakes[mask].sum()
            average = float(np.dot(stakes[mask], credits[mask]) / weight) if weight > 0 else 0.0
            thresholds[epoch] = average * self.config.validators_uptime_threshold_dec
        return thresholds

    def transform(self, data: AuctionData) -> None:
        cfg = self.config
        rewards = data.rewards
        thresholds = self.uptime_thresholds(data.validators)

        min_effective_rev_share = max(
            0.0, rewards.inflation_pmpe * (1 - cfg.max_effective_commission_dec),
        )
        min_auction_rev_share = max(
            0.0, rewards.inflation_pmpe + rewards.mev_pmpe + cfg.min_eligible_fee_pmpe,
        )
        logger.info(
            "Transforming %d validators: min effective rev share %.6f PMPE, "
            "%d uptime epochs checked",
            len(data.validators), min_effective_rev_share, len(thresholds),
        )

        for validator in data.validators:
            validator.rev_share = calc_rev_share(validator, rewards, cfg.minimal_commission_dec)
            validator.auction_stake.external_activated_sol = max(
                0.0, validator.total_activated_stake_sol - validator.delegated_stake_sol,
            )
            validator.blacklisted = validator.vote_account in data.blacklist
            validator.directed_eligible = False
            validator.auction_eligible = False

            if validator.blacklisted or not self._meets_uptime(validator, thresholds):
                continue
            rev_share = validator.rev_share
            validator.directed_eligible = rev_share.rewards_pmpe >= min_effective_rev_share
            if validator.bond_balance_sol is None:
                continue
            validator.auction_eligible = rev_share.total_pmpe >= max(
                min_effective_rev_share, min_auction_rev_share,
            )

    @staticmethod
    def _meets_uptime(validator: Validator, thresholds: dict[int, float]) -> bool:
        credits_by_epoch = {s.epoch: s.vote_credits for s in validator.epoch_stats}
        for epoch, threshold in thresholds.items():
            credits = credits_by_epoch.get(epoch)
            if credits is None or credits < threshold:
                return False
        return True


def apply_history(
    data: AuctionData,
    history: Mapping[str, ValidatorHistory],
    config: AuctionConfig,
) -> None:
    """Carry reputation and undelegation state over from the previous run.

    Validators without history start at ``initial_reputation``. History
    entries for vote accounts absent from ``data`` are logged and skipped.
    """
    known = {v.vote_account for v in data.validators}
    for vote_account in history:
        if vote_account not in known:
            logger.warning("History for unknown validator %s skipped", vote_account)

    for validator in data.validators:
        entry = history.get(validator.vote_account)
        if entry is None:
            validator.reputation.reputation = config.initial_reputation
            validator.reputation.inflation_factor = 1.0
            continue
        validator.reputation.reputation = entry.reputation
        validator.reputation.inflation_factor = entry.inflation_factor
        validator.paid_undelegation_sol = entry.paid_undelegation_sol
        validator.last_blacklisted = entry.last_blacklisted
        if entry.last_delegated_stake_sol is not None:
            validator.last_delegated_stake_sol = entry.last_delegated_stake_sol
        if entry.last_bond_balance_sol is not None:
            validator.last_bond_balance_sol = entry.last_bond_balance_sol
