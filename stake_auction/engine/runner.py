"""Auction runner — wires transformer, constraints and clearing into one call.

Pipeline:
1. apply_history() → reputation and undelegation state from the last run
2. ValidatorTransformer.transform() → revenue share + eligibility
3. ConstraintsConfig.from_config() → absolute caps for these pool sizes
4. ClearingEngine.evaluate() → two-pass clearing with postprocessing
5. summarize() → per-validator rows for reporting

This is DETERMINISTIC: the same data and config give the same result.
"""

from collections.abc import Mapping
from dataclasses import dataclass

from stake_auction.config.auction import AuctionConfig
from stake_auction.engine.clearing import ClearingEngine
from stake_auction.engine.constraints.engine import ConstraintEngine
from stake_auction.engine.constraints.schema import ConstraintsConfig
from stake_auction.engine.eligibility import ValidatorTransformer, apply_history
from stake_auction.engine.events import EventSink, RecordingEventSink
from stake_auction.models.auction import AuctionData, AuctionResult
from stake_auction.models.validator import ValidatorHistory


@dataclass(frozen=True)
class ValidatorSummary:
    """One reporting row of an auction result."""

    vote_account: str
    directed_target_sol: float
    auction_target_sol: float
    total_pmpe: float
    auction_effective_bid_pmpe: float
    stake_priority: int
    unstake_priority: int
    binding_constraint: str | None


class AuctionRunner:
    """Runs a full auction for prepared ``AuctionData``.

    When no sink is given, events are recorded for the configured debug
    vote accounts and kept on ``self.events``.
    """

    def __init__(
        self,
        config: AuctionConfig | None = None,
        events: EventSink | None = None,
    ) -> None:
        self.config = config or AuctionConfig()
        self.events = events if events is not None else RecordingEventSink(
            self.config.debug_vote_accounts,
        )
        self._transformer = ValidatorTransformer(self.config)

    def build_engine(self, data: AuctionData) -> ClearingEngine:
        """Clearing engine over ``data`` with caps derived from its pool sizes."""
        constraints_config = ConstraintsConfig.from_config(self.config, data.stake_amounts)
        constraints = ConstraintEngine(constraints_config, self.events)
        return ClearingEngine(data, constraints, self.config, self.events)

    def run(
        self,
        data: AuctionData,
        *,
        history: Mapping[str, ValidatorHistory] | None = None,
    ) -> AuctionResult:
        """Execute the full pipeline on ``data`` (mutated in place).

        Args:
            data: Validators, rewards and pool sizes for this epoch.
            history: Per-validator state from the previous run, by vote account.

        Returns:
            AuctionResult with the final allocation and clearing price.
        """
        apply_history(data, history or {}, self.config)
        self._transformer.transform(data)
        return self.build_engine(data).evaluate()


def summarize(result: AuctionResult) -> list[ValidatorSummary]:
    """Reporting rows, in stake-priority order."""
    rows = [
        ValidatorSummary(
            vote_account=v.vote_account,
            directed_target_sol=v.auction_stake.directed_target_sol,
            auction_target_sol=v.auction_stake.auction_target_sol,
            total_pmpe=v.rev_share.total_pmpe,
            auction_effective_bid_pmpe=v.rev_share.auction_effective_bid_pmpe,
            stake_priority=v.stake_priority,
            unstake_priority=v.unstake_priority,
            binding_constraint=v.last_cap_constraint.label if v.last_cap_constraint else None,
        )
        for v in result.auction_data.validators
    ]
    rows.sort(key=lambda row: row.stake_priority)
    return rows
