"""Clearing engine — distributes both pools and derives post-clearing values.

A solve runs two phases over the same validator arena:

Phase A (directed pool)
    Even split across directed-eligible validators, bounded only by
    concentration caps and each validator's directed ceiling. Whatever
    cannot be placed is folded into the auction pool.

Phase B (auction pool)
    Validators are grouped into tiers of equal total PMPE, highest first.
    Each tier is filled by repeated even splits until its members are
    capped or the pool is empty. The clearing price is the total PMPE of
    the last tier that received stake.

``evaluate()`` runs the two-pass pipeline: a first solve fixes the clearing
price that collateral and reputation ceilings depend on, reputation is
updated through counterfactual solves on isolated copies, and a final
clean solve produces the result.

Conservation: after every round, pool targets plus the remaining amount
equal the pool size (within ``EPSILON``).
"""

import logging
import math
from typing import Any

import numpy as np

from stake_auction.config.auction import AuctionConfig
from stake_auction.engine import reputation as rep
from stake_auction.engine.constraints.engine import ConstraintEngine
from stake_auction.engine.constraints.schema import EPSILON
from stake_auction.engine.events import AuctionEvent, EventKind, EventSink, NullEventSink
from stake_auction.engine.revshare import (
    BondRiskFeeConfig,
    calc_auction_effective_bid,
    calc_bid_too_low_penalty,
    calc_blacklist_penalty,
    calc_bond_risk_fee,
    calc_eff_participating_bid,
)
from stake_auction.models.auction import AuctionData, AuctionResult, StakeAmounts
from stake_auction.models.common import AuctionPhase
from stake_auction.models.validator import BidTooLowPenalty

logger = logging.getLogger(__name__)

__all__ = ["EPSILON", "NO_CLEARING_PRICE", "ClearingEngine"]

# Clearing price when no tier received any stake.
NO_CLEARING_PRICE = -math.inf

UNDELEGATION_RESET_DEC = 0.1


class ClearingEngine:
    """Runs the auction over one ``AuctionData``.

    The engine owns the data for the duration of a run and mutates it in
    place. Counterfactual solves use ``fork()``, which works on a deep copy.
    """

    def __init__(
        self,
        data: AuctionData,
        constraints: ConstraintEngine,
        config: AuctionConfig,
        events: EventSink | None = None,
        *,
        initial_amounts: StakeAmounts | None = None,
    ) -> None:
        self.data = data
        self.constraints = constraints
        self.config = config
        self.events = events if events is not None else NullEventSink()
        self._initial_amounts = (
            initial_amounts.model_copy() if initial_amounts is not None
            else data.stake_amounts.model_copy()
        )

    def _emit(
        self, kind: EventKind, message: str, vote_account: str | None = None, **fields: Any,
    ) -> None:
        self.events.emit(AuctionEvent(
            kind=kind, message=message, vote_account=vote_account, fields=fields,
        ))

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Zero allocation targets and per-round fields; keep static inputs and reputation."""
        self.data.stake_amounts = self._initial_amounts.model_copy()
        for validator in self.data.validators:
            validator.auction_stake.directed_target_sol = 0.0
            validator.auction_stake.auction_target_sol = 0.0
            validator.last_cap_constraint = None
            validator.stake_priority = 0
            validator.unstake_priority = 0
            validator.blocked = False
            validator.bid_too_low_penalty = BidTooLowPenalty()
            validator.bond.forced_undelegation = None
            validator.bond.risk_fee_sol = 0.0
        self._emit(EventKind.STATE_RESET, "auction state reset")

    def snapshot(self) -> AuctionData:
        """Deep copy of the current data; shares no mutable state with the engine."""
        return self.data.model_copy(deep=True)

    def restore(self, snapshot: AuctionData) -> None:
        """Replace the engine's data with a copy of ``snapshot``."""
        self.data = snapshot.model_copy(deep=True)

    def fork(self) -> "ClearingEngine":
        """Independent engine over a deep copy of the data, with a fresh constraint set."""
        return ClearingEngine(
            self.snapshot(),
            ConstraintEngine(self.constraints.config),
            self.config,
            initial_amounts=self._initial_amounts,
        )

    def block(self, vote_account: str) -> None:
        """Exclude a validator from both phases until the next reset."""
        self.data.validators[self.data.index_of(vote_account)].blocked = True

    # ------------------------------------------------------------------
    # Phase A: directed pool
    # ------------------------------------------------------------------

    def distribute_directed_stake(self) -> None:
        data = self.data
        amounts = data.stake_amounts
        validators = data.validators
        self.constraints.rebuild(AuctionPhase.DIRECTED, data)

        eligible = [
            index for index, v in enumerate(validators)
            if v.directed_eligible and not v.blocked
        ]
        self._emit(
            EventKind.PHASE_STARTED, "distributing directed stake",
            phase=AuctionPhase.DIRECTED.value, eligible=len(eligible),
            remaining_sol=amounts.directed_remaining_sol,
        )

        rounds = 0
        while eligible and amounts.directed_remaining_sol >= EPSILON:
            rounds += 1
            cap, _ = self.constraints.min_even_cap(eligible)
            increment = min(cap, amounts.directed_remaining_sol / len(eligible))
            for index in eligible:
                validators[index].auction_stake.directed_target_sol += increment
                amounts.directed_remaining_sol -= increment
            amounts.directed_remaining_sol = max(0.0, amounts.directed_remaining_sol)

            self.constraints.rebuild(AuctionPhase.DIRECTED, data)
            eligible = [index for index in eligible if self.constraints.cap_for(index) >= EPSILON]

        leftover = amounts.directed_remaining_sol
        if leftover > 0:
            amounts.directed_tvl_sol -= leftover
            amounts.auction_tvl_sol += leftover
            amounts.auction_remaining_sol += leftover
            amounts.directed_remaining_sol = 0.0

        logger.info(
            "Directed stake distributed in %d rounds, %.4f SOL folded into auction pool",
            rounds, leftover,
        )
        self._emit(
            EventKind.PHASE_FINISHED, "directed stake distributed",
            phase=AuctionPhase.DIRECTED.value, rounds=rounds, leftover_sol=leftover,
        )

    # ------------------------------------------------------------------
    # Phase B: auction pool
    # ------------------------------------------------------------------

    def distribute_auction_stake(self) -> float:
        """Fill tiers from the highest total PMPE down; return the clearing price."""
        data = self.data
        amounts = data.stake_amounts
        validators = data.validators
        self.constraints.rebuild(AuctionPhase.AUCTION, data)
        self._emit(
            EventKind.PHASE_STARTED, "distributing auction stake",
            phase=AuctionPhase.AUCTION.value, remaining_sol=amounts.auction_remaining_sol,
        )

        totals = np.array([v.rev_share.total_pmpe for v in validators], dtype=float)
        clearing_pmpe = NO_CLEARING_PRICE
        tiers = rounds = 0
        for tier_pmpe in np.unique(totals)[::-1]:
            if amounts.auction_remaining_sol < EPSILON:
                break
            members = [
                int(index) for index in np.flatnonzero(totals == tier_pmpe)
                if validators[index].auction_eligible and not validators[index].blocked
            ]
            if not members:
                continue
            tiers += 1
            for index in members:
                self._emit(
                    EventKind.TIER_STARTED,
                    f"assigned to PMPE tier {tier_pmpe} with {len(members)} eligible validators",
                    vote_account=validators[index].vote_account,
                )

            while members:
                rounds += 1
                cap, _ = self.constraints.min_even_cap(members)
                increment = min(cap, amounts.auction_remaining_sol / len(members))
                for index in members:
                    validators[index].auction_stake.auction_target_sol += increment
                    amounts.auction_remaining_sol -= increment
                amounts.auction_remaining_sol = max(0.0, amounts.auction_remaining_sol)
                if increment > 0:
                    clearing_pmpe = float(tier_pmpe)
                    for index in members:
                        self._emit(
                            EventKind.STAKE_ASSIGNED,
                            f"received {increment} auction stake in PMPE tier {tier_pmpe}",
                            vote_account=validators[index].vote_account,
                            increment_sol=increment,
                        )

                self.constraints.rebuild(AuctionPhase.AUCTION, data)
                members = [index for index in members if self.constraints.cap_for(index) >= EPSILON]
                if amounts.auction_remaining_sol < EPSILON:
                    break

        logger.info(
            "Auction stake distributed over %d tiers in %d rounds, clearing PMPE %s",
            tiers, rounds, clearing_pmpe,
        )
        self._emit(
            EventKind.CLEARING_PRICE_SET, "auction stake distributed",
            phase=AuctionPhase.AUCTION.value, clearing_pmpe=clearing_pmpe,
            tiers=tiers, rounds=rounds, remaining_sol=amounts.auction_remaining_sol,
        )
        return clearing_pmpe

    def solve(self) -> float:
        """Run both phases on the current state and return the clearing price."""
        self.distribute_directed_stake()
        return self.distribute_auction_stake()

    # ------------------------------------------------------------------
    # Postprocessing
    # ------------------------------------------------------------------

    def set_stake_priorities(self) -> None:
        """Dense rank by descending total PMPE; equal PMPE shares a rank."""
        totals = np.array([v.rev_share.total_pmpe for v in self.data.validators], dtype=float)
        distinct = np.unique(totals)
        ranks = len(distinct) - np.searchsorted(distinct, totals)
        for validator, rank in zip(self.data.validators, ranks):
            validator.stake_priority = int(rank)

    def set_unstake_priorities(self) -> None:
        """Ineligible first (0), then under-collateralized, then most over-delegated.

        Over-delegation is measured against the new auction target, so a
        validator whose target fell furthest below its delegation comes first.
        """
        validators = self.data.validators
        under: list[int] = []
        rest: list[int] = []
        for index, validator in enumerate(validators):
            if not validator.auction_eligible:
                validator.unstake_priority = 0
            elif validator.bond.health < 1:
                under.append(index)
            else:
                rest.append(index)

        def coverage(index: int) -> float:
            v = validators[index]
            balance = v.bond_balance_sol or 0.0
            return (balance - self.constraints.required_collateral(v)) / v.delegated_stake_sol

        def over_allocation(index: int) -> float:
            v = validators[index]
            if v.delegated_stake_sol <= 0:
                return math.inf
            return (v.auction_stake.auction_target_sol - v.delegated_stake_sol) / v.delegated_stake_sol

        priority = 0
        for group, key in ((under, coverage), (rest, over_allocation)):
            if not group:
                continue
            keys = np.array([key(index) for index in group], dtype=float)
            for position in np.argsort(keys, kind="stable"):
                priority += 1
                validators[group[position]].unstake_priority = priority

    def set_auction_effective_bids(self, clearing_pmpe: float) -> None:
        for validator in self.data.validators:
            rev_share = validator.rev_share
            rev_share.auction_effective_bid_pmpe = calc_auction_effective_bid(rev_share, clearing_pmpe)

    def set_eff_participating_bids(self, clearing_pmpe: float) -> None:
        for validator in self.data.validators:
            rev_share = validator.rev_share
            rev_share.eff_participating_bid_pmpe = calc_eff_participating_bid(rev_share, clearing_pmpe)

    def set_bond_risk_fees(self) -> None:
        cfg = BondRiskFeeConfig(
            min_bond_epochs=self.config.min_bond_epochs,
            ideal_bond_epochs=self.config.ideal_bond_epochs,
            min_bond_balance_sol=self.config.min_bond_balance_sol,
            bond_risk_fee_mult=self.config.bond_risk_fee_mult,
        )
        for validator in self.data.validators:
            reference_balance = validator.last_bond_balance_sol
            if reference_balance is None:
                reference_balance = validator.bond_balance_sol or 0.0
            if reference_balance < 1:
                continue
            result = calc_bond_risk_fee(cfg, validator)
            if result is None:
                continue
            validator.bond.forced_undelegation = result.forced_undelegation
            validator.bond.risk_fee_sol = result.risk_fee_sol
            validator.paid_undelegation_sol += result.paid_undelegation_sol

    def set_bid_too_low_penalties(self, clearing_pmpe: float) -> None:
        for validator in self.data.validators:
            if not math.isfinite(clearing_pmpe):
                validator.bid_too_low_penalty = BidTooLowPenalty()
                validator.rev_share.bid_too_low_penalty_pmpe = 0.0
                continue
            result = calc_bid_too_low_penalty(
                history_epochs=self.config.bid_too_low_penalty_history_epochs,
                clearing_pmpe=clearing_pmpe,
                validator=validator,
                permitted_deviation_dec=self.config.bid_too_low_penalty_permitted_deviation_dec,
            )
            validator.bid_too_low_penalty = BidTooLowPenalty(coef=result.coef, base=result.base)
            validator.rev_share.bid_too_low_penalty_pmpe = result.penalty_pmpe
            validator.paid_undelegation_sol += result.paid_undelegation_sol

    def update_paid_undelegation(self) -> None:
        """Track net delegation change against the undelegation-debt counter.

        A new delegation larger than 10% of the debt starts over from zero;
        anything else is accumulated, so the counter goes negative on net
        undelegation.
        """
        for validator in self.data.validators:
            last = validator.last_delegated_stake_sol
            delta = validator.delegated_stake_sol - last if last is not None else 0.0
            if delta > UNDELEGATION_RESET_DEC * validator.paid_undelegation_sol:
                validator.paid_undelegation_sol = 0.0
            else:
                validator.paid_undelegation_sol += delta

    def set_delegation_ceilings(self) -> None:
        for validator in self.data.validators:
            validator.bond.max_delegation_sol = self.constraints.delegation_ceiling(validator)

    def set_blacklist_penalties(self, clearing_pmpe: float) -> None:
        for validator in self.data.validators:
            if not math.isfinite(clearing_pmpe):
                validator.rev_share.blacklist_penalty_pmpe = 0.0
                continue
            validator.rev_share.blacklist_penalty_pmpe = calc_blacklist_penalty(
                validator, clearing_pmpe,
            )

    def set_expected_max_eff_bids(self, expected_max_total_pmpe: float) -> None:
        floor = self.config.min_expected_eff_bid_pmpe
        for validator in self.data.validators:
            rev_share = validator.rev_share
            rev_share.expected_max_eff_bid_pmpe = max(
                floor,
                min(rev_share.bid_pmpe, expected_max_total_pmpe - rev_share.rewards_pmpe),
            )

    def update_expected_max_eff_bids(self) -> None:
        """Derate expected bids (and so collateral capacity) by a throwaway solve."""
        ratio = self.config.expected_max_winning_bid_ratio
        if ratio is None:
            return
        rewards = self.data.rewards
        rewards_base = rewards.inflation_pmpe + rewards.mev_pmpe
        self.set_expected_max_eff_bids(rewards_base + self.config.expected_fee_pmpe)
        clearing_pmpe = self.solve()
        self.reset()

        shift = ratio * max(0.0, clearing_pmpe - rewards_base)
        self.set_expected_max_eff_bids(rewards_base + shift)
        self._emit(
            EventKind.EXPECTED_BID_SET, "expected max effective bids set",
            estimated_clearing_pmpe=clearing_pmpe, expected_max_total_pmpe=rewards_base + shift,
        )

    def total_spend_sol(self, clearing_pmpe: float) -> float:
        """Bids charged to winners for one epoch, in SOL."""
        total = 0.0
        for validator in self.data.validators:
            if validator.rev_share.total_pmpe < clearing_pmpe:
                continue
            total += (
                validator.rev_share.auction_effective_bid_pmpe
                * validator.auction_stake.pool_target_sol / 1000
            )
        return total

    def postprocess(self, clearing_pmpe: float) -> None:
        self.set_stake_priorities()
        self.set_unstake_priorities()
        self.set_auction_effective_bids(clearing_pmpe)
        self.set_eff_participating_bids(clearing_pmpe)
        self.set_bond_risk_fees()
        self.set_bid_too_low_penalties(clearing_pmpe)
        self.set_delegation_ceilings()
        self.set_blacklist_penalties(clearing_pmpe)

    # ------------------------------------------------------------------
    # Full evaluation
    # ------------------------------------------------------------------

    def evaluate(self) -> AuctionResult:
        """Two-pass clearing: solve, derive reputation, re-solve with final caps."""
        logger.info("Evaluating auction for epoch %d", self.data.epoch)
        mult = self.config.spend_robust_reputation_mult

        for validator in self.data.validators:
            rep.refresh_reputation_capacity(validator, mult)
        self.update_paid_undelegation()
        self.set_delegation_ceilings()

        self.update_expected_max_eff_bids()

        clearing_pmpe = self.solve()
        self.set_auction_effective_bids(clearing_pmpe)
        self.set_eff_participating_bids(clearing_pmpe)
        total_spend = self.total_spend_sol(clearing_pmpe)

        rep.update_reputations(self, clearing_pmpe, total_spend)
        self.reset()
        rep.rescale_reputation_to_tvl(self, clearing_pmpe)

        final_pmpe = self.solve()
        self.postprocess(final_pmpe)
        total_spend = self.total_spend_sol(final_pmpe)
        logger.info(
            "Auction cleared at %s PMPE with total spend %.4f SOL", final_pmpe, total_spend,
        )
        return AuctionResult(
            auction_data=self.data,
            clearing_pmpe=final_pmpe,
            total_spend_sol=total_spend,
        )
