"""Reputation — demonstrated contribution that bounds auction capacity.

A validator's reputation grows with how much it improves the clearing
price, measured with two counterfactual solves on isolated copies of the
auction: one without the validator, one with its reputation cap removed::

    gain = max(0, unbounded_price / excluded_price - 1) * total_spend

Reputation then pays for net undelegation, decays by ``1 - 1/decay_epochs``
and is clamped to the configured bounds. Capacity is::

    adj_reputation     = reputation * inflation_factor
    max_delegation_sol = spend_robust_reputation_mult * adj_reputation

Rescaling searches for inflation factors that let the reputation-capped
set absorb the auction pool, preferring high-yield, high-reputation
validators. When the search stalls it first lowers the yield floor, then
the reputation gate, and only then lifts the cap entirely.
"""

import logging
import math
from typing import TYPE_CHECKING

from stake_auction.engine.constraints.schema import EPSILON
from stake_auction.engine.events import AuctionEvent, EventKind
from stake_auction.models.validator import Validator

if TYPE_CHECKING:
    from stake_auction.engine.clearing import ClearingEngine

logger = logging.getLogger(__name__)

MAX_RESCALE_ROUNDS = 200
YIELD_FLOOR_RELAX_DEC = 0.99
REPUTATION_GATE_RELAX_DEC = 0.8
MAX_FACTOR_STEP = 1.1


def refresh_reputation_capacity(validator: Validator, mult: float | None) -> None:
    """Recompute adjusted reputation and the capacity it grants."""
    state = validator.reputation
    if math.isinf(state.inflation_factor) and state.reputation > 0:
        state.adj_reputation = math.inf
    else:
        state.adj_reputation = state.reputation * state.inflation_factor
    state.max_delegation_sol = math.inf if mult is None else mult * state.adj_reputation


def reputation_gain(unbounded_pmpe: float, excluded_pmpe: float, total_spend_sol: float) -> float:
    """Marginal clearing-price improvement times total spend.

    Zero when either counterfactual failed to clear or the price without
    the validator is not positive.
    """
    if not (math.isfinite(unbounded_pmpe) and math.isfinite(excluded_pmpe)):
        return 0.0
    if excluded_pmpe <= 0:
        return 0.0
    return max(0.0, unbounded_pmpe / excluded_pmpe - 1.0) * total_spend_sol


def undelegation_penalty(validator: Validator) -> float:
    """Bid spend lost on stake undelegated beyond the recorded debt."""
    undelegated_sol = max(0.0, -validator.paid_undelegation_sol)
    bid_pmpe = validator.rev_share.eff_participating_bid_pmpe
    if undelegated_sol == 0 or math.isnan(bid_pmpe):
        return 0.0
    return undelegated_sol * bid_pmpe / 1000


def winning_indices(engine: "ClearingEngine", clearing_pmpe: float) -> list[int]:
    return [
        index for index, v in enumerate(engine.data.validators)
        if v.auction_eligible
        and v.rev_share.total_pmpe >= clearing_pmpe
        and v.auction_stake.auction_target_sol > 0
    ]


def counterfactual_prices(engine: "ClearingEngine", index: int) -> tuple[float, float]:
    """Clearing prices with the validator unbounded and with it excluded.

    Each solve runs on its own deep copy; the main engine is untouched.
    """
    unbounded = engine.fork()
    unbounded.reset()
    unbounded.data.validators[index].reputation.unbounded = True
    unbounded_pmpe = unbounded.solve()

    excluded = engine.fork()
    excluded.reset()
    excluded.data.validators[index].blocked = True
    excluded_pmpe = excluded.solve()
    return unbounded_pmpe, excluded_pmpe


def update_reputations(engine: "ClearingEngine", clearing_pmpe: float, total_spend_sol: float) -> None:
    """Apply contribution gains, undelegation penalties, decay and bounds."""
    cfg = engine.config
    mult = cfg.spend_robust_reputation_mult
    if mult is None:
        return
    if not math.isfinite(clearing_pmpe):
        logger.warning("Auction did not clear; reputation update skipped")
        return

    gains: dict[int, float] = {}
    for index in winning_indices(engine, clearing_pmpe):
        unbounded_pmpe, excluded_pmpe = counterfactual_prices(engine, index)
        gains[index] = reputation_gain(unbounded_pmpe, excluded_pmpe, total_spend_sol)

    decay = 1.0 - 1.0 / cfg.reputation_decay_epochs
    for index, validator in enumerate(engine.data.validators):
        state = validator.reputation
        gain = gains.get(index, 0.0)
        penalty = undelegation_penalty(validator)
        value = (state.reputation + gain - penalty) * decay
        state.reputation = min(max(value, cfg.min_reputation), cfg.max_reputation)
        refresh_reputation_capacity(validator, mult)
        engine.events.emit(AuctionEvent(
            kind=EventKind.REPUTATION_UPDATED,
            message=f"reputation updated to {state.reputation}",
            vote_account=validator.vote_account,
            fields={"gain": gain, "penalty": penalty},
        ))

    logger.info("Reputation updated with %d counterfactual pairs", len(gains))


def rescale_reputation_to_tvl(engine: "ClearingEngine", clearing_pmpe: float) -> int:
    """Grow inflation factors until the reputation-capped set can absorb the pool.

    Returns the number of rounds used.
    """
    cfg = engine.config
    mult = cfg.spend_robust_reputation_mult
    if mult is None:
        return 0

    validators = engine.data.validators
    constraints = engine.constraints
    for validator in validators:
        validator.reputation.inflation_factor = 1.0
        refresh_reputation_capacity(validator, mult)

    eligible = [index for index, v in enumerate(validators) if v.auction_eligible]
    if not eligible:
        return 0

    def total_pmpe(index: int) -> float:
        return validators[index].rev_share.total_pmpe

    lowest_yield = min(total_pmpe(index) for index in eligible)
    yield_floor = clearing_pmpe if math.isfinite(clearing_pmpe) else lowest_yield
    gate = cfg.initial_scaled_reputation
    pool_sol = engine.data.stake_amounts.auction_tvl_sol
    ceilings = {index: constraints.non_reputation_ceiling(validators[index]) for index in eligible}

    def gated(index: int) -> bool:
        reputation = validators[index].reputation.reputation
        return (
            total_pmpe(index) >= yield_floor
            and reputation >= gate
            and reputation >= cfg.min_scaled_reputation
        )

    outcome = "exhausted"
    rounds = 0
    for rounds in range(1, MAX_RESCALE_ROUNDS + 1):
        absorbable = sum(
            min(ceilings[index], constraints.reputation_capacity(validators[index]))
            for index in eligible
        )
        deficit = pool_sol - absorbable
        if deficit <= EPSILON:
            outcome = "converged"
            break

        scalable = [
            index for index in eligible
            if gated(index)
            and constraints.reputation_capacity(validators[index]) < ceilings[index]
        ]
        scalable_capacity = sum(
            max(0.0, validators[index].reputation.max_delegation_sol) for index in scalable
        )
        if not scalable or scalable_capacity <= 0:
            # floor first; the gate moves only once no positive yield lies below the floor
            if any(0 < total_pmpe(index) < yield_floor for index in eligible):
                yield_floor *= YIELD_FLOOR_RELAX_DEC
                continue
            if gate > cfg.min_scaled_reputation:
                gate *= REPUTATION_GATE_RELAX_DEC
                continue
            for index in eligible:
                if gated(index):
                    validators[index].reputation.inflation_factor = math.inf
                    refresh_reputation_capacity(validators[index], mult)
            outcome = "unbounded"
            break

        required = 1.0 + deficit / scalable_capacity
        if required <= 1.0:
            outcome = "converged"
            break
        step = min(required, MAX_FACTOR_STEP)
        for index in scalable:
            validators[index].reputation.inflation_factor *= step
            refresh_reputation_capacity(validators[index], mult)

    logger.info("Reputation rescaled in %d rounds (%s)", rounds, outcome)
    engine.events.emit(AuctionEvent(
        kind=EventKind.REPUTATION_RESCALED,
        message=f"reputation rescaled ({outcome})",
        fields={"rounds": rounds, "yield_floor": yield_floor, "reputation_gate": gate},
    ))
    return rounds
