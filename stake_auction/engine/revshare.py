"""Revenue-share calculations — what a validator passes on to its stakers.

All yields are PMPE: SOL per 1000 SOL staked per epoch. Every function
here is pure; the clearing engine writes the results back onto validators.

    total = inflation * (1 - inflation commission)
          + MEV * (1 - MEV commission)
          + max(0, bid)

Fees and penalties must come out finite and non-negative. A violation
means the input data is corrupt and raises ``NumericInvariantError``.
"""

import math
from dataclasses import dataclass

from stake_auction.engine.errors import NumericInvariantError
from stake_auction.models.auction import Rewards
from stake_auction.models.validator import ForcedUndelegation, RevShare, Validator

BID_TOO_LOW_TOLERANCE = 0.99999
BID_TOO_LOW_SCALE = 1.5
BLACKLIST_PENALTY_BID_MULT = 3.0


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BidTooLowPenaltyResult:
    """Penalty for undercutting the validator's own recent bids."""

    coef: float
    base: float
    penalty_pmpe: float
    paid_undelegation_sol: float


@dataclass(frozen=True)
class BondRiskFeeResult:
    """Forced undelegation and fee for an under-collateralized validator."""

    forced_undelegation: ForcedUndelegation
    risk_fee_sol: float
    paid_undelegation_sol: float


@dataclass(frozen=True)
class BondRiskFeeConfig:
    """Parameters of the collateral risk fee."""

    min_bond_epochs: int
    ideal_bond_epochs: int
    min_bond_balance_sol: float
    bond_risk_fee_mult: float


# ---------------------------------------------------------------------------
# Yield decomposition
# ---------------------------------------------------------------------------


def calc_pmpe(pmpe: float | None, commission_dec: float | None) -> float:
    """Share of ``pmpe`` left to stakers after ``commission_dec``.

    A missing commission means the validator keeps everything. Negative
    commission is allowed: the validator subsidizes its stakers.
    """
    if pmpe is None or pmpe <= 0:
        return 0.0
    if commission_dec is None or commission_dec >= 1:
        return 0.0
    return pmpe * (1.0 - commission_dec)


def _clamp_commission(
    commission_dec: float | None, minimal_commission_dec: float | None,
) -> float | None:
    if commission_dec is None or minimal_commission_dec is None:
        return commission_dec
    return max(commission_dec, minimal_commission_dec)


def calc_rev_share(
    validator: Validator,
    rewards: Rewards,
    minimal_commission_dec: float | None = None,
) -> RevShare:
    """Decompose the validator's yield to stakers.

    Post-clearing fields start as NaN; ``expected_max_eff_bid_pmpe``
    defaults to the bid and is only lowered by the expected-bid derating.

    Raises:
        NumericInvariantError: If the total is negative or non-finite.
    """
    inflation_pmpe = calc_pmpe(
        rewards.inflation_pmpe,
        _clamp_commission(validator.inflation_commission_dec, minimal_commission_dec),
    )
    mev_pmpe = calc_pmpe(
        rewards.mev_pmpe,
        _clamp_commission(validator.mev_commission_dec, minimal_commission_dec),
    )
    bid_pmpe = max(0.0, validator.bid_cpmpe or 0.0)
    total_pmpe = inflation_pmpe + mev_pmpe + bid_pmpe
    if not math.isfinite(total_pmpe):
        msg = f"Total PMPE has to be finite for {validator.vote_account}: {total_pmpe}"
        raise NumericInvariantError(msg)
    if total_pmpe < 0:
        msg = f"Total PMPE cannot be negative for {validator.vote_account}: {total_pmpe}"
        raise NumericInvariantError(msg)
    return RevShare(
        inflation_pmpe=inflation_pmpe,
        mev_pmpe=mev_pmpe,
        bid_pmpe=bid_pmpe,
        total_pmpe=total_pmpe,
        expected_max_eff_bid_pmpe=bid_pmpe,
    )


def calc_eff_participating_bid(rev_share: RevShare, clearing_pmpe: float) -> float:
    """Bid a winner effectively pays at the clearing price."""
    return max(0.0, clearing_pmpe - rev_share.inflation_pmpe - rev_share.mev_pmpe)


def calc_auction_effective_bid(rev_share: RevShare, clearing_pmpe: float) -> float:
    """Raw bid below the clearing price; the participating bid at or above it."""
    if rev_share.total_pmpe < clearing_pmpe:
        return rev_share.bid_pmpe
    return calc_eff_participating_bid(rev_share, clearing_pmpe)


# ---------------------------------------------------------------------------
# Penalties and fees
# ---------------------------------------------------------------------------


def calc_bid_too_low_penalty(
    *,
    history_epochs: int,
    clearing_pmpe: float,
    validator: Validator,
    permitted_deviation_dec: float = 0.0,
) -> BidTooLowPenaltyResult:
    """Penalty for a bid that undercuts the validator's recent history.

    The floor is the smallest participating bid of the last
    ``history_epochs`` auctions (and the current one). The coefficient only
    applies when the bid is below the previous auction's bid.

    Raises:
        NumericInvariantError: On a non-finite or negative penalty or
            undelegation amount.
    """
    rev_share = validator.rev_share
    historical_pmpe = math.inf
    for entry in validator.auctions[:history_epochs]:
        if entry.eff_participating_bid_pmpe is not None:
            historical_pmpe = min(historical_pmpe, entry.eff_participating_bid_pmpe)

    limit = min(rev_share.eff_participating_bid_pmpe, historical_pmpe)
    limit *= 1.0 - permitted_deviation_dec
    if limit > 0:
        penalty_coef = min(
            1.0,
            math.sqrt(BID_TOO_LOW_SCALE * max(0.0, (limit - rev_share.bid_pmpe) / limit)),
        )
    else:
        penalty_coef = 0.0

    last_bid_pmpe = 0.0
    if validator.auctions and validator.auctions[0].bid_pmpe is not None:
        last_bid_pmpe = validator.auctions[0].bid_pmpe
    coef = penalty_coef if rev_share.bid_pmpe < BID_TOO_LOW_TOLERANCE * last_bid_pmpe else 0.0
    base = clearing_pmpe + rev_share.eff_participating_bid_pmpe
    penalty_pmpe = coef * base

    if not math.isfinite(penalty_pmpe):
        msg = (
            f"Bid-too-low penalty has to be finite for {validator.vote_account}: "
            f"coef={coef} base={base}"
        )
        raise NumericInvariantError(msg)
    if penalty_pmpe < 0:
        msg = (
            f"Bid-too-low penalty can not be negative for {validator.vote_account}: "
            f"coef={coef} base={base}"
        )
        raise NumericInvariantError(msg)

    paid_undelegation_sol = 0.0
    if penalty_pmpe > 0:
        effective_yield = (
            rev_share.inflation_pmpe + rev_share.mev_pmpe
            + rev_share.eff_participating_bid_pmpe
        )
        paid_undelegation_sol = (
            penalty_pmpe * validator.delegated_stake_sol / effective_yield
            if effective_yield > 0 else math.inf
        )
    if not math.isfinite(paid_undelegation_sol) or paid_undelegation_sol < 0:
        msg = (
            f"Paid undelegation has to be finite and non-negative for "
            f"{validator.vote_account}: {paid_undelegation_sol}"
        )
        raise NumericInvariantError(msg)

    return BidTooLowPenaltyResult(
        coef=coef,
        base=base,
        penalty_pmpe=penalty_pmpe,
        paid_undelegation_sol=paid_undelegation_sol,
    )


def calc_bond_risk_fee(
    config: BondRiskFeeConfig, validator: Validator,
) -> BondRiskFeeResult | None:
    """Forced undelegation and fee when collateral does not cover the stake.

    Returns None when the balance covers the projected stake for
    ``min_bond_epochs``. Otherwise the forced undelegation ``value`` and the
    fee satisfy::

        (balance - fee) / ideal_coef == projected_stake - value

    unless the stake left after undelegation would need less collateral
    than the configured floor, in which case everything is undelegated.

    Raises:
        NumericInvariantError: On a non-finite or negative fee.
    """
    rev_share = validator.rev_share
    rewards_pmpe = rev_share.inflation_pmpe + rev_share.mev_pmpe
    projected_stake_sol = max(
        0.0, validator.delegated_stake_sol - max(0.0, validator.paid_undelegation_sol),
    )
    balance_sol = validator.bond_balance_sol or 0.0
    min_bond_coef = (
        rewards_pmpe + (config.min_bond_epochs + 1) * rev_share.expected_max_eff_bid_pmpe
    ) / 1000
    if balance_sol >= projected_stake_sol * min_bond_coef:
        return None

    ideal_bond_coef = (
        rewards_pmpe + (config.ideal_bond_epochs + 1) * rev_share.expected_max_eff_bid_pmpe
    ) / 1000
    fee_coef = (rewards_pmpe + rev_share.auction_effective_bid_pmpe) / 1000
    # ideal_bond_coef >= min_bond_coef > 0 here, since ideal epochs >= min epochs
    base = max(0.0, projected_stake_sol - balance_sol / ideal_bond_coef)
    coef = 1.0 - fee_coef / ideal_bond_coef
    value = min(projected_stake_sol, base / coef) if coef > 0 else projected_stake_sol
    remaining_obligation = (
        (projected_stake_sol - value)
        * (rewards_pmpe + rev_share.expected_max_eff_bid_pmpe) / 1000
    )
    if remaining_obligation < config.min_bond_balance_sol:
        value = projected_stake_sol

    risk_fee_sol = config.bond_risk_fee_mult * value * fee_coef
    paid_undelegation_sol = min(1.0, config.bond_risk_fee_mult) * value
    if not math.isfinite(risk_fee_sol):
        msg = f"Bond risk fee has to be finite for {validator.vote_account}: {risk_fee_sol}"
        raise NumericInvariantError(msg)
    if risk_fee_sol < 0:
        msg = f"Bond risk fee can not be negative for {validator.vote_account}: {risk_fee_sol}"
        raise NumericInvariantError(msg)

    return BondRiskFeeResult(
        forced_undelegation=ForcedUndelegation(
            base=base, coef=coef, value=value, fee_pmpe=1000 * fee_coef,
        ),
        risk_fee_sol=risk_fee_sol,
        paid_undelegation_sol=paid_undelegation_sol,
    )


def calc_blacklist_penalty(validator: Validator, clearing_pmpe: float) -> float:
    """One-off penalty for a validator blacklisted since the previous auction.

    Only charged when the previous run recorded the validator as not
    blacklisted; without that record nothing is charged.
    """
    if not validator.blacklisted or validator.last_blacklisted is not False:
        return 0.0
    participating = validator.rev_share.eff_participating_bid_pmpe
    return clearing_pmpe + min(BLACKLIST_PENALTY_BID_MULT * participating, clearing_pmpe)
