"""Constraint engine — active caps for the current allocation state.

The engine is rebuilt from scratch after every allocation round. It answers
one question for the clearing loops: if stake were split evenly across a
subset of validators, how much could each member still take, and which
constraint would stop it?

    cap(constraint) = max(0, min(total_left, pool_left)) / members_in_subset
    min_even_cap    = smallest cap over constraints touching the subset

Ties are broken by ``CONSTRAINT_PRIORITY`` and then by build order, so the
result never depends on hash iteration.

Collateral capacity (the BOND constraint) follows the bond coverage model::

    coef(epochs) = (inflation + MEV + (epochs + 1) * expected_max_eff_bid) / 1000
    limit        = min(balance / coef(min), max(balance / coef(ideal), delegated))

with hysteresis around the configured minimum balance: below 80% of it
no stake is given, between 80% and 100% the validator keeps at most what
it already holds.
"""

import logging
import math
from collections.abc import Callable, Iterable

from stake_auction.engine.constraints.schema import (
    EPSILON,
    Constraint,
    ConstraintsConfig,
    priority_rank,
)
from stake_auction.engine.errors import ConstraintConfigurationError
from stake_auction.engine.events import AuctionEvent, EventKind, EventSink, NullEventSink
from stake_auction.models.auction import AuctionData
from stake_auction.models.common import AuctionPhase, ConstraintType
from stake_auction.models.validator import CapConstraintRef, RevShare, Validator

logger = logging.getLogger(__name__)

BOND_HYSTERESIS_DEC = 0.8


def validator_total_stake_sol(validator: Validator) -> float:
    """Network stake of a validator counting current pool targets."""
    stake = validator.auction_stake
    return stake.external_activated_sol + stake.directed_target_sol + stake.auction_target_sol


def bond_coef(rev_share: RevShare, epochs: int) -> float:
    """Collateral needed per SOL of stake to cover ``epochs`` epochs of bids."""
    return (
        rev_share.inflation_pmpe + rev_share.mev_pmpe
        + (epochs + 1) * rev_share.expected_max_eff_bid_pmpe
    ) / 1000


class ConstraintEngine:
    """Builds and queries the active constraint set.

    Validators are addressed by their index in ``AuctionData.validators``.
    """

    def __init__(
        self,
        config: ConstraintsConfig,
        events: EventSink | None = None,
    ) -> None:
        self.config = config
        self.events = events if events is not None else NullEventSink()
        self.phase: AuctionPhase | None = None
        self._validators: list[Validator] = []
        self._constraints: list[Constraint] = []
        self._by_validator: dict[int, list[int]] = {}

    @property
    def constraints(self) -> list[Constraint]:
        return list(self._constraints)

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    def rebuild(self, phase: AuctionPhase, data: AuctionData) -> None:
        """Recompute every constraint from the current targets."""
        self.phase = phase
        self._validators = data.validators
        cfg = self.config

        constraints = [
            *self._group_constraints(
                ConstraintType.COUNTRY,
                lambda v: v.country,
                cfg.total_country_stake_cap_sol,
                cfg.pool_country_stake_cap_sol,
            ),
            *self._group_constraints(
                ConstraintType.ASO,
                lambda v: v.aso,
                cfg.total_aso_stake_cap_sol,
                cfg.pool_aso_stake_cap_sol,
            ),
        ]
        if phase == AuctionPhase.AUCTION:
            constraints.extend(self._bond_constraints())
            constraints.extend(self._risk_constraints())
            constraints.extend(self._want_constraints())
        constraints.extend(self._validator_constraints(phase))

        self._constraints = constraints
        self._by_validator = {}
        for position, constraint in enumerate(constraints):
            for index in constraint.validators:
                self._by_validator.setdefault(index, []).append(position)

    def _group_constraints(
        self,
        constraint_type: ConstraintType,
        key: Callable[[Validator], str],
        total_cap_sol: float,
        pool_cap_sol: float,
    ) -> list[Constraint]:
        groups: dict[str, list[int]] = {}
        for index, validator in enumerate(self._validators):
            groups.setdefault(key(validator), []).append(index)

        constraints: list[Constraint] = []
        for name, members in groups.items():
            total_stake = sum(validator_total_stake_sol(self._validators[i]) for i in members)
            pool_stake = sum(self._validators[i].auction_stake.pool_target_sol for i in members)
            constraints.append(Constraint(
                constraint_type=constraint_type,
                name=name,
                total_stake_sol=total_stake,
                total_left_to_cap_sol=total_cap_sol - total_stake,
                pool_stake_sol=pool_stake,
                pool_left_to_cap_sol=pool_cap_sol - pool_stake,
                validators=tuple(members),
            ))
        return constraints

    def _single(
        self, constraint_type: ConstraintType, index: int, used_sol: float, cap_sol: float,
    ) -> Constraint:
        validator = self._validators[index]
        return Constraint(
            constraint_type=constraint_type,
            name=validator.vote_account,
            total_stake_sol=validator_total_stake_sol(validator),
            total_left_to_cap_sol=math.inf,
            pool_stake_sol=used_sol,
            pool_left_to_cap_sol=cap_sol - used_sol,
            validators=(index,),
        )

    def _bond_constraints(self) -> list[Constraint]:
        return [
            self._single(
                ConstraintType.BOND, index,
                v.auction_stake.auction_target_sol, self.bond_stake_cap(v),
            )
            for index, v in enumerate(self._validators)
        ]

    def _risk_constraints(self) -> list[Constraint]:
        if self.config.spend_robust_reputation_mult is None:
            return []
        return [
            self._single(
                ConstraintType.RISK, index,
                v.auction_stake.auction_target_sol, self.reputation_capacity(v),
            )
            for index, v in enumerate(self._validators)
            if not v.reputation.unbounded
        ]

    def _want_constraints(self) -> list[Constraint]:
        constraints = []
        for index, v in enumerate(self._validators):
            cap = self.declared_maximum(v)
            if math.isinf(cap):
                continue
            constraints.append(self._single(
                ConstraintType.WANT, index, v.auction_stake.auction_target_sol, cap,
            ))
        return constraints

    def _validator_constraints(self, phase: AuctionPhase) -> list[Constraint]:
        if phase == AuctionPhase.DIRECTED:
            return [
                self._single(
                    ConstraintType.VALIDATOR, index,
                    v.auction_stake.directed_target_sol, v.directed_stake_ceiling_sol,
                )
                for index, v in enumerate(self._validators)
            ]
        return [
            self._single(
                ConstraintType.VALIDATOR, index,
                v.auction_stake.auction_target_sol, self.config.pool_validator_stake_cap_sol,
            )
            for index, v in enumerate(self._validators)
        ]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def min_even_cap(self, subset: Iterable[int]) -> tuple[float, Constraint]:
        """Smallest even-split cap over constraints touching ``subset``.

        Raises:
            ConstraintConfigurationError: If no constraint touches the subset.
        """
        members = frozenset(subset)
        positions = sorted({p for i in members for p in self._by_validator.get(i, ())})

        best_key: tuple[float, int, int] | None = None
        best: Constraint | None = None
        for position in positions:
            constraint = self._constraints[position]
            cap, affected = constraint.even_cap(members)
            if affected == 0:
                continue
            key = (cap, priority_rank(constraint.constraint_type), position)
            if best_key is None or key < best_key:
                best_key, best = key, constraint

        if best is None or best_key is None:
            msg = (
                f"Failed to find stake concentration entity with min cap "
                f"for {len(members)} validators"
            )
            raise ConstraintConfigurationError(msg)

        logger.debug(
            "min cap %.4f of type %s (%s) found for %d validators",
            best_key[0], best.constraint_type.value, best.name, len(members),
        )
        return best_key[0], best

    def cap_for(self, index: int) -> float:
        """Cap of a single validator; records the binding constraint when exhausted."""
        cap, constraint = self.min_even_cap((index,))
        if cap < EPSILON:
            validator = self._validators[index]
            validator.last_cap_constraint = CapConstraintRef(
                constraint_type=constraint.constraint_type, name=constraint.name,
            )
            self.events.emit(AuctionEvent(
                kind=EventKind.CAP_REACHED,
                message=(
                    f"reached cap due to {constraint.constraint_type.value} "
                    f"({constraint.name}) constraint"
                ),
                vote_account=validator.vote_account,
                fields={"constraint_type": constraint.constraint_type.value, "phase": self.phase},
            ))
        return cap

    def validator_constraints(self, index: int) -> list[Constraint]:
        """Constraints currently covering the validator at ``index``."""
        return [self._constraints[p] for p in self._by_validator.get(index, ())]

    def validator_at(self, index: int) -> Validator:
        return self._validators[index]

    # ------------------------------------------------------------------
    # Per-validator capacities
    # ------------------------------------------------------------------

    def collateral_capacity(self, validator: Validator) -> float:
        """Stake the validator's bond can back; also refreshes its bond metrics."""
        rev_share = validator.rev_share
        balance = max(0.0, validator.bond_balance_sol or 0.0)
        min_coef = bond_coef(rev_share, self.config.min_bond_epochs)
        ideal_coef = bond_coef(rev_share, self.config.ideal_bond_epochs)

        min_limit = _stake_backed(balance, min_coef)
        ideal_limit = _stake_backed(balance, ideal_coef)
        limit = min(min_limit, max(ideal_limit, validator.delegated_stake_sol))
        capacity = self.clip_collateral_capacity(validator, limit)

        validator.bond.capacity_sol = capacity
        validator.bond.health = self.bond_health(validator)
        validator.bond.epochs_of_cover = self.epochs_of_cover(validator)
        return capacity

    def clip_collateral_capacity(self, validator: Validator, limit: float) -> float:
        """Apply the minimum-balance hysteresis to a raw collateral limit."""
        balance = validator.bond_balance_sol or 0.0
        floor = self.config.min_bond_balance_sol
        if balance < BOND_HYSTERESIS_DEC * floor:
            return 0.0
        if balance < floor:
            return min(limit, validator.delegated_stake_sol)
        return limit

    def required_collateral(self, validator: Validator) -> float:
        """Balance needed to cover the current stake for the minimum epochs."""
        return validator.delegated_stake_sol * bond_coef(
            validator.rev_share, self.config.min_bond_epochs,
        )

    def bond_health(self, validator: Validator) -> float:
        required = self.required_collateral(validator)
        if required <= 0:
            return math.inf
        return max(0.0, validator.bond_balance_sol or 0.0) / required

    def epochs_of_cover(self, validator: Validator) -> float:
        """Epochs of expected bids the balance covers beyond the reward deposit."""
        rev_share = validator.rev_share
        stake = validator.delegated_stake_sol
        per_epoch = stake * rev_share.expected_max_eff_bid_pmpe / 1000
        if per_epoch <= 0:
            return math.inf
        deposit = stake * (rev_share.inflation_pmpe + rev_share.mev_pmpe) / 1000
        balance = max(0.0, validator.bond_balance_sol or 0.0)
        return (balance - deposit) / per_epoch - 1

    def unprotected_capacity(self, validator: Validator) -> float:
        """Stake given on top of collateral, matched to third-party and foundation stake."""
        cfg = self.config
        foundation = validator.foundation_stake_sol
        third_party = max(
            0.0, validator.total_activated_stake_sol - validator.self_stake_sol - foundation,
        )
        computed = min(
            cfg.unprotected_delegated_stake_dec * third_party
            + cfg.unprotected_foundation_stake_dec * foundation,
            cfg.unprotected_validator_stake_cap_sol,
        )
        if computed < cfg.min_unprotected_stake_to_delegate_sol:
            return 0.0
        return computed

    def bond_stake_cap(self, validator: Validator) -> float:
        """Ceiling of the BOND constraint: collateral plus unprotected capacity."""
        return self.collateral_capacity(validator) + self.unprotected_capacity(validator)

    def reputation_capacity(self, validator: Validator) -> float:
        if self.config.spend_robust_reputation_mult is None or validator.reputation.unbounded:
            return math.inf
        return max(validator.reputation.max_delegation_sol, validator.delegated_stake_sol)

    def declared_maximum(self, validator: Validator) -> float:
        """Validator's declared ceiling; infinite when declared maxima are disabled or unset."""
        floor = self.config.min_max_stake_wanted_sol
        wanted = validator.max_stake_wanted_sol
        if floor is None or not wanted:
            return math.inf
        return max(floor, wanted, validator.delegated_stake_sol)

    def non_reputation_ceiling(self, validator: Validator) -> float:
        """Tightest per-validator ceiling ignoring reputation."""
        return min(
            self.bond_stake_cap(validator),
            self.declared_maximum(validator),
            self.config.pool_validator_stake_cap_sol,
        )

    def delegation_ceiling(self, validator: Validator) -> float:
        """Spendable capacity: collateral, reputation and per-validator share combined."""
        if validator.rev_share.total_pmpe <= 0:
            return 0.0
        return min(
            self.collateral_capacity(validator),
            self.reputation_capacity(validator),
            self.config.pool_validator_stake_cap_sol,
        )


def _stake_backed(balance: float, coef: float) -> float:
    if coef > 0:
        return balance / coef
    return math.inf if balance > 0 else 0.0
