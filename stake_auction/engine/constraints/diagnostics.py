"""Why a validator stopped receiving stake.

For every constraint covering a validator, reports used/remaining stake in
both currencies, whether it is the binding one recorded during clearing,
and a one-line human-readable explanation. Results are sorted by headroom,
tightest first.
"""

import math
from dataclasses import dataclass

from stake_auction.engine.constraints.engine import ConstraintEngine
from stake_auction.engine.constraints.schema import Constraint
from stake_auction.models.common import ConstraintType


@dataclass(frozen=True)
class ConstraintDiagnostic:
    """State of one constraint from a single validator's point of view."""

    constraint_type: ConstraintType
    constraint_name: str
    is_binding: bool
    pool_cap_sol: float
    pool_used_sol: float
    pool_remaining_sol: float
    total_cap_sol: float
    total_used_sol: float
    total_remaining_sol: float
    validators_in_group: int
    headroom_sol: float
    advice: str | None


_ADVICE_TEMPLATES: dict[ConstraintType, str] = {
    ConstraintType.COUNTRY: (
        "Country {name}: {used_pct}% of {total_cap} SOL network cap used by {n} validators"
    ),
    ConstraintType.ASO: (
        "ASO {name}: {used_pct}% of {total_cap} SOL network cap used by {n} validators"
    ),
    ConstraintType.VALIDATOR: "Per-validator cap: {pool_cap} SOL",
    ConstraintType.BOND: "Bond supports up to {pool_cap} SOL pool stake",
    ConstraintType.WANT: "Max stake wanted set to {pool_cap} SOL",
    ConstraintType.RISK: "Reputation limit: {pool_cap} SOL",
}


def format_sol(sol: float) -> str:
    """Whole SOL with thousands separators; infinity as a symbol."""
    if not math.isfinite(sol):
        return "∞"
    return f"{round(sol):,}"


def constraint_advice(constraint: Constraint) -> str | None:
    template = _ADVICE_TEMPLATES.get(constraint.constraint_type)
    if template is None:
        return None
    total_cap = constraint.total_cap_sol
    used_pct = (
        round(constraint.total_stake_sol / total_cap * 100)
        if math.isfinite(total_cap) and total_cap > 0 else 0
    )
    return template.format(
        name=constraint.name,
        used_pct=used_pct,
        total_cap=format_sol(total_cap),
        pool_cap=format_sol(constraint.pool_cap_sol),
        n=len(constraint.validators),
    )


def compute_constraint_diagnostics(
    index: int, engine: ConstraintEngine,
) -> list[ConstraintDiagnostic]:
    """Diagnostics for the validator at ``index`` against the engine's last build.

    Args:
        index: Position of the validator in the auction data.
        engine: Constraint engine holding the constraint set to explain.

    Returns:
        One diagnostic per covering constraint, sorted by ascending headroom.
        Empty when no constraint covers the validator.
    """
    constraints = engine.validator_constraints(index)
    if not constraints:
        return []

    validator = engine.validator_at(index)
    binding = validator.last_cap_constraint

    diagnostics = [
        ConstraintDiagnostic(
            constraint_type=c.constraint_type,
            constraint_name=c.name,
            is_binding=(
                binding is not None
                and binding.constraint_type == c.constraint_type
                and binding.name == c.name
            ),
            pool_cap_sol=c.pool_cap_sol,
            pool_used_sol=c.pool_stake_sol,
            pool_remaining_sol=c.pool_left_to_cap_sol,
            total_cap_sol=c.total_cap_sol,
            total_used_sol=c.total_stake_sol,
            total_remaining_sol=c.total_left_to_cap_sol,
            validators_in_group=len(c.validators),
            headroom_sol=c.headroom_sol,
            advice=constraint_advice(c),
        )
        for c in constraints
    ]
    diagnostics.sort(key=lambda d: d.headroom_sol)
    return diagnostics
