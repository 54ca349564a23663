"""Shared types, enums, and base models used across the auction domain models."""

from enum import StrEnum
from typing import Annotated
from uuid import UUID

from pydantic import BaseModel, Field
from uuid_extensions import uuid7


def new_uuid7() -> UUID:
    """Generate a new time-sortable UUID v7."""
    return uuid7()


# --- Reusable annotated types ---

UUIDv7 = Annotated[UUID, Field(description="Time-sortable UUID v7.")]
Sol = Annotated[float, Field(description="Amount of stake in SOL.")]
Pmpe = Annotated[
    float, Field(description="Yield per mille per epoch (SOL per 1000 SOL staked).")
]


# --- Shared enums ---


class ConstraintType(StrEnum):
    """Categories of stake caps enforced during clearing."""

    COUNTRY = "COUNTRY"        # Geography concentration (group)
    ASO = "ASO"                # Infrastructure-provider concentration (group)
    BOND = "BOND"              # Collateral-backed ceiling
    RISK = "RISK"              # Reputation-based risk ceiling
    WANT = "WANT"              # Validator-declared maximum
    VALIDATOR = "VALIDATOR"    # Per-validator ceiling


class AuctionPhase(StrEnum):
    """Which pool a clearing round distributes."""

    DIRECTED = "DIRECTED"
    AUCTION = "AUCTION"


# --- Base model ---


class AuctionBase(BaseModel):
    """Base model for all auction domain objects.

    Models stay mutable: the clearing engine updates allocation state in
    place and takes deep copies for isolated counterfactual solves.
    """

    model_config = {
        "populate_by_name": True,
        "protected_namespaces": (),
    }
