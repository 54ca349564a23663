"""Pydantic domain models for the stake auction."""

from stake_auction.models.auction import AuctionData, AuctionResult, Rewards, StakeAmounts
from stake_auction.models.common import AuctionBase, AuctionPhase, ConstraintType
from stake_auction.models.validator import (
    AuctionHistoryEntry,
    AuctionStake,
    BidTooLowPenalty,
    BondMetrics,
    CapConstraintRef,
    EpochStats,
    ForcedUndelegation,
    ReputationState,
    RevShare,
    Validator,
    ValidatorHistory,
)

__all__ = [
    "AuctionBase",
    "AuctionData",
    "AuctionHistoryEntry",
    "AuctionPhase",
    "AuctionResult",
    "AuctionStake",
    "BidTooLowPenalty",
    "BondMetrics",
    "CapConstraintRef",
    "ConstraintType",
    "EpochStats",
    "ForcedUndelegation",
    "ReputationState",
    "RevShare",
    "Rewards",
    "StakeAmounts",
    "Validator",
    "ValidatorHistory",
]
