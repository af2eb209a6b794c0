"""Projection layer - Applies contract events to the derived read-models."""

from stake_event_indexer.projector.base import ProjectionError, ProjectionWriteError, Projector
from stake_event_indexer.projector.handlers import (
    RewardClaimedProjector,
    StakeClosedProjector,
    StakeOpenedProjector,
    TokenTransferProjector,
)
from stake_event_indexer.projector.registry import ProjectorRegistry

__all__ = [
    "ProjectionError",
    "ProjectionWriteError",
    "Projector",
    "ProjectorRegistry",
    "RewardClaimedProjector",
    "StakeClosedProjector",
    "StakeOpenedProjector",
    "TokenTransferProjector",
]
