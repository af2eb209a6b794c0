"""Dispatch normalized events to their projector, one transaction per event."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy.exc import SQLAlchemyError

from stake_event_indexer.events.models import EventKind, RawEvent
from stake_event_indexer.projector.base import ProjectionWriteError, Projector
from stake_event_indexer.projector.handlers import (
    RewardClaimedProjector,
    StakeClosedProjector,
    StakeOpenedProjector,
    TokenTransferProjector,
)
from stake_event_indexer.storage.checkpoint import SessionFactory

logger = logging.getLogger(__name__)


class ProjectorRegistry:
    """Maps event kinds to projectors and applies events.

    Example:
        ```python
        db = DatabaseManager(settings.database.url)
        registry = ProjectorRegistry.default(
            db.get_async_session,
            stake_contract_address=settings.chain.effective_stake_contract,
        )
        await registry.dispatch(event)
        ```
    """

    def __init__(self, session_factory: SessionFactory, projectors: Iterable[Projector]) -> None:
        self._session_factory = session_factory
        self._projectors: dict[EventKind, Projector] = {}
        for projector in projectors:
            self.register(projector)

    @classmethod
    def default(
        cls,
        session_factory: SessionFactory,
        *,
        stake_contract_address: str,
    ) -> ProjectorRegistry:
        """Registry with the standard projector for every known kind."""
        return cls(
            session_factory,
            [
                StakeOpenedProjector(),
                StakeClosedProjector(),
                RewardClaimedProjector(),
                TokenTransferProjector(stake_contract_address),
            ],
        )

    def register(self, projector: Projector) -> None:
        if projector.kind in self._projectors:
            logger.warning("Replacing projector for %s", projector.kind.value)
        self._projectors[projector.kind] = projector

    def projector_for(self, kind: EventKind) -> Projector | None:
        return self._projectors.get(kind)

    async def dispatch(self, event: RawEvent) -> bool:
        """Apply `event` in its own transaction.

        Returns:
            False if no projector handles the event kind.

        Raises:
            ProjectionWriteError: If the store rejected the write. The
                transaction is rolled back.
        """
        projector = self._projectors.get(event.kind)
        if projector is None:
            logger.debug("No projector for %s; skipping", event.kind.value)
            return False

        try:
            async with self._session_factory() as session:
                await projector.apply(session, event)
        except SQLAlchemyError as e:
            raise ProjectionWriteError(event, e) from e
        return True
