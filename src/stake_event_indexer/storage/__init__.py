"""Storage layer - Database schemas, repositories and the checkpoint store."""

from stake_event_indexer.storage.checkpoint import CheckpointStore
from stake_event_indexer.storage.database import (
    DatabaseManager,
    async_database_url,
)
from stake_event_indexer.storage.models import (
    Base,
    ContractEventModel,
    DailyStatsModel,
    NotificationModel,
    SystemConfigModel,
    UserModel,
)
from stake_event_indexer.storage.repos import (
    ContractEventDTO,
    ContractEventRepository,
    DailyStatsDTO,
    DailyStatsRepository,
    NotificationDTO,
    NotificationRepository,
    SystemConfigRepository,
    UserAggregateDTO,
    UserRepository,
)

__all__ = [
    "Base",
    "CheckpointStore",
    "ContractEventDTO",
    "ContractEventModel",
    "ContractEventRepository",
    "DailyStatsDTO",
    "DailyStatsModel",
    "DailyStatsRepository",
    "DatabaseManager",
    "NotificationDTO",
    "NotificationModel",
    "NotificationRepository",
    "SystemConfigModel",
    "SystemConfigRepository",
    "UserAggregateDTO",
    "UserModel",
    "UserRepository",
    "async_database_url",
]
