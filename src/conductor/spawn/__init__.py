"""Spawn coordination and the durable de-duplication ledger."""

from src.conductor.spawn.coordinator import (
    SpawnCoordinator,
    classify_agent_type,
    trigger_posted,
)
from src.conductor.spawn.models import SpawnOutcome, SpawnRecord, SpawnResult
from src.conductor.spawn.repository import (
    JsonFileSpawnRepository,
    PostgresSpawnRepository,
    SpawnRepository,
    SpawnStoreError,
    close_spawn_repository,
    open_spawn_repository,
)

__all__ = [
    "JsonFileSpawnRepository",
    "PostgresSpawnRepository",
    "SpawnCoordinator",
    "SpawnOutcome",
    "SpawnRecord",
    "SpawnRepository",
    "SpawnResult",
    "SpawnStoreError",
    "classify_agent_type",
    "close_spawn_repository",
    "open_spawn_repository",
    "trigger_posted",
]
