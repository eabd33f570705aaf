"""Durable spawn ledger implementations.

Two implementations of the SpawnRepository protocol:
- PostgresSpawnRepository: asyncpg with an atomic INSERT ... ON CONFLICT
  check-and-set, for the webhook server
- JsonFileSpawnRepository: a single JSON state file replaced atomically,
  for single-host and CLI use

Both survive process restarts. claim() is the only write on the spawn
path and succeeds only when no record exists or the stored generation is
lower than the claimed one.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Union, runtime_checkable

import asyncpg

from src.conductor.spawn.models import SpawnRecord


logger = logging.getLogger(__name__)


class SpawnStoreError(Exception):
    """Raised when the spawn ledger cannot be read or written.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.original_error = original_error
        super().__init__(message)


@runtime_checkable
class SpawnRepository(Protocol):
    """Protocol for the spawn de-duplication ledger."""

    async def get(self, issue_number: int) -> Optional[SpawnRecord]:
        """Get the record for an issue, or None."""
        ...

    async def claim(self, record: SpawnRecord) -> bool:
        """Atomically store record if it is newer than what is stored.

        Returns:
            True if the record was stored, False if an equal or newer
            generation is already present.
        """
        ...

    async def delete(self, issue_number: int) -> bool:
        """Remove an issue's record (manual reset). True if one existed."""
        ...

    async def list_all(self) -> List[SpawnRecord]:
        """List every record ordered by issue number."""
        ...


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class PostgresSpawnRepository:
    """PostgreSQL implementation of the SpawnRepository protocol.

    The table is created by ensure_schema() if it does not exist.

    Example:
        >>> async with PostgresSpawnRepository("postgresql://...") as repo:
        ...     claimed = await repo.claim(SpawnRecord(issue_number=7, generation=1))
    """

    CREATE_TABLE_SQL = """
        CREATE TABLE IF NOT EXISTS spawn_records (
            issue_number INTEGER PRIMARY KEY,
            spawned_at TIMESTAMPTZ NOT NULL,
            generation INTEGER NOT NULL CHECK (generation >= 1),
            agent_type TEXT NOT NULL DEFAULT '',
            issue_code TEXT NOT NULL DEFAULT ''
        )
    """

    def __init__(
        self,
        connection_string: str,
        min_pool_size: int = 1,
        max_pool_size: int = 5,
    ):
        self.connection_string = connection_string
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise SpawnStoreError(
                "Database pool not initialized. Call connect() first."
            )
        return self._pool

    async def connect(self) -> None:
        """Initialize the connection pool and the table.

        Raises:
            SpawnStoreError: If connection fails.
        """
        if self._pool is not None:
            logger.warning("Connection pool already initialized")
            return

        try:
            logger.info(
                "Connecting to PostgreSQL",
                extra={
                    "min_pool_size": self.min_pool_size,
                    "max_pool_size": self.max_pool_size,
                },
            )
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
            await self.ensure_schema()
            logger.info("PostgreSQL connection pool established")
        except SpawnStoreError:
            raise
        except Exception as e:
            logger.error(
                "Failed to connect to PostgreSQL",
                extra={"error": str(e)},
            )
            raise SpawnStoreError(
                f"Failed to connect to PostgreSQL: {e}",
                original_error=e,
            ) from e

    async def disconnect(self) -> None:
        if self._pool is not None:
            logger.info("Closing PostgreSQL connection pool")
            await self._pool.close()
            self._pool = None

    async def __aenter__(self) -> "PostgresSpawnRepository":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def ensure_schema(self) -> None:
        async with self._transaction() as conn:
            await conn.execute(self.CREATE_TABLE_SQL)

    @staticmethod
    def _row_to_record(row: Any) -> SpawnRecord:
        return SpawnRecord(
            issue_number=row["issue_number"],
            spawned_at=_as_utc(row["spawned_at"]),
            generation=row["generation"],
            agent_type=row["agent_type"],
            issue_code=row["issue_code"],
        )

    async def get(self, issue_number: int) -> Optional[SpawnRecord]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT issue_number, spawned_at, generation, agent_type, issue_code
                    FROM spawn_records
                    WHERE issue_number = $1
                    """,
                    issue_number,
                )
        except SpawnStoreError:
            raise
        except Exception as e:
            logger.error(
                "Failed to get spawn record",
                extra={"issue_number": issue_number, "error": str(e)},
            )
            raise SpawnStoreError(
                f"Failed to get spawn record: {e}",
                original_error=e,
            ) from e
        return None if row is None else self._row_to_record(row)

    async def claim(self, record: SpawnRecord) -> bool:
        """Insert or advance the record in one statement.

        The WHERE clause on the conflict branch makes the write a
        check-and-set: an equal or newer stored generation leaves the row
        untouched and zero rows are reported.
        """
        try:
            async with self._transaction() as conn:
                result = await conn.execute(
                    """
                    INSERT INTO spawn_records (
                        issue_number,
                        spawned_at,
                        generation,
                        agent_type,
                        issue_code
                    ) VALUES ($1, $2, $3, $4, $5)
                    ON CONFLICT (issue_number) DO UPDATE SET
                        spawned_at = EXCLUDED.spawned_at,
                        generation = EXCLUDED.generation,
                        agent_type = EXCLUDED.agent_type,
                        issue_code = EXCLUDED.issue_code
                    WHERE spawn_records.generation < EXCLUDED.generation
                    """,
                    record.issue_number,
                    record.spawned_at,
                    record.generation,
                    record.agent_type,
                    record.issue_code,
                )
        except SpawnStoreError:
            raise
        except Exception as e:
            logger.error(
                "Failed to claim spawn record",
                extra={
                    "issue_number": record.issue_number,
                    "generation": record.generation,
                    "error": str(e),
                },
            )
            raise SpawnStoreError(
                f"Failed to claim spawn record: {e}",
                original_error=e,
            ) from e

        rows_affected = int(result.split()[-1])
        return rows_affected > 0

    async def delete(self, issue_number: int) -> bool:
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute(
                    "DELETE FROM spawn_records WHERE issue_number = $1",
                    issue_number,
                )
        except SpawnStoreError:
            raise
        except Exception as e:
            raise SpawnStoreError(
                f"Failed to delete spawn record: {e}",
                original_error=e,
            ) from e

        deleted = int(result.split()[-1]) > 0
        if deleted:
            logger.info("Deleted spawn record", extra={"issue_number": issue_number})
        return deleted

    async def list_all(self) -> List[SpawnRecord]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT issue_number, spawned_at, generation, agent_type, issue_code
                    FROM spawn_records
                    ORDER BY issue_number ASC
                    """
                )
        except SpawnStoreError:
            raise
        except Exception as e:
            raise SpawnStoreError(
                f"Failed to list spawn records: {e}",
                original_error=e,
            ) from e
        return [self._row_to_record(row) for row in rows]

    async def health_check(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.warning(
                "Database health check failed",
                extra={"error": str(e)},
            )
            return False


class JsonFileSpawnRepository:
    """Spawn ledger kept in one JSON file.

    File layout: {"spawned": {"<issue>": {record fields}}, "updated_at": iso}.
    Every write goes to a sibling temp file which then replaces the ledger,
    so a crash never leaves a half-written file. An unreadable ledger
    raises SpawnStoreError rather than being treated as empty, since an
    empty ledger would allow duplicate spawns.

    Attributes:
        path: Location of the ledger file.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise SpawnStoreError(
                f"Failed to read spawn ledger {self.path}: {e}",
                original_error=e,
            ) from e
        if not isinstance(raw, dict) or not isinstance(raw.get("spawned", {}), dict):
            raise SpawnStoreError(f"Spawn ledger {self.path} has an unexpected layout")
        return raw.get("spawned", {})

    def _persist(self, entries: Dict[str, Dict[str, Any]]) -> None:
        payload = {
            "spawned": entries,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
            tmp.replace(self.path)
        except OSError as e:
            raise SpawnStoreError(
                f"Failed to write spawn ledger {self.path}: {e}",
                original_error=e,
            ) from e

    @staticmethod
    def _to_record(issue_key: str, data: Dict[str, Any]) -> SpawnRecord:
        return SpawnRecord(
            issue_number=int(data.get("issue_number", issue_key)),
            spawned_at=datetime.fromisoformat(data["spawned_at"]),
            generation=int(data.get("generation", 1)),
            agent_type=data.get("agent_type", ""),
            issue_code=data.get("issue_code", ""),
        )

    async def get(self, issue_number: int) -> Optional[SpawnRecord]:
        async with self._lock:
            entries = self._load()
        data = entries.get(str(issue_number))
        return None if data is None else self._to_record(str(issue_number), data)

    async def claim(self, record: SpawnRecord) -> bool:
        async with self._lock:
            entries = self._load()
            existing = entries.get(str(record.issue_number))
            if existing is not None and int(existing.get("generation", 1)) >= record.generation:
                return False
            entries[str(record.issue_number)] = record.to_json_dict()
            self._persist(entries)
        logger.debug(
            "Claimed spawn record",
            extra={"issue_number": record.issue_number, "generation": record.generation},
        )
        return True

    async def delete(self, issue_number: int) -> bool:
        async with self._lock:
            entries = self._load()
            if entries.pop(str(issue_number), None) is None:
                return False
            self._persist(entries)
        logger.info("Deleted spawn record", extra={"issue_number": issue_number})
        return True

    async def list_all(self) -> List[SpawnRecord]:
        async with self._lock:
            entries = self._load()
        records = [self._to_record(key, data) for key, data in entries.items()]
        return sorted(records, key=lambda r: r.issue_number)

    async def health_check(self) -> bool:
        try:
            async with self._lock:
                self._load()
            return True
        except SpawnStoreError as e:
            logger.warning(
                "Spawn ledger health check failed",
                extra={"path": str(self.path), "error": str(e)},
            )
            return False


async def open_spawn_repository(
    database_url: Optional[str],
    spawn_state_path: Union[str, Path],
) -> SpawnRepository:
    """Open the configured ledger: PostgreSQL when a URL is set, else the JSON file.

    Raises:
        SpawnStoreError: If the database cannot be reached.
    """
    if database_url:
        repository = PostgresSpawnRepository(database_url)
        await repository.connect()
        return repository
    logger.info("Using JSON spawn ledger", extra={"path": str(spawn_state_path)})
    return JsonFileSpawnRepository(spawn_state_path)


async def close_spawn_repository(repository: SpawnRepository) -> None:
    if isinstance(repository, PostgresSpawnRepository):
        await repository.disconnect()
