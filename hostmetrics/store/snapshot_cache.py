"""
DuckDB cache of the last known good dashboard state per host.

Lets a restarted process show the previous numbers (flagged offline and
stale) before the first live snapshot arrives.
"""

import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import duckdb
import structlog
from pydantic import ValidationError

from hostmetrics.models import DashboardState

logger = structlog.get_logger(__name__)


class SnapshotCacheError(Exception):
    """Raised when the snapshot cache cannot be read or written."""

    pass


class SnapshotCache:
    """
    Thread-safe DuckDB persistence for DashboardState.

    Attributes:
        db_path: Path to the DuckDB file, or ":memory:"
    """

    def __init__(self, db_path: str = "./data/snapshots.duckdb"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = None

        logger.info("snapshot_cache_initialized", db_path=db_path)
        self._initialize_schema()

    @contextmanager
    def _get_connection(self):
        """
        Yield the shared connection while holding the cache lock.

        Raises:
            SnapshotCacheError: If the connection cannot be established
        """
        with self._lock:
            if self._connection is None:
                try:
                    self._connection = duckdb.connect(self.db_path)
                except Exception as e:
                    logger.error("snapshot_cache_connection_failed", error=str(e))
                    raise SnapshotCacheError(f"Failed to connect to DuckDB: {e}") from e
            yield self._connection

    def _initialize_schema(self) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS last_good_snapshots (
                        host_id VARCHAR PRIMARY KEY,
                        timeframe VARCHAR NOT NULL,
                        payload JSON NOT NULL,
                        saved_at TIMESTAMP NOT NULL
                    )
                    """
                )
        except SnapshotCacheError:
            raise
        except Exception as e:
            logger.error("snapshot_cache_schema_failed", error=str(e))
            raise SnapshotCacheError(f"Failed to initialize schema: {e}") from e

    def save(self, state: DashboardState) -> None:
        """
        Store the state as the host's last known good snapshot.

        Raises:
            SnapshotCacheError: If the state has no host or the write fails
        """
        if not state.host_id:
            raise SnapshotCacheError("Cannot cache a dashboard state without a host_id")

        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO last_good_snapshots
                    (host_id, timeframe, payload, saved_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    [
                        state.host_id,
                        state.timeframe.value,
                        state.model_dump_json(),
                        datetime.now(timezone.utc).replace(tzinfo=None),
                    ],
                )
            logger.debug("snapshot_cached", host_id=state.host_id, generation=state.generation)
        except SnapshotCacheError:
            raise
        except Exception as e:
            logger.error("snapshot_cache_write_failed", host_id=state.host_id, error=str(e))
            raise SnapshotCacheError(f"Failed to cache snapshot: {e}") from e

    def load(self, host_id: str) -> Optional[DashboardState]:
        """
        Load the host's last known good snapshot.

        Returns:
            Cached state, or None when nothing usable is cached
        """
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT payload FROM last_good_snapshots WHERE host_id = ?",
                    [host_id],
                ).fetchone()
        except SnapshotCacheError:
            raise
        except Exception as e:
            logger.error("snapshot_cache_read_failed", host_id=host_id, error=str(e))
            raise SnapshotCacheError(f"Failed to read snapshot: {e}") from e

        if row is None:
            return None
        try:
            return DashboardState.model_validate_json(row[0])
        except ValidationError as e:
            logger.warning("snapshot_cache_entry_invalid", host_id=host_id, error=str(e))
            return None

    def delete(self, host_id: str) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute("DELETE FROM last_good_snapshots WHERE host_id = ?", [host_id])
        except SnapshotCacheError:
            raise
        except Exception as e:
            raise SnapshotCacheError(f"Failed to delete snapshot: {e}") from e

    def clear(self) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute("DELETE FROM last_good_snapshots")
        except SnapshotCacheError:
            raise
        except Exception as e:
            raise SnapshotCacheError(f"Failed to clear snapshot cache: {e}") from e

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
                logger.info("snapshot_cache_closed", db_path=self.db_path)
