"""
Retention archival to Parquet.

Rows older than a table's retention age are exported to immutable Parquet
files (one per server per batch, named by the batch's time range) and then
deleted from the live table in the same write transaction. The export is
written to a temp file, fsynced and renamed into place before the delete is
issued; if the delete fails to commit the new files are removed again, so a
row ends up in exactly one place.
"""

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pandas as pd
from sqlalchemy import JSON, delete, select

from perfwatch.core.exceptions import NotFoundError
from perfwatch.models import TIME_SERIES_MODELS

if TYPE_CHECKING:
    from perfwatch.services.monitor_config import RetentionPolicy
    from perfwatch.services.store import LocalStore

logger = logging.getLogger(__name__)

# SQLite's bound-parameter limit is 32766 on current builds, 999 on old ones
DELETE_CHUNK_SIZE = 500

TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S"
ARCHIVE_FILE_PATTERN = re.compile(
    r"^(?P<table>[a-z_]+)_(?P<start>\d{8}T\d{6})_(?P<end>\d{8}T\d{6})_(?P<first_id>\d+)\.parquet$"
)


@dataclass
class ArchiveResult:
    table: str
    cutoff: datetime
    rows_archived: int = 0
    files: list[Path] = field(default_factory=list)
    skipped: bool = False


def _row_to_record(model, row) -> dict[str, Any]:
    record = {}
    for column in model.__table__.columns:
        value = getattr(row, column.key)
        # JSON columns go out as text so heterogeneous keys survive the round trip
        if isinstance(column.type, JSON):
            value = json.dumps(value, sort_keys=True)
        elif hasattr(value, "value") and isinstance(value, str):
            value = value.value
        record[column.name] = value
    return record


def _fsync_directory(path: Path) -> None:
    if os.name != "posix":
        return
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _write_parquet(frame: pd.DataFrame, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    frame.to_parquet(tmp_path, index=False, engine="pyarrow")
    with open(tmp_path, "rb") as fh:
        os.fsync(fh.fileno())
    os.replace(tmp_path, path)
    _fsync_directory(path.parent)


class ArchiveService:
    def __init__(self, store: "LocalStore", archive_dir: Path, batch_size: int = 50000):
        self.store = store
        self.archive_dir = Path(archive_dir)
        self.batch_size = batch_size
        self._lock = asyncio.Lock()

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    def server_dir(self, table: str, server_id: int) -> Path:
        return self.archive_dir / table / f"server_{server_id}"

    async def archive_and_purge(self, policy: "RetentionPolicy", now: datetime | None = None) -> ArchiveResult:
        """
        Archive and delete every row of policy.table older than policy.max_age_days.

        Runs in batches; each batch is exported and deleted atomically. A run
        that finds another archive pass in progress is skipped.
        """
        model = self._model(policy.table)
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(days=policy.max_age_days)
        result = ArchiveResult(table=policy.table, cutoff=cutoff)

        if self._lock.locked():
            logger.info("Archive already in progress, skipping %s", policy.table)
            result.skipped = True
            return result

        async with self._lock:
            time_column = getattr(model, model.__time_column__)
            while True:
                written: list[Path] = []
                try:
                    async with self.store.writer() as session:
                        rows = (
                            await session.execute(
                                select(model)
                                .where(time_column < cutoff)
                                .order_by(time_column, model.id)
                                .limit(self.batch_size)
                            )
                        ).scalars().all()
                        if not rows:
                            break

                        records = [_row_to_record(model, row) for row in rows]
                        written = await asyncio.to_thread(self._export_batch, policy.table, model, records)

                        ids = [record["id"] for record in records]
                        for offset in range(0, len(ids), DELETE_CHUNK_SIZE):
                            chunk = ids[offset:offset + DELETE_CHUNK_SIZE]
                            await session.execute(delete(model).where(model.id.in_(chunk)))
                except Exception:
                    for path in written:
                        path.unlink(missing_ok=True)
                    logger.error(
                        "Archive batch for %s failed; %d export file(s) removed, live rows kept",
                        policy.table,
                        len(written),
                    )
                    raise

                result.rows_archived += len(records)
                result.files.extend(written)
                if len(records) < self.batch_size:
                    break

        if result.rows_archived:
            logger.info(
                "Archived %d %s rows older than %s into %d file(s)",
                result.rows_archived,
                policy.table,
                cutoff.isoformat(),
                len(result.files),
            )
        return result

    def _export_batch(self, table: str, model, records: list[dict[str, Any]]) -> list[Path]:
        time_key = model.__time_column__
        by_server: dict[int, list[dict[str, Any]]] = {}
        for record in records:
            by_server.setdefault(record["server_id"], []).append(record)

        written = []
        try:
            for server_id, server_records in sorted(by_server.items()):
                start = server_records[0][time_key]
                end = server_records[-1][time_key]
                name = (
                    f"{table}_{start.strftime(TIMESTAMP_FORMAT)}_{end.strftime(TIMESTAMP_FORMAT)}"
                    f"_{server_records[0]['id']}.parquet"
                )
                path = self.server_dir(table, server_id) / name
                _write_parquet(pd.DataFrame.from_records(server_records), path)
                written.append(path)
        except Exception:
            for path in written:
                path.unlink(missing_ok=True)
            raise
        return written

    def archive_files(self, table: str, server_id: int | None = None) -> list[Path]:
        base = self.server_dir(table, server_id) if server_id is not None else self.archive_dir / table
        if not base.exists():
            return []
        return sorted(base.rglob("*.parquet"))

    async def read_archive(self, table: str, server_id: int | None = None) -> pd.DataFrame:
        """All archived rows of a table (optionally one server), ordered by time."""
        model = self._model(table)
        files = self.archive_files(table, server_id)
        if not files:
            return pd.DataFrame(columns=[column.name for column in model.__table__.columns])

        def _read() -> pd.DataFrame:
            frame = pd.concat([pd.read_parquet(path) for path in files], ignore_index=True)
            return frame.sort_values([model.__time_column__, "id"], ignore_index=True)

        return await asyncio.to_thread(_read)

    async def cleanup_old_archives(self, now: datetime | None = None, retention_days: int = 90) -> list[Path]:
        """Delete archive files whose newest row is older than retention_days."""
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(days=retention_days)

        def _cleanup() -> list[Path]:
            removed = []
            if not self.archive_dir.exists():
                return removed
            for path in self.archive_dir.rglob("*.parquet"):
                match = ARCHIVE_FILE_PATTERN.match(path.name)
                if not match:
                    continue
                end = datetime.strptime(match.group("end"), TIMESTAMP_FORMAT).replace(tzinfo=UTC)
                if end < cutoff:
                    path.unlink()
                    removed.append(path)
            return removed

        removed = await asyncio.to_thread(_cleanup)
        if removed:
            logger.info("Removed %d archive file(s) older than %d days", len(removed), retention_days)
        return removed

    @staticmethod
    def _model(table: str):
        try:
            return TIME_SERIES_MODELS[table]
        except KeyError:
            raise NotFoundError(f"Unknown table '{table}'") from None
