"""Persistence collaborator interface and bundled implementations."""

from __future__ import annotations

import copy
import json
import logging
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy import Column, DateTime, Text
from sqlmodel import Field, Session, SQLModel, create_engine, delete, select

from crew_control.migrations import upgrade_head
from crew_control.models import ManagedProcess, Worker
from crew_control.timers import utc_now

logger = logging.getLogger(__name__)


class PersistenceCollaborator(Protocol):
    """Load/save hooks used by the registry and the process supervisor."""

    def load_workers(self) -> list[Worker]: ...

    def save_workers(self, workers: list[Worker]) -> None: ...

    def save_processes(self, snapshots: list[dict[str, Any]]) -> None: ...

    def load_processes(self) -> list[dict[str, Any]]: ...


class InMemoryPersistence:
    """Keeps the roster and process snapshots for the lifetime of the object."""

    def __init__(self, workers: Iterable[Worker] = ()) -> None:
        self._workers = [copy.deepcopy(worker) for worker in workers]
        self._processes: list[dict[str, Any]] = []
        self.worker_saves = 0
        self.process_saves = 0

    def load_workers(self) -> list[Worker]:
        return [copy.deepcopy(worker) for worker in self._workers]

    def save_workers(self, workers: list[Worker]) -> None:
        self._workers = [copy.deepcopy(worker) for worker in workers]
        self.worker_saves += 1

    def save_processes(self, snapshots: list[dict[str, Any]]) -> None:
        self._processes = [dict(snapshot) for snapshot in snapshots]
        self.process_saves += 1

    def load_processes(self) -> list[dict[str, Any]]:
        return [dict(snapshot) for snapshot in self._processes]


class ProcessSnapshotRow(SQLModel, table=True):
    __tablename__ = "process_snapshots"  # type: ignore[bad-override]

    process_id: str = Field(primary_key=True)
    worker_id: str = Field(index=True)
    task_id: str | None = Field(default=None, index=True)
    status: str
    restarts: int = 0
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    saved_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SqlitePersistence:
    """Process snapshots in SQLite; the roster itself stays in memory.

    Snapshots survive a restart of the orchestrating process and are
    reloaded by the supervisor in ``stopped`` state.
    """

    def __init__(self, db_path: Path, *, workers: Iterable[Worker] = ()) -> None:
        self.db_path = db_path
        self._roster = InMemoryPersistence(workers)
        self.engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False},
        )

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def close(self) -> None:
        self.engine.dispose()

    def load_workers(self) -> list[Worker]:
        return self._roster.load_workers()

    def save_workers(self, workers: list[Worker]) -> None:
        self._roster.save_workers(workers)

    def save_processes(self, snapshots: list[dict[str, Any]]) -> None:
        now = utc_now()
        with Session(self.engine) as session:
            session.exec(delete(ProcessSnapshotRow))
            for snapshot in snapshots:
                session.add(
                    ProcessSnapshotRow(
                        process_id=str(snapshot["id"]),
                        worker_id=str(snapshot["worker_id"]),
                        task_id=snapshot.get("task_id"),
                        status=str(snapshot.get("status", "stopped")),
                        restarts=int(snapshot.get("restarts", 0)),
                        payload_json=json.dumps(snapshot, ensure_ascii=False),
                        saved_at=now,
                    ),
                )
            session.commit()
        logger.debug("Saved %d process snapshots to %s", len(snapshots), self.db_path)

    def load_processes(self) -> list[dict[str, Any]]:
        with Session(self.engine) as session:
            rows = session.exec(select(ProcessSnapshotRow)).all()
        snapshots: list[dict[str, Any]] = []
        for row in rows:
            try:
                snapshots.append(json.loads(row.payload_json))
            except json.JSONDecodeError:
                logger.warning("Skipping unreadable snapshot for process %s", row.process_id)
        return snapshots


def restore_processes(raw_snapshots: Iterable[dict[str, Any]]) -> list[ManagedProcess]:
    """Parse snapshots, dropping malformed entries."""

    restored: list[ManagedProcess] = []
    for raw in raw_snapshots:
        try:
            restored.append(ManagedProcess.from_snapshot(raw))
        except (KeyError, TypeError, ValueError) as error:
            logger.warning("Ignoring malformed process snapshot: %s", error)
    return restored
