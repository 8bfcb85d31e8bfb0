"""
ArtifactStore: persistence for versioned, hash-keyed pipeline artifacts.

Writes are insert-or-get on the table's idempotency key. The unique
constraint is the only arbiter between concurrent writers: a loser catches the
IntegrityError and re-reads the winner's row.
"""
from __future__ import annotations

import logging
from typing import Any, Optional, Sequence, TypeVar

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from packages.db.database import get_session
from packages.db.models import Base, ProcessingJob

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=Base)


class ArtifactStore:
    def __init__(self, session_factory=get_session):
        self._session_factory = session_factory

    def session(self):
        return self._session_factory()

    # ── reads ────────────────────────────────────────────────────────────

    def find(self, model: type[M], **key: Any) -> Optional[M]:
        with self._session_factory() as session:
            return session.query(model).filter_by(**key).first()

    def find_all(self, model: type[M], **filters: Any) -> list[M]:
        with self._session_factory() as session:
            return (
                session.query(model)
                .filter_by(**filters)
                .order_by(model.created_at.asc(), model.id.asc())
                .all()
            )

    def count(self, model: type[M], **filters: Any) -> int:
        with self._session_factory() as session:
            return session.query(model).filter_by(**filters).count()

    def get_job(self, job_id: str) -> Optional[ProcessingJob]:
        return self.find(ProcessingJob, id=job_id)

    # ── writes ───────────────────────────────────────────────────────────

    def add(self, model: type[M], **values: Any) -> M:
        """Plain insert for rows with no idempotency key (review decisions)."""
        with self._session_factory() as session:
            row = model(**values)
            session.add(row)
            session.flush()
        return row

    def insert_or_get(self, model: type[M], key: dict[str, Any], values: dict[str, Any]) -> tuple[M, bool]:
        """
        Return ``(row, is_new)`` for the row identified by *key*.

        *values* are only used when the row does not exist yet.
        """
        existing = self.find(model, **key)
        if existing is not None:
            return existing, False
        try:
            with self._session_factory() as session:
                row = model(**key, **values)
                session.add(row)
                session.flush()
            return row, True
        except IntegrityError:
            winner = self.find(model, **key)
            if winner is None:
                raise
            logger.info(f"[{key.get('job_id', '-')}] Lost insert race on {model.__tablename__}; using existing row")
            return winner, False

    def insert_many_or_get(
        self,
        model: type[M],
        rows: Sequence[tuple[dict[str, Any], dict[str, Any]]],
    ) -> list[tuple[M, bool]]:
        """
        Insert a batch in one transaction; rows already present are returned as-is.

        If a concurrent writer commits part of the batch first, fall back to
        row-by-row insert_or_get so every key still resolves to exactly one row.
        """
        results: list[Optional[tuple[M, bool]]] = []
        pending: list[int] = []
        for idx, (key, _values) in enumerate(rows):
            existing = self.find(model, **key)
            results.append((existing, False) if existing is not None else None)
            if existing is None:
                pending.append(idx)
        if not pending:
            return [r for r in results if r is not None]
        try:
            with self._session_factory() as session:
                for idx in pending:
                    key, values = rows[idx]
                    row = model(**key, **values)
                    session.add(row)
                    results[idx] = (row, True)
                session.flush()
        except IntegrityError:
            logger.info(f"Batch insert race on {model.__tablename__}; resolving row by row")
            return [self.insert_or_get(model, key, values) for key, values in rows]
        return [r for r in results if r is not None]

    def update_row(
        self, model: type[M], row_id: str, expected: Optional[dict[str, Any]] = None, **values: Any
    ) -> bool:
        """
        Conditionally update one row.

        *expected* column values guard the write; returns False when another
        writer changed the row first.
        """
        stmt = update(model).where(model.id == row_id)
        for column, value in (expected or {}).items():
            stmt = stmt.where(getattr(model, column) == value)
        with self._session_factory() as session:
            result = session.execute(stmt.values(**values))
            return result.rowcount == 1

    def update_job(self, job_id: str, expected: Optional[dict[str, Any]] = None, **values: Any) -> bool:
        return self.update_row(ProcessingJob, job_id, expected, **values)
