"""SQLAlchemy-backed store using a version column for compare-and-swap."""

from __future__ import annotations

from typing import Any

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ladder_guard.core.errors import StoreUnavailable
from ladder_guard.models.store_entry import StoreEntry
from ladder_guard.store.base import TTLStore


class SqlStore(TTLStore):
    """Rows of ``guard_store_entries``; each write bumps ``version``.

    A swap only succeeds if the row still carries the version that was read,
    so concurrent writers on different connections cannot lose updates.
    """

    backend_name = "sql"

    def __init__(self, session_factory: sessionmaker[Session], **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._session_factory = session_factory

    def _is_live(self, row: StoreEntry | None, now: float) -> bool:
        return row is not None and now < row.expires

    def _value(self, row: StoreEntry | None, now: float) -> Any | None:
        if not self._is_live(row, now):
            return None
        assert row is not None
        return self.decode(row.data)

    def get(self, key: str) -> Any | None:
        now = self.now()
        try:
            with self._session_factory() as db:
                row = db.get(StoreEntry, key)
                if row is None:
                    return None
                if not self._is_live(row, now):
                    db.execute(
                        delete(StoreEntry)
                        .where(StoreEntry.key == key, StoreEntry.version == row.version)
                        .execution_options(synchronize_session=False)
                    )
                    db.commit()
                    return None
                return self.decode(row.data)
        except SQLAlchemyError as err:
            raise StoreUnavailable(self.backend_name, str(err)) from err

    def put(self, key: str, value: Any, ttl: float) -> None:
        now = self.now()
        try:
            with self._session_factory() as db:
                row = db.get(StoreEntry, key)
                if ttl <= 0 or value is None:
                    if row is not None:
                        db.delete(row)
                elif row is None:
                    db.add(
                        StoreEntry(
                            key=key,
                            data=self.encode(value),
                            created=now,
                            expires=now + ttl,
                            version=1,
                        )
                    )
                else:
                    row.data = self.encode(value)
                    row.created = now
                    row.expires = now + ttl
                    row.version = row.version + 1
                db.commit()
        except SQLAlchemyError as err:
            raise StoreUnavailable(self.backend_name, str(err)) from err

    def delete(self, key: str) -> bool:
        now = self.now()
        try:
            with self._session_factory() as db:
                row = db.get(StoreEntry, key)
                if row is None:
                    return False
                live = self._is_live(row, now)
                db.delete(row)
                db.commit()
                return live
        except SQLAlchemyError as err:
            raise StoreUnavailable(self.backend_name, str(err)) from err

    def compare_and_swap(self, key: str, expected: Any | None, new: Any | None, ttl: float) -> bool:
        now = self.now()
        try:
            with self._session_factory() as db:
                row = db.get(StoreEntry, key)
                if self._value(row, now) != expected:
                    return False
                if row is None:
                    if new is None or ttl <= 0:
                        return True
                    db.add(
                        StoreEntry(
                            key=key,
                            data=self.encode(new),
                            created=now,
                            expires=now + ttl,
                            version=1,
                        )
                    )
                    try:
                        db.commit()
                    except IntegrityError:
                        db.rollback()
                        return False
                    return True

                version = row.version
                if new is None or ttl <= 0:
                    statement = delete(StoreEntry).where(
                        StoreEntry.key == key, StoreEntry.version == version
                    )
                else:
                    statement = (
                        update(StoreEntry)
                        .where(StoreEntry.key == key, StoreEntry.version == version)
                        .values(
                            data=self.encode(new),
                            created=now,
                            expires=now + ttl,
                            version=version + 1,
                        )
                    )
                result = db.execute(statement.execution_options(synchronize_session=False))
                db.commit()
                return result.rowcount == 1
        except SQLAlchemyError as err:
            raise StoreUnavailable(self.backend_name, str(err)) from err

    def sweep(self) -> int:
        now = self.now()
        try:
            with self._session_factory() as db:
                result = db.execute(
                    delete(StoreEntry)
                    .where(StoreEntry.expires <= now)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                return int(result.rowcount or 0)
        except SQLAlchemyError as err:
            raise StoreUnavailable(self.backend_name, str(err)) from err

