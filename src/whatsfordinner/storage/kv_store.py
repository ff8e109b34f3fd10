from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Optional, Protocol

from sqlalchemy import DateTime, Integer, String, Text, delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

from whatsfordinner.workflow.errors import NotFoundError, StoreError, VersionConflictError

Base = declarative_base()


class KeyValueEntry(Base):
    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


@dataclass(frozen=True)
class VersionedValue:
    value: str
    version: int


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str:
        ...

    async def get_versioned(self, key: str) -> VersionedValue:
        ...

    async def set(
        self, key: str, value: str, *, expected_version: int | None = None
    ) -> int:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def list_keys_with_prefix(self, prefix: str) -> list[str]:
        ...


class SqlAlchemyKeyValueStore:
    """String key-value store with a per-key version counter.

    ``set`` without ``expected_version`` is last-write-wins. With
    ``expected_version=0`` the key must not exist yet; with ``expected_version=n``
    the stored version must still be ``n``. Either mismatch raises
    :class:`VersionConflictError` and leaves the row untouched.
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def get(self, key: str) -> str:
        return (await self.get_versioned(key)).value

    async def get_versioned(self, key: str) -> VersionedValue:
        async with self._session() as session:
            row = await session.get(KeyValueEntry, key)
            if row is None:
                raise NotFoundError(f"key not found: {key}")
            return VersionedValue(value=row.value, version=row.version)

    async def set(
        self, key: str, value: str, *, expected_version: int | None = None
    ) -> int:
        if expected_version == 0:
            return await self._insert(key, value)
        if expected_version is not None:
            return await self._compare_and_set(key, value, expected_version)

        async with self._session() as session:
            row = await session.get(KeyValueEntry, key)
            if row is None:
                row = KeyValueEntry(key=key, value=value, version=1)
                session.add(row)
            else:
                row.value = value
                row.version = row.version + 1
                row.updated_at = datetime.utcnow()
            await session.commit()
            return row.version

    async def delete(self, key: str) -> None:
        async with self._session() as session:
            await session.execute(delete(KeyValueEntry).where(KeyValueEntry.key == key))
            await session.commit()

    async def list_keys_with_prefix(self, prefix: str) -> list[str]:
        async with self._session() as session:
            result = await session.execute(
                select(KeyValueEntry.key)
                .where(KeyValueEntry.key.startswith(prefix, autoescape=True))
                .order_by(KeyValueEntry.key)
            )
            return list(result.scalars().all())

    async def _insert(self, key: str, value: str) -> int:
        async with self._session() as session:
            session.add(KeyValueEntry(key=key, value=value, version=1))
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                actual = await self._current_version(session, key)
                raise VersionConflictError(key, 0, actual) from exc
            return 1

    async def _compare_and_set(self, key: str, value: str, expected: int) -> int:
        async with self._session() as session:
            result = await session.execute(
                update(KeyValueEntry)
                .where(KeyValueEntry.key == key, KeyValueEntry.version == expected)
                .values(value=value, version=expected + 1, updated_at=datetime.utcnow())
            )
            if result.rowcount != 1:
                await session.rollback()
                actual = await self._current_version(session, key)
                raise VersionConflictError(key, expected, actual)
            await session.commit()
            return expected + 1

    @staticmethod
    async def _current_version(session: AsyncSession, key: str) -> Optional[int]:
        result = await session.execute(
            select(KeyValueEntry.version).where(KeyValueEntry.key == key)
        )
        return result.scalar_one_or_none()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessionmaker() as session:
                yield session
        except SQLAlchemyError as exc:
            raise StoreError(f"key-value store failure: {exc}") from exc


async def ensure_kv_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(
            lambda sync_conn: KeyValueEntry.__table__.create(sync_conn, checkfirst=True)
        )


__all__ = [
    "KeyValueEntry",
    "KeyValueStore",
    "SqlAlchemyKeyValueStore",
    "VersionedValue",
    "ensure_kv_schema",
]
