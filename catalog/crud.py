"""Record store adapter for Character.

``SqlCharacterStore`` is the store the reconciler and query service depend on.
Each call opens its own short session (one transaction, no lock held across
calls). Inserts are duplicate-safe: a row whose id already exists is skipped
rather than raising, since scheduled sync and on-demand search may race to
insert the same id. Database errors are not caught here.
"""

from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .filters import CharacterFilter, PredicateKind, store_predicates
from .models import RECORD_FIELDS, Character

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class CharacterStore(Protocol):
    async def find_one(self, character_id: int) -> Optional[Dict[str, Any]]: ...

    async def find_all(
        self, flt: Optional[CharacterFilter] = None
    ) -> List[Dict[str, Any]]: ...

    async def find_existing_ids(self, ids: Iterable[int]) -> Set[int]: ...

    async def create(self, record: Dict[str, Any]) -> Dict[str, Any]: ...

    async def bulk_create(
        self, records: List[Dict[str, Any]], ignore_duplicates: bool = True
    ) -> None: ...

    async def update(self, record: Dict[str, Any]) -> None: ...

    async def count(self) -> int: ...


def _row_to_dict(c: Character) -> Dict[str, Any]:
    """Map a `Character` ORM row to the record dict shape."""
    return {
        "id": c.id,
        "name": c.name,
        "status": c.status,
        "species": c.species,
        "gender": c.gender,
        "image": c.image,
        "origin": c.origin,
    }


def _record_values(record: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": int(record["id"]), **{f: record.get(f) for f in RECORD_FIELDS}}


class SqlCharacterStore:
    """SQLAlchemy-backed store; portable across SQLite (tests/dev) and Postgres."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def _insert(
        self, session: AsyncSession, rows: List[Dict[str, Any]], ignore_duplicates: bool
    ) -> None:
        dialect = session.get_bind().dialect.name
        insert = _INSERT_BY_DIALECT.get(dialect)
        if insert is None:
            raise NotImplementedError(f"unsupported database dialect: {dialect}")
        stmt = insert(Character).values(rows)
        if ignore_duplicates:
            stmt = stmt.on_conflict_do_nothing(index_elements=[Character.id])
        await session.execute(stmt)

    async def find_one(self, character_id: int) -> Optional[Dict[str, Any]]:
        async with self._sessionmaker() as session:
            row = await session.get(Character, character_id)
            return _row_to_dict(row) if row is not None else None

    async def find_all(
        self, flt: Optional[CharacterFilter] = None
    ) -> List[Dict[str, Any]]:
        """Return rows matching the filter (name: case-insensitive substring)."""
        q = select(Character)
        for field, kind, value in store_predicates(flt):
            col = getattr(Character, field)
            if kind is PredicateKind.SUBSTRING:
                q = q.where(col.icontains(value, autoescape=True))
            else:
                q = q.where(col == value)
        async with self._sessionmaker() as session:
            res = await session.execute(q.order_by(Character.id))
            return [_row_to_dict(c) for c in res.scalars().all()]

    async def find_existing_ids(self, ids: Iterable[int]) -> Set[int]:
        wanted = {int(i) for i in ids}
        if not wanted:
            return set()
        async with self._sessionmaker() as session:
            res = await session.execute(
                select(Character.id).where(Character.id.in_(wanted))
            )
            return set(res.scalars().all())

    async def create(self, record: Dict[str, Any]) -> Dict[str, Any]:
        values = _record_values(record)
        async with self._sessionmaker() as session:
            await self._insert(session, [values], ignore_duplicates=True)
            await session.commit()
        return values

    async def bulk_create(
        self, records: List[Dict[str, Any]], ignore_duplicates: bool = True
    ) -> None:
        if not records:
            return
        rows = [_record_values(r) for r in records]
        async with self._sessionmaker() as session:
            await self._insert(session, rows, ignore_duplicates)
            await session.commit()

    async def update(self, record: Dict[str, Any]) -> None:
        """Replace every mutable field of the row with ``record``'s values."""
        values = _record_values(record)
        character_id = values.pop("id")
        async with self._sessionmaker() as session:
            await session.execute(
                update(Character).where(Character.id == character_id).values(**values)
            )
            await session.commit()

    async def count(self) -> int:
        async with self._sessionmaker() as session:
            res = await session.execute(select(func.count()).select_from(Character))
            return int(res.scalar_one())
