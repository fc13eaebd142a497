"""
פונקציות SQL תואמות דיאלקט: PostgreSQL + SQLite.

INSERT ... ON CONFLICT DO UPDATE קיים בשני הדיאלקטים אבל דרך מודולים שונים
של SQLAlchemy; כאן בוחרים את הנכון לפי ה-bind של ה-session.
"""
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

_INSERT_BY_DIALECT = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def dialect_name(db: AsyncSession) -> str:
    return db.bind.dialect.name


def upsert_insert(db: AsyncSession, table):
    """insert() שתומך ב-on_conflict_do_update עבור הדיאלקט הפעיל"""
    name = dialect_name(db)
    try:
        insert_fn = _INSERT_BY_DIALECT[name]
    except KeyError:
        raise NotImplementedError(f"Upsert is not supported for dialect '{name}'") from None
    return insert_fn(table)
