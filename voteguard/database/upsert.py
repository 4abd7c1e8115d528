# voteguard/database/upsert.py

from sqlalchemy.dialects import postgresql, sqlite

from voteguard import db
from voteguard.errors import InternalError

_INSERTS = {
    'postgresql': postgresql.insert,
    'sqlite': sqlite.insert,
}


def upsert(model, key, values, set_=None, where=None):
    """
    INSERT .. ON CONFLICT (key) DO UPDATE for one row, inside the current
    session transaction.

    values is the row to insert. On conflict the columns in set_ are written;
    by default that is every column in values except the key and primary key.
    set_ entries may be SQL expressions over the existing row. When where is
    given the update only happens where it holds on the existing row.

    Returns the statement's rowcount: 0 when the row existed and where
    excluded it.
    """
    insert = _INSERTS.get(db.engine.dialect.name)
    if insert is None:
        raise InternalError(f"Upsert is not supported on {db.engine.dialect.name}")
    table = model.__table__
    stmt = insert(table).values(**values)
    if set_ is None:
        primary = {column.name for column in table.primary_key.columns}
        set_ = {name: stmt.excluded[name] for name in values if name != key and name not in primary}
    stmt = stmt.on_conflict_do_update(index_elements=[table.c[key]], set_=set_, where=where)
    return db.session.execute(stmt).rowcount
