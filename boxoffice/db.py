from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker


class Base(DeclarativeBase):
    pass


def make_engine(url: str):
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


# Bound from Settings.database_url by the entry points (api, worker, tests).
engine = None
SessionLocal = sessionmaker(expire_on_commit=False)


def bind_engine(url: str):
    """Point SessionLocal at the database behind ``url``."""
    global engine
    engine = make_engine(url)
    SessionLocal.configure(bind=engine)
    return engine


def insert_ignore(session, model, values: dict) -> int:
    """INSERT ... ON CONFLICT DO NOTHING; returns the number of rows written."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"insert_ignore not supported on {dialect}")
    session.flush()
    stmt = insert(model.__table__).values(**values).on_conflict_do_nothing()
    result = session.connection().execute(stmt)
    return result.rowcount
