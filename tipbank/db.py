from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from tipbank.config import settings


class Base(DeclarativeBase):
    pass


engine = create_engine(settings.database_url, pool_pre_ping=True, echo=settings.sql_echo)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def init_db(bind=None) -> None:
    # models must be imported so their tables register on Base.metadata
    import tipbank.models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
