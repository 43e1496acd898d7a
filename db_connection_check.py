import argparse

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError

import tipbank.models  # noqa: F401
from tipbank.config import settings
from tipbank.db import Base, init_db


def main() -> None:
    parser = argparse.ArgumentParser(description="Check the tip bank database connection")
    parser.add_argument("--create-tables", action="store_true", help="create missing tip bank tables")
    args = parser.parse_args()

    database_url = settings.database_url
    print(f"TIPBANK_DATABASE_URL={database_url}")
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("DB connection OK")
        if args.create_tables:
            init_db(bind=engine)
            print("tip bank tables created")
        existing = set(inspect(engine).get_table_names())
        missing = sorted(set(Base.metadata.tables) - existing)
        if missing:
            print("missing tables: " + ", ".join(missing))
        else:
            print("all tip bank tables present")
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)


if __name__ == "__main__":
    main()
