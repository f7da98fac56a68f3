# scripts/init_db.py
from sqlalchemy import inspect

from mindmate.db import create_db_and_tables, engine


def main() -> None:
    print("Using engine:", engine.url)
    create_db_and_tables()
    print("Tables now in DB:", sorted(inspect(engine).get_table_names()))


if __name__ == "__main__":
    main()
