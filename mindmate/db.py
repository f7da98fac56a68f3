from pathlib import Path

from sqlmodel import SQLModel, create_engine, Session

from mindmate import config
from mindmate import models  # noqa: F401  registers tables before create_all()

DATABASE_URL = config.settings.DATABASE_URL

# SQLite needs this connect arg and a real folder
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
if DATABASE_URL.startswith("sqlite:///") and ":memory:" not in DATABASE_URL:
    Path(DATABASE_URL[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)

engine = create_engine(DATABASE_URL, connect_args=connect_args)


def create_db_and_tables() -> None:
    SQLModel.metadata.create_all(engine)


def get_session():
    with Session(engine) as session:
        yield session
