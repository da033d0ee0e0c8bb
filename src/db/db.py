from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from db.models import Base


def create_db_engine(database_url: str, *, echo: bool = False) -> Engine:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url, echo=echo)
    Base.metadata.create_all(engine)
    return engine


def create_session_factory(database_url: str, *, echo: bool = False) -> sessionmaker[Session]:
    return sessionmaker(create_db_engine(database_url, echo=echo))

