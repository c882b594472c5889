from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from supportdesk import settings

# Choose DB from env; default to local SQLite for dev
DATABASE_URL = settings.DATABASE_URL

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    DATABASE_URL,
    connect_args=connect_args,
    pool_pre_ping=True,
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()


def init_db():
    # models must be imported so their tables are registered on Base
    from supportdesk.storage import models  # noqa: F401
    Base.metadata.create_all(bind=engine)
