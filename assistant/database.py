from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from assistant.config import settings

engine = create_engine(settings.database_url, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Create tables that do not exist yet."""
    import assistant.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
