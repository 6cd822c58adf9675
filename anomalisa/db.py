from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base, Session

from .config import DATABASE_URL


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # SQLite file/memory DBs are shared with the threadpool FastAPI runs sync deps in
        return {"connect_args": {"check_same_thread": False}, "future": True}
    return {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 10,       # fail fast instead of hanging 30s
        "pool_pre_ping": True,
        "pool_recycle": 1800,
        "future": True,
    }


engine = create_engine(DATABASE_URL, **_engine_kwargs(DATABASE_URL))

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
)

# Base class for our ORM models
Base = declarative_base()


def get_db():
    """
    FastAPI dependency that yields a SQLAlchemy session and
    ensures it is closed after the request.
    """
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()
