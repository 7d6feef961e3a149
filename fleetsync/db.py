from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from .models import Base
from .config import DATABASE_URL


def _connect_args(url: str) -> dict:
    # SQLite connections are handed between the event loop and worker code
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(DATABASE_URL, future=True, connect_args=_connect_args(DATABASE_URL))
SessionLocal = sessionmaker(bind=engine)


def init_db(bind=None):
    """Initialize the database by creating all tables."""
    Base.metadata.create_all(bind=bind or engine)


def get_db():
    """Dependency to get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
