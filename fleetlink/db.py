import os
import logging
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from .models import Base
from .config import DATABASE_URL, TERMINALS_CSV

logger = logging.getLogger(__name__)

# SQLite connections are shared across the FastAPI threadpool
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=connect_args, future=True)
SessionLocal = sessionmaker(bind=engine)

def init_db(terminals_csv: str = TERMINALS_CSV):
    """Create all tables and load terminal reference data when a CSV is present."""
    Base.metadata.create_all(bind=engine)

    if terminals_csv and os.path.exists(terminals_csv):
        from .persistence import load_terminals_from_csv

        db = SessionLocal()
        try:
            count = load_terminals_from_csv(db, terminals_csv)
            logger.info("Loaded %d terminals from %s", count, terminals_csv)
        finally:
            db.close()

def get_db():
    """Dependency to get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
