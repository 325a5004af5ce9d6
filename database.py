import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

import config

logger = logging.getLogger(__name__)

DATABASE_URL = config.DATABASE_URL

# Log connection target (redacted)
safe_url = DATABASE_URL.split("@")[-1] if "@" in DATABASE_URL else "local/sqlite"
logger.info(f"[DATABASE] Connecting to: ...@{safe_url}")

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, pool_pre_ping=True, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def init_db():
    """Create all tables"""
    import models  # noqa: F401  (registers the mappers)
    Base.metadata.create_all(bind=engine)
    logger.info("[DATABASE] Tables initialized")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
