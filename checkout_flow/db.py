"""
Database connection management.

Only the reference backends (SqlAccountDirectory, SandboxPaymentGateway,
LocalOtpProvider) use the database. Tables are created by init_db() at app
startup, not at import.

Environment variables:
    - DATABASE_URL: SQLAlchemy URL (default: sqlite:///./checkout_flow.db)
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from .config import DATABASE_URL
from .models import Base

# SQLite connections are used from worker threads
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    DATABASE_URL,
    pool_pre_ping=True,
    echo=False,
    connect_args=_connect_args,
)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


def init_db() -> None:
    """Create the reference backend tables."""
    Base.metadata.create_all(bind=engine)
