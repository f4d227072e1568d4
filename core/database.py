"""
SQLAlchemy database connection and setup
PostgreSQL in production, SQLite for local development and tests
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from core.config import DATABASE_URL, logger


def build_engine(url: str):
    """Create an engine with pool settings appropriate for the backend."""
    if url.startswith("sqlite"):
        # Request workers and timer threads share the file; wait on locks instead of failing
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False,
        )
    return create_engine(
        url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=10,
        max_overflow=20,
        echo=False,  # Set to True for SQL query logging in development
    )


engine = build_engine(DATABASE_URL)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for ORM models
Base = declarative_base()


def get_db():
    """
    Dependency for FastAPI routes to get database session
    Usage:
        @router.get("/items")
        def list_items(db: Session = Depends(get_db)):
            ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """
    Initialize database tables
    Call this on application startup
    """
    # Import models so they register on Base.metadata
    import models.user  # noqa: F401
    import models.blindbox  # noqa: F401
    import models.coupon  # noqa: F401
    import models.order  # noqa: F401
    import models.recharge  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
    logger.info("[db] schema ready")
