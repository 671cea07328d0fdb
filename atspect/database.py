from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from atspect.core.config import settings

# Support both PostgreSQL (hosted backend) and SQLite via centralized settings
DATABASE_URL = settings.backend.database_url

if DATABASE_URL.startswith("postgresql"):
    engine = create_engine(DATABASE_URL, pool_pre_ping=True)
else:
    # SQLite configuration for local development/testing
    engine = create_engine(
        DATABASE_URL, connect_args={"check_same_thread": False}
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db(bind=None):
    """
    Registers all domain models and initializes the database schema.
    This should be called during the application startup lifespan.
    """
    # Import all models to ensure they are registered with Base.metadata before create_all
    from atspect.models import resume  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)
