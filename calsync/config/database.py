"""Database configuration and connection setup"""
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool

from calsync.config.settings import get_settings


@lru_cache()
def get_engine():
    """Create database engine with connection pooling"""
    settings = get_settings()
    if settings.DATABASE_URL.startswith("sqlite"):
        return create_engine(settings.DATABASE_URL, connect_args={"check_same_thread": False})
    return create_engine(
        settings.DATABASE_URL,
        poolclass=QueuePool,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_pre_ping=True,
        echo=False,
    )


SessionLocal = sessionmaker(autocommit=False, autoflush=False)


def get_db():
    """Database dependency for FastAPI and Celery tasks"""
    db = SessionLocal(bind=get_engine())
    try:
        yield db
    finally:
        db.close()


def create_tables():
    """Create all calendar sync tables"""
    from calsync.models import Base

    print("Creating all tables...")
    Base.metadata.create_all(bind=get_engine())
    print("✅ Database tables created successfully!")


if __name__ == "__main__":
    create_tables()
