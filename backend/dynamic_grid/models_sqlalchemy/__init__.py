from sqlalchemy import create_engine
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from dynamic_grid.config import settings

# Central database: procedure registry, column metadata and saved column states.
DATABASE_URL = settings.DATABASE_URL

if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is required (central grid database).")

# Configure connection args based on database type
engine_kwargs = {}
if DATABASE_URL.startswith("sqlite"):
    engine_kwargs["connect_args"] = {"check_same_thread": False}
    if DATABASE_URL in ("sqlite://", "sqlite:///:memory:"):
        engine_kwargs["poolclass"] = StaticPool
else:
    if DATABASE_URL.startswith("postgresql"):
        engine_kwargs["connect_args"] = {
            "connect_timeout": 10,
            "keepalives": 1,
            "keepalives_idle": 30,
            "keepalives_interval": 10,
            "keepalives_count": 5,
            # Same per-statement bound the router applies to grid databases.
            "options": f"-c statement_timeout={settings.GRID_QUERY_TIMEOUT_SECONDS * 1000}",
        }
    elif DATABASE_URL.startswith("mssql"):
        engine_kwargs["connect_args"] = {"timeout": settings.GRID_QUERY_TIMEOUT_SECONDS, "login_timeout": 10}
    engine_kwargs.update(
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        pool_recycle=3600,
        pool_timeout=30,
    )

engine = create_engine(
    DATABASE_URL,
    echo=False,  # keep SQL logging off by default in production
    **engine_kwargs,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
