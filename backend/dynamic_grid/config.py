from pydantic_settings import BaseSettings
from typing import Dict, List, Optional
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    SECRET_KEY: str = "your-secret-key-change-in-production"
    JWT_SECRET: Optional[str] = None
    ALGORITHM: str = "HS256"
    DEBUG: bool = False

    # Default/central database. Holds the procedure registry, column metadata
    # and saved column states, and is the fallback for every grid procedure
    # whose DatabaseName is missing or not configured below.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")

    # Named target databases for procedure routing, e.g.
    #   GRID_DATABASES='{"Planning": "postgresql://.../planning", "Legacy": "mssql+pytds://..."}'
    # Ids are matched case-insensitively against StoredProcedureRegistry.database_name.
    GRID_DATABASES: Dict[str, str] = {}

    # Upper bound for a single grid/mutation/dropdown call against a target database.
    GRID_QUERY_TIMEOUT_SECONDS: int = 30

    # Registry + column metadata cache. Entries are invalidated explicitly by the
    # admin endpoints; the TTL only bounds staleness for out-of-band SQL edits.
    # 0 disables time-based expiry.
    GRID_METADATA_CACHE_TTL_SECONDS: int = 300

    # Lenient by default: unknown filter columns are treated as text and unknown
    # operators fall back to the type's default operator. When True both are
    # rejected with a validation error instead.
    GRID_STRICT_FILTERS: bool = False

    # Drill-down breadcrumb depth. When unlimited, GRID_DRILL_DOWN_MAX_DEPTH is ignored.
    GRID_DRILL_DOWN_UNLIMITED: bool = False
    GRID_DRILL_DOWN_MAX_DEPTH: int = 5

    # Roles allowed to register procedures and edit column metadata.
    GRID_ADMIN_ROLES: List[str] = ["Admin"]

    ALLOWED_ORIGINS: str = "http://localhost:4200,http://localhost:5173"

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def secret_key(self) -> str:
        return self.JWT_SECRET or self.SECRET_KEY

    @property
    def drill_down_max_depth(self) -> Optional[int]:
        """Effective drill-down depth limit (None when unlimited)."""
        if self.GRID_DRILL_DOWN_UNLIMITED:
            return None
        return self.GRID_DRILL_DOWN_MAX_DEPTH


settings = Settings()
