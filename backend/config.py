"""Runtime settings loaded from the environment (and an optional .env file)."""

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load environment variables
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Application settings."""
    database_path: str = "family-tree.db"
    log_level: str = "INFO"
    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://localhost:5173"]
    )
    default_generations: int = Field(default=3, ge=0)
    max_generations: int = Field(default=20, ge=1)
    atomic_deletes: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from FAMILY_TREE_* environment variables."""
        values: dict = {
            "database_path": os.getenv("FAMILY_TREE_DB", "family-tree.db"),
            "log_level": os.getenv("FAMILY_TREE_LOG_LEVEL", "INFO").upper(),
            "atomic_deletes": _env_bool("FAMILY_TREE_ATOMIC_DELETES", True),
        }
        origins = os.getenv("FAMILY_TREE_CORS_ORIGINS")
        if origins:
            values["cors_origins"] = [o.strip() for o in origins.split(",") if o.strip()]
        if os.getenv("FAMILY_TREE_DEFAULT_GENERATIONS"):
            values["default_generations"] = int(os.environ["FAMILY_TREE_DEFAULT_GENERATIONS"])
        if os.getenv("FAMILY_TREE_MAX_GENERATIONS"):
            values["max_generations"] = int(os.environ["FAMILY_TREE_MAX_GENERATIONS"])
        return cls(**values)
