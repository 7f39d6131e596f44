"""Configuration management for the imgvault backup service."""
import os
from pathlib import Path
from functools import lru_cache
from urllib.parse import quote_plus

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file into os.environ at startup
# Priority: config/.env (Docker volume) > ./.env (local dev fallback)
_config_env = Path(os.environ.get("CONFIG_DIR", "./config")) / ".env"
if _config_env.exists():
    load_dotenv(_config_env, override=True)
else:
    load_dotenv(override=True)

# Resolve env_file path for Pydantic Settings
_env_file = str(_config_env) if _config_env.exists() else ".env"

SUPPORTED_DATABASE_TYPES = ("sqlite", "mysql")


class Settings(BaseSettings):
    """Application settings"""
    model_config = SettingsConfigDict(env_file=_env_file, extra="ignore")

    # API Server
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False
    log_level: str = "INFO"

    # Paths (can be overridden via environment variables for Docker)
    upload_dir: str = "./uploads"  # UPLOAD_DIR env var, root of local storage
    backups_dir: str = "./data/backup"  # BACKUPS_DIR env var
    temp_dir: str = "./data/temp"  # TEMP_DIR env var, staged uploads + restore scratch

    # Database
    database_type: str = "sqlite"  # "sqlite" or "mysql"
    sqlite_path: str = "./data/imgvault.db"
    mysql_host: str = "127.0.0.1"
    mysql_port: int = 3306
    mysql_user: str = "root"
    mysql_password: str = ""
    mysql_database: str = "imgvault"
    mysql_charset: str = "utf8mb4"
    database_url: str = ""  # Overrides the sync URL derived from the fields above
    database_echo: bool = False  # Log SQL statements

    # External dump/restore tools (MySQL only)
    mysqldump_path: str = "mysqldump"
    mysql_client_path: str = "mysql"
    mysqldump_extra_args: list[str] = []

    # Archives
    archive_legacy_encoding: str = "gbk"  # Entry names without the UTF-8 flag
    max_upload_size: int = 2 * 1024 * 1024 * 1024  # 2GB

    # Tasks left pending/running longer than this are failed on startup
    stale_task_grace_minutes: int = 60

    @property
    def effective_database_url(self) -> str:
        """Sync SQLAlchemy URL, used by background workers."""
        if self.database_url:
            return self.database_url
        if self.database_type == "mysql":
            return (
                f"mysql+pymysql://{quote_plus(self.mysql_user)}:{quote_plus(self.mysql_password)}"
                f"@{self.mysql_host}:{self.mysql_port}/{self.mysql_database}"
                f"?charset={self.mysql_charset}"
            )
        return f"sqlite:///{Path(self.sqlite_path).resolve()}"

    @property
    def effective_async_database_url(self) -> str:
        """Async SQLAlchemy URL, used by request handlers."""
        url = self.effective_database_url
        # sqlite:///... -> sqlite+aiosqlite:///...
        # mysql+pymysql://... -> mysql+aiomysql://...
        if url.startswith("sqlite:"):
            return url.replace("sqlite:", "sqlite+aiosqlite:", 1)
        return url.replace("mysql+pymysql://", "mysql+aiomysql://", 1)


@lru_cache()
def get_settings() -> Settings:
    return Settings()


# Module-level settings instance for convenience
settings = get_settings()
