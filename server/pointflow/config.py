"""Pointflow - Configuration"""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Generic SQLAlchemy URL, used when no Azure SQL server is configured
    database_url: str = "sqlite:///./pointflow.db"

    # Azure SQL Database (Entra ID token auth, no password)
    azure_sql_server: str = ""
    azure_sql_database: str = "pointflow"

    # Name recorded as actionOn for audit rows written by closures
    system_actor: str = "System"

    log_level: str = "INFO"

    # CORS origins (comma-separated URLs)
    cors_origins: str = "http://localhost:3000,http://localhost:5173"

    def get_cors_origins_list(self) -> list[str]:
        """Get list of allowed CORS origins."""
        if not self.cors_origins:
            return ["http://localhost:3000"]
        return [origin.strip() for origin in self.cors_origins.split(",")]

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    return Settings()
