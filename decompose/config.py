"""Configuration settings for the decomposition engine."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    db_host: str = "localhost"
    db_port: int = 15432
    db_name: str = "decompose"
    db_user: str = "agent"
    db_password: str = "agent"
    db_url: str | None = None  # full async URL override, e.g. sqlite+aiosqlite:///local.db
    db_echo: bool = False

    # Redis
    redis_url: str = "redis://localhost:16379/0"
    redis_locks_enabled: bool = False
    redis_publish_enabled: bool = False
    redis_lock_timeout_seconds: int = 30

    # Generation backend
    generation_backend: str = "heuristic"  # 'heuristic' or 'http'
    generation_api_url: str = "http://localhost:4096"
    generation_timeout_seconds: float = 120.0
    circuit_breaker_failure_threshold: int = 5
    circuit_breaker_success_threshold: int = 2
    circuit_breaker_recovery_seconds: float = 30.0

    # Engine defaults
    default_complexity_threshold: float = 0.7
    default_max_iterations: int = 3
    optimization_max_iterations: int = 5
    max_task_depth: int = 32
    chain_max_depth: int = 100
    conflict_retries: int = 3

    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        """SQLAlchemy database URL."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        if self.db_url:
            return self.db_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    class Config:
        env_prefix = "DECOMPOSE_"
        env_file = ".env"


# Global settings instance
settings = Settings()
