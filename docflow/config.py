
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="DOCFLOW_",
        extra="ignore",
    )

    app_env: str = "dev"
    database_url: str = "sqlite:///./docflow.db"
    # off when the schema is managed with `alembic upgrade head`
    auto_create_schema: bool = True

    log_level: str = "INFO"
    log_json: bool = True

    # comma separated
    cors_origins: str = "http://localhost:3000,http://localhost:5173"
    admin_roles: str = "admin"

    # SLA monitor
    scheduler_enabled: bool = True
    sla_check_interval_seconds: int = 300
    sla_lease_seconds: int = 240
    sla_default_warning_hours: float = 2.0
    reassign_extends_deadline: bool = False

    @property
    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def admin_roles_list(self) -> List[str]:
        return [r.strip() for r in self.admin_roles.split(",") if r.strip()]


settings = Settings()  # reads from env
