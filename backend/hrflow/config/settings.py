"""Application Settings - Central Configuration"""
from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict

DEVELOPMENT_ENVIRONMENTS = ("development", "dev", "local")


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "hr_workflows_dev"
    # Multi-document transactions need a replica set; standalone dev servers can turn this off
    mongo_transactions: bool = True

    # Auth (bearer JWT issued by the identity provider)
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    jwt_audience: str = ""

    # Server
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    # Logging
    logs_path: str = "./logs"
    log_level: str = "INFO"

    # CORS - set to "*" to allow all origins
    cors_origins: str = "*"

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_interval_seconds: int = 60
    escalation_default_days: int = 3

    # Engine
    hr_privileged_roles: str = "super_admin,tenant_admin,hr_manager"
    transition_matching: str = "outcome_aware"  # outcome_aware | legacy
    max_hierarchy_hops: int = 2

    # Environment
    environment: str = "development"
    debug: bool = True

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins string to list"""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def hr_privileged_roles_list(self) -> List[str]:
        """Parse HR-privileged roles string to list"""
        return [role.strip() for role in self.hr_privileged_roles.split(",") if role.strip()]

    @property
    def verifies_token_signatures(self) -> bool:
        """Bearer token signatures are only skipped in local development environments"""
        return self.environment.lower() not in DEVELOPMENT_ENVIRONMENTS

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.environment.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
