from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # App Config
    APP_NAME: str = "Ontology Engine"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: str = "development"

    # Database
    DATABASE_URL: str = "sqlite:///./ontology.db"
    DB_ECHO: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False
    LOG_FILE: str | None = None

    # Learning loop
    AUTO_LOOP_INTERVAL_SECONDS: float = 3600.0
    MAX_OBSERVATIONS_PER_CYCLE: int = 50
    MAX_PROMOTIONS_PER_CYCLE: int = 20
    MAX_SYNTHESES_PER_CYCLE: int = 10
    MAX_CONFLICTS_PER_CYCLE: int = 10
    ENABLE_DECAY: bool = True
    ENABLE_PATTERN_DETECTION: bool = True
    ENABLE_AUTO_CONFLICT_RESOLUTION: bool = True

    # Synthesis
    SYNTHESIS_DEFAULT_CONFIDENCE: float = 0.7

    # Pattern mining
    PATTERN_MIN_CONFIDENCE: float = 0.5
    PATTERN_MIN_CO_OCCURRENCE: int = 3
    PATTERN_TEMPORAL_WINDOW_DAYS: float = 30.0

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", env_prefix="ONTOLOGY_", extra="ignore"
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
