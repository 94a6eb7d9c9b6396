"""
Screen Configuration Hub - Configuration Management

This module handles all service settings including Redis connections,
cache tiers, version retention, backup scheduling, health thresholds
and notification delivery.
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def parse_bucket_list(v: str | list[float]) -> list[float]:
    """Parse histogram buckets from a comma-separated string or a list.

    Ensures the return type is always a sorted list[float].
    """
    if isinstance(v, str):
        v = [float(part) for part in v.split(",") if part.strip()]
    return sorted(float(item) for item in v)


class RedisSettings(BaseSettings):
    """Redis configuration settings for the shared cache tier and durable records"""

    redis_host: str = Field(default="localhost", validation_alias="REDIS_HOST")
    redis_port: int = Field(default=6379, validation_alias="REDIS_PORT")
    redis_password: str | None = Field(default=None, validation_alias="REDIS_PASSWORD")
    redis_db: int = Field(default=0, validation_alias="REDIS_DB")

    redis_socket_timeout: int = Field(default=5, validation_alias="REDIS_SOCKET_TIMEOUT")
    redis_socket_connect_timeout: int = Field(default=5, validation_alias="REDIS_SOCKET_CONNECT_TIMEOUT")

    @property
    def redis_url(self) -> str:
        """Generate Redis connection URL"""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


class DistributionSettings(BaseSettings):
    """Document distribution and cache tier settings"""

    store_backend: str = Field(default="redis", validation_alias="STORE_BACKEND")
    key_prefix: str = Field(default="config:", validation_alias="CONFIG_KEY_PREFIX")
    publish_topic: str = Field(default="config.updated", validation_alias="CONFIG_PUBLISH_TOPIC")

    # Cache tiers
    memory_cache_max_entries: int = Field(default=500, validation_alias="MEMORY_CACHE_MAX_ENTRIES")
    memory_cache_ttl_seconds: int = Field(default=60, validation_alias="MEMORY_CACHE_TTL")
    shared_cache_ttl_seconds: int = Field(default=3600, validation_alias="SHARED_CACHE_TTL")
    cache_refresh_interval_seconds: int = Field(default=300, validation_alias="CACHE_REFRESH_INTERVAL")
    cache_refresh_enabled: bool = Field(default=True, validation_alias="CACHE_REFRESH_ENABLED")

    # Circuit breaker around the persistent store
    circuit_failure_threshold: int = Field(default=5, validation_alias="CIRCUIT_FAILURE_THRESHOLD")
    circuit_reset_timeout_seconds: float = Field(default=30.0, validation_alias="CIRCUIT_RESET_TIMEOUT")

    @field_validator("store_backend")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        if v.lower() not in ("redis", "memory"):
            raise ValueError("Store backend must be one of: redis, memory")
        return v.lower()

    @field_validator(
        "memory_cache_max_entries",
        "memory_cache_ttl_seconds",
        "shared_cache_ttl_seconds",
        "cache_refresh_interval_seconds",
        "circuit_failure_threshold",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


class VersioningSettings(BaseSettings):
    """Version history retention settings"""

    max_versions_per_config: int = Field(default=10, validation_alias="MAX_VERSIONS_PER_CONFIG")
    version_history_ttl_seconds: int = Field(default=604800, validation_alias="VERSION_HISTORY_TTL")  # 7 days

    @field_validator("max_versions_per_config")
    @classmethod
    def validate_max_versions(cls, v: int) -> int:
        if v < 1 or v > 1000:
            raise ValueError("Max versions per config must be between 1 and 1000")
        return v

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


class BackupSettings(BaseSettings):
    """Backup scheduling and retention settings"""

    backup_enabled: bool = Field(default=True, validation_alias="BACKUP_ENABLED")
    backup_interval_seconds: int = Field(default=21600, validation_alias="BACKUP_INTERVAL")  # 6 hours
    max_backups: int = Field(default=24, validation_alias="MAX_BACKUPS")
    backup_ttl_seconds: int = Field(default=604800, validation_alias="BACKUP_TTL")  # 7 days
    restore_item_timeout_seconds: float = Field(default=10.0, validation_alias="RESTORE_ITEM_TIMEOUT")

    @field_validator("backup_interval_seconds", "max_backups")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator("restore_item_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0 or v > 300:
            raise ValueError("Restore item timeout must be between 0 and 300 seconds")
        return v

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


class HealthSettings(BaseSettings):
    """Health monitoring and alerting settings"""

    health_enabled: bool = Field(default=True, validation_alias="HEALTH_ENABLED")
    health_check_interval_seconds: int = Field(default=30, validation_alias="HEALTH_CHECK_INTERVAL")
    health_status_ttl_seconds: int = Field(default=300, validation_alias="HEALTH_STATUS_TTL")
    alert_history_ttl_seconds: int = Field(default=604800, validation_alias="ALERT_HISTORY_TTL")  # 7 days
    check_timeout_seconds: float = Field(default=10.0, validation_alias="HEALTH_CHECK_TIMEOUT")

    @field_validator("health_check_interval_seconds")
    @classmethod
    def validate_interval(cls, v: int) -> int:
        if v < 1 or v > 3600:
            raise ValueError("Health check interval must be between 1 and 3600 seconds")
        return v

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


class MetricsSettings(BaseSettings):
    """Metrics aggregation settings"""

    # Kept as a comma-separated string so the env value needs no JSON quoting
    latency_buckets_csv: str = Field(
        default="0.1,0.25,0.5,1,2.5,5,10", validation_alias="METRICS_LATENCY_BUCKETS"
    )

    @field_validator("latency_buckets_csv")
    @classmethod
    def validate_buckets(cls, v: str) -> str:
        try:
            buckets = parse_bucket_list(v)
        except ValueError as e:
            raise ValueError(f"Histogram buckets must be numeric: {e}") from e
        if not buckets:
            raise ValueError("At least one histogram bucket is required")
        return v

    @property
    def latency_buckets(self) -> list[float]:
        """Sorted latency histogram bucket boundaries"""
        return parse_bucket_list(self.latency_buckets_csv)

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


class NotificationSettings(BaseSettings):
    """Alert notification delivery settings"""

    gotify_url: str | None = Field(default=None, validation_alias="GOTIFY_URL")
    gotify_token: str | None = Field(default=None, validation_alias="GOTIFY_TOKEN")
    http_timeout_seconds: int = Field(default=30, validation_alias="HTTP_TIMEOUT")
    notification_record_ttl_seconds: int = Field(default=86400, validation_alias="NOTIFICATION_RECORD_TTL")

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


class LoggingSettings(BaseSettings):
    """Logging configuration settings"""

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_format: str = Field(default="json", validation_alias="LOG_FORMAT")

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v.lower() not in ("json", "console"):
            raise ValueError("Log format must be one of: json, console")
        return v.lower()

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


class ApplicationSettings(BaseSettings):
    """Main application settings combining all configuration sections"""

    # Environment
    environment: str = Field(default="development", validation_alias="ENVIRONMENT")
    app_version: str = Field(default="1.0.0", validation_alias="APP_VERSION")
    debug: bool = Field(default=False, validation_alias="DEBUG")

    # Component settings
    redis: RedisSettings = Field(default_factory=RedisSettings)
    distribution: DistributionSettings = Field(default_factory=DistributionSettings)
    versioning: VersioningSettings = Field(default_factory=VersioningSettings)
    backup: BackupSettings = Field(default_factory=BackupSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @property
    def is_development(self) -> bool:
        """Check if running in development mode"""
        return self.environment.lower() == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode"""
        return self.environment.lower() == "production"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


@lru_cache
def get_settings() -> ApplicationSettings:
    """Get cached application settings instance"""
    return ApplicationSettings()
