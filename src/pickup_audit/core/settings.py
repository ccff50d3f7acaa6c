"""Application settings and configuration.

This module defines all configuration options for the pickup-point audit
service. Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Pickup Audit", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Database configuration
    database_url: str = Field(default="sqlite:///./pickup_audit.db", alias="DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")
    auto_create_tables: bool = Field(default=True, alias="AUTO_CREATE_TABLES")

    # Audit dispatcher sinks
    audit_stdout_enabled: bool = Field(default=True, alias="AUDIT_STDOUT_ENABLED")
    audit_stdout_filter: str = Field(default="", alias="APP_FILTER")
    audit_db_enabled: bool = Field(default=True, alias="AUDIT_DB_ENABLED")
    audit_batch_size: int = Field(default=5, ge=1, alias="AUDIT_BATCH_SIZE")
    audit_flush_timeout_seconds: float = Field(
        default=2.0, gt=0, alias="AUDIT_FLUSH_TIMEOUT_SECONDS"
    )
    audit_queue_size: int = Field(default=1000, ge=1, alias="AUDIT_QUEUE_SIZE")
    audit_methods: str = Field(default="POST,PUT,PATCH,DELETE", alias="AUDIT_METHODS")

    # Kafka delivery of outbox tasks
    kafka_brokers: str = Field(default="localhost:9092", alias="KAFKA_BROKERS")
    kafka_group_id: str = Field(default="audit-group", alias="KAFKA_GROUP_ID")
    kafka_topic: str = Field(default="audit-tasks", alias="KAFKA_TOPIC")
    kafka_publish_timeout_seconds: float = Field(
        default=5.0, gt=0, alias="KAFKA_PUBLISH_TIMEOUT_SECONDS"
    )

    # Outbox retry processor
    task_processor_enabled: bool = Field(default=True, alias="TASK_PROCESSOR_ENABLED")
    task_poll_interval_seconds: float = Field(
        default=1.0, gt=0, alias="TASK_POLL_INTERVAL_SECONDS"
    )
    task_batch_limit: int = Field(default=10, ge=1, alias="TASK_BATCH_LIMIT")
    task_max_attempts: int = Field(default=3, ge=1, alias="TASK_MAX_ATTEMPTS")
    task_retry_delay_seconds: float = Field(default=2.0, ge=0, alias="TASK_RETRY_DELAY_SECONDS")
    task_claim_locking: bool = Field(default=False, alias="TASK_CLAIM_LOCKING")
    task_stale_after_seconds: float = Field(
        default=300.0, gt=0, alias="TASK_STALE_AFTER_SECONDS"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def kafka_broker_list(self) -> list[str]:
        """Return the configured brokers as a list.

        Returns:
            Broker addresses split on commas, blanks removed
        """
        return [broker.strip() for broker in self.kafka_brokers.split(",") if broker.strip()]

    @property
    def audited_methods(self) -> frozenset[str]:
        """Return the upper-cased HTTP methods audited by the request hook."""
        return frozenset(
            method.strip().upper() for method in self.audit_methods.split(",") if method.strip()
        )


settings = Settings()
