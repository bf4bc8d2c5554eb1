import os
from typing import Mapping, Optional
from urllib.parse import quote

from pydantic import BaseModel, Field, field_validator

DEFAULT_QUEUE_NAME = "billing_queue"


class Settings(BaseModel):
    """
    Process configuration, read once from the environment at startup and
    handed to the publisher, consumer and store constructors.
    """

    # ---------------- RabbitMQ ----------------
    rabbit_host: str = "localhost"
    rabbit_port: int = Field(5672, gt=0)
    rabbit_user: str = "guest"
    rabbit_password: str = "guest"
    rabbit_vhost: str = "/"
    rabbit_url: Optional[str] = None
    rabbit_heartbeat: int = Field(600, ge=0)
    queue_name: str = DEFAULT_QUEUE_NAME
    connect_attempts: int = Field(10, gt=0)
    connect_backoff_unit: float = Field(1.0, ge=0)

    # ---------------- PostgreSQL ----------------
    db_host: str = "localhost"
    db_port: int = Field(5432, gt=0)
    db_user: str = "postgres"
    db_password: str = ""
    db_name: str = "orders"
    database_url: Optional[str] = None
    db_pool_min: int = Field(1, ge=1)
    db_pool_max: int = Field(5, ge=1)

    # ---------------- HTTP / timeouts ----------------
    gateway_port: int = Field(3000, gt=0)
    billing_app_port: int = Field(8080, gt=0)
    publish_timeout: float = Field(10.0, gt=0)
    store_timeout: float = Field(10.0, gt=0)
    shutdown_grace: float = Field(30.0, ge=0)

    log_level: str = "INFO"

    @field_validator("queue_name")
    @classmethod
    def _queue_name_not_blank(cls, v: str) -> str:
        return v.strip() or DEFAULT_QUEUE_NAME

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.strip().upper() or "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        mapping = {
            "rabbit_host": "RABBITMQ_HOST",
            "rabbit_port": "RABBITMQ_PORT",
            "rabbit_user": "RABBITMQ_USER",
            "rabbit_password": "RABBITMQ_PASSWORD",
            "rabbit_vhost": "RABBITMQ_VHOST",
            "rabbit_url": "RABBIT_URL",
            "rabbit_heartbeat": "RABBITMQ_HEARTBEAT",
            "queue_name": "RABBITMQ_QUEUE_NAME",
            "connect_attempts": "RABBITMQ_CONNECT_ATTEMPTS",
            "connect_backoff_unit": "RABBITMQ_CONNECT_BACKOFF",
            "db_host": "BILLING_DB_HOST",
            "db_port": "BILLING_DB_PORT",
            "db_user": "BILLING_DB_USER",
            "db_password": "BILLING_DB_PASSWORD",
            "db_name": "BILLING_DB_NAME",
            "database_url": "DATABASE_URL",
            "db_pool_min": "BILLING_DB_POOL_MIN",
            "db_pool_max": "BILLING_DB_POOL_MAX",
            "gateway_port": "API_GATEWAY_PORT",
            "billing_app_port": "BILLING_APP_PORT",
            "publish_timeout": "PUBLISH_TIMEOUT",
            "store_timeout": "STORE_TIMEOUT",
            "shutdown_grace": "SHUTDOWN_GRACE",
            "log_level": "LOG_LEVEL",
        }
        # empty variables count as unset, like the compose files leave them
        values = {field: env[var] for field, var in mapping.items() if env.get(var)}
        return cls(**values)

    def postgres_dsn(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql://{quote(self.db_user, safe='')}:{quote(self.db_password, safe='')}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )
