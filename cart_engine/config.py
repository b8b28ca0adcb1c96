"""
Configuration management for the cart engine.
Loads settings from environment variables and AWS Secrets Manager.
"""
import os
import json
import logging
import boto3
from typing import Optional

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Config:
    """Application configuration"""

    # Application settings
    APP_PORT: int = int(os.getenv("APP_PORT", "8000"))
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "storefront-cart")
    REGION: str = os.getenv("REGION", "ap-southeast-1")

    # Redis settings
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_AUTH_TOKEN: Optional[str] = os.getenv("REDIS_AUTH_TOKEN")
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    REDIS_USE_SSL: bool = _env_bool("REDIS_USE_SSL", "true")

    # Redis connection settings
    REDIS_SOCKET_CONNECT_TIMEOUT: int = 5
    REDIS_SOCKET_TIMEOUT: int = 5
    REDIS_RETRY_ON_TIMEOUT: bool = True
    REDIS_MAX_CONNECTIONS: int = 50

    # Durable cart storage
    STORAGE_BACKEND: str = os.getenv("STORAGE_BACKEND", "redis")  # redis | memory
    CART_STORAGE_KEY: str = os.getenv("CART_STORAGE_KEY", "cart-storage")
    CART_BACKUP_KEY: str = os.getenv("CART_BACKUP_KEY", "cart-backup")
    CART_TTL_SECONDS: int = int(os.getenv("CART_TTL_SECONDS", str(7 * 24 * 60 * 60)))  # 7 days default
    BACKUP_TTL_SECONDS: int = int(os.getenv("BACKUP_TTL_SECONDS", str(1 * 24 * 60 * 60)))  # 1 day

    # Pricing authority
    PRICING_API_URL: str = os.getenv("PRICING_API_URL", "http://localhost:3000/api")
    PRICING_API_TIMEOUT_SECONDS: float = float(os.getenv("PRICING_API_TIMEOUT_SECONDS", "10"))

    # Promotional evaluation
    EVALUATION_DEBOUNCE_MS: int = int(os.getenv("EVALUATION_DEBOUNCE_MS", "300"))

    # Per-process session cache
    SESSION_IDLE_TTL_SECONDS: int = int(os.getenv("SESSION_IDLE_TTL_SECONDS", str(30 * 60)))  # 30 minutes
    MAX_SESSIONS: int = int(os.getenv("MAX_SESSIONS", "10000"))

    @classmethod
    def debounce_seconds(cls) -> float:
        return cls.EVALUATION_DEBOUNCE_MS / 1000

    @classmethod
    def load_redis_secrets(cls) -> None:
        """Load Redis authentication token from AWS Secrets Manager"""
        if cls.REDIS_AUTH_TOKEN:
            return  # Already loaded from environment

        secret_name = os.getenv("REDIS_SECRET_NAME")
        if not secret_name:
            return  # No secret name provided, use no auth

        try:
            client = boto3.client("secretsmanager", region_name=cls.REGION)
            response = client.get_secret_value(SecretId=secret_name)
            secret_data = json.loads(response["SecretString"])

            cls.REDIS_AUTH_TOKEN = secret_data.get("auth_token")
            if "endpoint" in secret_data:
                cls.REDIS_HOST = secret_data["endpoint"]
        except Exception as e:
            logger.warning(f"Could not load Redis secrets from Secrets Manager: {e}")
            # Continue without auth token (may fail on connection)

# Load secrets at module import
Config.load_redis_secrets()
