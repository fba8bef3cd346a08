"""
Configuration validation and management for the order ledger service.

This module provides configuration validation, environment variable management,
and configuration loading with proper error handling and defaults. Ledger tuning
knobs (payment window, sweep batching, enumeration batch sizes) live here so the
engine never reads the environment directly.
"""

import os
from typing import Dict, Optional
from dataclasses import dataclass, field
from orderledger.core.exceptions import ConfigurationError
import logging

logger = logging.getLogger(__name__)


@dataclass
class DatabaseConfig:
    """Database configuration settings"""
    url: str
    max_pool_size: int = 10
    min_pool_size: int = 2
    max_idle_time_ms: int = 30000
    server_selection_timeout_ms: int = 5000
    connect_timeout_ms: int = 10000
    socket_timeout_ms: int = 45000
    retry_writes: bool = True
    write_concern: int = 1


@dataclass
class SecurityConfig:
    """Security configuration settings"""
    hmac_secret_key: str
    internal_api_secret: Optional[str] = None
    monitoring_api_key: Optional[str] = None
    max_webhook_age_seconds: int = 300


@dataclass
class LedgerConfig:
    """Write-path settings: store retries, payment window and expiry sweep"""
    payment_window_seconds: int = 900
    store_retry_attempts: int = 3
    store_retry_base_delay_ms: int = 100
    store_retry_max_delay_ms: int = 1000
    expiry_batch_limit: int = 100
    expiry_sub_batch_size: int = 10
    expiry_pause_ms: int = 200
    expiry_sweep_enabled: bool = False
    expiry_interval_seconds: int = 60


@dataclass
class EnumerationConfig:
    """Read-path settings: counting, export modes and the count cache"""
    count_fast_path_limit: int = 500
    count_batch_size: int = 1000
    count_cache_ttl_seconds: int = 30
    export_large_threshold: int = 25000
    export_concurrency: int = 4
    export_large_batch_size: int = 800
    export_batch_delay_ms: int = 100
    export_memory_ceiling_mb: int = 512


@dataclass
class LoggingConfig:
    """Logging configuration settings"""
    level: str = "INFO"
    log_requests: bool = True
    log_responses: bool = False


@dataclass
class AppConfig:
    """Main application configuration"""
    database: DatabaseConfig
    security: SecurityConfig
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    enumeration: EnumerationConfig = field(default_factory=EnumerationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    environment: str = "development"
    debug: bool = False


class ConfigValidator:
    """Validates and loads application configuration"""

    REQUIRED_ENV_VARS = {
        "MONGO_URL": "mongodb://localhost:27017/orderledger",
        "HMAC_SECRET_KEY": "your-secret-key-here",
    }

    OPTIONAL_ENV_VARS = {
        "INTERNAL_API_SECRET": None,
        "MONITORING_API_KEY": None,
        "MAX_WEBHOOK_AGE_SECONDS": "300",
        "ENVIRONMENT": "development",
        "DEBUG": "false",
        "LOG_LEVEL": "INFO",
        "LOG_REQUESTS": "true",
        "LOG_RESPONSES": "false",
        "MONGO_MAX_POOL_SIZE": "10",
        "MONGO_MIN_POOL_SIZE": "2",
        "MONGO_MAX_IDLE_TIME_MS": "30000",
        "MONGO_SERVER_SELECTION_TIMEOUT_MS": "5000",
        "MONGO_CONNECT_TIMEOUT_MS": "10000",
        "MONGO_SOCKET_TIMEOUT_MS": "45000",
        "MONGO_RETRY_WRITES": "true",
        "MONGO_WRITE_CONCERN": "1",
        "PAYMENT_WINDOW_SECONDS": "900",
        "STORE_RETRY_ATTEMPTS": "3",
        "STORE_RETRY_BASE_DELAY_MS": "100",
        "STORE_RETRY_MAX_DELAY_MS": "1000",
        "EXPIRY_BATCH_LIMIT": "100",
        "EXPIRY_SUB_BATCH_SIZE": "10",
        "EXPIRY_PAUSE_MS": "200",
        "EXPIRY_SWEEP_ENABLED": "false",
        "EXPIRY_INTERVAL_SECONDS": "60",
        "COUNT_FAST_PATH_LIMIT": "500",
        "COUNT_BATCH_SIZE": "1000",
        "COUNT_CACHE_TTL_SECONDS": "30",
        "EXPORT_LARGE_THRESHOLD": "25000",
        "EXPORT_CONCURRENCY": "4",
        "EXPORT_LARGE_BATCH_SIZE": "800",
        "EXPORT_BATCH_DELAY_MS": "100",
        "EXPORT_MEMORY_CEILING_MB": "512",
    }

    @classmethod
    def validate_environment(cls) -> Dict[str, str]:
        """
        Validate all required and optional environment variables

        Returns:
            Dict containing all validated environment variables

        Raises:
            ConfigurationError: If validation fails
        """
        errors = []
        config = {}

        for var_name, default_value in cls.REQUIRED_ENV_VARS.items():
            value = os.getenv(var_name)
            if not value:
                errors.append(f"Required environment variable {var_name} is not set")
                config[var_name] = default_value
            else:
                config[var_name] = value

        for var_name, default_value in cls.OPTIONAL_ENV_VARS.items():
            config[var_name] = os.getenv(var_name, default_value)

        if errors:
            raise ConfigurationError(
                "Configuration validation failed: " + "; ".join(errors),
                config_key="environment_validation",
            )

        return config

    @classmethod
    def validate_mongo_url(cls, url: str) -> str:
        """Validate MongoDB URL format"""
        if not url.startswith(("mongodb://", "mongodb+srv://")):
            raise ConfigurationError(
                "Invalid MongoDB URL format",
                config_key="MONGO_URL",
                expected_value="mongodb://localhost:27017/orderledger"
            )
        return url

    @classmethod
    def validate_boolean(cls, value: str, default: bool = False) -> bool:
        """Validate boolean string values"""
        if value is None:
            return default
        return value.lower() in ("true", "1", "yes", "on")

    @classmethod
    def validate_integer(cls, value: str, default: int, min_val: int = None, max_val: int = None) -> int:
        """Validate integer values with optional bounds"""
        try:
            int_val = int(value)
            if min_val is not None and int_val < min_val:
                raise ValueError(f"Value must be >= {min_val}")
            if max_val is not None and int_val > max_val:
                raise ValueError(f"Value must be <= {max_val}")
            return int_val
        except (ValueError, TypeError):
            return default

    @classmethod
    def load_config(cls) -> AppConfig:
        """
        Load and validate complete application configuration

        Returns:
            AppConfig: Validated application configuration

        Raises:
            ConfigurationError: If configuration validation fails
        """
        logger.info("Loading application configuration...")

        env_vars = cls.validate_environment()
        integer = cls.validate_integer

        database_config = DatabaseConfig(
            url=cls.validate_mongo_url(env_vars["MONGO_URL"]),
            max_pool_size=integer(env_vars["MONGO_MAX_POOL_SIZE"], 10, 1, 100),
            min_pool_size=integer(env_vars["MONGO_MIN_POOL_SIZE"], 2, 1, 50),
            max_idle_time_ms=integer(env_vars["MONGO_MAX_IDLE_TIME_MS"], 30000, 1000, 300000),
            server_selection_timeout_ms=integer(env_vars["MONGO_SERVER_SELECTION_TIMEOUT_MS"], 5000, 1000, 30000),
            connect_timeout_ms=integer(env_vars["MONGO_CONNECT_TIMEOUT_MS"], 10000, 1000, 60000),
            socket_timeout_ms=integer(env_vars["MONGO_SOCKET_TIMEOUT_MS"], 45000, 1000, 120000),
            retry_writes=cls.validate_boolean(env_vars["MONGO_RETRY_WRITES"], True),
            write_concern=integer(env_vars["MONGO_WRITE_CONCERN"], 1, 1, 5),
        )

        security_config = SecurityConfig(
            hmac_secret_key=env_vars["HMAC_SECRET_KEY"],
            internal_api_secret=env_vars.get("INTERNAL_API_SECRET"),
            monitoring_api_key=env_vars.get("MONITORING_API_KEY"),
            max_webhook_age_seconds=integer(env_vars["MAX_WEBHOOK_AGE_SECONDS"], 300, 10, 3600),
        )

        ledger_config = LedgerConfig(
            payment_window_seconds=integer(env_vars["PAYMENT_WINDOW_SECONDS"], 900, 60, 86400),
            store_retry_attempts=integer(env_vars["STORE_RETRY_ATTEMPTS"], 3, 1, 10),
            store_retry_base_delay_ms=integer(env_vars["STORE_RETRY_BASE_DELAY_MS"], 100, 0, 5000),
            store_retry_max_delay_ms=integer(env_vars["STORE_RETRY_MAX_DELAY_MS"], 1000, 0, 30000),
            expiry_batch_limit=integer(env_vars["EXPIRY_BATCH_LIMIT"], 100, 1, 1000),
            expiry_sub_batch_size=integer(env_vars["EXPIRY_SUB_BATCH_SIZE"], 10, 1, 100),
            expiry_pause_ms=integer(env_vars["EXPIRY_PAUSE_MS"], 200, 0, 10000),
            expiry_sweep_enabled=cls.validate_boolean(env_vars["EXPIRY_SWEEP_ENABLED"], False),
            expiry_interval_seconds=integer(env_vars["EXPIRY_INTERVAL_SECONDS"], 60, 5, 3600),
        )

        enumeration_config = EnumerationConfig(
            count_fast_path_limit=integer(env_vars["COUNT_FAST_PATH_LIMIT"], 500, 10, 5000),
            count_batch_size=integer(env_vars["COUNT_BATCH_SIZE"], 1000, 10, 5000),
            count_cache_ttl_seconds=integer(env_vars["COUNT_CACHE_TTL_SECONDS"], 30, 0, 600),
            export_large_threshold=integer(env_vars["EXPORT_LARGE_THRESHOLD"], 25000, 100, 10000000),
            export_concurrency=integer(env_vars["EXPORT_CONCURRENCY"], 4, 1, 8),
            export_large_batch_size=integer(env_vars["EXPORT_LARGE_BATCH_SIZE"], 800, 10, 5000),
            export_batch_delay_ms=integer(env_vars["EXPORT_BATCH_DELAY_MS"], 100, 0, 10000),
            export_memory_ceiling_mb=integer(env_vars["EXPORT_MEMORY_CEILING_MB"], 512, 64, 65536),
        )

        logging_config = LoggingConfig(
            level=env_vars["LOG_LEVEL"],
            log_requests=cls.validate_boolean(env_vars["LOG_REQUESTS"], True),
            log_responses=cls.validate_boolean(env_vars["LOG_RESPONSES"], False),
        )

        app_config = AppConfig(
            database=database_config,
            security=security_config,
            ledger=ledger_config,
            enumeration=enumeration_config,
            logging=logging_config,
            environment=env_vars["ENVIRONMENT"],
            debug=cls.validate_boolean(env_vars["DEBUG"], False),
        )

        logger.info("Configuration loaded successfully")
        logger.info(f"Environment: {app_config.environment}")
        logger.info(
            f"Ledger: payment_window={ledger_config.payment_window_seconds}s, "
            f"sweep_enabled={ledger_config.expiry_sweep_enabled}, "
            f"export_threshold={enumeration_config.export_large_threshold}"
        )

        return app_config


# Global configuration instance
_app_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """
    Get the application configuration

    Returns:
        AppConfig: Application configuration

    Raises:
        ConfigurationError: If configuration is not loaded
    """
    global _app_config

    if _app_config is None:
        raise ConfigurationError(
            "Configuration not loaded. Call load_config() first.",
            config_key="config_not_loaded"
        )

    return _app_config


def load_config() -> AppConfig:
    """
    Load and validate application configuration

    Returns:
        AppConfig: Loaded and validated configuration
    """
    global _app_config

    _app_config = ConfigValidator.load_config()
    return _app_config


def set_config(config: Optional[AppConfig]) -> None:
    """Install an already built configuration (used by tests and scripts)."""
    global _app_config

    _app_config = config
