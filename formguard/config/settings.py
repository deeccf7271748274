"""
Input Security Engine Configuration Module

This module provides the configuration infrastructure for the formguard input security
engine, implementing environment-driven settings for the rate limiter backends, upload
validation defaults and structured logging.

Configuration is loaded from environment variables using python-dotenv so that deployments
can keep secrets such as the Redis storage URI outside of source control.

Key Features:
- python-dotenv environment variable management with typed accessors
- Environment-specific configuration inheritance (development, testing, production)
- Rate limiter backend selection (distributed limits/Redis storage or in-memory backup)
- Upload size and content scanning thresholds
- Structured logging level and format selection

Dependencies:
- python-dotenv 1.0+ for environment variable management
"""

import os
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Type

from dotenv import load_dotenv, find_dotenv

from formguard.utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

MEGABYTE = 1024 * 1024


class EnvironmentManager:
    """
    Environment variable management using python-dotenv with typed accessors.

    Values already present in the process environment always win over values
    read from the .env file.
    """

    def __init__(self, env_file: Optional[str] = None):
        """
        Initialize environment manager and load the .env file if one exists.

        Args:
            env_file: Optional path to .env file, defaults to auto-discovery
        """
        self.env_file = env_file or find_dotenv(usecwd=True)
        self.logger = logging.getLogger(f"{__name__}.EnvironmentManager")
        self._load_environment_variables()
        self._validate_environment_file_security()

    def _load_environment_variables(self) -> None:
        """
        Load environment variables from .env file with error handling.

        Raises:
            ConfigurationError: When environment loading fails
        """
        if not self.env_file:
            return

        try:
            load_dotenv(self.env_file, override=False)
        except OSError as e:
            raise ConfigurationError(
                f"Failed to load environment variables: {str(e)}",
                details={'env_file': str(self.env_file)}
            )

    def _validate_environment_file_security(self) -> None:
        """Warn when the .env file is readable by other users."""
        if not self.env_file or not os.path.exists(self.env_file):
            return

        if os.name == 'posix':
            file_mode = oct(Path(self.env_file).stat().st_mode)[-3:]
            if file_mode not in ['600', '644']:
                self.logger.warning(
                    f"Environment file permissions ({file_mode}) may be too permissive. "
                    f"Recommended: 600 for production security."
                )

    @staticmethod
    def _coerce(value: str, var_type: type) -> Any:
        if var_type == bool:
            return value.strip().lower() in ('true', '1', 'yes', 'on')
        elif var_type == int:
            return int(value)
        elif var_type == float:
            return float(value)
        return var_type(value)

    def get_required_env(self, key: str, var_type: type = str) -> Any:
        """
        Get required environment variable with type validation.

        Raises:
            ConfigurationError: When required variable is missing or invalid
        """
        value = os.getenv(key)
        if value is None:
            raise ConfigurationError(f"Required environment variable '{key}' not found")

        try:
            return self._coerce(value, var_type)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Environment variable '{key}' has invalid type: {str(e)}")

    def get_optional_env(self, key: str, default: Any = None, var_type: type = str) -> Any:
        """
        Get optional environment variable with default value and type validation.

        Args:
            key: Environment variable name
            default: Default value if variable is not set
            var_type: Expected variable type for validation

        Returns:
            Environment variable value or default
        """
        value = os.getenv(key)
        if value is None:
            return default

        try:
            return self._coerce(value, var_type)
        except (ValueError, TypeError):
            self.logger.warning(f"Invalid type for '{key}', using default: {default}")
            return default


class BaseConfig:
    """
    Base configuration shared by every environment.

    Environment-specific subclasses override the ``_configure_*`` hooks rather
    than re-reading the environment themselves.
    """

    ENVIRONMENT_NAME = 'production'

    def __init__(self, env_manager: Optional[EnvironmentManager] = None):
        self.env_manager = env_manager or EnvironmentManager()
        self._configure_base_settings()
        self._configure_rate_limit_settings()
        self._configure_upload_settings()
        self._configure_logging_settings()
        self._validate_configuration()

    def _configure_base_settings(self) -> None:
        self.ENVIRONMENT = self.ENVIRONMENT_NAME
        self.APP_NAME = self.env_manager.get_optional_env('APP_NAME', 'formguard')

    def _configure_rate_limit_settings(self) -> None:
        """Configure the distributed rate limiter and the in-memory backup."""
        self.RATELIMIT_STORAGE_URI = self.env_manager.get_optional_env('RATELIMIT_STORAGE_URI', '')
        self.RATELIMIT_DISTRIBUTED_DISABLED = self.env_manager.get_optional_env(
            'RATELIMIT_DISTRIBUTED_DISABLED', False, bool
        )
        # Delays eviction of abandoned records past the active window
        self.RATELIMIT_GRACE_PERIOD_SECONDS = self.env_manager.get_optional_env(
            'RATELIMIT_GRACE_PERIOD_SECONDS', 300, int
        )
        self.RATELIMIT_PENALTY_THRESHOLD = self.env_manager.get_optional_env(
            'RATELIMIT_PENALTY_THRESHOLD', 3, int
        )

    def _configure_upload_settings(self) -> None:
        self.UPLOAD_MAX_SIZE = self.env_manager.get_optional_env('UPLOAD_MAX_SIZE', 5 * MEGABYTE, int)
        self.CONTENT_SCAN_MAX_FILE_SIZE = self.env_manager.get_optional_env(
            'CONTENT_SCAN_MAX_FILE_SIZE', 20 * MEGABYTE, int
        )

    def _configure_logging_settings(self) -> None:
        self.LOG_LEVEL = self.env_manager.get_optional_env('LOG_LEVEL', 'INFO').upper()
        self.LOG_FORMAT = self.env_manager.get_optional_env('LOG_FORMAT', 'json').lower()

    def _validate_configuration(self) -> None:
        """
        Validate configuration values that would otherwise fail much later.

        Raises:
            ConfigurationError: When a value is out of range
        """
        if self.RATELIMIT_GRACE_PERIOD_SECONDS < 0:
            raise ConfigurationError("RATELIMIT_GRACE_PERIOD_SECONDS must not be negative")
        if self.RATELIMIT_PENALTY_THRESHOLD < 1:
            raise ConfigurationError("RATELIMIT_PENALTY_THRESHOLD must be at least 1")
        if self.UPLOAD_MAX_SIZE <= 0:
            raise ConfigurationError("UPLOAD_MAX_SIZE must be positive")
        if self.LOG_FORMAT not in ('json', 'console'):
            raise ConfigurationError(
                f"Unsupported LOG_FORMAT '{self.LOG_FORMAT}'. Expected 'json' or 'console'"
            )

    @property
    def distributed_rate_limiting_enabled(self) -> bool:
        """Whether the distributed backend should be used."""
        return bool(self.RATELIMIT_STORAGE_URI) and not self.RATELIMIT_DISTRIBUTED_DISABLED

    @property
    def admin_operations_allowed(self) -> bool:
        """Administrative limit resets are restricted to non-production operation."""
        return self.ENVIRONMENT in ('development', 'testing')

    def to_dict(self) -> Dict[str, Any]:
        """Return the public settings, with the storage URI credentials masked."""
        settings = {
            key: value for key, value in vars(self).items()
            if key.isupper()
        }
        if settings.get('RATELIMIT_STORAGE_URI') and '@' in settings['RATELIMIT_STORAGE_URI']:
            scheme, _, rest = settings['RATELIMIT_STORAGE_URI'].partition('://')
            settings['RATELIMIT_STORAGE_URI'] = f"{scheme}://***@{rest.split('@', 1)[1]}"
        return settings


class DevelopmentConfig(BaseConfig):
    """Development configuration. Always uses the in-memory backup limiter."""

    ENVIRONMENT_NAME = 'development'

    def _configure_rate_limit_settings(self) -> None:
        super()._configure_rate_limit_settings()
        self.RATELIMIT_DISTRIBUTED_DISABLED = True

    def _configure_logging_settings(self) -> None:
        super()._configure_logging_settings()
        self.LOG_LEVEL = self.env_manager.get_optional_env('LOG_LEVEL', 'DEBUG').upper()
        self.LOG_FORMAT = self.env_manager.get_optional_env('LOG_FORMAT', 'console').lower()


class TestingConfig(BaseConfig):
    """Testing configuration with deterministic, local-only rate limiting."""

    ENVIRONMENT_NAME = 'testing'

    def _configure_rate_limit_settings(self) -> None:
        super()._configure_rate_limit_settings()
        self.RATELIMIT_DISTRIBUTED_DISABLED = True

    def _configure_logging_settings(self) -> None:
        super()._configure_logging_settings()
        self.LOG_FORMAT = 'console'


class ProductionConfig(BaseConfig):
    """Production configuration."""

    ENVIRONMENT_NAME = 'production'

    def _validate_configuration(self) -> None:
        super()._validate_configuration()
        if not self.RATELIMIT_STORAGE_URI:
            logger.warning(
                "RATELIMIT_STORAGE_URI is not set - rate limiting will use the in-memory backup"
            )


config_map: Dict[str, Type[BaseConfig]] = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,

    # Aliases for convenience
    'dev': DevelopmentConfig,
    'test': TestingConfig,
    'prod': ProductionConfig
}


def get_config(environment: Optional[str] = None) -> BaseConfig:
    """
    Build the configuration for the specified environment.

    Args:
        environment: Target environment name (defaults to FORMGUARD_ENV)

    Returns:
        Configuration instance for the specified environment

    Raises:
        ConfigurationError: If environment is not supported
    """
    if environment is None:
        environment = os.getenv('FORMGUARD_ENV', 'production')

    environment = environment.lower()
    config_class = config_map.get(environment)
    if config_class is None:
        raise ConfigurationError(
            f"Unsupported environment '{environment}'. "
            f"Supported environments: {sorted(set(config_map))}"
        )

    return config_class()


__all__ = [
    'EnvironmentManager',
    'BaseConfig',
    'DevelopmentConfig',
    'TestingConfig',
    'ProductionConfig',
    'config_map',
    'get_config',
    'MEGABYTE'
]
