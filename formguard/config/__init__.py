"""
Configuration package for the formguard engine.

Settings are read from the environment (and an optional .env file) through python-dotenv and
exposed as environment-specific configuration classes selected by ``get_config``.
"""

from formguard.config.settings import (
    BaseConfig,
    DevelopmentConfig,
    EnvironmentManager,
    ProductionConfig,
    TestingConfig,
    get_config,
)

__all__ = [
    'BaseConfig',
    'DevelopmentConfig',
    'EnvironmentManager',
    'ProductionConfig',
    'TestingConfig',
    'get_config'
]
