"""
Centralized configuration for the rate card service.
"""

import os
from typing import Dict, Any


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Base configuration."""

    SECRET_KEY = os.getenv('FLASK_SECRET_KEY', 'dev-secret-key-change-in-production')

    # Database
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///ratecards.db')

    # Cache / key-value store
    REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/3')

    ALLOWED_ORIGINS = os.getenv('ALLOWED_ORIGINS', 'http://localhost:3000').split(',')

    # Upload limit for CSV imports (5 MB)
    MAX_CONTENT_LENGTH = int(os.getenv('MAX_UPLOAD_BYTES', 5 * 1024 * 1024))

    # Payout rules
    INCLUDE_TCS_IN_PAYOUT = _env_bool('INCLUDE_TCS_IN_PAYOUT', False)
    DEFAULT_GST_PERCENT = 18
    DEFAULT_TCS_PERCENT = 1

    # Flattened CSV layout supports slab1..slabN columns
    MAX_FLATTENED_SLABS = int(os.getenv('MAX_FLATTENED_SLABS', 5))

    # Marketplace OAuth tokens
    MARKETPLACE_TOKEN_TTL_SECONDS = int(os.getenv('MARKETPLACE_TOKEN_TTL_SECONDS', 3600))

    # Logging
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    LOG_DIR = os.getenv('LOG_DIR', 'logs')

    @classmethod
    def validate(cls) -> Dict[str, Any]:
        """Validate the configuration and return errors and warnings."""
        errors = []
        warnings = []

        if not cls.DATABASE_URL:
            errors.append("DATABASE_URL is required")

        if cls.MAX_FLATTENED_SLABS < 1:
            errors.append("MAX_FLATTENED_SLABS must be at least 1")

        if cls.MARKETPLACE_TOKEN_TTL_SECONDS <= 0:
            errors.append("MARKETPLACE_TOKEN_TTL_SECONDS must be positive")

        if cls.SECRET_KEY == 'dev-secret-key-change-in-production':
            warnings.append("SECRET_KEY uses the default value - change it in production")

        if cls.INCLUDE_TCS_IN_PAYOUT:
            warnings.append("INCLUDE_TCS_IN_PAYOUT is enabled - expected payouts will deduct TCS")

        return {
            'errors': errors,
            'warnings': warnings,
            'is_valid': len(errors) == 0
        }


class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True
    TESTING = False


class TestingConfig(Config):
    """Test configuration."""
    DEBUG = True
    TESTING = True
    DATABASE_URL = 'sqlite:///:memory:'
    INCLUDE_TCS_IN_PAYOUT = False


class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False
    TESTING = False

    @classmethod
    def validate(cls) -> Dict[str, Any]:
        """Stricter validation for production."""
        result = super().validate()

        if cls.SECRET_KEY == 'dev-secret-key-change-in-production':
            result['errors'].append("SECRET_KEY must be changed in production")

        if cls.DATABASE_URL.startswith('sqlite'):
            result['errors'].append("SQLite cannot serialize concurrent imports - use PostgreSQL in production")

        if any('localhost' in origin for origin in cls.ALLOWED_ORIGINS):
            result['warnings'].append("ALLOWED_ORIGINS contains localhost")

        result['is_valid'] = len(result['errors']) == 0
        return result


def get_config():
    """Return the configuration class matching FLASK_ENV."""
    env = os.getenv('FLASK_ENV', 'development').lower()

    config_map = {
        'development': DevelopmentConfig,
        'testing': TestingConfig,
        'production': ProductionConfig
    }

    return config_map.get(env, DevelopmentConfig)
