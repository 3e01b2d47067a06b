"""
Audit Orchestration Engine
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'audit_engine_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,   # recycle connections every 5 min
    }

    # Redis (search-result cache + rate limiter storage)
    REDIS_URL = os.getenv("REDIS_URL", "memory://")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Rate limits for the audit blueprints
    AUDIT_AI_RATE_LIMIT = os.getenv("AUDIT_AI_RATE_LIMIT", "30 per minute")
    AUDIT_WRITE_RATE_LIMIT = os.getenv("AUDIT_WRITE_RATE_LIMIT", "120 per minute")

    # ── Engine tunables ──────────────────────────────────────────────────
    # Risk scoring: cap on data points loaded / rendered into the prompt
    AUDIT_RISK_DATA_POINT_LIMIT = int(os.getenv("AUDIT_RISK_DATA_POINT_LIMIT", "100"))
    AUDIT_RISK_PROMPT_POINTS = int(os.getenv("AUDIT_RISK_PROMPT_POINTS", "20"))

    # ReAct loop bounds
    AUDIT_REACT_MAX_ITERATIONS = int(os.getenv("AUDIT_REACT_MAX_ITERATIONS", "5"))
    AUDIT_REACT_HARD_LIMIT = int(os.getenv("AUDIT_REACT_HARD_LIMIT", "10"))
    AUDIT_REACT_WALL_CLOCK_SECONDS = float(os.getenv("AUDIT_REACT_WALL_CLOCK_SECONDS", "120"))

    # Knowledge store / copilot
    AUDIT_KB_SEARCH_CACHE_TTL = int(os.getenv("AUDIT_KB_SEARCH_CACHE_TTL", "60"))
    AUDIT_COPILOT_CONTEXT_DOCS = int(os.getenv("AUDIT_COPILOT_CONTEXT_DOCS", "5"))
    AUDIT_COMPLIANCE_CONTEXT_DOCS = int(os.getenv("AUDIT_COMPLIANCE_CONTEXT_DOCS", "20"))

    # Prompt overrides (YAML files); built-in templates are used when absent
    AUDIT_PROMPTS_DIR = os.getenv("AUDIT_PROMPTS_DIR", os.path.join(basedir, "prompts"))


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    REDIS_URL = "memory://"


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
