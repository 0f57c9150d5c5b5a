"""
Application configuration.
This module defines the configuration settings for the Flask application, including database connection, token
signing, session cookie and password hashing settings. It uses environment variables for sensitive information and
defaults for development. In production, make sure to set the appropriate environment variables and secure the keys.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _engine_options(database_uri: str) -> dict:
    """
    Fixed-size pool for server databases.

    Requests wait for a free connection (no overflow) instead of being rejected.
    SQLite keeps the driver defaults.
    """
    if database_uri.startswith("sqlite"):
        return {}
    return {
        "pool_size": int(os.environ.get("DB_POOL_SIZE", "10")),
        "max_overflow": 0,
        "pool_timeout": int(os.environ.get("DB_POOL_TIMEOUT", "300")),
        "pool_pre_ping": True,
    }


class Config:
    """Base configuration shared by all environments."""

    # IMPORTANT: change this in production
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-change-me-please")

    # Database: SQLite for development (simple file in project folder)
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        f"sqlite:///{BASE_DIR / 'da_sheets.db'}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = _engine_options(SQLALCHEMY_DATABASE_URI)

    # Signed tokens
    JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY", SECRET_KEY)
    JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")
    ACCESS_TOKEN_TTL_MINUTES = int(os.environ.get("ACCESS_TOKEN_TTL_MINUTES", "15"))
    REFRESH_TOKEN_TTL_DAYS = int(os.environ.get("REFRESH_TOKEN_TTL_DAYS", "7"))

    # Passwords and refresh token secrets go through werkzeug's salted hashing.
    # The method string carries the cost factor, e.g. "scrypt:32768:8:1" or "pbkdf2:sha256:600000".
    PASSWORD_HASH_METHOD = os.environ.get("PASSWORD_HASH_METHOD", "scrypt:32768:8:1")

    # Revoke every session of a user when a validly signed refresh token matches no active record
    REVOKE_SESSIONS_ON_REFRESH_REUSE = _env_bool("REVOKE_SESSIONS_ON_REFRESH_REUSE", False)

    # Refresh token cookie
    REFRESH_COOKIE_NAME = "refresh_token"
    REFRESH_COOKIE_PATH = "/auth/refresh"
    REFRESH_COOKIE_SECURE = _env_bool("REFRESH_COOKIE_SECURE", False)
    REFRESH_COOKIE_SAMESITE = "Strict"

    # Listing
    DEFAULT_PAGE_SIZE = 20
    MAX_PAGE_SIZE = 100

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # App name (used in health output)
    APP_NAME = "DA Sheet Manager"


class ProductionConfig(Config):
    """Production: secure cookies always."""

    REFRESH_COOKIE_SECURE = True


class TestingConfig(Config):
    """Fast hashing and an in-memory database; tests usually override the database URI."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    SECRET_KEY = "test-secret"
    JWT_SECRET_KEY = "test-jwt-secret"
    PASSWORD_HASH_METHOD = "pbkdf2:sha256:1000"
    LOG_LEVEL = "WARNING"
