"""Environment-driven defaults for the app factory.

Values come from the process environment (``.env`` is loaded by the package
import); ``create_app(config)`` overrides win over these.
"""
from __future__ import annotations
import os
from typing import Any, Dict

TRUTHY = {'1', 'true', 'yes', 'on'}


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in TRUTHY


def load_settings() -> Dict[str, Any]:
    return {
        'JWT_SECRET_KEY': os.getenv('JWT_SECRET_KEY', 'dev-secret'),
        'DATABASE_URL': os.getenv('DATABASE_URL', 'sqlite:///dev.db'),
        'LOG_LEVEL': os.getenv('LOG_LEVEL', 'INFO').upper(),
        # Run the access sync protocol once during create_app
        'ACCESS_SYNC_ON_STARTUP': env_flag('ACCESS_SYNC_ON_STARTUP'),
    }
