"""
Settings plumbing for claude-session-repair.

Every setting is read from SESSION_REPAIR_* environment variables, optionally
from a .env file named by LOAD_ENV_FILE. Settings objects are built lazily so
importing the CLI never touches the environment.
"""

from __future__ import annotations

import os
import pathlib
from typing import TypeVar

import lazy_object_proxy
import pydantic_settings

T = TypeVar('T', bound='BaseRepairSettings')


class BaseRepairSettings(pydantic_settings.BaseSettings):
    """Environment-backed settings with the SESSION_REPAIR_ prefix."""

    model_config = pydantic_settings.SettingsConfigDict(
        env_prefix='SESSION_REPAIR_',
        env_file_encoding='utf-8',
        case_sensitive=True,  # SESSION_REPAIR_lock_timeout_seconds is a typo, not a setting
        extra='forbid',  # Unknown SESSION_REPAIR_* keys in a .env file are errors
    )


def get_settings(settings_class: type[T], env_file: str | None = None) -> T:
    """
    Build settings, reading a .env file only when one is named.

    Args:
        settings_class: Settings class to instantiate
        env_file: .env file path (default: $LOAD_ENV_FILE; '~' is expanded)

    Raises:
        FileNotFoundError: If the named .env file doesn't exist
    """
    env_file_path = env_file or os.getenv('LOAD_ENV_FILE')
    if not env_file_path:
        return settings_class(_env_file=None)

    resolved_path = pathlib.Path(env_file_path).expanduser().resolve()
    if not resolved_path.is_file():
        raise FileNotFoundError(f'Environment file not found: {resolved_path}')
    return settings_class(_env_file=resolved_path)


def lazy_settings(settings_class: type[T]) -> T:
    """Proxy that builds the settings on first attribute access."""
    return lazy_object_proxy.Proxy(lambda: get_settings(settings_class))
