"""Process configuration.

Values are read from an optional YAML file and then overridden by
``CAMPUSFIX_*`` environment variables, e.g. ``CAMPUSFIX_SUPABASE_URL``.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from campusfix.core.logger import campusfix_logger as logger

ENV_PREFIX = 'CAMPUSFIX_'
DEFAULT_CONFIG_FILE = 'campusfix.yaml'


class CampusFixConfig(BaseModel):
    """Settings for the backend connection, local persistence and views."""

    supabase_url: str = 'http://127.0.0.1:54321'
    supabase_anon_key: str = ''
    # Bearer token sent to the store; falls back to the anon key.
    access_token: str | None = None
    request_timeout: float = 10.0

    realtime_enabled: bool = True
    subscribe_timeout: float = 10.0
    heartbeat_interval: float = 30.0

    file_store: Literal['local', 'memory'] = 'local'
    file_store_path: str = Field(default_factory=lambda: str(Path.home() / '.campusfix'))

    default_page_size: int = 20
    max_page_size: int = 100
    error_retention: Literal['retain', 'clear'] = 'retain'

    buckets: dict[str, str] = Field(
        default_factory=lambda: {
            'issues': 'issue-images',
            'reports': 'reports',
            'events': 'event-images',
        }
    )

    @field_validator('supabase_url')
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip('/')

    @property
    def rest_url(self) -> str:
        return f'{self.supabase_url}/rest/v1'

    @property
    def storage_url(self) -> str:
        return f'{self.supabase_url}/storage/v1'

    @property
    def realtime_url(self) -> str:
        base = self.supabase_url.replace('https://', 'wss://', 1).replace(
            'http://', 'ws://', 1
        )
        return f'{base}/realtime/v1/websocket'

    def bucket_for(self, collection: str) -> str:
        return self.buckets.get(collection, collection)


def _env_overrides(environ: dict[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for name in CampusFixConfig.model_fields:
        if name == 'buckets':
            continue
        value = environ.get(f'{ENV_PREFIX}{name.upper()}')
        if value is not None:
            overrides[name] = value
    return overrides


def load_campusfix_config(
    config_file: str | None = None,
    environ: dict[str, str] | None = None,
) -> CampusFixConfig:
    """Build the config from ``config_file`` (if present) and the environment."""
    environ = dict(os.environ) if environ is None else environ
    config_file = config_file or environ.get(f'{ENV_PREFIX}CONFIG_FILE', DEFAULT_CONFIG_FILE)

    data: dict[str, Any] = {}
    path = Path(config_file)
    if path.exists():
        try:
            loaded = yaml.safe_load(path.read_text(encoding='utf-8'))
        except yaml.YAMLError as e:
            logger.warning(f'Failed to parse config file {path}: {e}')
            loaded = None
        if isinstance(loaded, dict):
            data.update(loaded)
        elif loaded is not None:
            logger.warning(f'Ignoring config file {path}: expected a mapping')

    data.update(_env_overrides(environ))

    try:
        return CampusFixConfig(**data)
    except ValidationError as e:
        logger.error(f'Invalid configuration: {e}')
        raise
