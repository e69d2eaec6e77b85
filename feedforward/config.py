"""
config.py
~~~~~~~~~

Environment-driven settings for the API server and model store.

Variables:
    MODEL_DIR     directory holding the model database (default ``models``)
    LOG_LEVEL     logging level name (default ``INFO``)
    FLASK_ENV     ``production`` quiets third-party loggers
    HOST, PORT    bind address for the server
    CORS_ORIGINS  allowed origins, ``*`` by default
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import ConfigurationError


@dataclass(frozen=True)
class Settings:
    """Resolved server settings."""

    model_dir: str = 'models'
    log_level: str = 'INFO'
    flask_env: str = 'development'
    host: str = '0.0.0.0'
    port: int = 5000
    cors_origins: str = '*'

    @property
    def is_production(self) -> bool:
        return self.flask_env == 'production'

    @property
    def database_path(self) -> str:
        return os.path.join(self.model_dir, 'models.db')

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        """
        Read settings from ``environ`` (``os.environ`` by default).

        Raises:
            ConfigurationError: If PORT is not a valid port number
        """
        env = os.environ if environ is None else environ

        port_str = env.get('PORT', str(cls.port))
        try:
            port = int(port_str)
        except ValueError:
            raise ConfigurationError(f"PORT must be an integer, got {port_str!r}")
        if not 0 < port < 65536:
            raise ConfigurationError(f"PORT out of range: {port}")

        return cls(
            model_dir=env.get('MODEL_DIR', cls.model_dir),
            log_level=env.get('LOG_LEVEL', cls.log_level).upper(),
            flask_env=env.get('FLASK_ENV', cls.flask_env),
            host=env.get('HOST', cls.host),
            port=port,
            cors_origins=env.get('CORS_ORIGINS', cls.cors_origins),
        )
