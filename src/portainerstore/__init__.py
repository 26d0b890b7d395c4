"""
portainerstore - client-side data layer for Portainer servers.

This package keeps a local, observable picture of a remote Portainer server
(endpoints, containers and stacks) and keeps it in sync with the network
and with an on-disk cache.

Features:
  - Cached listings rendered before the first network round trip
  - At-most-one refresh in flight per resource class, newer requests win
  - Session handling (setup, switch server, reset) with token storage
  - Endpoint selection that cascades into the container listing
  - Immutable snapshots pushed to subscribers on every change

Main Components:
  - store.py: PortainerStore, the session/selection state machine
  - refresh.py: Refresh handles and the per-class coordinator
  - state.py: Observable projection (snapshots and subscribers)
  - backend.py: Portainer API wrapper built on docker-py
  - cache.py: Durable YAML cache of the last known listings
  - secrets.py: Token storage keyed by server URL
  - config.py: YAML configuration and preferences
  - model.py: Data structures (Endpoint, Container, Stack, ...)

Dependencies:
  - docker>=7.0.0 (docker-py client)
  - PyYAML
  - Python 3.10+
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

__version__ = "0.1.0"

APP_NAME = "portainerstore"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _xdg_dir(env_var: str, fallback: Path) -> Path:
    value = os.environ.get(env_var)
    return Path(value) if value else fallback


def get_config_dir() -> Path:
    """Return XDG_CONFIG_HOME/portainerstore (defaults to ~/.config)."""
    return _xdg_dir('XDG_CONFIG_HOME', Path.home() / '.config') / APP_NAME


def get_data_dir() -> Path:
    """Return XDG_DATA_HOME/portainerstore (defaults to ~/.local/share)."""
    return _xdg_dir('XDG_DATA_HOME', Path.home() / '.local' / 'share') / APP_NAME


def get_log_path() -> str:
    """
    Get the log file path following XDG Base Directory spec.

    Returns XDG_DATA_HOME/portainerstore/logs/portainerstore.log with
    fallback to /tmp. Creates directory if it doesn't exist.

    Returns:
        str: Absolute path to log file (/tmp/portainerstore.log as fallback)
    """
    log_dir = get_data_dir() / 'logs'

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        return str(log_dir / f'{APP_NAME}.log')
    except (PermissionError, OSError):
        # Fallback to /tmp if permission denied
        return f'/tmp/{APP_NAME}.log'


def configure_logging(log_config: Optional["LogConfig"] = None) -> logging.Handler:
    """
    Attach a rotating file handler to the package logger.

    Args:
        log_config: Logging section of the configuration; defaults apply
            when omitted.

    Returns:
        The installed handler, so callers can remove it again.
    """
    from .config import LogConfig

    log_config = log_config or LogConfig()
    path = log_config.file_path or get_log_path()
    handler = RotatingFileHandler(
        path,
        maxBytes=log_config.max_size_mb * 1024 * 1024,
        backupCount=log_config.backup_count,
        encoding='utf-8',
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    package_logger = logging.getLogger(__name__)
    package_logger.setLevel(log_config.level.upper())
    package_logger.addHandler(handler)
    return handler
