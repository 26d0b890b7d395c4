"""
Token storage keyed by server URL.

Tokens live in a YAML mapping next to the configuration file. The file is
created with owner-only permissions. Any failure to read, parse or write the
file surfaces as SecretStoreFailure so callers can decide whether it is fatal.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml

from . import get_config_dir
from .errors import SecretStoreFailure

logger = logging.getLogger(__name__)


class SecretStore:
    """File-backed token store."""

    def __init__(self, directory: Optional[Union[str, Path]] = None, filename: str = "tokens.yaml"):
        self.directory = Path(directory) if directory else get_config_dir()
        self.path = self.directory / filename
        self._lock = threading.RLock()

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise SecretStoreFailure(f"Unable to read tokens: {e}") from e
        if not isinstance(data, dict):
            raise SecretStoreFailure(f"Token file {self.path} is not a mapping")
        return {str(k): str(v) for k, v in data.items()}

    def _write(self, data: Dict[str, str]) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix('.tmp')
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, 'w') as f:
                yaml.safe_dump(data, f, default_flow_style=False)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise SecretStoreFailure(f"Unable to write tokens: {e}") from e

    def get(self, url: str) -> Optional[str]:
        with self._lock:
            return self._read().get(url)

    def set(self, url: str, token: str) -> None:
        with self._lock:
            data = self._read()
            data[url] = token
            self._write(data)
        logger.debug(f"Saved token for {url}")

    def remove(self, url: str) -> None:
        with self._lock:
            data = self._read()
            if data.pop(url, None) is None:
                return
            self._write(data)
        logger.debug(f"Removed token for {url}")

    def list(self) -> List[str]:
        with self._lock:
            return sorted(self._read())
