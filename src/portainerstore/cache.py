"""
Durable cache of the last known Portainer listings.

This module keeps the most recent endpoints, containers and stacks on disk
so the store can show them before the network answers, or without network
at all.

Features:
- One YAML file per resource class under the cache directory
- Full replace on every save (stale IDs never linger)
- Atomic writes (temp file + rename)
- Thread-safe operations with RLock
- Cache statistics and monitoring

Architecture:
- LocalCache: Main cache interface
- Records are plain dicts produced by the model's to_record()
- Loaded values are sorted and flagged with is_stored=True
- Containers remember the endpoint they were fetched under
"""

import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from . import get_data_dir
from .model import Container, Endpoint, ResourceClass, Stack, sorted_resources

logger = logging.getLogger(__name__)

CACHE_FORMAT_VERSION = 1


class LocalCache:
    """Thread-safe on-disk cache."""

    def __init__(self, directory: Optional[Union[str, Path]] = None):
        self.directory = Path(directory) if directory else get_data_dir() / "cache"
        self._lock = threading.RLock()
        self._stats = {
            'loads': 0,
            'saves': 0,
            'failures': 0,
        }

    def _path(self, resource: ResourceClass) -> Path:
        return self.directory / f"{resource.value}.yaml"

    def _read(self, resource: ResourceClass) -> Dict[str, Any]:
        path = self._path(resource)
        with self._lock:
            self._stats['loads'] += 1
            if not path.exists():
                return {}
            try:
                with open(path, 'r') as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                self._stats['failures'] += 1
                logger.warning(f"Failed to read cached {resource.value}: {e}")
                return {}
        if not isinstance(data, dict) or data.get('version') != CACHE_FORMAT_VERSION:
            logger.warning(f"Ignoring cached {resource.value} in unknown format")
            return {}
        return data

    def _write(self, resource: ResourceClass, data: Dict[str, Any]) -> None:
        path = self._path(resource)
        data = {'version': CACHE_FORMAT_VERSION, **data}
        with self._lock:
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                tmp_path = path.with_suffix('.tmp')
                with open(tmp_path, 'w') as f:
                    yaml.safe_dump(data, f, default_flow_style=False)
                os.replace(tmp_path, path)
            except OSError:
                self._stats['failures'] += 1
                raise
            self._stats['saves'] += 1

    def _load_items(self, resource: ResourceClass, factory) -> List:
        records = self._read(resource).get('items') or []
        items = []
        for record in records:
            try:
                items.append(factory(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed cached {resource.value} record: {e}")
        logger.debug(f"Loaded {len(items)} cached {resource.value}")
        return sorted_resources(items)

    def load_endpoints(self) -> List[Endpoint]:
        return self._load_items(ResourceClass.ENDPOINTS, Endpoint.from_record)

    def load_containers(self, endpoint_id: Optional[int] = None) -> List[Container]:
        """
        Load cached containers.

        Args:
            endpoint_id: When given, containers cached for a different
                endpoint are not returned.
        """
        if endpoint_id is not None:
            cached_for = self._read(ResourceClass.CONTAINERS).get('endpoint_id')
            if cached_for != endpoint_id:
                logger.debug(f"Cached containers belong to endpoint {cached_for}, not {endpoint_id}")
                return []
        return self._load_items(ResourceClass.CONTAINERS, Container.from_record)

    def load_containers_endpoint_id(self) -> Optional[int]:
        return self._read(ResourceClass.CONTAINERS).get('endpoint_id')

    def load_stacks(self) -> List[Stack]:
        return self._load_items(ResourceClass.STACKS, Stack.from_record)

    def save_endpoints(self, endpoints: List[Endpoint]) -> None:
        self._write(ResourceClass.ENDPOINTS, {'items': [e.to_record() for e in endpoints]})
        logger.debug(f"Saved {len(endpoints)} endpoints")

    def save_containers(self, containers: List[Container], endpoint_id: Optional[int]) -> None:
        self._write(ResourceClass.CONTAINERS, {
            'endpoint_id': endpoint_id,
            'items': [c.to_record() for c in containers],
        })
        logger.debug(f"Saved {len(containers)} containers for endpoint {endpoint_id}")

    def save_stacks(self, stacks: List[Stack]) -> None:
        self._write(ResourceClass.STACKS, {'items': [s.to_record() for s in stacks]})
        logger.debug(f"Saved {len(stacks)} stacks")

    def clear(self) -> None:
        """Remove every cached listing."""
        with self._lock:
            for resource in (ResourceClass.ENDPOINTS, ResourceClass.CONTAINERS, ResourceClass.STACKS):
                try:
                    self._path(resource).unlink()
                except FileNotFoundError:
                    pass
        logger.debug("Cache completely cleared")

    def get_stats(self) -> Dict[str, int]:
        """Get cache statistics."""
        with self._lock:
            return dict(self._stats)
