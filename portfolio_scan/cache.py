"""
Django cache backend as the scanner's key/value store.

Best-effort: any backend failure is logged and reported as a miss or a
failed write, never raised to the scan.
"""

import json
import logging
from typing import Any, Optional

from django.core.cache import caches

from src.interfaces.cache_store import ICacheStore

logger = logging.getLogger(__name__)


class DjangoCacheStore(ICacheStore):
    """ICacheStore over one alias of settings.CACHES."""

    def __init__(self, alias: str = 'default', prefix: str = 'portfolio_scan'):
        self._alias = alias
        self._prefix = prefix

    @property
    def _cache(self):
        return caches[self._alias]

    def _key(self, key: str) -> str:
        return f'{self._prefix}:{key}'

    def get_json(self, key: str) -> Optional[Any]:
        try:
            raw = self._cache.get(self._key(key))
        except Exception as e:
            logger.warning(f'Cache read failed for {key}: {e}')
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f'Discarding undecodable cache entry {key}: {e}')
            return None

    def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        try:
            raw = json.dumps(value, sort_keys=True)
        except (TypeError, ValueError) as e:
            logger.warning(f'Value for {key} is not JSON serializable: {e}')
            return False
        return self.set_raw(key, raw, ttl)

    def set_raw(self, key: str, raw: str, ttl: Optional[int] = None) -> bool:
        try:
            self._cache.set(self._key(key), raw, timeout=ttl)
        except Exception as e:
            logger.warning(f'Cache write failed for {key}: {e}')
            return False
        return True
