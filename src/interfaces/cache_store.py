from abc import ABC, abstractmethod
from typing import Any, Optional


class ICacheStore(ABC):
    """
    Interface for the key/value cache substrate.

    Best-effort by contract: reads return None on any failure and writes
    return False instead of raising.
    """

    @abstractmethod
    def get_json(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        pass

    @abstractmethod
    def set_raw(self, key: str, raw: str, ttl: Optional[int] = None) -> bool:
        pass
