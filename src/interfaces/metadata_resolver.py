from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class MetadataResult:
    metadata: Optional[dict] = None
    error: Optional[str] = None
    url: Optional[str] = None


class IMetadataResolver(ABC):
    """Interface for display-only token metadata lookups."""

    @abstractmethod
    def resolve_uri(self, uri: Optional[str], token_id: int, template: Optional[str] = None) -> MetadataResult:
        """Resolve token metadata; never raises, errors are returned in the result."""
        pass
