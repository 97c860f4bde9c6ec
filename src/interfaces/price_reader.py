from abc import ABC, abstractmethod
from typing import List, Sequence


class IPriceReader(ABC):
    """Interface for reading current per-share prices from a pair contract."""

    @abstractmethod
    def get_prices(self, pair_contract: str, token_ids: Sequence[int]) -> List[int]:
        """Return one price per token id, in stablecoin base units per 1e18 shares."""
        pass
