from .chain_provider import IChainDataProvider
from .cache_store import ICacheStore
from .metadata_resolver import IMetadataResolver, MetadataResult
from .price_reader import IPriceReader

__all__ = ["IChainDataProvider", "ICacheStore", "IMetadataResolver", "MetadataResult", "IPriceReader"]
