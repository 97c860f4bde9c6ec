import threading

from django.apps import AppConfig
from django.conf import settings


class PortfolioScanConfig(AppConfig):
    """
    Wires the scanner's collaborators from settings.

    The cache client and the job manager are built once per process here and
    handed to every scanner explicitly.
    """

    name = 'portfolio_scan'
    verbose_name = 'Sport.fun portfolio scan'

    def ready(self):
        self._lock = threading.Lock()
        self._job_manager = None
        self._cache = None

    @property
    def cache_store(self):
        from .cache import DjangoCacheStore

        with self._lock:
            if self._cache is None:
                self._cache = DjangoCacheStore(getattr(settings, 'PORTFOLIO_SCAN_CACHE_ALIAS', 'default'))
            return self._cache

    def build_scanner(self):
        from src.api.chain_client import AlchemyClient
        from src.api.metadata_client import MetadataClient

        from .conf import scan_settings
        from .scanner import PortfolioScanner

        conf = scan_settings()
        provider = AlchemyClient(
            api_key=getattr(settings, 'ALCHEMY_API_KEY', None),
            rpc_url=getattr(settings, 'BASE_RPC_URL', None),
            timeout=conf.rpc_timeout_seconds,
        )
        return PortfolioScanner(
            provider=provider,
            settings=conf,
            cache=self.cache_store,
            metadata_resolver=MetadataClient(),
        )

    @property
    def job_manager(self):
        from .background import ScanJobManager
        from .conf import scan_settings

        cache = self.cache_store
        with self._lock:
            if self._job_manager is None:
                conf = scan_settings()
                self._job_manager = ScanJobManager(
                    scanner_factory=self.build_scanner,
                    cache=cache,
                    job_ttl_seconds=conf.job_ttl_seconds,
                    result_ttl_seconds=conf.result_ttl_seconds,
                )
            return self._job_manager
