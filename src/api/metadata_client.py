import base64
import json
import logging
import threading
from typing import Dict, Optional

import requests

from src.interfaces.metadata_resolver import IMetadataResolver, MetadataResult

logger = logging.getLogger(__name__)


class MetadataClient(IMetadataResolver):
    """
    Best-effort HTTP resolver for player-share metadata.

    Used only for display. Supports ERC-1155 `{id}` URI substitution,
    ipfs:// URIs and inline base64 JSON data URIs.
    """

    IPFS_GATEWAY = "https://ipfs.io/ipfs/"
    DATA_JSON_PREFIX = "data:application/json;base64,"
    TIMEOUT = 10

    def __init__(self, session: Optional[requests.Session] = None):
        self._session = session or requests.Session()
        self._session.headers.update({
            "Accept": "application/json",
            "User-Agent": "SportfunPortfolioScanner/1.0"
        })
        self._cache: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def resolve_uri(self, uri: Optional[str], token_id: int, template: Optional[str] = None) -> MetadataResult:
        url = self.build_url(uri, token_id, template)
        if not url:
            return MetadataResult(error="No metadata URI available")

        if url.startswith(self.DATA_JSON_PREFIX):
            try:
                payload = base64.b64decode(url[len(self.DATA_JSON_PREFIX):])
                return MetadataResult(metadata=json.loads(payload), url=None)
            except (ValueError, TypeError) as e:
                return MetadataResult(error=f"Invalid inline metadata: {e}")

        with self._lock:
            cached = self._cache.get(url)
        if cached is not None:
            return MetadataResult(metadata=cached, url=url)

        try:
            response = self._session.get(url, timeout=self.TIMEOUT)
            response.raise_for_status()
            metadata = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.debug(f"Metadata fetch failed for {url}: {e}")
            return MetadataResult(error=str(e), url=url)

        if not isinstance(metadata, dict):
            return MetadataResult(error="Metadata is not a JSON object", url=url)

        with self._lock:
            self._cache[url] = metadata
        return MetadataResult(metadata=metadata, url=url)

    @classmethod
    def build_url(cls, uri: Optional[str], token_id: int, template: Optional[str] = None) -> Optional[str]:
        """
        Pick the URL to fetch.

        An on-chain ERC-1155 URI wins and gets the 64-char lowercase hex id, as
        the standard requires; the fallback template gets the decimal token id.
        """
        if not uri:
            return template.replace("{id}", str(token_id)) if template else None
        url = uri.replace("{id}", format(token_id, "064x"))
        if url.startswith("ipfs://"):
            url = cls.IPFS_GATEWAY + url[len("ipfs://"):]
        return url
