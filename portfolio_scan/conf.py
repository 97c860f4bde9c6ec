"""Typed access to settings.PORTFOLIO_SCAN."""

from dataclasses import dataclass, fields

from django.conf import settings

DEFAULTS = {
    'DEFAULT_DEADLINE_SECONDS': 8.0,
    'RECEIPT_CONCURRENCY': 4,
    'METADATA_CONCURRENCY': 8,
    'TRANSFER_STREAMS': 4,
    'PRICE_BATCH_SIZE': 100,
    'RETRY_ATTEMPTS': 3,
    'RETRY_BASE_DELAY': 0.25,
    'URI_RETRY_ATTEMPTS': 2,
    'URI_RETRY_BASE_DELAY': 0.2,
    'RESULT_TTL_SECONDS': 3600,
    'RECEIPT_TTL_SECONDS': 7 * 24 * 3600,
    'JOB_TTL_SECONDS': 3600,
    'MISMATCH_SAMPLE_LIMIT': 8,
    'METADATA_TEMPLATE': 'https://api.sport.fun/athletes/{id}',
    'RPC_TIMEOUT_SECONDS': 30,
}


@dataclass(frozen=True)
class ScanSettings:
    default_deadline_seconds: float
    receipt_concurrency: int
    metadata_concurrency: int
    transfer_streams: int
    price_batch_size: int
    retry_attempts: int
    retry_base_delay: float
    uri_retry_attempts: int
    uri_retry_base_delay: float
    result_ttl_seconds: int
    receipt_ttl_seconds: int
    job_ttl_seconds: int
    mismatch_sample_limit: int
    metadata_template: str
    rpc_timeout_seconds: float


def scan_settings() -> ScanSettings:
    """Merge settings.PORTFOLIO_SCAN over the defaults."""
    configured = getattr(settings, 'PORTFOLIO_SCAN', None) or {}
    merged = dict(DEFAULTS)
    merged.update({k: v for k, v in configured.items() if k in DEFAULTS})
    return ScanSettings(**{f.name: merged[f.name.upper()] for f in fields(ScanSettings)})
