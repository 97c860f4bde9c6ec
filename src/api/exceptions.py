"""Error taxonomy shared by the chain clients and the portfolio engine."""


class PortfolioScanError(Exception):
    """Base class for every error raised by the scan engine."""


class ParseError(PortfolioScanError, ValueError):
    """Malformed numeric or hex input in a single provider record."""


class DecodeError(PortfolioScanError):
    """A log from an allow-listed contract did not match the expected ABI."""


class ChainProviderError(PortfolioScanError):
    """A chain data provider call failed."""

    def __init__(self, message: str, method: str = "", status_code: int = None):
        super().__init__(message)
        self.method = method
        self.status_code = status_code


class TransientNetworkError(ChainProviderError):
    """Retryable failure: rate limits, timeouts, 5xx responses."""


class PermanentNetworkError(ChainProviderError):
    """Non-retryable failure: bad request, unknown method, missing API key."""


class ScanJobFailed(PortfolioScanError):
    """Raised when the result of a failed scan job is requested."""

    def __init__(self, job_id: str, error: str):
        super().__init__(f"Scan job {job_id} failed: {error}")
        self.job_id = job_id
        self.error = error
