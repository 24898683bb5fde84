class ScrapeError(Exception):
    """Raised when a listing page cannot be fetched or understood"""


class UnsupportedUrlError(ScrapeError):
    pass


class ProviderNotConfiguredError(ScrapeError):
    """The selected provider has no credentials configured"""


class ProviderResponseError(ScrapeError):
    def __init__(self, provider: str, status_code: int, reason: str = ""):
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider} error: {status_code} {reason}".strip())
