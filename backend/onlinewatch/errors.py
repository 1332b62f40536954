"""
Error taxonomy for the scrape pipeline.

Per-channel errors (InvalidChannelError, NetworkTimeout, RateLimited,
UpstreamError) are converted into a FetchOutcome by the fetch worker and never
leave it. StorageError is raised per sighting and skipped by the caller.
ChannelListError ends the cycle early.
"""


class ScrapeError(Exception):
    """Base class for all scrape pipeline errors."""


class InvalidChannelError(ScrapeError):
    """Channel name is None, not a string, or blank."""


class NetworkTimeout(ScrapeError):
    """Upstream request exceeded the per-request timeout."""


class RateLimited(ScrapeError):
    """Upstream answered 429."""


class UpstreamError(ScrapeError):
    """Upstream answered a non-2xx status other than 429, or an unusable body."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StorageError(ScrapeError):
    """A registry or recorder write failed."""


class ChannelListError(ScrapeError):
    """The channel list could not be read or is not a JSON array."""
