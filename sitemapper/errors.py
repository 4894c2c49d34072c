class SiteMapperError(Exception):
    """Base class for errors raised by the crawler and extraction pipeline."""


class InvalidInputError(SiteMapperError):
    """A request or seed URL cannot be used to start a job."""


class JobNotFoundError(SiteMapperError):
    pass


class InvalidTransitionError(SiteMapperError):
    """A job was asked to move between two states the lifecycle forbids."""

    def __init__(self, current: str, new: str):
        super().__init__(f"Invalid job status transition: {current} -> {new}")
        self.current = current
        self.new = new


class FetchError(SiteMapperError):
    """Network-level failure while fetching a single page."""

    def __init__(self, url: str, message: str, category: str = "unexpected"):
        super().__init__(message)
        self.url = url
        self.category = category


class ExtractionError(SiteMapperError):
    pass


class PersistenceError(SiteMapperError):
    pass
