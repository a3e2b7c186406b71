"""Exception hierarchy shared by the engine and the acquisition layer."""


class ChromasyncError(Exception):
    """Base class for all chromasync errors."""


class DecodeFailure(ChromasyncError):
    """The audio source could not be obtained or decoded."""


class DownloadFailure(ChromasyncError):
    """Fetching media for a resolved URL failed."""


class CacheIOFailure(ChromasyncError):
    """A cache backend could not read or write an entry."""


class ResolverBlocked(ChromasyncError):
    """The external resolver refused service (authorization or quota)."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class StaleGeneration(ChromasyncError):
    """An acquisition was superseded by a newer track change."""

    def __init__(self, captured: int, live: int):
        super().__init__(f"generation {captured} superseded by {live}")
        self.captured = captured
        self.live = live
