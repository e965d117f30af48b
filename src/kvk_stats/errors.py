# src/kvk_stats/errors.py


class KvkStatsError(Exception):
    """Base class for errors raised by kvk_stats."""


class RemoteSyncError(KvkStatsError):
    """A batch could not be written to the remote score store."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code
