"""Exception types shared by the historian services."""


class HistorianError(Exception):
    """Base class for historian errors."""


class ConfigError(HistorianError):
    """Invalid or inconsistent configuration."""


class DiscoveryError(HistorianError):
    """Browsing the remote address space failed. Fatal at startup."""


class StoreError(HistorianError):
    """Reading from or writing to the time-series store failed."""


class AlreadyRunningError(HistorianError):
    """Another ingestion instance holds the single-instance lock."""

    def __init__(self, pid=None):
        self.pid = pid
        suffix = f" (pid {pid})" if pid else ""
        super().__init__(f"Another ingestion instance is already running{suffix}")
