from __future__ import annotations


class FailoverError(Exception):
    """Base class for errors raised by the failover package."""


class ProbeSetupError(FailoverError):
    """A monitor's check target cannot be turned into a working prober."""


class UnknownMonitorError(FailoverError, KeyError):
    def __init__(self, monitor_id: str) -> None:
        super().__init__(monitor_id)
        self.monitor_id = monitor_id

    def __str__(self) -> str:
        return f"monitor not found: {self.monitor_id}"


class DNSProviderError(FailoverError):
    """The DNS provider rejected a request or could not be reached."""


class StoreError(FailoverError):
    """The persistent store could not be read or written."""
