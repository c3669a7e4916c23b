class DeviceLedgerError(RuntimeError):
    """Base error for the capture pipeline."""


class ConfigError(DeviceLedgerError):
    """Raised when required configuration is missing or invalid. Fatal at startup."""


class ProviderError(DeviceLedgerError):
    """Raised when a geolocation provider fails, times out or returns an unusable body."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class PersistenceError(DeviceLedgerError):
    """Raised for store failures other than a duplicate key."""
