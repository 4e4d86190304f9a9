class LogImportError(Exception):
    """Base class for errors raised by logimport."""


class ConfigError(LogImportError):
    """Raised when a configuration value cannot be used."""


class StoreError(LogImportError):
    """
    Raised when the backing store rejects an operation.

    Driver exceptions are chained as ``__cause__`` so the original error
    (connection loss, constraint name, SQLSTATE) stays visible in tracebacks.
    """
