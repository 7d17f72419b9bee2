"""
Error types shared by the Eseis sync modules.

Every failure raised by this package derives from EseisError, so callers can
decide per error kind whether a failure ends the run or only the current item.
"""


class EseisError(RuntimeError):
    """Base class for all Eseis sync failures."""


class ConfigError(EseisError):
    """Required configuration is missing or invalid."""


class AuthError(EseisError):
    """The credential exchange failed or the API rejected the bearer token."""


class TransportError(EseisError):
    """An HTTP request could not be sent or returned an unexpected status."""


class DecodeError(EseisError):
    """A response body does not match the expected shape."""


class FilesystemError(EseisError):
    """A directory or file could not be created or written."""


class SnapshotError(EseisError):
    """The browser could not log in, render a page, or print it to PDF."""
