"""Error taxonomy shared by the clients and the monitoring loop."""


class RewindSubtitlesError(Exception):
    """Base class for all errors raised by this application."""


class ConfigError(RewindSubtitlesError):
    """Startup configuration is invalid. Fatal."""


class TransientFetchError(RewindSubtitlesError):
    """Listing sessions failed (network, timeout, auth, bad payload). Retry next cycle."""


class SessionGoneError(RewindSubtitlesError):
    """The server reports the session or player no longer exists."""


class CommandTransientError(RewindSubtitlesError):
    """A stream-selection command failed but the session may still exist."""
