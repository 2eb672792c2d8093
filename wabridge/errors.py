"""Exception hierarchy for session supervision failures."""


class WabridgeError(Exception):
    """Base error type for all bridge failures."""


class BackendError(WabridgeError):
    """Messaging backend could not launch, attach to, or release the browser."""


class SessionError(WabridgeError):
    """Session lifecycle operation failed."""


class SessionStartError(SessionError):
    """Backend initialization failed; nothing was registered."""


class SessionShutdownError(SessionError):
    """Teardown failed after the safety-net reclaim pass ran."""


class SessionTerminatedError(SessionError):
    """Operation requested on a coordinator that has already shut down."""
