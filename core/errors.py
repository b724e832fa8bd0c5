"""Exception hierarchy for the session core.

Only request-validation failures are raised to the caller. Process
failures travel as data: a failed terminal log entry on the stream.
"""


class SessionCoreError(Exception):
    """Base exception for all session core errors."""


class EngineUnavailable(SessionCoreError):
    """Requested engine is not registered or its CLI is not installed."""
    def __init__(self, engine, reason=None):
        self.engine = engine
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(f"AI engine unavailable: {engine}{detail}")


class LaunchFailed(SessionCoreError):
    """Process creation failed (missing binary, bad cwd, permissions)."""
    def __init__(self, session_id, reason):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Failed to launch session {session_id}: {reason}")


class SessionBusy(SessionCoreError):
    """A process is already live for this session id."""
    def __init__(self, session_id):
        self.session_id = session_id
        super().__init__(f"Session {session_id} is already running")


class NotFound(SessionCoreError):
    """Unknown session or conversation id."""
    def __init__(self, kind, key):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")
