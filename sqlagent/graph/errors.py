from __future__ import annotations


class EngineError(Exception):
    """Fatal engine failure. Surfaced to callers as a ``Failed`` outcome."""


class UnknownFieldError(EngineError):
    def __init__(self, fields):
        names = ", ".join(sorted(fields))
        super().__init__(f"unknown state field(s): {names}")
        self.fields = set(fields)


class StateTransitionError(EngineError):
    """A reducer refused an update that would break a state invariant."""


class SessionStoreError(EngineError):
    """The session store could not read or write a lease or binding."""


class SessionBusyError(SessionStoreError):
    def __init__(self, session_id: str):
        super().__init__(f"session {session_id!r} is already running")
        self.session_id = session_id


class DatabaseMismatchError(EngineError):
    def __init__(self, session_id: str):
        super().__init__(f"session {session_id!r} is bound to a different database")
        self.session_id = session_id
