from loopgate.state.store import SessionStateError, SessionStore

__all__ = ["SessionStateError", "SessionStore"]
