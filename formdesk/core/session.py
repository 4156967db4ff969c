"""
Session store for live form runtimes.

The HTTP layer is stateless, so each fill-out attempt is parked here
between requests under a random session id. Sessions are dropped after
an idle timeout.
"""

import threading
import time
import uuid

from formdesk.core.errors import SessionNotFoundError
from formdesk.core.runtime import FormRuntime

# Default session timeout: 30 minutes
DEFAULT_SESSION_TIMEOUT_SECONDS = 30 * 60


class Session:
    """A single fill-out session wrapping its runtime."""

    def __init__(self, runtime: FormRuntime, owner_id: str | None = None):
        self.runtime = runtime
        self.owner_id = owner_id
        self.created_at: float = time.time()
        self.last_accessed_at: float = time.time()

    def touch(self) -> None:
        """Update the last accessed timestamp."""
        self.last_accessed_at = time.time()

    def is_expired(self, timeout_seconds: int = DEFAULT_SESSION_TIMEOUT_SECONDS) -> bool:
        """Check if the session has expired."""
        return (time.time() - self.last_accessed_at) > timeout_seconds


class SessionStore:
    """In-memory, thread-safe store of runtime sessions."""

    def __init__(self, timeout_seconds: int = DEFAULT_SESSION_TIMEOUT_SECONDS):
        self._sessions: dict[str, Session] = {}
        self._timeout_seconds = timeout_seconds
        self._lock = threading.RLock()

    def create_session(
        self,
        runtime: FormRuntime,
        owner_id: str | None = None,
        session_id: str | None = None,
    ) -> tuple[str, Session]:
        """Park a runtime and return its session id.

        Args:
            runtime: The runtime to keep.
            owner_id: User the session belongs to (None for anonymous).
            session_id: Optional custom ID. Auto-generated if not provided.
        """
        if session_id is None:
            session_id = str(uuid.uuid4())

        session = Session(runtime, owner_id=owner_id)
        with self._lock:
            self._sessions[session_id] = session
        return session_id, session

    def get_session(self, session_id: str) -> Session:
        """Retrieve a live session.

        Raises:
            SessionNotFoundError: Unknown or expired session. Expired
                sessions are removed on the way.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)

            if session.is_expired(self._timeout_seconds):
                del self._sessions[session_id]
                raise SessionNotFoundError(session_id)

            session.touch()
            return session

    def delete_session(self, session_id: str) -> bool:
        """Delete a session. Returns True if it existed."""
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def cleanup_expired(self) -> int:
        """Remove all expired sessions. Returns the count of removed sessions."""
        with self._lock:
            expired = [
                sid for sid, session in self._sessions.items()
                if session.is_expired(self._timeout_seconds)
            ]
            for sid in expired:
                del self._sessions[sid]
        return len(expired)

    def count(self) -> int:
        """Return the number of active sessions."""
        with self._lock:
            return len(self._sessions)
