"""Process-wide registry of transcode sessions and their reported states."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict
from typing import Any

import logging
import threading
import time

from config import TranscodeConfig
from transcode_command import build_transcode_cmd
from transcode_session import TERMINAL_STATES, CommandBuilder, SessionState, TranscodeSession


log = logging.getLogger(__name__)

_SHUTDOWN_WORKERS = 8


class SessionRegistry:
    """Maps stream uid -> session, and records every state transition.

    Terminal sessions stay queryable until ``cleanup_expired`` drops them.
    """

    def __init__(
        self,
        config: TranscodeConfig,
        command_builder: CommandBuilder = build_transcode_cmd,
    ) -> None:
        self._config = config
        self._command_builder = command_builder
        self._lock = threading.Lock()
        self._sessions: dict[int, TranscodeSession] = {}
        self._states: dict[int, SessionState] = {}
        self._updated: dict[int, float] = {}

    def session_update(self, uid: int, state: SessionState) -> None:
        """Record a session state transition."""
        with self._lock:
            self._states[uid] = state
            self._updated[uid] = time.time()
        log.info("Session %d -> %s", uid, state.value)

    # -----------------------------------------------------------------------
    # Lookup
    # -----------------------------------------------------------------------

    def get(self, uid: int) -> TranscodeSession | None:
        with self._lock:
            return self._sessions.get(uid)

    def get_or_create(self, uid: int) -> TranscodeSession:
        """Get the live session for uid, creating one if none or if it ended."""
        with self._lock:
            session = self._sessions.get(uid)
            if session is not None and session.state not in TERMINAL_STATES:
                return session
            if session is not None:
                log.info("Replacing ended session %d (%s)", uid, session.state.value)
            # Not constructed under the lock: the constructor calls session_update
        session = TranscodeSession(uid, self, self._config, self._command_builder)
        with self._lock:
            existing = self._sessions.get(uid)
            if existing is not None and existing.state not in TERMINAL_STATES:
                # Lost a creation race; the unopened session holds no resources
                self._states[uid] = existing.state
                return existing
            self._sessions[uid] = session
        return session

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    # -----------------------------------------------------------------------
    # Status
    # -----------------------------------------------------------------------

    def _status_dict(self, session: TranscodeSession) -> dict[str, Any]:
        stats = asdict(session.stats())
        with self._lock:
            stats["reported_state"] = self._states.get(session.uid)
            stats["updated"] = self._updated.get(session.uid)
        return stats

    def status(self, uid: int) -> dict[str, Any] | None:
        """Status of one session, or None if unknown."""
        session = self.get(uid)
        return self._status_dict(session) if session else None

    def list_status(self) -> list[dict[str, Any]]:
        """Status of all sessions, sorted by uid."""
        with self._lock:
            sessions = sorted(self._sessions.values(), key=lambda s: s.uid)
        return [self._status_dict(s) for s in sessions]

    # -----------------------------------------------------------------------
    # Teardown
    # -----------------------------------------------------------------------

    def close(self, uid: int) -> bool:
        """Close a session. Returns False if uid is unknown."""
        session = self.get(uid)
        if session is None:
            return False
        session.close()
        return True

    def cleanup_expired(self) -> int:
        """Drop terminal sessions older than the status retention. Returns count."""
        cutoff = time.time() - self._config.status_retention
        with self._lock:
            expired = [
                uid
                for uid, session in self._sessions.items()
                if session.state in TERMINAL_STATES and self._updated.get(uid, 0) < cutoff
            ]
            for uid in expired:
                del self._sessions[uid]
                self._states.pop(uid, None)
                self._updated.pop(uid, None)
        if expired:
            log.info("Dropped %d expired sessions", len(expired))
        return len(expired)

    def shutdown(self) -> None:
        """Close every running session, in parallel (each close waits on a process)."""
        with self._lock:
            running = [s for s in self._sessions.values() if s.is_open()]
        if not running:
            return
        log.info("Shutdown: closing %d running sessions", len(running))
        with ThreadPoolExecutor(max_workers=min(len(running), _SHUTDOWN_WORKERS)) as pool:
            for future in [pool.submit(s.close) for s in running]:
                future.result()
