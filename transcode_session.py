"""Transcode session lifecycle management.

A session owns one transcoder child process, the write end of the pipe
feeding its stdin, and an inactivity timer. State only moves forward:

    INIT -> RUNNING -> EOS | FAILED

EOS and FAILED are final. Every teardown (explicit close, end of stream,
broken pipe, inactivity timeout) funnels through ``_teardown``, which checks
the state under the session lock so OS resources are released at most once.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, BinaryIO, Protocol

import logging
import os
import signal
import subprocess
import threading
import time

from config import TranscodeConfig
from transcode_command import (
    IngestType,
    build_transcode_cmd,
    is_mime_type_valid,
    session_output_dir,
)


log = logging.getLogger(__name__)

_COPY_CHUNK_SIZE = 64 * 1024

CommandBuilder = Callable[["TranscodeSession", TranscodeConfig], list[str]]


class SessionState(StrEnum):
    INIT = "init"
    RUNNING = "running"
    EOS = "eos"
    FAILED = "failed"


TERMINAL_STATES = frozenset({SessionState.EOS, SessionState.FAILED})


# ===========================================================================
# Errors
# ===========================================================================


class SessionError(Exception):
    """Base class for errors surfaced to the caller of a session."""


class TranscodeStartError(SessionError):
    """Pipe or transcoder process could not be created."""


class TranscodeError(SessionError):
    """Session is not open, or the pipe broke while writing."""


class WrongMimetypeError(SessionError):
    """Request content type does not match the session's ingest type."""


# ===========================================================================
# Collaborators
# ===========================================================================


class SessionListener(Protocol):
    """Receives every accepted state transition. Must not block."""

    def session_update(self, uid: int, state: SessionState) -> None: ...


@dataclass(slots=True)
class IngestRequest:
    """One inbound chunk of a stream: content type plus body."""

    content_type: str | None
    body: BinaryIO


@dataclass(slots=True, frozen=True)
class SessionStats:
    """Immutable snapshot of session state. Reading one never waits on session I/O."""

    uid: int
    state: SessionState
    ingest_type: IngestType | None
    pid: int | None
    bytes_in: int
    bytes_out: int
    calls_in: int
    cpu_user: float
    cpu_system: float
    exit_code: int | None
    started: float | None
    last_write: float | None


# ===========================================================================
# Session
# ===========================================================================


class TranscodeSession:
    """One stream fed into one transcoder process.

    Whoever constructs a session must close it on every exit path; the
    session can be used as a context manager for that.
    """

    def __init__(
        self,
        uid: int,
        listener: SessionListener,
        config: TranscodeConfig,
        command_builder: CommandBuilder = build_transcode_cmd,
    ) -> None:
        self.uid = uid
        self.ingest_type: IngestType | None = None
        self.args: list[str] = []

        self._listener = listener
        self._config = config
        self._command_builder = command_builder
        self._lock = threading.RLock()
        self._state = SessionState.INIT

        self._process: subprocess.Popen[bytes] | None = None
        self._pipe: Any = None  # raw write end of the stdin pipe
        self._timer: threading.Timer | None = None
        self._timer_generation = 0

        # Statistics
        self.bytes_in = 0  # read from request bodies
        self.bytes_out = 0  # forwarded to the transcoder
        self.calls_in = 0
        self.cpu_user = 0.0
        self.cpu_system = 0.0
        self.exit_code: int | None = None
        self.started: float | None = None
        self.last_write: float | None = None

        # Status readers only ever take this lock, never the I/O lock above
        self._stats_lock = threading.Lock()
        self._snapshot = self._build_snapshot()

        log.debug("Created transcode session %d", uid)
        self._listener.session_update(uid, SessionState.INIT)

    def __enter__(self) -> TranscodeSession:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"TranscodeSession(uid={self.uid}, state={self._state.value})"

    @property
    def state(self) -> SessionState:
        return self._state

    def is_open(self) -> bool:
        return self._state is SessionState.RUNNING

    def _set_state(self, state: SessionState) -> None:
        # EOS and FAILED are final
        if self._state in TERMINAL_STATES or self._state is state:
            return
        self._state = state
        self._publish()
        self._listener.session_update(self.uid, state)

    def _build_snapshot(self) -> SessionStats:
        return SessionStats(
            uid=self.uid,
            state=self._state,
            ingest_type=self.ingest_type,
            pid=self._process.pid if self._process else None,
            bytes_in=self.bytes_in,
            bytes_out=self.bytes_out,
            calls_in=self.calls_in,
            cpu_user=self.cpu_user,
            cpu_system=self.cpu_system,
            exit_code=self.exit_code,
            started=self.started,
            last_write=self.last_write,
        )

    def _publish(self) -> None:
        """Swap in a fresh snapshot. Called by the thread holding the I/O lock."""
        snapshot = self._build_snapshot()
        with self._stats_lock:
            self._snapshot = snapshot

    def stats(self) -> SessionStats:
        """Latest snapshot; never waits behind a pipe write or process wait."""
        with self._stats_lock:
            return self._snapshot

    # -----------------------------------------------------------------------
    # Inactivity timer
    # -----------------------------------------------------------------------

    def _disarm_timer(self) -> None:
        # Bumping the generation invalidates a callback that is already in flight
        self._timer_generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _arm_timer(self) -> None:
        self._disarm_timer()
        timer = threading.Timer(
            self._config.session_timeout,
            self._on_timer,
            args=(self._timer_generation,),
        )
        timer.daemon = True
        timer.name = f"session-timeout-{self.uid}"
        self._timer = timer
        timer.start()

    def _on_timer(self, generation: int) -> None:
        with self._lock:
            if generation != self._timer_generation:
                log.debug("Ignoring stale timeout for session %d", self.uid)
                return
            self._timer = None
            self.handle_timeout()

    def handle_timeout(self) -> None:
        log.info(
            "Session %d timed out after %.1fs without data",
            self.uid,
            self._config.session_timeout,
        )
        self.close()

    # -----------------------------------------------------------------------
    # Open
    # -----------------------------------------------------------------------

    def open(self, ingest_type: IngestType) -> None:
        """Spawn the transcoder and start the inactivity timer.

        No-op if already running. Raises TranscodeStartError if the session
        already ended or the pipe/process could not be created.
        """
        with self._lock:
            if self.is_open():
                return
            if self._state in TERMINAL_STATES:
                raise TranscodeStartError(f"Session {self.uid} already {self._state.value}")

            self.ingest_type = ingest_type
            try:
                self.args = self._command_builder(self, self._config)
            except ValueError as e:
                log.error("Cannot build transcoder command for session %d: %s", self.uid, e)
                self._set_state(SessionState.FAILED)
                raise TranscodeStartError(str(e)) from e
            log.info("Opening transcode session %d: %s", self.uid, " ".join(self.args))

            read_fd: int | None = None
            write_fd: int | None = None
            log_file = None
            process: subprocess.Popen[bytes] | None = None
            try:
                session_output_dir(self.uid, self._config).mkdir(parents=True, exist_ok=True)
                self._config.log_dir.mkdir(parents=True, exist_ok=True)
                read_fd, write_fd = os.pipe()
                log_file = open(self._config.log_dir / f"{self.uid}.log", "ab")
                process = subprocess.Popen(
                    self.args,
                    stdin=read_fd,
                    stdout=log_file,
                    stderr=log_file,
                )
                pipe = os.fdopen(write_fd, "wb", buffering=0)
            except OSError as e:
                log.error("Error starting transcoder for session %d: %s", self.uid, e)
                if write_fd is not None:
                    os.close(write_fd)
                if process is not None:
                    process.kill()
                    process.wait()
                self.args = []
                self._set_state(SessionState.FAILED)
                raise TranscodeStartError(f"Cannot start transcoder: {e}") from e
            finally:
                # The child holds its own copies now
                if read_fd is not None:
                    os.close(read_fd)
                if log_file is not None:
                    log_file.close()

            self._process = process
            self._pipe = pipe
            self.started = time.time()
            self._arm_timer()
            self._set_state(SessionState.RUNNING)
            log.info("Started transcoder pid=%d for session %d", process.pid, self.uid)

    # -----------------------------------------------------------------------
    # Write
    # -----------------------------------------------------------------------

    def validate_request(self, request: IngestRequest) -> None:
        """Reject a request whose content type does not fit the ingest type."""
        if not is_mime_type_valid(self.ingest_type, request.content_type):
            raise WrongMimetypeError(
                f"Content type {request.content_type!r} not accepted "
                f"for {self.ingest_type} ingest"
            )

    def _copy_body(self, body: BinaryIO) -> tuple[int, OSError | None]:
        """Copy body into the pipe until EOF or error. Returns (written, error)."""
        written = 0
        try:
            while chunk := body.read(_COPY_CHUNK_SIZE):
                self.bytes_in += len(chunk)
                self._publish()
                view = memoryview(chunk)
                while view:
                    n = self._pipe.write(view)
                    written += n
                    self.bytes_out += n
                    self._publish()
                    view = view[n:]
        except OSError as e:
            return written, e
        return written, None

    def write(self, request: IngestRequest) -> None:
        """Forward one request body to the transcoder.

        An empty body is the producer's end-of-stream signal and closes the
        session gracefully. A broken pipe fails the session and raises
        TranscodeError. The body is closed in every case.
        """
        try:
            with self._lock:
                if not self.is_open():
                    raise TranscodeError(f"Session {self.uid} is not open")

                # The write itself counts as activity
                self._disarm_timer()
                try:
                    self.validate_request(request)

                    written, error = self._copy_body(request.body)
                    self.calls_in += 1
                    self.last_write = time.time()
                    self._publish()
                    log.debug("Written %d bytes to session %d", written, self.uid)

                    if error is not None:
                        log.warning("Closing session %d on broken pipe: %s", self.uid, error)
                        self._teardown(SessionState.FAILED)
                        raise TranscodeError(f"Transcoder pipe broken: {error}") from error

                    if written == 0:
                        log.info("Closing session %d on end of stream", self.uid)
                        self._teardown(SessionState.EOS)
                finally:
                    # Full timeout again, unless the session just ended
                    if self.is_open():
                        self._arm_timer()
        finally:
            request.body.close()

    # -----------------------------------------------------------------------
    # Close
    # -----------------------------------------------------------------------

    def close(self) -> None:
        """Gracefully end the session. Safe to call any number of times."""
        self._teardown(SessionState.EOS)

    def _teardown(self, final_state: SessionState) -> bool:
        """Release process, pipe and timer once. Returns False if nothing to do."""
        with self._lock:
            self._disarm_timer()
            if not self.is_open():
                return False
            log.info("Closing session %d (%s)", self.uid, final_state.value)
            self._set_state(final_state)

            pipe, self._pipe = self._pipe, None
            process, self._process = self._process, None
            assert process is not None
            self._publish()

            try:
                pipe.close()
            except OSError as e:
                log.warning("Closing pipe for session %d failed: %s", self.uid, e)

            # SIGINT lets ffmpeg finalize the playlist
            try:
                os.kill(process.pid, signal.SIGINT)
            except OSError as e:
                # Assume the transcoder already exited
                log.warning("Sending signal to transcoder %d failed: %s", process.pid, e)

            # wait4 rather than Popen.wait: the rusage is only reported here
            try:
                _, status, usage = os.wait4(process.pid, 0)
            except OSError as e:
                log.warning("Waiting on transcoder %d failed: %s", process.pid, e)
                return True

            self.exit_code = os.waitstatus_to_exitcode(status)
            process.returncode = self.exit_code
            self.cpu_user = usage.ru_utime
            self.cpu_system = usage.ru_stime
            self._publish()
            log.info(
                "Transcoder for session %d exited with %d (user %.3fs, system %.3fs)",
                self.uid,
                self.exit_code,
                self.cpu_user,
                self.cpu_system,
            )
            return True
