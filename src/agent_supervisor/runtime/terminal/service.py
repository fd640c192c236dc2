"""PTY-backed session manager for interactive coding-agent processes."""

from __future__ import annotations

import codecs
import fcntl
import logging
import os
import pty
import queue
import select
import shutil
import signal
import struct
import subprocess
import termios
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from ...errors import InactiveSessionError, SpawnError, SupervisorError, UnknownSessionError
from ..domain.models import (
    BlockedEvent,
    TerminalSession,
    ToolRunningEvent,
    TurnCompleteEvent,
    normalize_agent_type,
    now_iso,
)
from .classifier import AutoResponseRule, OutputClassifier, classifier_for_agent
from .sanitizer import capture_since_marker

logger = logging.getLogger(__name__)

SessionEventCallback = Callable[[str, str, Any], None]

_READ_CHUNK_BYTES = 8192
_MAX_PENDING_CHARS = 16384
_ENTER_DELAY_SECONDS = 0.05
_STOP_GRACE_SECONDS = 5.0
_MAX_FINISHED_SESSIONS = 200

_AGENT_COMMANDS: dict[str, list[str]] = {
    "claude": ["claude"],
    "codex": ["codex"],
    "gemini": ["gemini"],
    "aider": ["aider"],
}

# Named keys understood by send_keys; anything else is written literally.
KEY_SEQUENCES: dict[str, str] = {
    "enter": "\r",
    "return": "\r",
    "tab": "\t",
    "shift+tab": "\x1b[Z",
    "escape": "\x1b",
    "esc": "\x1b",
    "space": " ",
    "backspace": "\x7f",
    "delete": "\x1b[3~",
    "up": "\x1b[A",
    "down": "\x1b[B",
    "right": "\x1b[C",
    "left": "\x1b[D",
    "home": "\x1b[H",
    "end": "\x1b[F",
    "pageup": "\x1b[5~",
    "pagedown": "\x1b[6~",
    "ctrl+c": "\x03",
    "ctrl+d": "\x04",
    "ctrl+z": "\x1a",
    "ctrl+l": "\x0c",
}


def encode_key(key: str) -> str:
    """Translate a named key (``"enter"``, ``"down"``...) into its byte sequence."""
    return KEY_SEQUENCES.get(key.strip().lower(), key) if key.strip() else key


@dataclass
class SpawnOptions:
    """Parameters for starting one supervised agent process."""
    agent_type: str = "shell"
    workdir: str = ""
    label: str = ""
    command: Optional[list[str]] = None
    env: dict[str, str] = field(default_factory=dict)
    initial_task: Optional[str] = None
    cols: int = 120
    rows: int = 36


@dataclass
class _LiveTerminal:
    session_id: str
    proc: subprocess.Popen[bytes]
    master_fd: int
    classifier: OutputClassifier
    lock: threading.RLock
    events: "queue.Queue[Optional[tuple[str, Any]]]"
    initial_task: Optional[str] = None
    stop_requested: bool = False
    ready: bool = False
    partial_line: bool = False
    pending_output: str = ""
    last_prompt: Optional[str] = None
    last_tool: Optional[str] = None


class TerminalService:
    """Own one PTY process per session and surface classified session events.

    Each session gets a reader thread that buffers and classifies output, and a
    dispatcher thread that delivers events to subscribers in order, so a slow
    subscriber never stalls the reader.
    """

    def __init__(
        self,
        *,
        max_log_lines: int = 1000,
        classifier_factory: Callable[[str], OutputClassifier] = classifier_for_agent,
        auto_response_rules: Sequence[AutoResponseRule] = (),
        initial_task_settle_seconds: float = 0.3,
        agent_commands: Optional[dict[str, list[str]]] = None,
        max_finished_sessions: int = _MAX_FINISHED_SESSIONS,
    ) -> None:
        self._lock = threading.RLock()
        self._sessions: dict[str, TerminalSession] = {}
        self._live: dict[str, _LiveTerminal] = {}
        self._buffers: dict[str, list[str]] = {}
        self._markers: dict[str, int] = {}
        self._callbacks: list[SessionEventCallback] = []
        self._max_log_lines = max(int(max_log_lines), 1)
        self._classifier_factory = classifier_factory
        self._auto_response_rules = list(auto_response_rules)
        self._settle_seconds = max(float(initial_task_settle_seconds), 0.0)
        self._agent_commands = {**_AGENT_COMMANDS, **(agent_commands or {})}
        # Exited sessions keep their record, not their output, until evicted oldest first.
        self._finished: deque[str] = deque()
        self._max_finished = max(int(max_finished_sessions), 1)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on_session_event(self, callback: SessionEventCallback) -> Callable[[], None]:
        """Subscribe to ``(session_id, event, data)`` notifications.

        Returns:
            Callable[[], None]: Function that removes the subscription.
        """
        with self._lock:
            self._callbacks.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return _unsubscribe

    def _emit(self, live: _LiveTerminal, event: str, data: Any) -> None:
        live.events.put((event, data))

    def _dispatch_loop(self, live: _LiveTerminal) -> None:
        while True:
            item = live.events.get()
            if item is None:
                return
            event, data = item
            with self._lock:
                callbacks = list(self._callbacks)
            for callback in callbacks:
                try:
                    callback(live.session_id, event, data)
                except Exception:
                    logger.exception("Session event callback failed for %s (%s)", live.session_id, event)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _resolve_command(self, options: SpawnOptions, agent_type: str) -> list[str]:
        if options.command:
            return [str(part) for part in options.command]
        if agent_type == "shell":
            shell = str(os.environ.get("SHELL") or "").strip()
            if not shell:
                shell = "/bin/bash" if Path("/bin/bash").exists() else "/bin/sh"
            return [shell]
        return list(self._agent_commands.get(agent_type) or [agent_type])

    @staticmethod
    def _set_winsize(fd: int, rows: int, cols: int) -> None:
        winsize = struct.pack("HHHH", max(rows, 2), max(cols, 2), 0, 0)
        fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)

    def spawn(self, options: SpawnOptions) -> str:
        """Start a supervised process and return its session id.

        Raises:
            SpawnError: If the working directory or the agent binary is missing,
                or the process cannot be started.
        """
        agent_type = normalize_agent_type(options.agent_type)
        workdir = Path(options.workdir).expanduser() if options.workdir else Path.cwd()
        if not workdir.is_dir():
            raise SpawnError(f"Working directory does not exist: {workdir}")
        command = self._resolve_command(options, agent_type)
        if shutil.which(command[0]) is None:
            raise SpawnError(f"Executable not found in PATH: {command[0]}")

        session = TerminalSession(
            agent_type=agent_type,
            label=options.label or agent_type,
            workdir=str(workdir.resolve()),
            command=command,
            cols=max(options.cols, 2),
            rows=max(options.rows, 2),
            started_at=now_iso(),
        )
        env = dict(os.environ)
        env.setdefault("TERM", "xterm-256color")
        env.update({str(k): str(v) for k, v in (options.env or {}).items()})

        master_fd, slave_fd = pty.openpty()
        try:
            proc = subprocess.Popen(
                command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=session.workdir,
                env=env,
                start_new_session=True,
                close_fds=True,
            )
        except OSError as exc:
            os.close(master_fd)
            raise SpawnError(f"Failed to start {command[0]}: {exc}") from exc
        finally:
            try:
                os.close(slave_fd)
            except OSError:
                pass

        self._set_winsize(master_fd, session.rows, session.cols)
        session.pid = proc.pid
        live = _LiveTerminal(
            session_id=session.id,
            proc=proc,
            master_fd=master_fd,
            classifier=self._classifier_factory(agent_type),
            lock=threading.RLock(),
            events=queue.Queue(),
            initial_task=options.initial_task,
        )
        with self._lock:
            self._sessions[session.id] = session
            self._live[session.id] = live
            self._buffers[session.id] = []

        threading.Thread(
            target=self._dispatch_loop, args=(live,), daemon=True, name=f"session-events-{session.id}"
        ).start()
        threading.Thread(
            target=self._reader_loop, args=(live,), daemon=True, name=f"session-reader-{session.id}"
        ).start()
        logger.info("Spawned session %s (%s) in %s", session.id, agent_type, session.workdir)
        return session.id

    def _reader_loop(self, live: _LiveTerminal) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            try:
                readable, _, _ = select.select([live.master_fd], [], [], 0.2)
            except (OSError, ValueError):
                readable = []
            data = b""
            if readable:
                try:
                    data = os.read(live.master_fd, _READ_CHUNK_BYTES)
                except OSError:
                    data = b""
                if data:
                    self._handle_output(live, decoder.decode(data))
            if not data and live.proc.poll() is not None:
                break
        self._handle_exit(live)

    def _handle_exit(self, live: _LiveTerminal) -> None:
        exit_code = live.proc.poll()
        with self._lock:
            session = self._sessions.get(live.session_id)
            self._live.pop(live.session_id, None)
            self._markers.pop(live.session_id, None)
        self._release(live.session_id)
        if session is not None:
            if live.stop_requested:
                session.status = "stopped"
            elif exit_code == 0:
                session.status = "completed"
            else:
                session.status = "failed"
                session.last_error = f"Process exited with code {exit_code}"
            session.exit_code = exit_code
            session.finished_at = session.finished_at or now_iso()
            if session.status == "failed":
                self._emit(live, "error", {"message": session.last_error, "exit_code": exit_code})
            self._emit(live, "stopped", {"reason": f"exit code {exit_code}", "exit_code": exit_code})
        logger.info("Session %s exited with code %s", live.session_id, exit_code)
        live.events.put(None)
        try:
            os.close(live.master_fd)
        except OSError:
            pass

    def _release(self, session_id: str) -> None:
        """Free an exited session's output and evict the oldest finished records."""
        with self._lock:
            self._buffers.pop(session_id, None)
            self._finished.append(session_id)
            while len(self._finished) > self._max_finished:
                evicted = self._finished.popleft()
                self._sessions.pop(evicted, None)
                logger.debug("Evicted finished session %s", evicted)

    def _append_lines(self, session_id: str, live: _LiveTerminal, text: str) -> None:
        buffer = self._buffers.setdefault(session_id, [])
        pieces = text.split("\n")
        if buffer and live.partial_line:
            buffer[-1] += pieces[0]
            pieces = pieces[1:]
        buffer.extend(pieces)
        if text.endswith("\n"):
            # split() leaves an empty trailing piece after a newline.
            buffer.pop()
            live.partial_line = False
        else:
            live.partial_line = True
        overflow = len(buffer) - self._max_log_lines
        if overflow > 0:
            del buffer[:overflow]
            marker = self._markers.get(session_id)
            if marker is not None:
                self._markers[session_id] = max(0, marker - overflow)

    def _handle_output(self, live: _LiveTerminal, text: str) -> None:
        if not text:
            return
        session_id = live.session_id
        with self._lock:
            if live.stop_requested:
                return
            self._append_lines(session_id, live, text)
            live.pending_output = (live.pending_output + text)[-_MAX_PENDING_CHARS:]
            recent = live.pending_output
            first_output = not live.ready
            live.ready = True
        if first_output:
            timer = threading.Timer(self._settle_seconds, self._mark_ready, args=(live,))
            timer.daemon = True
            timer.start()

        event = live.classifier.classify(text, recent)
        if isinstance(event, BlockedEvent):
            self._handle_blocked(live, event)
        elif isinstance(event, TurnCompleteEvent):
            with self._lock:
                if session_id not in self._markers:
                    return
                response = capture_since_marker(session_id, self._buffers, self._markers)
                session = self._sessions.get(session_id)
                if session is not None:
                    session.status = "active"
            self._emit(live, "task_complete", {"response": response})
        elif isinstance(event, ToolRunningEvent):
            key = f"{event.tool_name}:{event.description}"
            if key == live.last_tool:
                return
            live.last_tool = key
            self._emit(live, "tool_running", {"tool_name": event.tool_name, "description": event.description})

    def _handle_blocked(self, live: _LiveTerminal, event: BlockedEvent) -> None:
        prompt = event.prompt_info.text
        with self._lock:
            if prompt == live.last_prompt:
                return
            live.last_prompt = prompt
        rule = next((r for r in self._auto_response_rules if r.matches(prompt)), None)
        if rule is not None:
            try:
                if rule.keys:
                    self.send_keys(live.session_id, list(rule.keys))
                else:
                    self._write_line(live.session_id, rule.response or "", mark_turn=False)
            except SupervisorError:
                logger.warning("Auto-response failed for session %s", live.session_id, exc_info=True)
            else:
                logger.debug("Auto-responded to %r in session %s", prompt, live.session_id)
                self._emit(live, "blocked", BlockedEvent(prompt_info=event.prompt_info, auto_responded=True))
                return
        with self._lock:
            session = self._sessions.get(live.session_id)
            if session is not None and session.status in {"starting", "active"}:
                session.status = "blocked"
        self._emit(live, "blocked", event)

    def _mark_ready(self, live: _LiveTerminal) -> None:
        with self._lock:
            session = self._sessions.get(live.session_id)
            if session is None or live.stop_requested:
                return
            if session.status == "starting":
                session.status = "active"
            task = live.initial_task
            live.initial_task = None
        self._emit(live, "ready", {"session_id": live.session_id})
        if task:
            try:
                self.send(live.session_id, task)
            except SupervisorError:
                logger.warning("Failed to send initial task to %s", live.session_id, exc_info=True)

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    def _require_live(self, session_id: str) -> _LiveTerminal:
        session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSessionError(session_id)
        live = self._live.get(session_id)
        if live is None or live.stop_requested or live.proc.poll() is not None:
            raise InactiveSessionError(session_id)
        return live

    def _write(self, session_id: str, live: _LiveTerminal, data: str) -> None:
        try:
            os.write(live.master_fd, data.encode("utf-8", errors="replace"))
        except OSError as exc:
            raise InactiveSessionError(session_id) from exc

    def _reset_turn_state(self, session_id: str, live: _LiveTerminal, *, mark_turn: bool) -> None:
        live.pending_output = ""
        live.last_prompt = None
        live.last_tool = None
        if mark_turn:
            self._markers[session_id] = len(self._buffers.get(session_id, []))
        session = self._sessions.get(session_id)
        if session is not None and session.status in {"starting", "blocked"}:
            session.status = "active"

    def _write_line(self, session_id: str, text: str, *, mark_turn: bool) -> None:
        with self._lock:
            live = self._require_live(session_id)
            self._reset_turn_state(session_id, live, mark_turn=mark_turn)
        with live.lock:
            if text:
                self._write(session_id, live, text)
                # TUIs can swallow an Enter that arrives in the same read as the text.
                time.sleep(_ENTER_DELAY_SECONDS)
            self._write(session_id, live, "\r")

    def send(self, session_id: str, text: str) -> None:
        """Write one line of input and start a new turn.

        Raises:
            UnknownSessionError: If no session with this id was spawned.
            InactiveSessionError: If the session's process is no longer running.
        """
        self._write_line(session_id, text, mark_turn=True)
        logger.debug("Sent %d chars to session %s", len(text), session_id)

    def send_keys(self, session_id: str, keys: Sequence[str]) -> None:
        """Write raw key sequences, e.g. ``["down", "enter"]``, for menu navigation.

        Raises:
            UnknownSessionError: If no session with this id was spawned.
            InactiveSessionError: If the session's process is no longer running.
        """
        with self._lock:
            live = self._require_live(session_id)
            self._reset_turn_state(session_id, live, mark_turn=False)
        with live.lock:
            for key in keys:
                self._write(session_id, live, encode_key(str(key)))

    def stop(self, session_id: str) -> TerminalSession:
        """Terminate a session's process group; repeated calls are no-ops.

        Raises:
            UnknownSessionError: If no session with this id was spawned.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise UnknownSessionError(session_id)
            live = self._live.get(session_id)
            if live is None or live.stop_requested:
                return session
            live.stop_requested = True
            if session.status not in {"completed", "failed"}:
                session.status = "stopped"
            session.finished_at = now_iso()
            self._markers.pop(session_id, None)
            self._buffers[session_id] = []
            live.pending_output = ""
        self._signal(live, signal.SIGTERM)
        timer = threading.Timer(_STOP_GRACE_SECONDS, self._force_kill, args=(live,))
        timer.daemon = True
        timer.start()
        logger.info("Stopped session %s", session_id)
        return session

    @staticmethod
    def _signal(live: _LiveTerminal, sig: signal.Signals) -> None:
        try:
            os.killpg(live.proc.pid, sig)
        except ProcessLookupError:
            pass
        except OSError:
            logger.debug("Failed to signal session %s", live.session_id, exc_info=True)

    def _force_kill(self, live: _LiveTerminal) -> None:
        if live.proc.poll() is None:
            self._signal(live, signal.SIGKILL)

    def shutdown(self) -> None:
        """Stop every live session."""
        with self._lock:
            session_ids = list(self._live)
        for session_id in session_ids:
            try:
                self.stop(session_id)
            except UnknownSessionError:
                continue

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_output(self, session_id: str, lines: Optional[int] = None) -> str:
        """Return the most recent buffered output lines (all of them by default).

        Output of an exited session is released, so it reads as an empty string.

        Raises:
            UnknownSessionError: If no session with this id was spawned.
        """
        with self._lock:
            if session_id not in self._sessions:
                raise UnknownSessionError(session_id)
            buffer = list(self._buffers.get(session_id, []))
        if lines is not None and lines >= 0:
            buffer = buffer[-lines:] if lines else []
        return "\n".join(buffer)

    def get_session(self, session_id: str) -> Optional[TerminalSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def list_sessions(self, *, active_only: bool = False) -> list[TerminalSession]:
        """List known sessions, optionally only those whose process is still running."""
        with self._lock:
            sessions = list(self._sessions.values())
            live_ids = set(self._live)
        if active_only:
            return [s for s in sessions if s.id in live_ids and s.status in {"starting", "active", "blocked"}]
        return sessions
