"""Engine-scoped sessions and the registry that owns them."""
import threading
import time

from utils.config import logger, SESSION_TTL_SEC, EXEC_TIMEOUT_SEC
from core.dedup import OutputDeduplicator
from core.errors import NotFound, SessionBusy
from core.state import (
    KeyedLocks,
    LIVE_STATES,
    TERMINAL_STATES,
    STATE_STARTING,
    STATE_RUNNING,
)
from core.stream import SessionStream
from core.usage import UsageTracker


def resolve_session_id(engine, conversation_id):
    """Deterministic id any client can derive: same inputs, same id, across restarts."""
    return f"{engine}-{conversation_id}"


class Session:
    def __init__(
        self,
        session_id,
        engine,
        conversation_id,
        project,
        cwd,
        prompt,
        todo_id=None,
        start_seq=0,
        timeout_sec=EXEC_TIMEOUT_SEC,
        dedup=None,
        thinking_mode=False,
    ):
        self.session_id = session_id
        self.engine = engine
        self.conversation_id = conversation_id
        self.project = project
        self.cwd = cwd
        self.prompt = prompt
        self.todo_id = todo_id
        self.timeout_sec = timeout_sec
        self.thinking_mode = bool(thinking_mode)
        self.state = STATE_STARTING
        self.proc = None
        self.native_session_id = None
        self.returncode = None
        self.started_at = time.time()
        self.finish_time = None
        self.assistant_chunks = []
        self.usage = UsageTracker()
        self.stop_timer = None
        self.stream = SessionStream(
            session_id,
            dedup=dedup if dedup is not None else OutputDeduplicator(),
            start_seq=start_seq,
        )
        self.lock = threading.Lock()
        self.done = threading.Event()
        self._finish_callbacks = []

    @property
    def is_live(self):
        return self.state in LIVE_STATES

    @property
    def is_terminal(self):
        return self.state in TERMINAL_STATES

    @property
    def process_alive(self):
        proc = self.proc
        return proc is not None and proc.poll() is None

    def add_finish_callback(self, callback):
        self._finish_callbacks.append(callback)

    def attach_process(self, proc):
        """Bind the spawned process. False if the session was stopped while spawning."""
        with self.lock:
            if self.state != STATE_STARTING:
                return False
            self.proc = proc
            self.state = STATE_RUNNING
            return True

    def finish(self, state, success, reason, content="", exit_code=None):
        """Move to a terminal state and close the stream. Only the first call wins."""
        with self.lock:
            if self.state in TERMINAL_STATES:
                return None
            self.state = state
            self.finish_time = time.time()
            self.returncode = exit_code
            entry = self.stream.close(
                success,
                reason,
                content=content,
                exit_code=exit_code,
                duration_ms=self.duration_ms,
            )
        logger.info(f"[Session] {self.session_id} -> {state} ({reason}, exit={exit_code})")
        for callback in list(self._finish_callbacks):
            try:
                callback(self, entry)
            except Exception as e:
                logger.error(f"[Session] Finish callback failed for {self.session_id}: {e}", exc_info=True)
        self.done.set()
        return entry

    @property
    def duration_ms(self):
        end = self.finish_time or time.time()
        return int((end - self.started_at) * 1000)

    def assistant_text(self):
        return "\n\n".join(self.assistant_chunks).strip()

    def to_status(self):
        status = {
            "sessionId": self.session_id,
            "engine": self.engine,
            "conversationId": self.conversation_id,
            "projectName": self.project,
            "prompt": self.prompt,
            "todoId": self.todo_id,
            "state": self.state,
            "running": self.is_live,
            "startTime": int(self.started_at * 1000),
            "uptime": self.duration_ms,
            "logCount": len(self.stream.buffer),
            "lastSeq": self.stream.counter,
            "subscribers": self.stream.subscriber_count(),
            "suppressed": self.stream.dedup.suppressed,
            "exitCode": self.returncode,
            "thinkingMode": self.thinking_mode,
        }
        status.update(self.usage.to_dict(self.engine))
        return status


class SessionRegistry:
    def __init__(self, terminator=None, ttl_sec=SESSION_TTL_SEC):
        if terminator is None:
            from core.termination import TerminationCoordinator
            terminator = TerminationCoordinator()
        self.terminator = terminator
        self.ttl_sec = ttl_sec
        self._sessions = {}
        self._lock = threading.Lock()
        self._keys = KeyedLocks()

    resolve_session_id = staticmethod(resolve_session_id)

    def find(self, session_id):
        with self._lock:
            return self._sessions.get(session_id)

    def get(self, session_id):
        session = self.find(session_id)
        if session is None:
            raise NotFound("session", session_id)
        return session

    def get_or_create(self, session_id, factory):
        """Create the session via factory(start_seq) unless one is already live.

        A live session raises SessionBusy, and so does a stopped one whose
        process has not exited yet. A finished one is replaced and its
        sequence counter carried over so entry ids stay unique.
        """
        with self._keys.hold(session_id):
            existing = self.find(session_id)
            if existing is not None and (existing.is_live or existing.process_alive):
                raise SessionBusy(session_id)
            start_seq = existing.stream.counter if existing is not None else 0
            session = factory(start_seq)
            with self._lock:
                self._sessions[session_id] = session
            logger.info(f"[Session] Registered {session_id} (seq from {start_seq})")
            return session

    def terminate(self, session_id, reason="terminated"):
        """Stop a session. Unknown or already finished sessions are a no-op (False)."""
        with self._keys.hold(session_id):
            session = self.find(session_id)
            if session is None:
                return False
            return self.terminator.request_stop(session, reason=reason)

    def sessions_for_conversation(self, conversation_id):
        with self._lock:
            return [s for s in self._sessions.values() if s.conversation_id == conversation_id]

    def list_active(self, engine=None):
        with self._lock:
            sessions = list(self._sessions.values())
        return [s for s in sessions if s.is_live and (engine is None or s.engine == engine)]

    def list_all(self):
        with self._lock:
            return list(self._sessions.values())

    def cleanup_expired(self, now=None):
        """Evict finished sessions older than the TTL."""
        cutoff = (now if now is not None else time.time()) - self.ttl_sec
        cleaned = 0
        with self._lock:
            dead_keys = [
                key for key, session in self._sessions.items()
                if session.is_terminal and not session.process_alive
                and session.finish_time is not None and session.finish_time < cutoff
            ]
            for key in dead_keys:
                self._sessions.pop(key, None)
                cleaned += 1
        if cleaned:
            logger.info(f"[Cleanup] Removed {cleaned} finished session(s)")
        return cleaned

    def __len__(self):
        with self._lock:
            return len(self._sessions)
