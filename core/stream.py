"""Per-session output buffer and subscriber fan-out.

Every session owns one SessionStream. The producer (the capture pump or the
termination coordinator) calls emit()/close(); each consumer holds a
Subscription with its own bounded queue, so a slow reader never stalls the
producer or other readers. A reader whose queue fills up is dropped.
"""
import queue
import threading
import time
from collections import deque

from utils.config import logger, SESSION_BUFFER_SIZE, SUBSCRIBER_QUEUE_SIZE
from core.dedup import OutputDeduplicator, TERMINAL_KIND

_OVERFLOW = object()


def _now_ms():
    return int(time.time() * 1000)


def build_entry(session_id, seq, kind, content, **extra):
    entry = {
        "id": f"{session_id}:{seq}",
        "seq": seq,
        "type": kind,
        "content": content,
        "timestamp": _now_ms(),
        "session_id": session_id,
    }
    entry.update(extra)
    return entry


def is_terminal(entry):
    return bool(entry) and entry.get("type") == TERMINAL_KIND


class Subscription:
    """One consumer's view of a session stream: buffered replay, then live entries."""

    def __init__(self, stream, q, replay):
        self._stream = stream
        self._queue = q
        self._replay = deque(replay)
        self.overflowed = False
        self.finished = False
        self.closed = False

    @property
    def done(self):
        return self.finished or self.closed

    def _offer(self, entry):
        try:
            self._queue.put_nowait(entry)
            return True
        except queue.Full:
            return False

    def _overflow(self):
        self.overflowed = True
        # Unread entries are discarded; the client reconnects and replays.
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
        self._queue.put_nowait(_OVERFLOW)

    def next_entry(self, timeout=None):
        """Return the next entry, or None on timeout or once the subscription is done."""
        if self.done:
            return None
        if self._replay:
            entry = self._replay.popleft()
        elif self._queue is None:
            self.finished = True
            return None
        else:
            try:
                entry = self._queue.get(timeout=timeout)
            except queue.Empty:
                return None
        if entry is _OVERFLOW:
            self.finished = True
            self.close()
            return None
        if is_terminal(entry):
            self.finished = True
            self.close()
        return entry

    def __iter__(self):
        while not self.done:
            entry = self.next_entry(timeout=0.5)
            if entry is not None:
                yield entry

    def close(self):
        if self.closed:
            return
        self.closed = True
        if self._stream is not None:
            self._stream.unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


def closed_subscription(session_id, reason="not_found"):
    """Subscription for a session nobody is tracking: one terminal marker, nothing else."""
    terminal = build_entry(
        session_id,
        0,
        TERMINAL_KIND,
        "session not found",
        success=False,
        reason=reason,
        exit_code=None,
        duration_ms=0,
    )
    return Subscription(None, None, [terminal])


class SessionStream:
    def __init__(self, session_id, maxlen=SESSION_BUFFER_SIZE, dedup=None, queue_size=SUBSCRIBER_QUEUE_SIZE, start_seq=0):
        self.session_id = session_id
        self.buffer = deque(maxlen=maxlen)
        self.counter = start_seq
        self.queue_size = queue_size
        self.dedup = dedup if dedup is not None else OutputDeduplicator()
        self.subscribers = set()
        self.lock = threading.Lock()
        self.closed = False
        self.terminal = None
        self.truncated = 0
        self.dropped_subscribers = 0

    def _append(self, entry):
        if len(self.buffer) == self.buffer.maxlen:
            self.truncated += 1
        self.buffer.append(entry)
        dead = []
        for sub in self.subscribers:
            if not sub._offer(entry):
                dead.append(sub)
        for sub in dead:
            logger.warning(f"[Backpressure] Disconnecting slow subscriber for {self.session_id} (queue full)")
            self.subscribers.discard(sub)
            sub._overflow()
            self.dropped_subscribers += 1

    def emit(self, kind, content):
        """Dedup, sequence, buffer and fan out one fragment. Returns the entry or None if dropped."""
        with self.lock:
            if self.closed:
                return None
            if not self.dedup.admit(kind, content):
                return None
            self.counter += 1
            entry = build_entry(self.session_id, self.counter, kind, content)
            self._append(entry)
            return entry

    def close(self, success, reason, content="", exit_code=None, duration_ms=None):
        """Emit the single terminal entry. Returns it, or None if the stream was already closed."""
        with self.lock:
            if self.closed:
                return None
            self.counter += 1
            entry = build_entry(
                self.session_id,
                self.counter,
                TERMINAL_KIND,
                content,
                success=bool(success),
                reason=reason,
                exit_code=exit_code,
                duration_ms=duration_ms,
            )
            self.closed = True
            self.terminal = entry
            self._append(entry)
            self.subscribers.clear()
            return entry

    def subscribe(self, after_seq=None):
        """Register a consumer atomically with a snapshot of the buffer.

        With after_seq, replayed entries the client already has are skipped;
        the terminal entry is always replayed.
        """
        with self.lock:
            replay = [
                e for e in self.buffer
                if after_seq is None or e["seq"] > after_seq or is_terminal(e)
            ]
            if self.closed:
                return Subscription(None, None, replay)
            sub = Subscription(self, queue.Queue(maxsize=self.queue_size), replay)
            self.subscribers.add(sub)
            return sub

    def unsubscribe(self, sub):
        with self.lock:
            self.subscribers.discard(sub)

    def snapshot(self, limit=None):
        with self.lock:
            entries = list(self.buffer)
        if limit is not None and limit >= 0:
            entries = entries[-limit:] if limit else []
        return entries

    def subscriber_count(self):
        with self.lock:
            return len(self.subscribers)
