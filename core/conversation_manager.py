"""Engine-independent conversation registry.

A conversation outlives the processes that serve it. It remembers the recent
messages (to brief an engine that joins mid-conversation), the native session
id each engine handed back (to resume that engine's own session), and which
engine spoke last.
"""
import re
import threading
import time
import uuid

from utils.config import logger, MAX_CONVERSATION_MESSAGES, CONTEXT_MESSAGES, CONTEXT_MESSAGE_CHARS
from core.errors import NotFound
from core.state import KeyedLocks

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class ContinuationContext:
    """Opaque hand-off passed to the launcher.

    native_session_id is only ever given back to the engine that produced it;
    briefing is plain text summarising turns served by a different engine.
    """

    def __init__(self, engine, native_session_id=None, briefing=None):
        self.engine = engine
        self.native_session_id = native_session_id
        self.briefing = briefing

    def __bool__(self):
        return bool(self.native_session_id or self.briefing)

    def __repr__(self):
        return (
            f"ContinuationContext(engine={self.engine!r}, "
            f"native_session_id={self.native_session_id!r}, briefing={len(self.briefing or '')} chars)"
        )


def _now_ms():
    return int(time.time() * 1000)


def _id_prefix(project):
    slug = _UNSAFE_ID_CHARS.sub("-", project or "").strip("-._")
    return slug[:60].rstrip("-._") or "conv"


def new_conversation_id(project=None):
    prefix = _id_prefix(project)
    return f"{prefix}-{_now_ms()}-{uuid.uuid4().hex[:4]}"


class ConversationRegistry:
    def __init__(self, max_messages=MAX_CONVERSATION_MESSAGES, engine_label=None):
        self.max_messages = max_messages
        self._engine_label = engine_label or (lambda name: name)
        self._conversations = {}
        self._lock = threading.Lock()
        self._keys = KeyedLocks()

    def hold(self, conversation_id):
        """Serialize a multi-step mutation on one conversation."""
        return self._keys.hold(conversation_id)

    def _get(self, conversation_id):
        with self._lock:
            return self._conversations.get(conversation_id)

    def exists(self, conversation_id):
        return self._get(conversation_id) is not None

    def create(self, conversation_id):
        with self._keys.hold(conversation_id):
            with self._lock:
                record = self._conversations.get(conversation_id)
                if record is None:
                    record = {
                        "messages": [],
                        "engines": set(),
                        "engine_sessions": {},
                        "last_engine": None,
                        "started_at": _now_ms(),
                    }
                    self._conversations[conversation_id] = record
                    logger.info(f"[Conversation] Created {conversation_id}")
            return conversation_id

    def start_or_continue(self, conversation_id=None, project=None):
        if conversation_id is None:
            return self.create(new_conversation_id(project))
        if not self.exists(conversation_id):
            raise NotFound("conversation", conversation_id)
        return conversation_id

    def _trim(self, record):
        if len(record["messages"]) > self.max_messages:
            record["messages"] = record["messages"][-self.max_messages:]

    def add_user_message(self, conversation_id, engine, prompt):
        with self._keys.hold(conversation_id):
            record = self._get(conversation_id)
            if record is None:
                return False
            record["messages"].append(
                {"role": "user", "content": prompt, "engine": engine, "timestamp": _now_ms()}
            )
            record["last_engine"] = engine
            record["engines"].add(engine)
            self._trim(record)
            return True

    def record_turn(self, conversation_id, engine, continuation=None, assistant_text=None):
        """Store the outcome of a finished run. A deleted conversation is left deleted."""
        with self._keys.hold(conversation_id):
            record = self._get(conversation_id)
            if record is None:
                logger.info(f"[Conversation] Skipping turn for deleted conversation {conversation_id}")
                return False
            if assistant_text:
                record["messages"].append(
                    {"role": "assistant", "content": assistant_text, "engine": engine, "timestamp": _now_ms()}
                )
            if continuation is not None and continuation.native_session_id:
                record["engine_sessions"][engine] = continuation.native_session_id
            record["last_engine"] = engine
            record["engines"].add(engine)
            self._trim(record)
            return True

    def get_history(self, conversation_id, limit=10, engine=None):
        record = self._get(conversation_id)
        if record is None:
            return []
        with self._keys.hold(conversation_id):
            messages = list(record["messages"])
        if engine:
            messages = [m for m in messages if m.get("engine") == engine]
        return messages[-limit:] if limit else messages

    def context_for(self, conversation_id, engine):
        """Build the continuation handed to `engine` for its next run, or None."""
        record = self._get(conversation_id)
        if record is None:
            return None
        with self._keys.hold(conversation_id):
            native_id = record["engine_sessions"].get(engine)
            previous = record["last_engine"]
            messages = list(record["messages"])
        briefing = None
        if previous and previous != engine and messages:
            briefing = self._build_briefing(previous, messages[-CONTEXT_MESSAGES:])
            logger.info(f"[Conversation] Engine switch {previous} -> {engine} on {conversation_id}")
        if not native_id and not briefing:
            return None
        return ContinuationContext(engine, native_session_id=native_id, briefing=briefing)

    def _build_briefing(self, previous_engine, messages):
        label = self._engine_label(previous_engine)
        lines = []
        for msg in messages:
            role = "User" if msg["role"] == "user" else "AI"
            content = msg["content"] or ""
            if len(content) > CONTEXT_MESSAGE_CHARS:
                content = content[:CONTEXT_MESSAGE_CHARS] + "..."
            lines.append(f"{role}: {content}")
        summary = "\n\n".join(lines)
        return (
            f"Conversation so far (previously handled by {label}):\n\n"
            f"{summary}\n\n"
            "Continue the work based on the conversation above."
        )

    def delete(self, conversation_id):
        with self._keys.hold(conversation_id):
            with self._lock:
                removed = self._conversations.pop(conversation_id, None)
        if removed is not None:
            logger.info(f"[Conversation] Deleted {conversation_id}")
        return removed is not None

    def stats(self, conversation_id):
        record = self._get(conversation_id)
        if record is None:
            return None
        with self._keys.hold(conversation_id):
            return {
                "messageCount": len(record["messages"]),
                "engines": sorted(record["engines"]),
                "lastEngine": record["last_engine"],
                "startTime": record["started_at"],
                "duration": _now_ms() - record["started_at"],
            }

    def __len__(self):
        with self._lock:
            return len(self._conversations)
