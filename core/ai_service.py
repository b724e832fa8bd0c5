"""Execute / subscribe / terminate: the operations the HTTP layer calls."""
import time

from utils.config import logger, EXEC_TIMEOUT_SEC
from core.conversation_manager import ConversationRegistry, ContinuationContext, new_conversation_id
from core.errors import NotFound
from core.history import JsonHistoryArchiver, build_history_record
from core.launcher import ProcessLauncher
from core.session_manager import Session, SessionRegistry
from core.state import STATE_COMPLETED
from core.stream import closed_subscription
from core.termination import TerminationCoordinator
from providers.registry import EngineRegistry


class AIService:
    """Wires the registries, launcher and archiver together.

    Lock order is conversation key, then session key, never the reverse.
    A second execute for a live (engine, conversation) pair fails with
    SessionBusy instead of being queued or coalesced.
    """

    def __init__(
        self,
        engines=None,
        conversations=None,
        sessions=None,
        launcher=None,
        archiver=None,
        terminator=None,
        timeout_sec=EXEC_TIMEOUT_SEC,
    ):
        self.engines = engines or EngineRegistry()
        self.terminator = terminator or TerminationCoordinator()
        self.conversations = conversations or ConversationRegistry(engine_label=self.engines.display_name)
        self.sessions = sessions or SessionRegistry(terminator=self.terminator)
        self.launcher = launcher or ProcessLauncher(self.engines, self.terminator)
        self.archiver = archiver if archiver is not None else JsonHistoryArchiver()
        self.timeout_sec = timeout_sec

    def execute(self, project, prompt, cwd, engine=None, conversation_id=None, todo_id=None, thinking_mode=False):
        engine_name = engine or self.engines.default
        # EngineUnavailable leaves no session and no conversation behind.
        self.launcher.check(engine_name)

        is_new = conversation_id is None
        if is_new:
            conversation_id = new_conversation_id(project)

        with self.conversations.hold(conversation_id):
            if is_new:
                self.conversations.create(conversation_id)
            else:
                try:
                    self.conversations.start_or_continue(conversation_id)
                except NotFound:
                    # Client kept an id across a server restart: adopt it.
                    logger.info(f"[AI] Adopting unknown conversation {conversation_id}")
                    self.conversations.create(conversation_id)

            session_id = self.sessions.resolve_session_id(engine_name, conversation_id)
            continuation = self.conversations.context_for(conversation_id, engine_name)

            def factory(start_seq):
                return Session(
                    session_id,
                    engine_name,
                    conversation_id,
                    project,
                    cwd,
                    prompt,
                    todo_id=todo_id,
                    start_seq=start_seq,
                    timeout_sec=self.timeout_sec,
                    thinking_mode=thinking_mode,
                )

            session = self.sessions.get_or_create(session_id, factory)
            session.add_finish_callback(self._on_session_finished)
            self.launcher.launch(session, engine_name, continuation)
            self.conversations.add_user_message(conversation_id, engine_name, prompt)

        logger.info(
            f"[AI] Started {session_id} for {project} (engine={engine_name}, "
            f"conversation={conversation_id}, todo={todo_id or '-'}, context={bool(continuation)})"
        )
        return {
            "success": True,
            "conversationId": conversation_id,
            "sessionId": session_id,
            "engine": engine_name,
            "prompt": prompt,
            "hasContext": bool(continuation and continuation.briefing),
            "resumed": bool(continuation and continuation.native_session_id),
            "thinkingMode": session.thinking_mode,
            "startTime": int(session.started_at * 1000),
        }

    def _on_session_finished(self, session, entry):
        usage = session.usage.to_dict(session.engine)
        if usage["numMessages"]:
            tokens = usage["tokenUsage"]
            logger.info(
                f"[AI] {session.session_id} used {tokens['input_tokens']} in / {tokens['output_tokens']} out "
                f"tokens ({usage['model'] or 'default model'}), about ${usage['costUsd']:.4f}"
            )
        if session.state == STATE_COMPLETED:
            self.conversations.record_turn(
                session.conversation_id,
                session.engine,
                ContinuationContext(session.engine, native_session_id=session.native_session_id),
                session.assistant_text(),
            )
        if self.archiver is not None:
            self.archiver.archive(build_history_record(session))

    def subscribe(self, session_id, after_seq=None):
        """Replay plus live entries; unknown ids get an immediate terminal marker."""
        session = self.sessions.find(session_id)
        if session is None:
            logger.info(f"[SSE] Subscribe to unknown session {session_id}")
            return closed_subscription(session_id)
        return session.stream.subscribe(after_seq=after_seq)

    def terminate(self, session_id):
        stopped = self.sessions.terminate(session_id)
        if stopped:
            logger.info(f"[AI] Terminated {session_id}")
        return stopped

    def delete_conversation(self, conversation_id):
        """Drop a conversation and stop every session still running for it. Idempotent."""
        with self.conversations.hold(conversation_id):
            stopped = [
                s.session_id
                for s in self.sessions.sessions_for_conversation(conversation_id)
                if self.sessions.terminate(s.session_id)
            ]
            deleted = self.conversations.delete(conversation_id)
        return {"deleted": deleted, "terminated": stopped}

    def conversation_stats(self, conversation_id):
        stats = self.conversations.stats(conversation_id)
        if stats is None:
            raise NotFound("conversation", conversation_id)
        return stats

    def status(self, session_id):
        session = self.sessions.find(session_id)
        if session is None:
            return {"sessionId": session_id, "running": False, "state": None}
        return session.to_status()

    def logs(self, session_id, limit=100):
        return self.sessions.get(session_id).stream.snapshot(limit)

    def active_sessions(self, engine=None):
        return [s.to_status() for s in self.sessions.list_active(engine)]

    def history(self, project, engine=None, limit=10):
        return self.archiver.get_history(project, engine=engine, limit=limit)

    def history_record(self, project, record_id):
        record = self.archiver.get_record(project, record_id)
        if record is None:
            raise NotFound("history record", record_id)
        return record

    def clear_history(self, project, engine=None):
        return self.archiver.clear(project, engine=engine)

    def cleanup(self, now=None):
        return self.sessions.cleanup_expired(now if now is not None else time.time())
