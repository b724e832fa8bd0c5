import os
import pathlib
import json
import time
import threading

from flask import Flask, jsonify, request, Response

from utils.config import (
    logger,
    APP_START_TIME,
    PROJECT_ROOT,
    CLEANUP_INTERVAL_SEC,
)
from utils.validation import (
    _validate_name,
    _validate_engine,
    _validate_conversation_id,
    _validate_todo_id,
    _require_json_body,
)
from core.ai_service import AIService
from core.errors import EngineUnavailable, LaunchFailed, SessionBusy, NotFound
from core.stream import is_terminal

APP = Flask(__name__)

# API Error Codes - Centralized definitions for consistent error handling
# Validation Errors
ERR_INVALID_INPUT = "INVALID_INPUT"
ERR_INVALID_PROMPT = "INVALID_PROMPT"
ERR_INVALID_ENGINE = "INVALID_ENGINE"

# Resource Not Found Errors
ERR_SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
ERR_CONVERSATION_NOT_FOUND = "CONVERSATION_NOT_FOUND"
ERR_HISTORY_NOT_FOUND = "HISTORY_NOT_FOUND"

# Engine / process Errors
ERR_ENGINE_UNAVAILABLE = "ENGINE_UNAVAILABLE"
ERR_LAUNCH_FAILED = "LAUNCH_FAILED"
ERR_SESSION_BUSY = "SESSION_BUSY"

HEARTBEAT_SEC = 15

_AI = AIService()


def _format_duration(seconds):
    seconds = int(max(0, seconds))
    mins, sec = divmod(seconds, 60)
    hrs, mins = divmod(mins, 60)
    days, hrs = divmod(hrs, 24)
    parts = []
    if days:
        parts.append(f"{days}d")
    if hrs:
        parts.append(f"{hrs}h")
    if mins:
        parts.append(f"{mins}m")
    parts.append(f"{sec}s")
    return " ".join(parts)


def _safe_cwd(candidate, project_name=None):
    if candidate:
        return os.path.abspath(candidate)
    if project_name:
        return os.path.abspath(os.path.join(PROJECT_ROOT, project_name))
    return os.path.abspath(PROJECT_ROOT)


def _error_response(message, code=None, details=None, status=400):
    """
    Standard error response format for all API endpoints.

    Args:
        message: Human-readable error message
        code: Optional error code (e.g., "INVALID_INPUT", "NOT_FOUND")
        details: Optional additional error details (dict)
        status: HTTP status code (default 400)

    Returns:
        Tuple of (jsonify response, status code)
    """
    payload = {"error": message}
    if code:
        payload["code"] = code
    if details:
        payload["details"] = details
    return jsonify(payload), status


def _parse_int(value, default, minimum=0, maximum=1000):
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return max(minimum, min(maximum, parsed))


def _parse_last_event_id():
    raw = request.headers.get("Last-Event-ID") or request.args.get("lastEventId")
    if not raw:
        return None
    try:
        return int(raw)
    except (ValueError, TypeError):
        return None


def _sse(entry):
    return f"id: {entry['seq']}\ndata: {json.dumps(entry, ensure_ascii=False)}\n\n"


def _cleanup_loop():
    while True:
        time.sleep(CLEANUP_INTERVAL_SEC)
        try:
            _AI.cleanup()
        except Exception as e:
            logger.error(f"[Cleanup] Session eviction failed: {e}", exc_info=True)


_BACKGROUND_THREADS_STARTED = False
_BACKGROUND_THREADS_LOCK = threading.Lock()


def _ensure_background_threads_started():
    global _BACKGROUND_THREADS_STARTED
    if _BACKGROUND_THREADS_STARTED:
        return
    with _BACKGROUND_THREADS_LOCK:
        if _BACKGROUND_THREADS_STARTED:
            return
        logger.info("[Background] Starting session cleanup thread...")
        threading.Thread(target=_cleanup_loop, name="session-cleanup", daemon=True).start()
        _BACKGROUND_THREADS_STARTED = True


@APP.before_request
def _start_background_threads_once():
    _ensure_background_threads_started()


@APP.get("/health")
def health():
    uptime = time.time() - APP_START_TIME
    return jsonify(
        {
            "ok": True,
            "uptime": _format_duration(uptime),
            "sessions": len(_AI.sessions),
            "activeSessions": len(_AI.sessions.list_active()),
            "conversations": len(_AI.conversations),
        }
    )


@APP.post("/api/projects/<name>/ai")
def execute_ai(name):
    name_err = _validate_name(name, "project name")
    if name_err:
        return _error_response(name_err, code=ERR_INVALID_INPUT, status=400)
    body, err = _require_json_body()
    if err:
        return err
    prompt = body.get("prompt")
    engine = body.get("engine")
    conversation_id = body.get("conversationId")
    todo_id = body.get("todoId")
    thinking_mode = body.get("thinkingMode", False)
    if not isinstance(prompt, str) or not prompt.strip():
        return _error_response("prompt must be a non-empty string", code=ERR_INVALID_PROMPT, status=400)
    engine_err = _validate_engine(engine, allow_default=True)
    if engine_err:
        return _error_response(engine_err, code=ERR_INVALID_ENGINE, status=400)
    conv_err = _validate_conversation_id(conversation_id)
    if conv_err:
        return _error_response(conv_err, code=ERR_INVALID_INPUT, status=400)
    todo_err = _validate_todo_id(todo_id)
    if todo_err:
        return _error_response(todo_err, code=ERR_INVALID_INPUT, status=400)
    if not isinstance(thinking_mode, bool):
        return _error_response("thinkingMode must be a boolean", code=ERR_INVALID_INPUT, status=400)
    cwd = _safe_cwd(body.get("cwd") or body.get("projectPath"), name)

    logger.info(
        f"[API] AI request for {name} (engine={engine or 'default'}, "
        f"conversation={conversation_id or 'new'}, thinking={thinking_mode})"
    )
    try:
        result = _AI.execute(
            name,
            prompt.strip(),
            cwd,
            engine=engine,
            conversation_id=conversation_id,
            todo_id=todo_id,
            thinking_mode=thinking_mode,
        )
    except EngineUnavailable as e:
        return _error_response(str(e), code=ERR_ENGINE_UNAVAILABLE, details={"engine": e.engine}, status=400)
    except SessionBusy as e:
        return _error_response(str(e), code=ERR_SESSION_BUSY, details={"sessionId": e.session_id}, status=409)
    except LaunchFailed as e:
        return _error_response(str(e), code=ERR_LAUNCH_FAILED, details={"sessionId": e.session_id}, status=500)
    return jsonify(result)


@APP.get("/api/projects/<name>/ai/stream/<session_id>")
def stream_ai(name, session_id):
    after_seq = _parse_last_event_id()
    service = _AI

    def generate():
        subscription = service.subscribe(session_id, after_seq=after_seq)
        logger.info(f"[SSE] Subscriber attached to {session_id} (after={after_seq})")
        try:
            yield "event: open\ndata: {}\n\n"
            while True:
                entry = subscription.next_entry(timeout=HEARTBEAT_SEC)
                if entry is None:
                    if subscription.done:
                        if subscription.overflowed:
                            yield "event: error\ndata: {\"error\": \"subscriber too slow, reconnect\"}\n\n"
                        break
                    # Keep SSE connection alive while the engine is quiet.
                    yield ": heartbeat\n\n"
                    continue
                yield _sse(entry)
                if is_terminal(entry):
                    break
        finally:
            subscription.close()
            logger.info(f"[SSE] Subscriber detached from {session_id}")

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@APP.get("/api/projects/<name>/ai/status/<session_id>")
def session_status(name, session_id):
    return jsonify(_AI.status(session_id))


@APP.get("/api/projects/<name>/ai/logs/<session_id>")
def session_logs(name, session_id):
    limit = _parse_int(request.args.get("limit"), 100)
    try:
        logs = _AI.logs(session_id, limit)
    except NotFound as e:
        return _error_response(str(e), code=ERR_SESSION_NOT_FOUND, status=404)
    return jsonify({"sessionId": session_id, "logs": logs})


@APP.post("/api/projects/<name>/ai/terminate/<session_id>")
def terminate_session(name, session_id):
    stopped = _AI.terminate(session_id)
    message = "session terminated" if stopped else "session was not running"
    return jsonify({"success": True, "terminated": stopped, "message": message})


@APP.get("/api/projects/<name>/ai/history")
def get_history(name):
    engine = request.args.get("engine") or None
    limit = _parse_int(request.args.get("limit"), 10, minimum=1, maximum=100)
    return jsonify({"history": _AI.history(name, engine=engine, limit=limit), "engine": engine})


@APP.get("/api/projects/<name>/ai/history/<record_id>")
def get_history_detail(name, record_id):
    try:
        record = _AI.history_record(name, record_id)
    except NotFound as e:
        return _error_response(str(e), code=ERR_HISTORY_NOT_FOUND, status=404)
    return jsonify(record)


@APP.delete("/api/projects/<name>/ai/history")
def clear_history(name):
    engine = request.args.get("engine") or None
    _AI.clear_history(name, engine=engine)
    return jsonify({"success": True, "message": "history cleared"})


@APP.delete("/api/conversations/<conversation_id>")
def delete_conversation(conversation_id):
    result = _AI.delete_conversation(conversation_id)
    return jsonify({"success": True, **result})


@APP.get("/api/conversations/<conversation_id>/stats")
def conversation_stats(conversation_id):
    try:
        stats = _AI.conversation_stats(conversation_id)
    except NotFound as e:
        return _error_response(str(e), code=ERR_CONVERSATION_NOT_FOUND, status=404)
    return jsonify(stats)


@APP.get("/api/ai/sessions")
def list_sessions():
    engine = request.args.get("engine") or None
    return jsonify({"sessions": _AI.active_sessions(engine), "engine": engine})


@APP.get("/api/ai/engines")
def list_engines():
    return jsonify({"engines": _AI.engines.available_engines(), "default": _AI.engines.default})


@APP.get("/api/ai/engines/<engine>/check")
def check_engine(engine):
    return jsonify({"engine": engine, "available": _AI.engines.check_engine_available(engine)})


if __name__ == "__main__":
    pathlib.Path(PROJECT_ROOT).mkdir(parents=True, exist_ok=True)

    host = os.environ.get("HOST", "127.0.0.1")
    port = int(os.environ.get("PORT", "5025"))
    _ensure_background_threads_started()
    logger.info(f"[Server] Listening on {host}:{port}")
    APP.run(host=host, port=port, debug=False, threaded=True)
