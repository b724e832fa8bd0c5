"""Codex engine adapter."""
import os
import json
import shutil

from utils.config import logger, _get_sandbox_mode, _get_codex_home
from providers.base import Engine, _prepend_briefing, _filter_debug_messages


def _resolve_codex_path(config=None):
    return (
        (config or {}).get("codex_path")
        or os.environ.get("CODEX_PATH")
        or os.environ.get("CODEX_BIN")
        or shutil.which("codex")
    )


def _build_codex_args(codex_path, config, json_events, resume_session_id):
    args = [codex_path]
    sandbox_mode = _get_sandbox_mode(config, "codex")
    if sandbox_mode:
        args.extend(["--sandbox", sandbox_mode])
    args.append("exec")
    args.append("--skip-git-repo-check")
    if json_events:
        args.append("--json")
    if resume_session_id:
        args.extend(["resume", resume_session_id])
    return args


def _extract_session_id(evt):
    if not isinstance(evt, dict):
        return None
    for key in ("thread_id", "threadId", "session_id", "sessionId"):
        val = evt.get(key)
        if isinstance(val, str) and val:
            return val
    return None


def _render_codex_event(evt):
    """Turn one JSON event into display text, or None for bookkeeping events."""
    evt_type = evt.get("type")
    if evt_type == "item.completed":
        item = evt.get("item") or {}
        item_type = item.get("type")
        if item_type == "agent_message":
            return item.get("text") or None
        if item_type == "reasoning":
            text = item.get("text")
            return f"_{text}_" if text else None
        if item_type == "command_execution":
            command = item.get("command") or ""
            output = (item.get("aggregated_output") or "").rstrip()
            exit_code = item.get("exit_code")
            header = f"$ {command}" if command else "$"
            if exit_code not in (None, 0):
                header += f"  (exit {exit_code})"
            return f"{header}\n{output}" if output else header
        if item_type == "file_change":
            changes = item.get("changes") or []
            paths = [c.get("path") for c in changes if isinstance(c, dict) and c.get("path")]
            return "Edited " + ", ".join(paths) if paths else None
        if item_type == "message" and item.get("role") == "assistant":
            parts = [c.get("text", "") for c in item.get("content", []) if c.get("type") == "text"]
            return "\n".join(parts) or None
    if evt_type in ("error", "turn.failed"):
        err = evt.get("message") or (evt.get("error") or {}).get("message")
        return f"Error: {err}" if err else None
    return None


_TOOL_ITEM_TYPES = {"command_execution", "file_change", "mcp_tool_call", "web_search"}


def _track_codex_usage(evt, usage):
    evt_type = evt.get("type")
    if evt.get("model"):
        usage.set_model(evt["model"])
    if evt_type == "turn.completed" and evt.get("usage"):
        tokens = usage.add_tokens(evt["usage"])
        logger.info(
            f"[Codex] Turn completed: input={tokens['input_tokens']} "
            f"cached={tokens['cache_read_tokens']} output={tokens['output_tokens']}"
        )
    elif evt_type == "item.completed" and (evt.get("item") or {}).get("type") in _TOOL_ITEM_TYPES:
        usage.add_tool_calls()


class CodexEngine(Engine):
    name = "codex"
    display_name = "OpenAI Codex"

    def __init__(self, json_events=True):
        self.json_events = json_events

    def resolve_path(self, config):
        return _resolve_codex_path(config)

    def build_command(self, path, prompt, continuation, config):
        native_id = continuation.native_session_id if continuation else None
        args = _build_codex_args(path, config, self.json_events, native_id)
        briefing = continuation.briefing if continuation else None
        if briefing:
            logger.info(f"[Context] Injecting {len(briefing)} chars of context into {self.name} prompt")
        return args, _prepend_briefing(prompt, briefing), native_id

    def build_env(self, config, thinking_mode=False):
        env = super().build_env(config, thinking_mode)
        if not env.get("CODEX_HOME"):
            env["CODEX_HOME"] = _get_codex_home()
        return env

    def parse_line(self, label, text, usage=None):
        if label == "stderr":
            text = _filter_debug_messages(text)
            if not text or not text.strip():
                return None, None
            return text, None
        if not self.json_events:
            return super().parse_line(label, text, usage)
        raw = text.strip()
        if not raw:
            return None, None
        try:
            evt = json.loads(raw)
        except json.JSONDecodeError:
            return text, None
        if not isinstance(evt, dict):
            return text, None
        if evt.get("type") == "thread.started":
            return None, _extract_session_id(evt)
        if usage is not None:
            _track_codex_usage(evt, usage)
        return _render_codex_event(evt), None
