"""Claude Code engine adapter."""
import os
import re
import json
import uuid
import shutil

from utils.config import logger
from providers.base import Engine, _prepend_briefing

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")

DEEPSEEK_REASONER_MODEL = "deepseek-reasoner"


def _resolve_claude_path(config):
    return (
        (config or {}).get("claude_path")
        or os.environ.get("CLAUDE_PATH")
        or shutil.which("claude")
        or shutil.which("claude.cmd")
    )


def _is_uuid(value):
    if not value or not isinstance(value, str):
        return False
    return bool(_UUID_RE.match(value))


def _clean_claude_line(text):
    stripped = text.strip()
    # Status glyphs the CLI prints around tool calls.
    if stripped.startswith("●") or stripped.startswith("└"):
        return None
    return text


def _format_tool_use(block):
    name = block.get("name") or "tool"
    tool_input = block.get("input") or {}
    target = (
        tool_input.get("file_path")
        or tool_input.get("path")
        or tool_input.get("command")
        or tool_input.get("pattern")
        or tool_input.get("url")
    )
    return f"[{name}] {target}" if target else f"[{name}]"


def _render_assistant_message(message):
    parts = []
    for block in message.get("content") or []:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text" and (block.get("text") or "").strip():
            parts.append(block["text"])
        elif block.get("type") == "tool_use":
            parts.append(_format_tool_use(block))
    return "\n\n".join(parts) or None


def _render_claude_event(evt, usage=None):
    """Turn one stream-json event into (display text, native session id)."""
    evt_type = evt.get("type")
    if evt_type == "system":
        if evt.get("subtype") == "init":
            if usage is not None and evt.get("model"):
                usage.set_model(evt["model"])
            return None, evt.get("session_id")
        return None, None
    if evt_type == "assistant":
        message = evt.get("message") or {}
        if usage is not None:
            if message.get("usage"):
                usage.add_tokens(message["usage"])
            usage.set_model(message.get("model"))
            tool_calls = [
                b for b in message.get("content") or []
                if isinstance(b, dict) and b.get("type") == "tool_use"
            ]
            if tool_calls:
                usage.add_tool_calls(len(tool_calls))
        return _render_assistant_message(message), None
    if evt_type == "result":
        if usage is not None and evt.get("usage"):
            usage.replace_tokens(evt["usage"])
        if evt.get("is_error") or (evt.get("subtype") and evt.get("subtype") != "success"):
            errors = evt.get("errors") or [evt.get("result") or evt.get("subtype")]
            return "Error: " + "\n".join(str(e) for e in errors if e), None
        return None, None
    # user (tool results), stream_event and friends are bookkeeping.
    return None, None


class ClaudeEngine(Engine):
    name = "claude-code"
    display_name = "Claude Code"

    def __init__(self, stream_json=True):
        self.stream_json = stream_json

    def resolve_path(self, config):
        return _resolve_claude_path(config)

    def build_command(self, path, prompt, continuation, config):
        args = [path, "-p", "--dangerously-skip-permissions"]
        native_id = continuation.native_session_id if continuation else None
        if _is_uuid(native_id):
            args.extend(["--resume", native_id])
        else:
            # Pin the id up front so the next turn can resume it.
            native_id = str(uuid.uuid4())
            args.extend(["--session-id", native_id])
        if self.stream_json:
            args.extend(["--output-format", "stream-json", "--verbose"])
        briefing = continuation.briefing if continuation else None
        if briefing:
            logger.info(f"[Context] Injecting {len(briefing)} chars of context into {self.name} prompt")
        return args, _prepend_briefing(prompt, briefing), native_id

    def parse_line(self, label, text, usage=None):
        content, _ = super().parse_line(label, text, usage)
        if content is None:
            return None, None
        if label != "stdout":
            return content, None
        if self.stream_json and content.lstrip().startswith("{"):
            try:
                evt = json.loads(content)
            except json.JSONDecodeError:
                evt = None
            if isinstance(evt, dict):
                return _render_claude_event(evt, usage)
        return _clean_claude_line(content), None


class DeepSeekEngine(ClaudeEngine):
    """The claude CLI pointed at DeepSeek's Anthropic-compatible endpoint."""

    name = "deepseek"
    display_name = "Claude Code - DeepSeek"
    default_base_url = "https://api.deepseek.com/anthropic"
    supports_thinking = True

    def _api_key(self, config):
        return (
            (config or {}).get("deepseek_api_key")
            or os.environ.get("DEEPSEEK_API_KEY")
            or os.environ.get("ANTHROPIC_API_KEY")
        )

    def is_available(self, config):
        return bool(self.resolve_path(config) and self._api_key(config))

    def build_env(self, config, thinking_mode=False):
        env = super().build_env(config, thinking_mode)
        env["ANTHROPIC_API_KEY"] = self._api_key(config) or ""
        env["ANTHROPIC_BASE_URL"] = (
            (config or {}).get("deepseek_base_url")
            or os.environ.get("DEEPSEEK_BASE_URL")
            or self.default_base_url
        )
        if thinking_mode:
            env["ANTHROPIC_MODEL"] = DEEPSEEK_REASONER_MODEL
            logger.info(f"[DeepSeek] Thinking mode on, using {DEEPSEEK_REASONER_MODEL}")
        else:
            env["ANTHROPIC_MODEL"] = (
                (config or {}).get("deepseek_model")
                or os.environ.get("DEEPSEEK_MODEL")
                or "deepseek-chat"
            )
        return env
