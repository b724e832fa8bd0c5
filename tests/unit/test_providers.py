"""Unit tests for the engine adapters and the engine registry."""
import json
import uuid

import pytest

from core.conversation_manager import ContinuationContext
from core.errors import EngineUnavailable
from providers.base import _filter_debug_messages, _prepend_briefing
from providers.claude import ClaudeEngine, DeepSeekEngine, _is_uuid
from providers.codex import CodexEngine, _build_codex_args, _render_codex_event
from providers.registry import EngineRegistry
from core.usage import UsageTracker


class TestHelpers:
    """Tests for shared provider helpers."""

    def test_filter_debug_messages(self):
        text = "Reading prompt from stdin...\nreal output"
        assert _filter_debug_messages(text) == "real output"

    def test_prepend_briefing_without_context(self):
        assert _prepend_briefing("do it", None) == "do it"

    def test_prepend_briefing_with_context(self):
        text = _prepend_briefing("do it", "User: earlier")
        assert text.startswith("# Session Context")
        assert "User: earlier" in text
        assert text.endswith("# Current Request\n\ndo it")


class TestClaudeEngine:
    """Tests for ClaudeEngine.build_command and parse_line."""

    def test_first_run_pins_session_id(self):
        args, stdin_text, native_id = ClaudeEngine().build_command("claude", "hello", None, {})
        assert args[:3] == ["claude", "-p", "--dangerously-skip-permissions"]
        assert args[3] == "--session-id"
        assert args[4] == native_id
        assert _is_uuid(native_id)
        assert stdin_text == "hello"

    def test_resume_uses_native_id(self):
        native = str(uuid.uuid4())
        ctx = ContinuationContext("claude-code", native_session_id=native)
        args, _, native_id = ClaudeEngine().build_command("claude", "again", ctx, {})
        assert args[3:5] == ["--resume", native]
        assert native_id == native

    def test_non_uuid_native_id_starts_fresh(self):
        ctx = ContinuationContext("claude-code", native_session_id="not-a-uuid")
        args, _, native_id = ClaudeEngine().build_command("claude", "again", ctx, {})
        assert "--resume" not in args
        assert native_id != "not-a-uuid"

    def test_briefing_is_prepended(self):
        ctx = ContinuationContext("claude-code", briefing="User: from codex")
        _, stdin_text, _ = ClaudeEngine().build_command("claude", "continue", ctx, {})
        assert "User: from codex" in stdin_text
        assert stdin_text.endswith("continue")

    def test_parse_line_drops_status_glyphs(self):
        engine = ClaudeEngine()
        assert engine.parse_line("stdout", "● Running tool") == (None, None)
        assert engine.parse_line("stdout", "   ") == (None, None)
        assert engine.parse_line("stdout", "answer") == ("answer", None)

    def test_resolve_path_prefers_config(self):
        assert ClaudeEngine().resolve_path({"claude_path": "/opt/claude"}) == "/opt/claude"

    def test_stream_json_flags(self):
        args, _, _ = ClaudeEngine().build_command("claude", "hello", None, {})
        assert args[-3:] == ["--output-format", "stream-json", "--verbose"]
        plain, _, _ = ClaudeEngine(stream_json=False).build_command("claude", "hello", None, {})
        assert "--output-format" not in plain

    def test_init_event_yields_native_id_and_model(self):
        usage = UsageTracker()
        line = json.dumps({"type": "system", "subtype": "init", "session_id": "abc", "model": "claude-sonnet-4-20250514"})
        assert ClaudeEngine().parse_line("stdout", line, usage) == (None, "abc")
        assert usage.model == "claude-sonnet-4-20250514"

    def test_assistant_event_rendered_and_counted(self):
        usage = UsageTracker()
        line = json.dumps({
            "type": "assistant",
            "message": {
                "model": "claude-opus-4-20250514",
                "content": [
                    {"type": "text", "text": "Reading the file"},
                    {"type": "tool_use", "name": "Read", "input": {"file_path": "app.py"}},
                ],
                "usage": {
                    "input_tokens": 10,
                    "output_tokens": 5,
                    "cache_creation_input_tokens": 100,
                    "cache_read_input_tokens": 1000,
                },
            },
        })
        content, native_id = ClaudeEngine().parse_line("stdout", line, usage)
        assert content == "Reading the file\n\n[Read] app.py"
        assert native_id is None
        assert usage.tokens() == {
            "input_tokens": 10,
            "output_tokens": 5,
            "cache_creation_tokens": 100,
            "cache_read_tokens": 1000,
        }
        assert usage.model == "claude-opus-4-20250514"
        assert usage.num_messages == 1
        assert usage.num_tool_calls == 1

    def test_result_event_replaces_totals(self):
        usage = UsageTracker()
        usage.add_tokens({"input_tokens": 10, "output_tokens": 5})
        usage.add_tokens({"input_tokens": 10, "output_tokens": 5})
        line = json.dumps({"type": "result", "subtype": "success", "usage": {"input_tokens": 12, "output_tokens": 7}})
        assert ClaudeEngine().parse_line("stdout", line, usage) == (None, None)
        assert usage.tokens()["input_tokens"] == 12
        assert usage.tokens()["output_tokens"] == 7

    def test_result_error_is_shown(self):
        line = json.dumps({"type": "result", "subtype": "error_max_turns", "is_error": True, "errors": ["too many turns"]})
        assert ClaudeEngine().parse_line("stdout", line) == ("Error: too many turns", None)

    def test_tool_results_are_dropped(self):
        line = json.dumps({"type": "user", "message": {"content": [{"type": "tool_result"}]}})
        assert ClaudeEngine().parse_line("stdout", line) == (None, None)


class TestDeepSeekEngine:
    def test_requires_api_key(self, monkeypatch):
        monkeypatch.delenv("DEEPSEEK_API_KEY", raising=False)
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        engine = DeepSeekEngine()
        assert engine.is_available({"claude_path": "/opt/claude"}) is False
        assert engine.is_available({"claude_path": "/opt/claude", "deepseek_api_key": "sk-1"}) is True

    def test_env_points_at_deepseek(self):
        env = DeepSeekEngine().build_env({"deepseek_api_key": "sk-1"})
        assert env["ANTHROPIC_API_KEY"] == "sk-1"
        assert env["ANTHROPIC_BASE_URL"].startswith("https://")
        assert env["ANTHROPIC_MODEL"]

    def test_model_from_environment(self, monkeypatch):
        monkeypatch.setenv("DEEPSEEK_MODEL", "deepseek-custom")
        env = DeepSeekEngine().build_env({"deepseek_api_key": "sk-1"})
        assert env["ANTHROPIC_MODEL"] == "deepseek-custom"

    def test_config_model_wins_over_environment(self, monkeypatch):
        monkeypatch.setenv("DEEPSEEK_MODEL", "deepseek-custom")
        env = DeepSeekEngine().build_env({"deepseek_api_key": "sk-1", "deepseek_model": "deepseek-v9"})
        assert env["ANTHROPIC_MODEL"] == "deepseek-v9"

    def test_default_model(self, monkeypatch):
        monkeypatch.delenv("DEEPSEEK_MODEL", raising=False)
        env = DeepSeekEngine().build_env({"deepseek_api_key": "sk-1"})
        assert env["ANTHROPIC_MODEL"] == "deepseek-chat"

    def test_thinking_mode_switches_to_reasoner(self, monkeypatch):
        monkeypatch.setenv("DEEPSEEK_MODEL", "deepseek-custom")
        env = DeepSeekEngine().build_env({"deepseek_api_key": "sk-1", "deepseek_model": "deepseek-v9"}, thinking_mode=True)
        assert env["ANTHROPIC_MODEL"] == "deepseek-reasoner"

    def test_only_deepseek_supports_thinking(self):
        assert DeepSeekEngine.supports_thinking is True
        assert ClaudeEngine.supports_thinking is False
        assert CodexEngine.supports_thinking is False


class TestCodexEngine:
    """Tests for CodexEngine."""

    def test_build_args(self):
        args = _build_codex_args("codex", {}, True, None)
        assert args == ["codex", "exec", "--skip-git-repo-check", "--json"]

    def test_build_args_with_sandbox_and_resume(self):
        args = _build_codex_args("codex", {"sandbox_mode_codex": "workspace-write"}, True, "thread-1")
        assert args[:3] == ["codex", "--sandbox", "workspace-write"]
        assert args[-2:] == ["resume", "thread-1"]

    def test_thread_started_yields_native_id(self):
        line = json.dumps({"type": "thread.started", "thread_id": "thread-xyz"})
        assert CodexEngine().parse_line("stdout", line) == (None, "thread-xyz")

    def test_agent_message_rendered(self):
        line = json.dumps({"type": "item.completed", "item": {"type": "agent_message", "text": "All done"}})
        assert CodexEngine().parse_line("stdout", line) == ("All done", None)

    def test_bookkeeping_events_dropped(self):
        line = json.dumps({"type": "turn.started"})
        assert CodexEngine().parse_line("stdout", line) == (None, None)

    def test_non_json_passes_through(self):
        assert CodexEngine().parse_line("stdout", "plain text") == ("plain text", None)

    def test_stderr_debug_noise_dropped(self):
        assert CodexEngine().parse_line("stderr", "Reading prompt from stdin...") == (None, None)

    def test_render_command_execution(self):
        evt = {
            "type": "item.completed",
            "item": {"type": "command_execution", "command": "ls", "aggregated_output": "a.py\n", "exit_code": 2},
        }
        assert _render_codex_event(evt) == "$ ls  (exit 2)\na.py"

    def test_render_file_change_and_error(self):
        change = {"type": "item.completed", "item": {"type": "file_change", "changes": [{"path": "a.py"}]}}
        assert _render_codex_event(change) == "Edited a.py"
        assert _render_codex_event({"type": "error", "message": "quota"}) == "Error: quota"

    def test_build_env_sets_codex_home(self, monkeypatch):
        monkeypatch.delenv("CODEX_HOME", raising=False)
        assert CodexEngine().build_env({})["CODEX_HOME"]

    def test_turn_completed_usage_tracked(self):
        usage = UsageTracker()
        line = json.dumps({
            "type": "turn.completed",
            "usage": {"input_tokens": 1200, "cached_input_tokens": 200, "output_tokens": 300},
        })
        assert CodexEngine().parse_line("stdout", line, usage) == (None, None)
        assert usage.tokens() == {
            "input_tokens": 1000,
            "output_tokens": 300,
            "cache_creation_tokens": 0,
            "cache_read_tokens": 200,
        }
        assert usage.num_messages == 1

    def test_tool_items_counted(self):
        usage = UsageTracker()
        engine = CodexEngine()
        engine.parse_line("stdout", json.dumps({"type": "item.completed", "item": {"type": "command_execution", "command": "ls"}}), usage)
        engine.parse_line("stdout", json.dumps({"type": "item.completed", "item": {"type": "file_change", "changes": []}}), usage)
        engine.parse_line("stdout", json.dumps({"type": "item.completed", "item": {"type": "agent_message", "text": "ok"}}), usage)
        assert usage.num_tool_calls == 2


class TestEngineRegistry:
    """Tests for EngineRegistry."""

    def test_default_order(self):
        registry = EngineRegistry(config_loader=dict)
        assert registry.names() == ["claude-code", "deepseek", "codex"]
        assert registry.default == "claude-code"

    def test_unknown_engine_raises(self):
        registry = EngineRegistry(config_loader=dict)
        with pytest.raises(EngineUnavailable) as exc:
            registry.get_engine("gpt-9")
        assert exc.value.engine == "gpt-9"
        assert registry.check_engine_available("gpt-9") is False

    def test_empty_name_uses_default(self):
        registry = EngineRegistry(config_loader=dict)
        assert registry.get_engine(None).name == "claude-code"

    def test_available_engines_marks_default(self):
        registry = EngineRegistry(engines=[CodexEngine()], default="codex", config_loader=dict)
        assert registry.available_engines() == [
            {"name": "codex", "displayName": "OpenAI Codex", "isDefault": True, "supportsThinking": False}
        ]

    def test_register_extra_engine(self):
        registry = EngineRegistry(engines=[], config_loader=dict)
        assert registry.default is None
        registry.register(CodexEngine())
        assert registry.default == "codex"

    def test_display_name_lookup(self):
        registry = EngineRegistry(config_loader=dict)
        assert registry.display_name("codex") == "OpenAI Codex"
        assert registry.display_name("deepseek") == "Claude Code - DeepSeek"
        assert registry.display_name("gpt-9") == "gpt-9"
