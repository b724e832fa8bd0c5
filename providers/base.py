"""Engine adapter base and shared helpers."""
import os


def _filter_debug_messages(text):
    """Filter out debug messages from CLI output."""
    if not text:
        return text
    lines = text.split("\n")
    filtered_lines = [
        line
        for line in lines
        if "reading prompt from stdin" not in line.lower()
        and "codex_core::rollout::list: state db missing rollout path for thread" not in line
    ]
    return "\n".join(filtered_lines)


def _enqueue_output(pipe, q, label):
    """Enqueue output lines while filtering debug messages; (label, None) marks EOF."""
    try:
        for line in iter(pipe.readline, ""):
            if "reading prompt from stdin" not in line.lower():
                q.put((label, line))
    except (OSError, ValueError):
        # Pipe closed underneath us by a forced kill.
        pass
    finally:
        try:
            pipe.close()
        except OSError:
            pass
        q.put((label, None))


def _prepend_briefing(prompt, briefing):
    if not briefing:
        return prompt
    return f"""# Session Context

Previous conversation history from other engines:

{briefing}

---

# Current Request

{prompt}"""


class Engine:
    """One AI CLI the launcher knows how to drive.

    Subclasses resolve the binary, build argv, and translate output lines.
    """

    name = None
    display_name = None
    supports_thinking = False

    def resolve_path(self, config):
        raise NotImplementedError

    def is_available(self, config):
        return bool(self.resolve_path(config))

    def build_command(self, path, prompt, continuation, config):
        """Return (argv, stdin_text, native_session_id)."""
        raise NotImplementedError

    def build_env(self, config, thinking_mode=False):
        return os.environ.copy()

    def parse_line(self, label, text, usage=None):
        """Return (content, native_session_id); content None drops the line.

        Engines with structured output report tokens, model and tool calls
        to `usage` (a UsageTracker) when one is given.
        """
        if label == "stderr":
            text = _filter_debug_messages(text)
        if not text or not text.strip():
            return None, None
        return text, None

    def describe(self, default_name=None):
        return {
            "name": self.name,
            "displayName": self.display_name or self.name,
            "isDefault": self.name == default_name,
            "supportsThinking": self.supports_thinking,
        }
