"""Token usage accounting and cost estimates for AI runs."""
import threading

# USD per million tokens.
PRICING = {
    "claude-code": {
        "claude-sonnet-4-5-20250929": {"input": 3.00, "output": 15.00, "cache_creation": 3.75, "cache_read": 0.30},
        "claude-sonnet-4-20250514": {"input": 3.00, "output": 15.00, "cache_creation": 3.75, "cache_read": 0.30},
        "claude-opus-4-20250514": {"input": 15.00, "output": 75.00, "cache_creation": 18.75, "cache_read": 1.50},
        "default": {"input": 3.00, "output": 15.00, "cache_creation": 3.75, "cache_read": 0.30},
    },
    "codex": {
        "default": {"input": 0.10, "output": 0.30, "cache_creation": 0.0, "cache_read": 0.0},
    },
}

TOKEN_KEYS = ("input_tokens", "output_tokens", "cache_creation_tokens", "cache_read_tokens")


def empty_usage():
    return {key: 0 for key in TOKEN_KEYS}


def _as_int(value):
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


def extract_token_usage(raw):
    """Normalize an Anthropic or Codex usage object into the four token counters.

    Codex reports cached_input_tokens as part of input_tokens; they are split
    out so every token is counted once.
    """
    usage = empty_usage()
    if not isinstance(raw, dict):
        return usage
    usage["input_tokens"] = _as_int(raw.get("input_tokens"))
    usage["output_tokens"] = _as_int(raw.get("output_tokens"))
    usage["cache_creation_tokens"] = _as_int(raw.get("cache_creation_input_tokens"))
    usage["cache_read_tokens"] = _as_int(raw.get("cache_read_input_tokens"))
    cached = _as_int(raw.get("cached_input_tokens"))
    if cached:
        usage["cache_read_tokens"] += cached
        usage["input_tokens"] = max(0, usage["input_tokens"] - cached)
    return usage


def _rates(engine, model):
    engine_pricing = PRICING.get(engine) or PRICING["claude-code"]
    return (model and engine_pricing.get(model)) or engine_pricing["default"]


def calculate_cost(usage, engine="claude-code", model=None):
    """Price a usage dict. Unknown engines are priced as claude-code, unknown models at the engine default."""
    rates = _rates(engine, model)
    tokens = {key: _as_int((usage or {}).get(key)) for key in TOKEN_KEYS}
    costs = {
        "input_cost": tokens["input_tokens"] / 1_000_000 * rates["input"],
        "output_cost": tokens["output_tokens"] / 1_000_000 * rates["output"],
        "cache_creation_cost": tokens["cache_creation_tokens"] / 1_000_000 * rates["cache_creation"],
        "cache_read_cost": tokens["cache_read_tokens"] / 1_000_000 * rates["cache_read"],
    }
    result = dict(tokens)
    result["total_tokens"] = sum(tokens.values())
    result.update({key: round(value, 6) for key, value in costs.items()})
    result["total_cost_usd"] = round(sum(costs.values()), 6)
    result["pricing"] = {"engine": engine, "model": model or "default", "rates": dict(rates)}
    return result


class UsageTracker:
    """Running totals for one session, fed by the engine's output parser."""

    def __init__(self):
        self._lock = threading.Lock()
        self._tokens = empty_usage()
        self.model = None
        self.num_messages = 0
        self.num_tool_calls = 0

    def add_tokens(self, raw):
        usage = extract_token_usage(raw)
        with self._lock:
            for key in TOKEN_KEYS:
                self._tokens[key] += usage[key]
            self.num_messages += 1
        return usage

    def replace_tokens(self, raw):
        """Swap in authoritative totals, e.g. from a final result event."""
        usage = extract_token_usage(raw)
        with self._lock:
            self._tokens = usage
        return usage

    def set_model(self, model):
        with self._lock:
            if model and not self.model:
                self.model = model

    def add_tool_calls(self, count=1):
        with self._lock:
            self.num_tool_calls += count

    def tokens(self):
        with self._lock:
            return dict(self._tokens)

    def cost(self, engine):
        return calculate_cost(self.tokens(), engine, self.model)

    def to_dict(self, engine):
        cost = self.cost(engine)
        with self._lock:
            return {
                "tokenUsage": dict(self._tokens),
                "model": self.model,
                "costUsd": cost["total_cost_usd"],
                "numMessages": self.num_messages,
                "numToolCalls": self.num_tool_calls,
            }
