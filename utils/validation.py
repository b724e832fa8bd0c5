"""Request validation helpers."""
import re

from flask import request, jsonify

_CONVERSATION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:-]{0,199}$")


def _validate_name(value, label="name", max_len=120):
    if not isinstance(value, str):
        return f"{label} must be a string"
    name = value.strip()
    if not name:
        return f"{label} is required"
    if len(name) > max_len:
        return f"{label} must be {max_len} chars or fewer"
    if any(ch in name for ch in ["/", "\\", "\0"]):
        return f"{label} contains invalid characters"
    if name in {".", ".."}:
        return f"{label} is invalid"
    return None


def _validate_engine(value, allow_default=False):
    if not value and allow_default:
        return None
    if not isinstance(value, str) or not value.strip():
        return "engine must be a non-empty string"
    if len(value) > 64:
        return "engine must be 64 chars or fewer"
    return None


def _validate_conversation_id(value):
    if value is None:
        return None
    if not isinstance(value, str):
        return "conversationId must be a string"
    if not _CONVERSATION_ID_RE.match(value):
        return "conversationId contains invalid characters"
    return None


def _validate_todo_id(value):
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        return "todoId must be a string or integer"
    return None


def _require_json_body(allow_empty=False):
    body = request.get_json(silent=True)
    if body is None:
        if allow_empty:
            return {}, None
        return None, (jsonify({"error": "invalid or missing JSON body"}), 400)
    if not isinstance(body, dict):
        return None, (jsonify({"error": "JSON body must be an object"}), 400)
    return body, None
