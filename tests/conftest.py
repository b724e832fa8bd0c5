"""Shared test fixtures for pytest."""
import sys
import os
import pytest
import tempfile
import shutil

# Keep logs, history and project dirs out of the checkout.
os.environ.setdefault("DEVDECK_CWD", tempfile.mkdtemp(prefix="devdeck-test-"))

# Add parent directory to path so we can import from project
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from providers.base import Engine, _prepend_briefing  # noqa: E402
from providers.registry import EngineRegistry  # noqa: E402
from core.ai_service import AIService  # noqa: E402
from core.history import JsonHistoryArchiver  # noqa: E402
from core.termination import TerminationCoordinator  # noqa: E402


ECHO_SCRIPT = """
import sys
prompt = sys.stdin.read().strip()
print("working on: " + prompt.splitlines()[-1])
print("step 1")
print("step 2")
"""

DUPLICATE_SCRIPT = """
import sys
sys.stdin.read()
print("same line")
print("same line")
print("different line")
"""

FAIL_SCRIPT = """
import sys
sys.stdin.read()
print("partial output")
sys.stdout.flush()
sys.stderr.write("boom: something broke\\n")
sys.exit(3)
"""

SLOW_SCRIPT = """
import time
print("started", flush=True)
time.sleep(30)
print("never reached", flush=True)
"""

STUBBORN_SCRIPT = """
import signal, time
signal.signal(signal.SIGTERM, signal.SIG_IGN)
print("started", flush=True)
time.sleep(30)
"""


class ScriptEngine(Engine):
    """Engine that runs a Python snippet with the current interpreter."""

    def __init__(self, name, script=ECHO_SCRIPT, available=True):
        self.name = name
        self.display_name = name
        self.script = script
        self.available = available
        self.continuations = []
        self.prompts = []
        self._runs = 0

    def resolve_path(self, config):
        return sys.executable if self.available else None

    def build_command(self, path, prompt, continuation, config):
        self._runs += 1
        self.continuations.append(continuation)
        native_id = continuation.native_session_id if continuation and continuation.native_session_id else None
        if native_id is None:
            native_id = f"{self.name}-native-{self._runs}"
        text = _prepend_briefing(prompt, continuation.briefing if continuation else None)
        self.prompts.append(text)
        return [path, "-u", "-c", self.script], text, native_id


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    tmpdir = tempfile.mkdtemp()
    yield tmpdir
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def engines():
    """Registry with script-backed claude-code and codex engines."""
    return EngineRegistry(
        engines=[ScriptEngine("claude-code"), ScriptEngine("codex")],
        default="claude-code",
        config_loader=dict,
    )


@pytest.fixture
def archiver(temp_dir):
    return JsonHistoryArchiver(path=os.path.join(temp_dir, "ai-history.json"))


@pytest.fixture
def service(engines, archiver):
    """AIService wired to fake engines with a short termination grace period."""
    return AIService(
        engines=engines,
        archiver=archiver,
        terminator=TerminationCoordinator(grace_sec=0.5),
        timeout_sec=60,
    )


@pytest.fixture
def app(service, monkeypatch):
    """Create Flask app for testing."""
    import app as app_module
    monkeypatch.setattr(app_module, "_AI", service)
    app_module.APP.config['TESTING'] = True
    return app_module.APP


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()


@pytest.fixture
def make_service(temp_dir):
    """Factory for services whose engines run the given scripts.

    scripts maps engine name to script; unavailable names resolve to no binary.
    """
    def build(scripts=None, timeout_sec=60, grace_sec=0.5, unavailable=()):
        scripts = scripts or {"claude-code": ECHO_SCRIPT, "codex": ECHO_SCRIPT}
        registry = EngineRegistry(
            engines=[
                ScriptEngine(name, script, available=name not in unavailable)
                for name, script in scripts.items()
            ],
            default=next(iter(scripts)),
            config_loader=dict,
        )
        return AIService(
            engines=registry,
            archiver=JsonHistoryArchiver(path=os.path.join(temp_dir, "history-factory.json")),
            terminator=TerminationCoordinator(grace_sec=grace_sec),
            timeout_sec=timeout_sec,
        )
    return build


def wait_for_session(service, session_id, timeout=15):
    """Block until the session has finished and its callbacks have run."""
    session = service.sessions.get(session_id)
    assert session.done.wait(timeout), f"{session_id} did not finish within {timeout}s"
    return session


@pytest.fixture
def wait_done():
    return wait_for_session


@pytest.fixture
def scripts():
    """The canned engine scripts, keyed by behaviour."""
    return {
        "echo": ECHO_SCRIPT,
        "duplicate": DUPLICATE_SCRIPT,
        "fail": FAIL_SCRIPT,
        "slow": SLOW_SCRIPT,
        "stubborn": STUBBORN_SCRIPT,
    }
