"""Spawn one engine CLI per run and pump its output into the session stream."""
import queue
import subprocess
import threading
import time
from collections import deque

from utils.config import logger
from core.errors import EngineUnavailable, LaunchFailed
from core.state import STATE_COMPLETED, STATE_FAILED
from providers.base import _enqueue_output

# Grandchildren can keep the pipes open after the CLI itself exits.
_EXIT_DRAIN_SEC = 2.0


class ProcessLauncher:
    def __init__(self, engines, terminator, poll_interval=0.25):
        self.engines = engines
        self.terminator = terminator
        self.poll_interval = poll_interval

    def check(self, engine_name):
        """Raise EngineUnavailable unless the engine is registered and installed."""
        engine = self.engines.get_engine(engine_name)
        config = self.engines.config()
        if not engine.resolve_path(config):
            raise EngineUnavailable(engine.name, "CLI not found in PATH")
        if not engine.is_available(config):
            raise EngineUnavailable(engine.name, "engine is not configured")
        return engine

    def launch(self, session, engine_name, continuation=None):
        """Start the process for `session` and return as soon as it is spawned."""
        engine = self.engines.get_engine(engine_name)
        config = self.engines.config()
        path = engine.resolve_path(config)
        if not path:
            session.finish(STATE_FAILED, False, "launch_failed", content=f"{engine.name} CLI not found in PATH")
            raise EngineUnavailable(engine.name, "CLI not found in PATH")

        args, stdin_text, native_id = engine.build_command(path, session.prompt, continuation, config)
        session.native_session_id = native_id
        if session.thinking_mode and not engine.supports_thinking:
            logger.info(f"[AI] Thinking mode is not supported by {engine.name}, ignoring")
        logger.info(f"[AI] Launching {session.session_id}: {args[0]} ({len(args) - 1} args) in {session.cwd}")
        try:
            proc = subprocess.Popen(
                args,
                cwd=session.cwd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                env=engine.build_env(config, thinking_mode=session.thinking_mode),
            )
        except OSError as e:
            logger.error(f"[AI] Launch failed for {session.session_id}: {e}")
            session.finish(STATE_FAILED, False, "launch_failed", content=str(e))
            raise LaunchFailed(session.session_id, str(e)) from e

        if not session.attach_process(proc):
            # Stopped while we were spawning.
            proc.kill()
            return proc

        q = queue.Queue()
        t_out = threading.Thread(target=_enqueue_output, args=(proc.stdout, q, "stdout"))
        t_err = threading.Thread(target=_enqueue_output, args=(proc.stderr, q, "stderr"))
        t_out.daemon = True
        t_err.daemon = True
        t_out.start()
        t_err.start()

        pump = threading.Thread(
            target=self._pump,
            args=(session, engine, proc, q, stdin_text),
            name=f"pump-{session.session_id}",
            daemon=True,
        )
        pump.start()
        return proc

    def _write_stdin(self, session, proc, text):
        try:
            if text:
                proc.stdin.write(text + "\n")
                proc.stdin.flush()
        except (BrokenPipeError, OSError, ValueError) as e:
            logger.warning(f"[AI] Could not write prompt to {session.session_id}: {e}")
        finally:
            try:
                proc.stdin.close()
            except (BrokenPipeError, OSError, ValueError):
                pass

    def _pump(self, session, engine, proc, q, stdin_text):
        try:
            self._capture(session, engine, proc, q, stdin_text)
        except Exception as e:
            logger.error(f"[AI] Capture failed for {session.session_id}: {e}", exc_info=True)
            if proc.poll() is None:
                proc.kill()
            session.finish(STATE_FAILED, False, "error", content=f"capture failed: {e}", exit_code=proc.poll())

    def _capture(self, session, engine, proc, q, stdin_text):
        self._write_stdin(session, proc, stdin_text)
        start = time.monotonic()
        exited_at = None
        open_pipes = 2
        stderr_tail = deque(maxlen=20)
        while open_pipes:
            try:
                label, line = q.get(timeout=self.poll_interval)
            except queue.Empty:
                if proc.poll() is not None:
                    exited_at = exited_at or time.monotonic()
                    if time.monotonic() - exited_at > _EXIT_DRAIN_SEC:
                        break
                elif session.is_live and time.monotonic() - start > session.timeout_sec:
                    logger.warning(f"[AI] {session.session_id} exceeded {session.timeout_sec}s")
                    self.terminator.request_stop(session, reason="timeout")
                continue
            if line is None:
                open_pipes -= 1
                continue
            content, native_id = engine.parse_line(label, line.rstrip("\n"), session.usage)
            if native_id:
                session.native_session_id = native_id
            if content is None:
                continue
            if label == "stderr":
                stderr_tail.append(content)
            entry = session.stream.emit(label, content)
            if entry is not None and label == "stdout":
                session.assistant_chunks.append(content)

        while True:
            try:
                rc = proc.wait(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if session.is_live and time.monotonic() - start > session.timeout_sec:
                    self.terminator.request_stop(session, reason="timeout")
        if rc == 0:
            session.finish(STATE_COMPLETED, True, "exit", content="completed", exit_code=rc)
        else:
            detail = "\n".join(stderr_tail).strip() or f"{engine.name} exited with code {rc}"
            session.finish(STATE_FAILED, False, "error", content=detail, exit_code=rc)
