"""Cooperative stop with forced escalation."""
import threading

from utils.config import logger, TERMINATE_GRACE_SEC
from core.state import STATE_TERMINATED

_REASON_TEXT = {
    "terminated": "terminated by user",
    "timeout": "execution timed out",
}


class TerminationCoordinator:
    def __init__(self, grace_sec=TERMINATE_GRACE_SEC):
        self.grace_sec = grace_sec

    def request_stop(self, session, reason="terminated"):
        """Close the session as terminated and signal its process. Never waits for exit.

        The terminal entry goes out before the signal so the capture pump,
        seeing the process die, cannot claim the session as failed.
        Returns False when the session had already finished.
        """
        entry = session.finish(
            STATE_TERMINATED,
            False,
            reason,
            content=_REASON_TEXT.get(reason, reason),
        )
        if entry is None:
            return False
        proc = session.proc
        if proc is None or proc.poll() is not None:
            return True
        logger.info(f"[Terminate] Stopping {session.session_id} (pid {proc.pid}, reason={reason})")
        try:
            proc.terminate()
        except OSError as e:
            logger.warning(f"[Terminate] terminate() failed for {session.session_id}: {e}")
        timer = threading.Timer(self.grace_sec, self._escalate, args=(session, proc))
        timer.daemon = True
        session.stop_timer = timer
        timer.start()
        return True

    def _escalate(self, session, proc):
        if proc.poll() is not None:
            return
        logger.warning(f"[Terminate] {session.session_id} ignored terminate after {self.grace_sec}s, killing")
        try:
            proc.kill()
        except OSError as e:
            logger.error(f"[Terminate] kill() failed for {session.session_id}: {e}")
