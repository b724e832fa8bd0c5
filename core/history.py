"""Write-behind archive of finished AI runs."""
import json
import pathlib
import queue
import threading

from utils.config import logger, HISTORY_STORE_PATH, MAX_HISTORY_PER_PROJECT
from core.state import STATE_COMPLETED


def build_history_record(session):
    return {
        "id": f"{session.session_id}:{session.stream.counter}",
        "sessionId": session.session_id,
        "conversationId": session.conversation_id,
        "project": session.project,
        "prompt": session.prompt,
        "timestamp": int(session.started_at * 1000),
        "durationMs": session.duration_ms,
        "success": session.state == STATE_COMPLETED,
        "state": session.state,
        "engine": session.engine,
        "todoId": session.todo_id,
        "thinkingMode": session.thinking_mode,
        **session.usage.to_dict(session.engine),
        "logs": session.stream.snapshot(),
    }


class JsonHistoryArchiver:
    """Keeps the newest records per project in memory and mirrors them to a JSON file.

    archive() only enqueues; a single writer thread applies and persists.
    """

    def __init__(self, path=HISTORY_STORE_PATH, max_per_project=MAX_HISTORY_PER_PROJECT):
        self.path = pathlib.Path(path) if path else None
        self.max_per_project = max_per_project
        self._lock = threading.Lock()
        self._save_lock = threading.Lock()
        self._queue = queue.Queue()
        self._writer = None
        self._history = self._load()

    def _load(self):
        if self.path is None or not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"[History] Cannot load {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            return {}
        history = {}
        for project, records in data.items():
            if isinstance(project, str) and isinstance(records, list):
                history[project] = [r for r in records if isinstance(r, dict)]
        logger.info(f"[History] Loaded history for {len(history)} project(s)")
        return history

    def _save(self):
        if self.path is None:
            return
        with self._lock:
            payload = json.dumps(self._history, indent=2, ensure_ascii=False)
        with self._save_lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(payload, encoding="utf-8")
            tmp.replace(self.path)

    def _ensure_writer(self):
        with self._lock:
            if self._writer is not None and self._writer.is_alive():
                return
            self._writer = threading.Thread(target=self._write_loop, name="history-writer", daemon=True)
            self._writer.start()

    def _write_loop(self):
        while True:
            record = self._queue.get()
            try:
                self._apply(record)
                self._save()
            except Exception as e:
                logger.error(f"[History] Failed to archive {record.get('id')}: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    def _apply(self, record):
        project = record.get("project") or ""
        with self._lock:
            records = self._history.setdefault(project, [])
            records.insert(0, record)
            del records[self.max_per_project:]

    def archive(self, record):
        """Queue a record for persistence; never blocks the caller."""
        self._queue.put(record)
        self._ensure_writer()

    def flush(self):
        """Block until every queued record has been written."""
        self._queue.join()

    def get_history(self, project, engine=None, limit=10):
        with self._lock:
            records = list(self._history.get(project, []))
        if engine:
            records = [r for r in records if r.get("engine") == engine]
        return records[:limit] if limit else records

    def get_record(self, project, record_id):
        with self._lock:
            for record in self._history.get(project, []):
                if record.get("id") == record_id:
                    return record
        return None

    def clear(self, project, engine=None):
        with self._lock:
            records = self._history.get(project, [])
            if engine:
                self._history[project] = [r for r in records if r.get("engine") != engine]
            else:
                self._history[project] = []
        self._save()
        return True
