from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import Dict, Iterator, List

from pydantic import ValidationError

from .errors import CorruptSessionError, InvalidRequestError, PersistenceError
from .schemas import Message, Session

logger = logging.getLogger(__name__)

SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


def validate_session_id(session_id: str) -> str:
    if not session_id or not SESSION_ID_RE.match(session_id):
        raise InvalidRequestError(f"Invalid session id: {session_id!r}")
    return session_id


class _FileLock:
    """Lock for one session file, dropped when no caller is using it."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.users = 0


class HistoryStore:
    """One JSON file per session under ``history_dir``.

    Each append is a read-modify-write of the whole file, written to a temp
    file first and moved into place, so a reader never sees half a session.
    Unreadable files load as an empty session unless ``strict`` is set.
    """

    def __init__(self, history_dir: Path, strict: bool = False) -> None:
        self.history_dir = Path(history_dir)
        self.strict = strict
        self._locks: Dict[str, _FileLock] = {}
        self._locks_guard = Lock()

    def _path(self, session_id: str) -> Path:
        return self.history_dir / f"{validate_session_id(session_id)}.json"

    @contextmanager
    def _session_lock(self, session_id: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._locks.get(session_id)
            if entry is None:
                entry = self._locks[session_id] = _FileLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if not entry.users:
                    del self._locks[session_id]

    def load(self, session_id: str) -> Session:
        path = self._path(session_id)
        with self._session_lock(session_id):
            return self._read(session_id, path)

    def append(self, message: Message, session_id: str) -> None:
        path = self._path(session_id)
        with self._session_lock(session_id):
            session = self._read(session_id, path)
            session.messages.append(message)
            self._write(path, session)

    def clear(self, session_id: str) -> None:
        path = self._path(session_id)
        with self._session_lock(session_id):
            self._write(path, Session(id=session_id))

    def list_session_ids(self) -> List[str]:
        try:
            return sorted(p.stem for p in self.history_dir.glob("*.json") if p.is_file())
        except OSError as e:
            raise PersistenceError(f"Cannot list {self.history_dir}: {e}") from e

    def _read(self, session_id: str, path: Path) -> Session:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return Session(id=session_id)
        except OSError as e:
            raise PersistenceError(f"Cannot read session {session_id}: {e}") from e

        try:
            session = Session.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            if self.strict:
                raise CorruptSessionError(f"Session file {path} is corrupt: {e}") from e
            logger.warning("[%s] Unreadable session file %s, treating as empty: %s", session_id, path, e)
            return Session(id=session_id)

        if session.id != session_id:
            session = Session(id=session_id, messages=session.messages)
        return session

    def _write(self, path: Path, session: Session) -> None:
        tmp_name = None
        try:
            self.history_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.history_dir, prefix=f".{path.stem}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(session.to_record(), fh, indent=2, ensure_ascii=False)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise PersistenceError(f"Cannot write session {session.id}: {e}") from e
