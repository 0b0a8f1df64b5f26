from __future__ import annotations

import copy
import json
import threading
from pathlib import Path
from typing import Dict, Optional

from chatkeep.logging import get_logger
from chatkeep.storage.common import deserialize_user, serialize_user
from chatkeep.storage.errors import ConstraintViolation, RecordMissing
from chatkeep.storage.models import User


class MemoryStore:
    """In-process user document store persisted to a JSON file.

    Every write rewrites ``<fs_root>/state/users.json`` so a restart keeps
    users and their token ledgers. Callers always receive copies; mutating a
    returned ``User`` has no effect until it is passed to ``save_user``.
    """

    def __init__(self, fs_root: str = "/tmp/chatkeep") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # email digest -> user id
        self._digest_index: Dict[str, str] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "users.json"

    def insert_user(self, user: User) -> User:
        with self._data_lock:
            if user.email_digest in self._digest_index:
                raise ConstraintViolation(
                    "email already exists", {"field": "email_digest"}
                )
            self.users[user.id] = copy.deepcopy(user)
            self._digest_index[user.email_digest] = user.id
            try:
                self._persist_state()
            except RuntimeError:
                self.users.pop(user.id, None)
                self._digest_index.pop(user.email_digest, None)
                raise
            return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_digest(self, email_digest: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._digest_index.get(email_digest)
            if user_id is None:
                return None
            return copy.deepcopy(self.users.get(user_id))

    def save_user(self, user: User) -> User:
        """Replace the stored document for ``user.id`` (last writer wins)."""
        with self._data_lock:
            existing = self.users.get(user.id)
            if existing is None:
                raise RecordMissing("user not found", {"user_id": user.id})
            owner = self._digest_index.get(user.email_digest)
            if owner is not None and owner != user.id:
                raise ConstraintViolation(
                    "email already exists", {"field": "email_digest"}
                )
            previous_index = dict(self._digest_index)
            if existing.email_digest != user.email_digest:
                self._digest_index.pop(existing.email_digest, None)
                self._digest_index[user.email_digest] = user.id
            self.users[user.id] = copy.deepcopy(user)
            try:
                self._persist_state()
            except RuntimeError:
                # Memory must not run ahead of the file
                self.users[user.id] = existing
                self._digest_index = previous_index
                raise
            return copy.deepcopy(user)

    def verify_connection(self) -> None:
        if not self.fs_root.is_dir():
            raise FileNotFoundError(self.fs_root)

    def close(self) -> None:
        return None

    def _persist_state(self) -> None:
        state = {"users": [serialize_user(u) for u in self.users.values()]}
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", path=str(path), error=str(exc))
            raise RuntimeError(f"failed to persist user state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: deserialize_user(u) for u in data.get("users", [])}
        self._digest_index = {u.email_digest: u.id for u in self.users.values()}
        self.logger.info("memory_store_loaded", users=len(self.users), path=str(path))
        return True
