from __future__ import annotations

import copy
import json
import threading
import uuid
from pathlib import Path
from typing import Dict, Optional

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import User, utcnow


class MemoryStore:
    """In-memory durable user store, persisted to a JSON file under ``fs_root``.

    Returned users are copies: changes only become durable through
    ``save_user``, matching how a database-backed store behaves.
    """

    def __init__(self, fs_root: str = "/tmp/sessionguard") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        # RLock so helpers can re-enter while the public method holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "user_store.json"

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path.exists():
            return False
        try:
            data = json.loads(path.read_text())
        except (OSError, ValueError) as exc:
            self.logger.warning("memory_store_load_failed", error=str(exc))
            return False
        self.users = {u["id"]: User.from_dict(u) for u in data.get("users", [])}
        self.credentials = {
            user_id: (record[0], record[1])
            for user_id, record in data.get("credentials", {}).items()
        }
        return True

    def _persist_state(self) -> None:
        payload = {
            "users": [u.to_dict() for u in self.users.values()],
            "credentials": {k: list(v) for k, v in self.credentials.items()},
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload))
        tmp_path.replace(path)

    # users
    def create_user(
        self,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        is_active: bool = True,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                first_name=first_name,
                last_name=last_name,
                is_active=is_active,
            )
            self.users[user.id] = user
            self._persist_state()
            return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return copy.deepcopy(user) if user else None

    def save_user(self, user: User) -> User:
        with self._data_lock:
            user.updated_at = utcnow()
            self.users[user.id] = copy.deepcopy(user)
            self._persist_state()
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            user.password_changed_at = utcnow()
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)
