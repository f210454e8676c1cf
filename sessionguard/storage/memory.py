from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation, StorageUnavailable
from sessionguard.storage.models import RefreshToken, User


class MemoryStore:
    """In-process token store for tests and single-node development.

    Every read hands out a copy so callers see a row snapshot, the same as
    they would from Postgres; all writes go through ``_data_lock``.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._hash_index: Dict[str, str] = {}
        # RLock so chain walks can call other locked helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "token_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # users
    def create_user(self, email: str) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(u.email == normalized for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), email=normalized)
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            for user in self.users.values():
                if user.email == normalized:
                    return replace(user)
        return None

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # refresh tokens
    def insert_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.secret_hash in self._hash_index:
                raise ConstraintViolation(
                    "refresh token hash collision", {"field": "secret_hash"}
                )
            stored = replace(token)
            self.refresh_tokens[stored.id] = stored
            self._hash_index[stored.secret_hash] = stored.id
            self._persist_state()
            return replace(stored)

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            return replace(token) if token else None

    def get_refresh_token_by_hash(self, secret_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token_id = self._hash_index.get(secret_hash)
            if token_id is None:
                return None
            return replace(self.refresh_tokens[token_id])

    def mark_rotated(
        self, token_id: str, successor_id: str, rotated_at: datetime
    ) -> bool:
        """Flip ``rotated_at`` only if nobody else has; returns whether we won."""
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if token is None or token.rotated_at is not None or token.revoked_at is not None:
                return False
            token.rotated_at = rotated_at
            token.successor_id = successor_id
            self._persist_state()
            return True

    def revoke_refresh_token(self, token_id: str, revoked_at: datetime) -> bool:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if token is None or token.revoked_at is not None:
                return False
            token.revoked_at = revoked_at
            self._persist_state()
            return True

    def revoke_chain(self, token_id: str, revoked_at: datetime) -> int:
        """Revoke ``token_id`` and every successor after it; returns rows changed."""
        revoked = 0
        seen: set[str] = set()
        with self._data_lock:
            current = self.refresh_tokens.get(token_id)
            while current is not None and current.id not in seen:
                seen.add(current.id)
                if current.revoked_at is None:
                    current.revoked_at = revoked_at
                    revoked += 1
                current = (
                    self.refresh_tokens.get(current.successor_id)
                    if current.successor_id
                    else None
                )
            if revoked:
                self._persist_state()
        return revoked

    def rotation_chain(self, token_id: str) -> List[RefreshToken]:
        """Return the whole chain containing ``token_id``, oldest first."""
        with self._data_lock:
            if token_id not in self.refresh_tokens:
                return []
            predecessors = {
                t.successor_id: t.id
                for t in self.refresh_tokens.values()
                if t.successor_id
            }
            root_id = token_id
            while root_id in predecessors:
                root_id = predecessors[root_id]
            chain: List[RefreshToken] = []
            current = self.refresh_tokens.get(root_id)
            while current is not None and len(chain) <= len(self.refresh_tokens):
                chain.append(replace(current))
                current = (
                    self.refresh_tokens.get(current.successor_id)
                    if current.successor_id
                    else None
                )
            return chain

    def _expired_ids(self, before: datetime) -> List[str]:
        """Ids whose own and successors' expiry all fall before ``before``."""
        doomed = []
        for token in self.refresh_tokens.values():
            latest = token.expires_at
            current = token
            hops = 0
            while current.successor_id and hops <= len(self.refresh_tokens):
                nxt = self.refresh_tokens.get(current.successor_id)
                if nxt is None:
                    break
                latest = max(latest, nxt.expires_at)
                current = nxt
                hops += 1
            if latest < before:
                doomed.append(token.id)
        return doomed

    def count_expired_refresh_tokens(self, before: datetime) -> int:
        with self._data_lock:
            return len(self._expired_ids(before))

    def delete_expired_refresh_tokens(self, before: datetime) -> int:
        with self._data_lock:
            doomed = self._expired_ids(before)
            for token_id in doomed:
                token = self.refresh_tokens.pop(token_id)
                self._hash_index.pop(token.secret_hash, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [
                {
                    "id": u.id,
                    "email": u.email,
                    "created_at": self._serialize_datetime(u.created_at),
                    "is_active": u.is_active,
                }
                for u in self.users.values()
            ],
            "credentials": [
                {"user_id": user_id, "password_hash": creds[0], "password_algo": creds[1]}
                for user_id, creds in self.credentials.items()
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StorageUnavailable(f"failed to persist token store: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: User(
                id=u["id"],
                email=u["email"],
                created_at=self._deserialize_datetime(u["created_at"]),
                is_active=u.get("is_active", True),
            )
            for u in data.get("users", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.refresh_tokens = {
            t["id"]: self._deserialize_refresh_token(t)
            for t in data.get("refresh_tokens", [])
        }
        self._hash_index = {t.secret_hash: t.id for t in self.refresh_tokens.values()}
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            refresh_rows=len(self.refresh_tokens),
        )
        return True

    def _serialize_refresh_token(self, token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "secret_hash": token.secret_hash,
            "subject": token.subject,
            "issued_at": self._serialize_datetime(token.issued_at),
            "expires_at": self._serialize_datetime(token.expires_at),
            "revoked_at": self._serialize_datetime(token.revoked_at),
            "rotated_at": self._serialize_datetime(token.rotated_at),
            "successor_id": token.successor_id,
            "client_ip": token.client_ip,
            "client_agent": token.client_agent,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            secret_hash=data["secret_hash"],
            subject=data["subject"],
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            rotated_at=self._deserialize_datetime(data.get("rotated_at")),
            successor_id=data.get("successor_id"),
            client_ip=data.get("client_ip"),
            client_agent=data.get("client_agent"),
        )
