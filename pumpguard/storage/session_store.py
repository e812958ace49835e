from __future__ import annotations

import json
from typing import Callable, Optional

from pumpguard.logging import get_logger
from pumpguard.storage.errors import StorageError
from pumpguard.storage.kv import KeyValueStore, scoped_key
from pumpguard.storage.models import SESSION_KEY, SESSION_VERSION, SessionRecord

logger = get_logger(__name__)


class SessionStore:
    """Single source of truth for the authenticated user.

    Holds the current ``SessionRecord`` in memory and mirrors every change
    into session-scoped storage. ``get()`` after ``set(r)`` always returns
    ``r``: the in-memory value is assigned in the same synchronous step as
    the write, and a failed write is logged rather than rolled back.

    A persisted record whose ``version`` differs from the expected one is
    treated as absent and its storage entry is removed; records are never
    upgraded in place.
    """

    def __init__(
        self,
        storage: KeyValueStore,
        *,
        key: str = SESSION_KEY,
        version: str = SESSION_VERSION,
    ) -> None:
        self.storage = storage
        self.key = key
        self.version = version
        self._record: Optional[SessionRecord] = self._load()

    def _load(self) -> Optional[SessionRecord]:
        try:
            raw = self.storage.get(self.key)
        except StorageError as exc:
            logger.warning("session_load_failed", key=self.key, error=exc.message)
            return None
        if not raw:
            return None
        try:
            record = SessionRecord.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("session_record_corrupt", key=self.key, error=str(exc))
            self._discard()
            return None
        if record.version != self.version:
            logger.info(
                "session_version_mismatch",
                stored_version=record.version,
                expected_version=self.version,
            )
            self._discard()
            return None
        return record

    def _discard(self) -> None:
        try:
            self.storage.delete(self.key)
        except StorageError as exc:
            logger.warning("session_discard_failed", key=self.key, error=exc.message)

    def get(self) -> Optional[SessionRecord]:
        return self._record

    def set(self, record: Optional[SessionRecord]) -> None:
        if record is not None and record.version != self.version:
            raise ValueError(
                f"session record version {record.version!r} does not match {self.version!r}"
            )
        self._record = record
        try:
            if record is None:
                self.storage.delete(self.key)
            else:
                self.storage.set(self.key, record.to_json())
        except StorageError as exc:
            logger.error(
                "session_persist_failed",
                key=self.key,
                cleared=record is None,
                error=exc.message,
            )

    def update(
        self, mutator: Callable[[Optional[SessionRecord]], Optional[SessionRecord]]
    ) -> Optional[SessionRecord]:
        """Read the current record and commit ``mutator(current)`` in one step."""
        new_record = mutator(self._record)
        self.set(new_record)
        return new_record

    def clear(self) -> None:
        self.set(None)

    @property
    def user(self):
        return self._record.user if self._record else None


class OfflineIdentityHints:
    """Last signed-in user cached for offline screens.

    Keys are prefixed with the client namespace so installations sharing a
    durable store never see each other's hints.
    """

    USER_KEY = "pumpguard_offline_user"
    EMAIL_KEY = "pumpguard_offline_email"

    def __init__(self, storage: KeyValueStore, *, namespace: Optional[str] = None) -> None:
        self.storage = storage
        self.user_key = scoped_key(namespace, self.USER_KEY)
        self.email_key = scoped_key(namespace, self.EMAIL_KEY)

    def remember(self, record: SessionRecord, email: Optional[str] = None) -> None:
        try:
            self.storage.set(self.user_key, json.dumps(record.user.to_dict(), sort_keys=True))
            address = email or record.user.email
            if address:
                self.storage.set(self.email_key, address)
        except StorageError as exc:
            logger.warning("offline_hint_write_failed", error=exc.message)

    def email(self) -> Optional[str]:
        try:
            return self.storage.get(self.email_key)
        except StorageError as exc:
            logger.warning("offline_hint_read_failed", error=exc.message)
            return None

    def clear(self) -> None:
        for key in (self.user_key, self.email_key):
            try:
                self.storage.delete(key)
            except StorageError as exc:
                logger.warning("offline_hint_clear_failed", key=key, error=exc.message)


__all__ = ["OfflineIdentityHints", "SessionStore"]
