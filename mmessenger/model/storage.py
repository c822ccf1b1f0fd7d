"""Key/value persistence for messenger profiles.

Every profile is one JSON record under a fixed key prefix, plus a single
pointer record naming the active profile. Records carry a version number
so that a stale writer is rejected instead of overwriting newer data.
Relationship changes aimed at *another* profile never rewrite that
profile; they are appended to its inbox as immutable events.
"""

from __future__ import annotations

import json
import logging
import secrets
import string
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from mmessenger import db


USER_KEY_PREFIX = "mmessenger_user_"
CURRENT_USER_KEY = "mmessenger_user_key"
KEY_ALPHABET = string.ascii_letters + string.digits
KEY_LENGTH = 16
DEFAULT_QUOTA_BYTES = 5 * 1024 * 1024

EVENT_FRIEND_REQUEST = "friend_request"
EVENT_FRIEND_REQUEST_ACCEPTED = "friend_request_accepted"
EVENT_FRIEND_REQUEST_REJECTED = "friend_request_rejected"
EVENT_KINDS = {EVENT_FRIEND_REQUEST, EVENT_FRIEND_REQUEST_ACCEPTED, EVENT_FRIEND_REQUEST_REJECTED}

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class StorageError(Exception):
    """A write or read against the backing store failed."""


class StorageQuotaExceeded(StorageError):
    def __init__(self, key: str, size: int, quota: int):
        super().__init__(f"Profile {key} needs {size} bytes, quota is {quota}")
        self.key = key
        self.size = size
        self.quota = quota


class VersionConflict(StorageError):
    def __init__(self, key: str, expected: int, actual: int):
        super().__init__(f"Profile {key} changed elsewhere (expected version {expected}, found {actual})")
        self.key = key
        self.expected = expected
        self.actual = actual


class StoredEntry(db.Model):
    __tablename__ = "stored_entries"

    key = db.Column(db.String(255), primary_key=True)
    value = db.Column(db.Text, nullable=False)
    version = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}


class InboxEvent(db.Model):
    __tablename__ = "inbox_events"

    id = db.Column(db.Integer, primary_key=True)
    recipient_key = db.Column(db.String(64), nullable=False, index=True)
    kind = db.Column(db.String(40), nullable=False)
    sender_key = db.Column(db.String(64), nullable=False)
    sender_username = db.Column(db.String(255), nullable=False, default="")
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def read(self) -> Dict:
        return {
            "id": self.id,
            "recipientKey": self.recipient_key,
            "kind": self.kind,
            "senderKey": self.sender_key,
            "senderUsername": self.sender_username,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class StorageAdapter:
    def __init__(
        self,
        database,
        prefix: str = USER_KEY_PREFIX,
        active_key_name: str = CURRENT_USER_KEY,
        quota_bytes: int = DEFAULT_QUOTA_BYTES,
    ):
        self.db = database
        self.prefix = prefix
        self.active_key_name = active_key_name
        self.quota_bytes = quota_bytes

    def _record_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _fail(self, action: str, key: Optional[str], error: Exception):
        self.db.session.rollback()
        logger.error(f"Error {action} {key}: {str(error)}")
        raise StorageError(f"Failed {action} {key}") from error

    def _get_entry(self, record_key: str) -> Optional[StoredEntry]:
        return self.db.session.get(StoredEntry, record_key, populate_existing=True)

    def generate_key(self) -> str:
        return "".join(secrets.choice(KEY_ALPHABET) for _ in range(KEY_LENGTH))

    # ------------------------------ profiles ------------------------------

    def load_versioned(self, key: str) -> Tuple[Optional[Dict], int]:
        """Return ``(profile, version)``; version 0 means no record at all.

        A record that is not a JSON object counts as absent, but its version
        is still reported so the next save can replace it.
        """
        if not key:
            return None, 0
        try:
            entry = self._get_entry(self._record_key(key))
        except SQLAlchemyError as e:
            self._fail("loading profile", key, e)

        if entry is None:
            return None, 0
        try:
            data = json.loads(entry.value)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring unreadable profile record {key}")
            return None, entry.version
        if not isinstance(data, dict):
            return None, entry.version
        return data, entry.version

    def load(self, key: str) -> Optional[Dict]:
        return self.load_versioned(key)[0]

    def exists(self, key: str) -> bool:
        return self.load(key) is not None

    def save(
        self,
        key: str,
        profile: Dict,
        expected_version: Optional[int] = None,
        consumed_event_ids: Iterable[int] = (),
        outgoing_events: Iterable[Dict] = (),
    ) -> int:
        """Write the whole profile and return its new version.

        With ``expected_version`` set, the write only goes through if the
        stored version still matches. Inbox events listed in
        ``consumed_event_ids`` are deleted, and ``outgoing_events`` (dicts
        with ``recipientKey``, ``kind``, ``senderKey``, ``senderUsername``)
        are appended to other inboxes, in the same transaction.
        """
        outgoing = list(outgoing_events)
        for event in outgoing:
            if event.get("kind") not in EVENT_KINDS:
                raise ValueError(f"Unknown inbox event kind: {event.get('kind')}")

        try:
            payload = json.dumps(profile, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            logger.error(f"Error serializing profile {key}: {str(e)}")
            raise StorageError(f"Failed serializing profile {key}") from e

        size = len(payload.encode("utf-8"))
        if size > self.quota_bytes:
            logger.error(f"Profile {key} exceeds storage quota ({size} > {self.quota_bytes})")
            raise StorageQuotaExceeded(key, size, self.quota_bytes)

        event_ids = [int(event_id) for event_id in consumed_event_ids]
        try:
            entry = self._get_entry(self._record_key(key))
            current = entry.version if entry else 0
            if expected_version is not None and expected_version != current:
                self.db.session.rollback()
                raise VersionConflict(key, expected_version, current)

            if entry is None:
                entry = StoredEntry(key=self._record_key(key), value=payload)
                self.db.session.add(entry)
            else:
                entry.value = payload

            if event_ids:
                InboxEvent.query.filter(
                    InboxEvent.recipient_key == key,
                    InboxEvent.id.in_(event_ids),
                ).delete(synchronize_session=False)

            for event in outgoing:
                self.db.session.add(
                    InboxEvent(
                        recipient_key=event["recipientKey"],
                        kind=event["kind"],
                        sender_key=event["senderKey"],
                        sender_username=event.get("senderUsername") or "",
                    )
                )

            self.db.session.commit()
            return entry.version
        except StaleDataError as e:
            self.db.session.rollback()
            raise VersionConflict(key, current, -1) from e
        except SQLAlchemyError as e:
            self._fail("saving profile", key, e)

    def list_all_profiles(self) -> List[Dict]:
        """Scan every profile record; cost is linear in profiles ever created."""
        try:
            rows = (
                StoredEntry.query.filter(
                    StoredEntry.key.startswith(self.prefix, autoescape=True),
                    StoredEntry.key != self.active_key_name,
                )
                .order_by(StoredEntry.created_at.asc(), StoredEntry.key.asc())
                .all()
            )
        except SQLAlchemyError as e:
            self._fail("listing profiles", None, e)

        out = []
        for row in rows:
            try:
                data = json.loads(row.value)
            except (TypeError, ValueError):
                continue
            if not isinstance(data, dict):
                continue
            username = data.get("username")
            if isinstance(username, str) and username:
                out.append({"username": username, "key": row.key[len(self.prefix):]})
        return out

    def find_key_by_username(self, username: str) -> Optional[str]:
        for row in self.list_all_profiles():
            if row["username"] == username:
                return row["key"]
        return None

    # --------------------------- active pointer ---------------------------

    def set_active_key(self, key: str) -> None:
        try:
            entry = self._get_entry(self.active_key_name)
            if entry is None:
                self.db.session.add(StoredEntry(key=self.active_key_name, value=key))
            else:
                entry.value = key
            self.db.session.commit()
        except SQLAlchemyError as e:
            self._fail("setting active key", key, e)

    def get_active_key(self) -> Optional[str]:
        try:
            entry = self._get_entry(self.active_key_name)
        except SQLAlchemyError as e:
            self._fail("reading active key", None, e)
        if entry is None or not entry.value:
            return None
        return entry.value

    def clear_active_key(self) -> None:
        try:
            entry = self._get_entry(self.active_key_name)
            if entry is not None:
                self.db.session.delete(entry)
                self.db.session.commit()
        except SQLAlchemyError as e:
            self._fail("clearing active key", None, e)

    # ------------------------------- inbox --------------------------------

    def append_event(self, recipient_key: str, kind: str, sender_key: str, sender_username: str) -> Dict:
        if kind not in EVENT_KINDS:
            raise ValueError(f"Unknown inbox event kind: {kind}")
        row = InboxEvent(
            recipient_key=recipient_key,
            kind=kind,
            sender_key=sender_key,
            sender_username=sender_username or "",
        )
        try:
            self.db.session.add(row)
            self.db.session.commit()
        except SQLAlchemyError as e:
            self._fail("appending inbox event for", recipient_key, e)
        return row.read()

    def pending_events(self, recipient_key: str) -> List[Dict]:
        try:
            rows = (
                InboxEvent.query.filter_by(recipient_key=recipient_key)
                .order_by(InboxEvent.id.asc())
                .all()
            )
        except SQLAlchemyError as e:
            self._fail("reading inbox of", recipient_key, e)
        return [row.read() for row in rows]
