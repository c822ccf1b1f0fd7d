"""Core data helpers for the messenger: the working set of one profile."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from mmessenger.model.profile import (
    CHAT_TYPE_PRIVATE,
    MESSAGE_HISTORY_LIMIT,
    MESSAGE_TYPES,
    friend_ref,
    new_profile,
    repair_profile,
    utcnow,
    utcnow_iso,
)
from mmessenger.model.storage import (
    EVENT_FRIEND_REQUEST,
    EVENT_FRIEND_REQUEST_ACCEPTED,
    EVENT_FRIEND_REQUEST_REJECTED,
    StorageAdapter,
)


def _find_ref(refs: List[Dict], key: str) -> Optional[Dict]:
    for ref in refs:
        if ref.get("key") == key:
            return ref
    return None


def _without_ref(refs: List[Dict], key: str) -> List[Dict]:
    return [ref for ref in refs if ref.get("key") != key]


class ConversationStore:
    """Chats, friends and friend requests of the signed-in profile.

    The store is the only writer of its own profile record. Anything that
    has to change another profile (an incoming request, an acceptance) is
    sent to that profile's inbox and replayed by its own store on load.
    Outgoing events wait in an outbox until ``persist_for_user`` writes them
    in the same transaction as this profile, so a failed save drops both.
    """

    def __init__(
        self,
        storage: StorageAdapter,
        history_limit: int = MESSAGE_HISTORY_LIMIT,
        notify_on_reject: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage
        self.history_limit = history_limit
        self.notify_on_reject = notify_on_reject
        self.clock = clock or utcnow
        self.clear()

    def clear(self) -> None:
        self.chats: List[Dict] = []
        self.friends: List[Dict] = []
        self.friend_requests: List[Dict] = []
        self.sent_friend_requests: List[Dict] = []
        self.version = 0
        self._replayed_event_ids: List[int] = []
        self._outbox: List[Dict] = []

    # ---------------------------- persistence -----------------------------

    def load_for_user(self, key: str) -> Optional[str]:
        """Load ``key``'s profile and replay its inbox.

        Returns the stored username, or None when no profile exists yet (the
        working set then holds only the Favorites chat).
        """
        raw, version = self.storage.load_versioned(key)
        events = self.storage.pending_events(key)

        data = repair_profile(raw, self.history_limit) if raw is not None else new_profile("")
        self.chats = data["chats"]
        self.friends = data["friends"]
        self.friend_requests = data["friendRequests"]
        self.sent_friend_requests = data["sentFriendRequests"]
        self.version = version
        self._replayed_event_ids = []
        self._outbox = []

        for event in events:
            self._apply_event(event)
            self._replayed_event_ids.append(event["id"])

        if raw is None:
            return None
        return data["username"]

    def _apply_event(self, event: Dict) -> None:
        kind = event.get("kind")
        sender_key = event.get("senderKey")
        sender_username = event.get("senderUsername") or ""
        if not sender_key:
            return

        if kind == EVENT_FRIEND_REQUEST:
            if _find_ref(self.friends, sender_key) or _find_ref(self.friend_requests, sender_key):
                return
            self.friend_requests.append(
                {
                    "key": sender_key,
                    "username": sender_username,
                    "sentAt": event.get("createdAt") or utcnow_iso(self.clock()),
                }
            )
        elif kind == EVENT_FRIEND_REQUEST_ACCEPTED:
            self.add_friend(sender_key, sender_username)
            self.sent_friend_requests = _without_ref(self.sent_friend_requests, sender_key)
        elif kind == EVENT_FRIEND_REQUEST_REJECTED:
            self.sent_friend_requests = _without_ref(self.sent_friend_requests, sender_key)

    def snapshot(self, username: str) -> Dict:
        return {
            "username": username,
            "chats": self.chats,
            "friends": self.friends,
            "friendRequests": self.friend_requests,
            "sentFriendRequests": self.sent_friend_requests,
        }

    def persist_for_user(self, key: str, username: str) -> int:
        self.version = self.storage.save(
            key,
            self.snapshot(username),
            expected_version=self.version,
            consumed_event_ids=self._replayed_event_ids,
            outgoing_events=self._outbox,
        )
        self._replayed_event_ids = []
        self._outbox = []
        return self.version

    # ------------------------------- chats --------------------------------

    def _next_chat_id(self) -> int:
        candidate = int(self.clock().timestamp() * 1000)
        existing = [
            chat["id"]
            for chat in self.chats
            if isinstance(chat.get("id"), int) and not isinstance(chat.get("id"), bool)
        ]
        highest = max(existing, default=0)
        return max(candidate, highest + 1)

    def create_chat(self, name: str, description: str = "") -> Optional[Dict]:
        name = (name or "").strip()
        if not name:
            return None
        chat = {
            "id": self._next_chat_id(),
            "name": name,
            "description": (description or "").strip(),
            "messages": [],
            "createdAt": utcnow_iso(self.clock()),
        }
        self.chats.append(chat)
        return chat

    def create_private_chat(self, friend_key: str, friend_username: str, self_key: str) -> Dict:
        chat = {
            "id": self._next_chat_id(),
            "name": friend_username,
            "type": CHAT_TYPE_PRIVATE,
            "participants": [self_key, friend_key],
            "messages": [],
            "createdAt": utcnow_iso(self.clock()),
        }
        self.chats.append(chat)
        return chat

    def find_private_chat(self, friend_key: str) -> Optional[Dict]:
        for chat in self.chats:
            if chat.get("type") == CHAT_TYPE_PRIVATE and friend_key in (chat.get("participants") or []):
                return chat
        return None

    def find_chat(self, chat_id) -> Optional[Dict]:
        for chat in self.chats:
            if chat.get("id") == chat_id:
                return chat
        return None

    def add_message(
        self,
        chat: Dict,
        author: str,
        text: str,
        msg_type: str = "text",
        file_data: Optional[str] = None,
        file_name: Optional[str] = None,
        author_key: Optional[str] = None,
    ) -> Dict:
        if msg_type not in MESSAGE_TYPES:
            raise ValueError(f"Unsupported message type: {msg_type}")

        now = self.clock()
        message = {
            "author": author,
            "authorKey": author_key,
            "text": (text or "").strip(),
            "time": now.astimezone().strftime("%H:%M"),
            "timestamp": utcnow_iso(now),
            "type": msg_type,
            "fileData": file_data,
            "fileName": file_name,
        }

        messages = chat.get("messages")
        if not isinstance(messages, list):
            messages = []
            chat["messages"] = messages
        messages.append(message)
        if len(messages) > self.history_limit:
            del messages[: len(messages) - self.history_limit]
        return message

    # ------------------------------ friends -------------------------------

    def _queue_event(self, recipient_key: str, kind: str, sender_key: str, sender_username: str) -> None:
        # delivered by the next persist_for_user, together with our own record
        self._outbox.append(
            {
                "recipientKey": recipient_key,
                "kind": kind,
                "senderKey": sender_key,
                "senderUsername": sender_username,
            }
        )

    def add_friend(self, key: str, username: str) -> bool:
        if _find_ref(self.friends, key):
            return False
        self.friends.append(friend_ref(key, username, "addedAt", self.clock()))
        return True

    def add_user_by_key(self, key: str, username: str) -> bool:
        if not self.storage.exists(key):
            return False
        return self.add_friend(key, username)

    def send_friend_request(
        self,
        target_key: str,
        self_key: str,
        self_username: str,
        target_username: Optional[str] = None,
    ) -> Tuple[bool, str]:
        if not target_key:
            return False, "Target user is required"
        if target_key == self_key:
            return False, "Cannot send a friend request to yourself"
        if _find_ref(self.sent_friend_requests, target_key):
            return False, "Request already sent"
        if _find_ref(self.friends, target_key):
            return False, "Already friends"

        incoming = _find_ref(self.friend_requests, target_key)
        if incoming:
            self.accept_friend_request(target_key, incoming.get("username") or "", self_key, self_username)
            return True, "Friend request accepted"

        target = self.storage.load(target_key)
        if target is not None:
            stored_name = target.get("username")
            if isinstance(stored_name, str) and stored_name:
                target_username = stored_name
            self._queue_event(target_key, EVENT_FRIEND_REQUEST, self_key, self_username)

        self.sent_friend_requests.append(friend_ref(target_key, target_username or "", "sentAt", self.clock()))
        return True, "Friend request sent"

    def accept_friend_request(
        self,
        requester_key: str,
        requester_username: str,
        self_key: str,
        self_username: str,
    ) -> Tuple[bool, str]:
        if requester_key == self_key:
            return False, "Cannot accept your own request"

        if self.storage.exists(requester_key):
            self._queue_event(requester_key, EVENT_FRIEND_REQUEST_ACCEPTED, self_key, self_username)

        self.add_friend(requester_key, requester_username)
        self.friend_requests = _without_ref(self.friend_requests, requester_key)
        self.sent_friend_requests = _without_ref(self.sent_friend_requests, requester_key)
        return True, "Friend request accepted"

    def reject_friend_request(
        self,
        requester_key: str,
        self_key: Optional[str] = None,
        self_username: Optional[str] = None,
    ) -> bool:
        """Drop an incoming request.

        The requester is only told when ``notify_on_reject`` is set; by
        default their outgoing entry stays in place.
        """
        if not _find_ref(self.friend_requests, requester_key):
            return False
        if self.notify_on_reject and self_key and self.storage.exists(requester_key):
            self._queue_event(requester_key, EVENT_FRIEND_REQUEST_REJECTED, self_key, self_username or "")
        self.friend_requests = _without_ref(self.friend_requests, requester_key)
        return True

    def search_users(self, term: str, exclude_key: Optional[str]) -> List[Dict]:
        needle = (term or "").lower()
        return [
            row
            for row in self.storage.list_all_profiles()
            if row["key"] != exclude_key and needle in row["username"].lower()
        ]
