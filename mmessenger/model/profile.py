"""Profile record shape and the validate-and-repair boundary.

Everything read back from storage passes through ``repair_profile`` before
the conversation store touches it, so malformed records are fixed here and
never surface as errors further up.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional


FAVORITES_CHAT_ID = 1
FAVORITES_CHAT_NAME = "Favorites"
MESSAGE_HISTORY_LIMIT = 1000

CHAT_TYPE_FAVORITES = "favorites"
CHAT_TYPE_PRIVATE = "private"
MESSAGE_TYPES = {"text", "image", "video", "file"}

RELATION_FIELDS = ("friends", "friendRequests", "sentFriendRequests")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utcnow_iso(value: Optional[datetime] = None) -> str:
    return (value or utcnow()).isoformat()


def initial_chats() -> List[Dict]:
    return [
        {
            "id": FAVORITES_CHAT_ID,
            "name": FAVORITES_CHAT_NAME,
            "type": CHAT_TYPE_FAVORITES,
            "messages": [],
        }
    ]


def new_profile(username: str) -> Dict:
    return {
        "username": username,
        "chats": initial_chats(),
        "friends": [],
        "friendRequests": [],
        "sentFriendRequests": [],
    }


def friend_ref(key: str, username: str, stamp_field: str = "addedAt", at: Optional[datetime] = None) -> Dict:
    return {"key": key, "username": username, stamp_field: utcnow_iso(at)}


def is_valid_chat(chat) -> bool:
    if not isinstance(chat, dict):
        return False
    chat_id = chat.get("id")
    if isinstance(chat_id, bool) or not chat_id:
        return False
    name = chat.get("name")
    return isinstance(name, str) and bool(name)


def dedupe_refs(refs) -> List[Dict]:
    """Keep the first FriendRef per key, dropping entries without one."""
    seen = set()
    out = []
    for ref in refs or []:
        if not isinstance(ref, dict):
            continue
        key = ref.get("key")
        if not isinstance(key, str) or not key or key in seen:
            continue
        seen.add(key)
        out.append(ref)
    return out


def _repair_chat(chat: Dict, history_limit: int) -> Dict:
    messages = chat.get("messages")
    if not isinstance(messages, list):
        messages = []
    messages = [msg for msg in messages if isinstance(msg, dict)]
    if len(messages) > history_limit:
        messages = messages[-history_limit:]
    chat["messages"] = messages
    return chat


def repair_profile(raw, history_limit: int = MESSAGE_HISTORY_LIMIT) -> Dict:
    """Return a complete, valid profile built from whatever was stored.

    Chats without an id or name are dropped; if that leaves nothing, the
    Favorites chat is re-seeded. Relationship lists are deduplicated by key.
    Never raises.
    """
    if not isinstance(raw, dict):
        raw = {}

    username = raw.get("username")
    chats = raw.get("chats")
    if not isinstance(chats, list):
        chats = []
    chats = [_repair_chat(chat, history_limit) for chat in chats if is_valid_chat(chat)]
    if not chats:
        chats = initial_chats()

    profile = {
        "username": username if isinstance(username, str) else "",
        "chats": chats,
    }
    for field in RELATION_FIELDS:
        profile[field] = dedupe_refs(raw.get(field))
    return profile
