"""Per-connection presentation logic for the messenger.

A ``PresentationController`` owns the UI state of one client connection
(current screen, open chat, typing flag, timers). Each UI event maps to
one method here. Methods mutate the ``ConversationStore``, persist it, and
push fresh view data out through a ``Renderer``.
"""

from __future__ import annotations

import base64
import logging
import threading
from functools import wraps
from typing import Callable, Dict, List, Optional

from mmessenger.model.storage import StorageError, StorageQuotaExceeded, VersionConflict
from mmessenger.socketio_handlers.messenger_core import ConversationStore
from mmessenger.socketio_handlers.presence import (
    NullTypingProvider,
    Scheduler,
    TimerHandle,
    TypingListener,
    TypingProvider,
)


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SCREEN_WELCOME = "welcome"
SCREEN_CHATS = "chats"
SCREEN_CHAT = "chat"

PREVIEW_LENGTH = 30
NO_MESSAGES_PREVIEW = "No messages"

MESSAGE_DISPLAY_LIMIT = 100
SEARCH_MIN_LENGTH = 2
AUTOSAVE_SECONDS = 30.0
TYPING_IDLE_SECONDS = 1.0


class Renderer:
    """The view side. Every call replaces one region of the UI."""

    def show_screen(self, screen: str) -> None:
        raise NotImplementedError

    def render_chat_list(self, chats: List[Dict]) -> None:
        raise NotImplementedError

    def render_messages(self, chat: Dict, messages: List[Dict]) -> None:
        raise NotImplementedError

    def render_friends(self, friends: List[Dict]) -> None:
        raise NotImplementedError

    def render_friend_requests(self, requests: List[Dict]) -> None:
        raise NotImplementedError

    def render_search_results(self, term: str, results: List[Dict], hint: Optional[str] = None) -> None:
        raise NotImplementedError

    def render_account(self, account: Dict) -> None:
        raise NotImplementedError

    def show_typing(self, username: str) -> None:
        raise NotImplementedError

    def hide_typing(self) -> None:
        raise NotImplementedError

    def notify(self, message: str, level: str = "info", blocking: bool = False) -> None:
        raise NotImplementedError


# ------------------------------ view data ---------------------------------


def chat_preview(chat: Dict) -> str:
    messages = chat.get("messages") or []
    last = messages[-1] if messages else None
    text = last.get("text") if isinstance(last, dict) else None
    if not text:
        return NO_MESSAGES_PREVIEW
    if len(text) > PREVIEW_LENGTH:
        return text[:PREVIEW_LENGTH] + "..."
    return text


def serialize_chat_summary(chat: Dict) -> Dict:
    return {
        "id": chat.get("id"),
        "name": chat.get("name"),
        "type": chat.get("type"),
        "description": chat.get("description") or "",
        "preview": chat_preview(chat),
        "message_count": len(chat.get("messages") or []),
    }


def resolve_author(message: Dict, self_key: Optional[str], self_username: Optional[str], friend_names: Dict[str, str]) -> str:
    author_key = message.get("authorKey")
    if author_key and author_key == self_key and self_username:
        return self_username
    if author_key and friend_names.get(author_key):
        return friend_names[author_key]
    return message.get("author") or ""


def serialize_message(message: Dict, self_key: Optional[str], self_username: Optional[str], friend_names: Dict[str, str]) -> Dict:
    author_key = message.get("authorKey")
    if author_key:
        own = author_key == self_key
    else:
        own = bool(self_username) and message.get("author") == self_username
    return {
        "author": resolve_author(message, self_key, self_username, friend_names),
        "author_key": author_key,
        "own": own,
        "text": message.get("text") or "",
        "time": message.get("time") or "00:00",
        "timestamp": message.get("timestamp"),
        "type": message.get("type") or "text",
        "file_data": message.get("fileData"),
        "file_name": message.get("fileName"),
    }


def message_type_for(mimetype: Optional[str]) -> str:
    mimetype = (mimetype or "").lower()
    if mimetype.startswith("image/"):
        return "image"
    if mimetype.startswith("video/"):
        return "video"
    return "file"


def as_data_url(data, mimetype: Optional[str]) -> str:
    if isinstance(data, (bytes, bytearray)):
        data = base64.b64encode(bytes(data)).decode("ascii")
    if data.startswith("data:"):
        return data
    return f"data:{mimetype or 'application/octet-stream'};base64,{data}"


def ui_operation(action: str):
    """Serialize a controller entry point and turn storage failures into a notice."""

    def decorator(method):
        @wraps(method)
        def wrapper(self, *args, **kwargs):
            with self.lock:
                if self.closed:
                    return None
                try:
                    return method(self, *args, **kwargs)
                except StorageError as e:
                    self._storage_failed(action, e)
                    return None

        return wrapper

    return decorator


class PresentationController(TypingListener):
    def __init__(
        self,
        store: ConversationStore,
        renderer: Renderer,
        scheduler: Scheduler,
        typing_provider_factory: Optional[Callable[[TypingListener], TypingProvider]] = None,
        display_limit: int = MESSAGE_DISPLAY_LIMIT,
        search_min_length: int = SEARCH_MIN_LENGTH,
        autosave_seconds: float = AUTOSAVE_SECONDS,
        typing_idle_seconds: float = TYPING_IDLE_SECONDS,
    ):
        self.store = store
        self.storage = store.storage
        self.renderer = renderer
        self.scheduler = scheduler
        self.typing = typing_provider_factory(self) if typing_provider_factory else NullTypingProvider()
        self.display_limit = display_limit
        self.search_min_length = search_min_length
        self.autosave_seconds = autosave_seconds
        self.typing_idle_seconds = typing_idle_seconds

        self.lock = threading.RLock()
        self.user_key: Optional[str] = None
        self.username: Optional[str] = None
        self.screen = SCREEN_WELCOME
        self.current_chat_id = None
        self.is_typing = False
        self.last_search_term = ""
        self.closed = False

        self._typing_timer: Optional[TimerHandle] = None
        self._autosave_timer: Optional[TimerHandle] = None

    # ------------------------------ helpers -------------------------------

    def _warn(self, message: str) -> None:
        self.renderer.notify(message, level="warning")

    def _require_user(self) -> bool:
        if not self.user_key:
            self._warn("Choose a username first")
            return False
        return True

    def _show(self, screen: str) -> None:
        self.screen = screen
        self.renderer.show_screen(screen)

    def _current_chat(self) -> Optional[Dict]:
        if self.current_chat_id is None:
            return None
        return self.store.find_chat(self.current_chat_id)

    def _lookup_chat(self, chat_id) -> Optional[Dict]:
        chat = self.store.find_chat(chat_id)
        if chat is None and isinstance(chat_id, str) and chat_id.strip().isdigit():
            chat = self.store.find_chat(int(chat_id))
        return chat

    def _friend_names(self) -> Dict[str, str]:
        return {f["key"]: f.get("username") or "" for f in self.store.friends}

    def _save(self) -> None:
        if self.user_key and self.username:
            self.store.persist_for_user(self.user_key, self.username)

    def _reload(self) -> None:
        if self.user_key:
            self.store.load_for_user(self.user_key)

    def _render_chat_list(self) -> None:
        self.renderer.render_chat_list([serialize_chat_summary(chat) for chat in self.store.chats])

    def _render_messages(self, chat: Dict) -> None:
        friend_names = self._friend_names()
        messages = []
        for message in (chat.get("messages") or [])[-self.display_limit:]:
            if not message.get("author") and not message.get("authorKey"):
                continue
            messages.append(serialize_message(message, self.user_key, self.username, friend_names))
        header = {
            "id": chat.get("id"),
            "name": chat.get("name") or "Untitled chat",
            "type": chat.get("type"),
            "description": chat.get("description") or "",
        }
        self.renderer.render_messages(header, messages)

    def _render_friend_requests(self) -> None:
        self.renderer.render_friend_requests(list(self.store.friend_requests))

    def _account_view(self) -> Dict:
        return {
            "username": self.username,
            "key": self.user_key,
            "request_count": len(self.store.friend_requests),
            "friend_count": len(self.store.friends),
            "chat_count": len(self.store.chats),
        }

    def _render_search(self, term: str) -> None:
        friend_keys = {f["key"] for f in self.store.friends}
        sent_keys = {r["key"] for r in self.store.sent_friend_requests}
        results = []
        for row in self.store.search_users(term, self.user_key):
            status = None
            if row["key"] in friend_keys:
                status = "friend"
            elif row["key"] in sent_keys:
                status = "request_sent"
            results.append({"username": row["username"], "key": row["key"], "status": status})
        self.renderer.render_search_results(term, results)

    def _storage_failed(self, action: str, error: StorageError) -> None:
        logger.error(f"Error {action} for {self.user_key}: {str(error)}")
        if isinstance(error, VersionConflict):
            message = "Your data was changed in another window. The latest version has been loaded."
        elif isinstance(error, StorageQuotaExceeded):
            message = "Storage is full. The last change was not saved."
        else:
            message = "Could not save your data. Please try again."
        self.renderer.notify(message, level="error", blocking=True)

        try:
            self._reload()
        except StorageError as e:
            logger.error(f"Error reloading profile {self.user_key}: {str(e)}")
            return

        if not self.user_key:
            return
        chat = self._current_chat()
        if self.screen == SCREEN_CHAT and chat is not None:
            self._render_messages(chat)
        else:
            self.current_chat_id = None
            self._render_chat_list()

    # ------------------------------ timers --------------------------------

    def _schedule_autosave(self) -> None:
        if self._autosave_timer is not None:
            self._autosave_timer.cancel()
        self._autosave_timer = self.scheduler.call_later(self.autosave_seconds, self._autosave_tick)

    def _autosave_tick(self) -> None:
        self._autosave_timer = None
        self.autosave()
        if not self.closed:
            self._schedule_autosave()

    @ui_operation("autosaving")
    def autosave(self) -> None:
        if self.user_key and self.store.chats:
            self._save()

    def _cancel_typing_timer(self) -> None:
        if self._typing_timer is not None:
            self._typing_timer.cancel()
            self._typing_timer = None

    # ------------------------------ session -------------------------------

    @ui_operation("starting session")
    def start(self) -> None:
        self._schedule_autosave()
        key = self.storage.get_active_key()
        if key:
            username = self.store.load_for_user(key)
            if username is not None:
                self.user_key = key
                self.username = username
                self._show(SCREEN_CHATS)
                self._render_chat_list()
                return
        self._show(SCREEN_WELCOME)

    @ui_operation("creating profile")
    def submit_nickname(self, nickname: str) -> None:
        nickname = (nickname or "").strip()
        if not nickname:
            return self._warn("Enter a username")

        key = self.storage.generate_key()
        self.storage.set_active_key(key)
        self.store.load_for_user(key)
        self.user_key = key
        self.username = nickname
        self.current_chat_id = None
        self._save()

        self._show(SCREEN_CHATS)
        self._render_chat_list()

    @ui_operation("restoring profile")
    def restore_by_key(self, key: str) -> None:
        key = (key or "").strip()
        if not key:
            return self._warn("Enter a key to restore")

        data = self.storage.load(key)
        if data is None:
            return self._warn("No data found for this key")

        self.stop_typing()
        self.typing.close()
        self.storage.set_active_key(key)
        username = self.store.load_for_user(key)
        self.user_key = key
        self.username = username or ""
        self.current_chat_id = None

        self._show(SCREEN_CHATS)
        self._render_chat_list()
        self.renderer.notify(
            f"Data restored. User: {self.username}. Chats: {len(self.store.chats)}. Friends: {len(self.store.friends)}.",
            level="success",
        )

    @ui_operation("refreshing chats")
    def refresh(self) -> None:
        if not self._require_user():
            return
        self._reload()
        self._render_chat_list()

    @ui_operation("logging out")
    def logout(self) -> None:
        self.stop_typing()
        self.typing.close()
        self.storage.clear_active_key()
        self.store.clear()
        self.user_key = None
        self.username = None
        self.current_chat_id = None
        self.last_search_term = ""
        self._show(SCREEN_WELCOME)

    def shutdown(self) -> None:
        """Final best-effort save when the connection goes away."""
        with self.lock:
            if self.closed:
                return
            self.closed = True
            self._cancel_typing_timer()
            if self._autosave_timer is not None:
                self._autosave_timer.cancel()
                self._autosave_timer = None
            self.typing.close()
            try:
                self._save()
            except StorageError as e:
                logger.warning(f"Final save for {self.user_key} failed: {str(e)}")

    # ------------------------------- chats --------------------------------

    @ui_operation("opening chat")
    def open_chat(self, chat_id) -> None:
        if not self._require_user():
            return
        chat = self._lookup_chat(chat_id)
        if chat is None or not chat.get("id"):
            return self._warn("Chat not found")

        self.stop_typing()
        self.typing.close()
        self.renderer.hide_typing()
        self.current_chat_id = chat["id"]
        self._render_messages(chat)
        self._show(SCREEN_CHAT)

    @ui_operation("leaving chat")
    def back_to_chats(self) -> None:
        self.stop_typing()
        self.typing.close()
        self.current_chat_id = None
        self._render_chat_list()
        self._show(SCREEN_CHATS)

    @ui_operation("creating chat")
    def create_chat(self, name: str, description: str = "") -> None:
        if not self._require_user():
            return
        chat = self.store.create_chat(name, description)
        if chat is None:
            return self._warn("Enter a chat name")
        self._save()
        self._render_chat_list()

    @ui_operation("sending message")
    def send_message(self, text: str) -> None:
        if not self._require_user():
            return
        chat = self._current_chat()
        text = (text or "").strip()
        if chat is None or not text:
            return

        self.store.add_message(chat, self.username, text, author_key=self.user_key)
        self._save()
        self._render_messages(chat)
        self.stop_typing()

    @ui_operation("sending file")
    def select_file(self, file_name: str, mimetype: Optional[str], data=None, url: Optional[str] = None, text: str = "") -> None:
        if not self._require_user():
            return
        chat = self._current_chat()
        if chat is None:
            return self._warn("Open a chat first")
        if not data and not url:
            return self._warn("No file data received")

        file_data = as_data_url(data, mimetype) if data else url
        self.store.add_message(
            chat,
            self.username,
            text,
            msg_type=message_type_for(mimetype),
            file_data=file_data,
            file_name=file_name,
            author_key=self.user_key,
        )
        self._save()
        self._render_messages(chat)
        self.stop_typing()

    # ------------------------------ typing --------------------------------

    @ui_operation("handling typing")
    def key_pressed(self) -> None:
        self._cancel_typing_timer()
        chat = self._current_chat()
        if not self.is_typing and chat is not None:
            self.is_typing = True
            self.renderer.show_typing(self.username or "")
            self.typing.local_typing(chat, self.user_key)
        self._typing_timer = self.scheduler.call_later(self.typing_idle_seconds, self._typing_idle)

    def _typing_idle(self) -> None:
        with self.lock:
            self._typing_timer = None
            if not self.closed:
                self.stop_typing()

    def stop_typing(self) -> None:
        with self.lock:
            if not self.is_typing:
                return
            self.is_typing = False
            self.renderer.hide_typing()
            self._cancel_typing_timer()

    def remote_typing_started(self, username: str) -> None:
        with self.lock:
            if not self.closed:
                self.renderer.show_typing(username)

    def remote_typing_stopped(self) -> None:
        with self.lock:
            if not self.closed:
                self.renderer.hide_typing()

    # ------------------------------ friends -------------------------------

    @ui_operation("searching users")
    def search_input_changed(self, term: str) -> None:
        term = (term or "").strip()
        self.last_search_term = term
        if len(term) < self.search_min_length:
            self.renderer.render_search_results(
                term, [], hint=f"Enter at least {self.search_min_length} characters"
            )
            return
        self._render_search(term)

    @ui_operation("sending friend request")
    def send_friend_request(self, username: str) -> None:
        if not self._require_user():
            return
        username = (username or "").strip()
        target_key = self.storage.find_key_by_username(username) if username else None
        if not target_key:
            return self._warn("User not found")

        ok, message = self.store.send_friend_request(
            target_key, self.user_key, self.username, target_username=username
        )
        if not ok:
            return self._warn(message)

        self._save()
        self.renderer.notify(message, level="success")
        if len(self.last_search_term) >= self.search_min_length:
            self._render_search(self.last_search_term)

    @ui_operation("accepting friend request")
    def accept_friend_request(self, requester_key: str, requester_username: Optional[str] = None) -> None:
        if not self._require_user():
            return
        pending = next((r for r in self.store.friend_requests if r.get("key") == requester_key), None)
        if pending is None:
            return self._warn("Pending request not found")

        name = pending.get("username") or requester_username or ""
        ok, message = self.store.accept_friend_request(requester_key, name, self.user_key, self.username)
        if not ok:
            return self._warn(message)

        self._save()
        self._reload()
        self._render_friend_requests()
        self.renderer.render_account(self._account_view())
        self.renderer.notify(f"{name} was added to your friends", level="success")

    @ui_operation("rejecting friend request")
    def reject_friend_request(self, requester_key: str) -> None:
        if not self._require_user():
            return
        if not self.store.reject_friend_request(requester_key, self.user_key, self.username):
            return self._warn("Pending request not found")

        self._save()
        self._reload()
        self._render_friend_requests()
        self.renderer.render_account(self._account_view())

    @ui_operation("adding friend")
    def add_friend_by_key(self, friend_key: str, friend_name: str) -> None:
        if not self._require_user():
            return
        friend_key = (friend_key or "").strip()
        friend_name = (friend_name or "").strip()
        if not friend_key or not friend_name:
            return self._warn("Enter the friend's key and name")
        if friend_key == self.user_key:
            return self._warn("You cannot add yourself as a friend")
        if any(f.get("key") == friend_key for f in self.store.friends):
            return self._warn("This user is already your friend")

        if not self.store.add_user_by_key(friend_key, friend_name):
            return self._warn("No user found with this key")

        self._save()
        self.renderer.render_friends(list(self.store.friends))
        self.renderer.notify(f"{friend_name} was added to your friends", level="success")

    @ui_operation("starting private chat")
    def start_chat_with_friend(self, friend_key: str, friend_username: Optional[str] = None) -> None:
        if not self._require_user():
            return
        if not friend_key:
            return self._warn("Friend not found")

        chat = self.store.find_private_chat(friend_key)
        if chat is None:
            friend = next((f for f in self.store.friends if f.get("key") == friend_key), None)
            name = (friend or {}).get("username") or friend_username or friend_key
            chat = self.store.create_private_chat(friend_key, name, self.user_key)
            self._save()
        self.open_chat(chat["id"])

    @ui_operation("loading friends")
    def show_friends(self) -> None:
        if not self._require_user():
            return
        self._reload()
        self.renderer.render_friends(list(self.store.friends))

    @ui_operation("loading friend requests")
    def show_friend_requests(self) -> None:
        if not self._require_user():
            return
        self._reload()
        self._render_friend_requests()

    @ui_operation("loading account")
    def show_account(self) -> None:
        if not self._require_user():
            return
        self._reload()
        self.renderer.render_account(self._account_view())
