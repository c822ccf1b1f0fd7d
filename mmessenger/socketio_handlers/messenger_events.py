"""Socket.IO handlers for the messenger."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional

from flask import request

from mmessenger.socketio_handlers.controller import PresentationController, Renderer
from mmessenger.socketio_handlers.messenger_core import ConversationStore
from mmessenger.socketio_handlers.presence import (
    Scheduler,
    SimulatedTypingProvider,
    TimerHandle,
    TypingListener,
    TypingProvider,
)


MESSENGER_NAMESPACE = "/messenger"
TIMER_SLICE_SECONDS = 0.2

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class _BackgroundTimer(TimerHandle):
    def __init__(self):
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class SocketIOScheduler(Scheduler):
    """Timers backed by Socket.IO background tasks, run inside an app context."""

    def __init__(self, socketio, app, slice_seconds: float = TIMER_SLICE_SECONDS):
        self.socketio = socketio
        self.app = app
        self.slice_seconds = slice_seconds

    def call_later(self, delay: float, callback) -> TimerHandle:
        handle = _BackgroundTimer()

        def run():
            # short sleeps so a cancelled timer releases its task early
            remaining = delay
            while remaining > 0:
                if handle.cancelled:
                    return
                step = min(remaining, self.slice_seconds)
                self.socketio.sleep(step)
                remaining -= step
            if handle.cancelled:
                return
            with self.app.app_context():
                try:
                    callback()
                except Exception as e:
                    logger.error(f"Error in scheduled messenger task: {str(e)}")

        self.socketio.start_background_task(run)
        return handle


class SocketRenderer(Renderer):
    """Sends every render call to one client connection."""

    def __init__(self, socketio, sid: str, namespace: str = MESSENGER_NAMESPACE):
        self.socketio = socketio
        self.sid = sid
        self.namespace = namespace

    def _emit(self, event: str, payload: Dict) -> None:
        self.socketio.emit(event, payload, to=self.sid, namespace=self.namespace)

    def show_screen(self, screen: str) -> None:
        self._emit("screen", {"screen": screen})

    def render_chat_list(self, chats: List[Dict]) -> None:
        self._emit("chat_list", {"chats": chats})

    def render_messages(self, chat: Dict, messages: List[Dict]) -> None:
        self._emit("messages", {"chat": chat, "messages": messages})

    def render_friends(self, friends: List[Dict]) -> None:
        self._emit("friends_list", {"friends": friends})

    def render_friend_requests(self, requests: List[Dict]) -> None:
        self._emit("friend_requests", {"requests": requests, "count": len(requests)})

    def render_search_results(self, term: str, results: List[Dict], hint: Optional[str] = None) -> None:
        self._emit("search_results", {"query": term, "results": results, "hint": hint})

    def render_account(self, account: Dict) -> None:
        self._emit("account", account)

    def show_typing(self, username: str) -> None:
        self._emit("typing_show", {"username": username})

    def hide_typing(self) -> None:
        self._emit("typing_hide", {})

    def notify(self, message: str, level: str = "info", blocking: bool = False) -> None:
        self._emit("notice", {"message": message, "level": level, "blocking": blocking})


class ControllerRegistry:
    """Live controllers by Socket.IO session id. Owned by the application."""

    def __init__(
        self,
        storage,
        scheduler: Scheduler,
        config,
        typing_provider_factory: Optional[Callable[[TypingListener], TypingProvider]] = None,
    ):
        self.storage = storage
        self.scheduler = scheduler
        self.config = config
        self.typing_provider_factory = typing_provider_factory
        self._controllers: Dict[str, PresentationController] = {}
        self._lock = threading.RLock()

    def _typing_factory(self) -> Optional[Callable[[TypingListener], TypingProvider]]:
        if self.typing_provider_factory is not None:
            return self.typing_provider_factory
        if not self.config.get("MESSENGER_SIMULATE_TYPING", True):
            return None
        return lambda listener: SimulatedTypingProvider(listener, self.scheduler, self.storage)

    def open(self, sid: str, renderer: Renderer) -> PresentationController:
        store = ConversationStore(
            self.storage,
            history_limit=self.config.get("MESSENGER_MESSAGE_HISTORY_LIMIT", 1000),
            notify_on_reject=self.config.get("MESSENGER_NOTIFY_ON_REJECT", False),
        )
        controller = PresentationController(
            store,
            renderer,
            self.scheduler,
            typing_provider_factory=self._typing_factory(),
            display_limit=self.config.get("MESSENGER_MESSAGE_DISPLAY_LIMIT", 100),
            search_min_length=self.config.get("MESSENGER_SEARCH_MIN_LENGTH", 2),
            autosave_seconds=self.config.get("MESSENGER_AUTOSAVE_SECONDS", 30),
            typing_idle_seconds=self.config.get("MESSENGER_TYPING_IDLE_SECONDS", 1),
        )
        with self._lock:
            previous = self._controllers.pop(sid, None)
            self._controllers[sid] = controller
        if previous is not None:
            previous.shutdown()
        return controller

    def get(self, sid: str) -> Optional[PresentationController]:
        with self._lock:
            return self._controllers.get(sid)

    def close(self, sid: str) -> None:
        with self._lock:
            controller = self._controllers.pop(sid, None)
        if controller is not None:
            controller.shutdown()

    def __len__(self) -> int:
        with self._lock:
            return len(self._controllers)


def _text(data, field: str) -> str:
    return str((data or {}).get(field) or "")


def init_messenger_socket(socketio, registry: ControllerRegistry) -> None:
    def _controller() -> Optional[PresentationController]:
        controller = registry.get(request.sid)
        if controller is None:
            socketio.emit(
                "notice",
                {"message": "Session expired, reconnect", "level": "error", "blocking": True},
                to=request.sid,
                namespace=MESSENGER_NAMESPACE,
            )
        return controller

    @socketio.on("connect", namespace=MESSENGER_NAMESPACE)
    def handle_connect():
        sid = request.sid
        controller = registry.open(sid, SocketRenderer(socketio, sid))
        controller.start()

    @socketio.on("disconnect", namespace=MESSENGER_NAMESPACE)
    def handle_disconnect(reason=None):
        registry.close(request.sid)

    # ---------------------------- Session events ----------------------------

    @socketio.on("nickname_submit", namespace=MESSENGER_NAMESPACE)
    def handle_nickname_submit(data):
        controller = _controller()
        if controller:
            controller.submit_nickname(_text(data, "nickname"))

    @socketio.on("restore_submit", namespace=MESSENGER_NAMESPACE)
    def handle_restore_submit(data):
        controller = _controller()
        if controller:
            controller.restore_by_key(_text(data, "key"))

    @socketio.on("refresh", namespace=MESSENGER_NAMESPACE)
    def handle_refresh(data=None):
        controller = _controller()
        if controller:
            controller.refresh()

    @socketio.on("logout", namespace=MESSENGER_NAMESPACE)
    def handle_logout(data=None):
        controller = _controller()
        if controller:
            controller.logout()

    # ----------------------------- Chat events ------------------------------

    @socketio.on("chat_open", namespace=MESSENGER_NAMESPACE)
    def handle_chat_open(data):
        controller = _controller()
        if controller:
            controller.open_chat((data or {}).get("chat_id"))

    @socketio.on("chat_back", namespace=MESSENGER_NAMESPACE)
    def handle_chat_back(data=None):
        controller = _controller()
        if controller:
            controller.back_to_chats()

    @socketio.on("chat_create", namespace=MESSENGER_NAMESPACE)
    def handle_chat_create(data):
        controller = _controller()
        if controller:
            controller.create_chat(_text(data, "name"), _text(data, "description"))

    @socketio.on("message_send", namespace=MESSENGER_NAMESPACE)
    def handle_message_send(data):
        controller = _controller()
        if controller:
            controller.send_message(_text(data, "text"))

    @socketio.on("file_select", namespace=MESSENGER_NAMESPACE)
    def handle_file_select(data):
        controller = _controller()
        if not controller:
            return
        payload = data or {}
        controller.select_file(
            _text(payload, "file_name"),
            payload.get("mimetype"),
            data=payload.get("data"),
            url=payload.get("url"),
            text=_text(payload, "text"),
        )

    @socketio.on("typing", namespace=MESSENGER_NAMESPACE)
    def handle_typing(data=None):
        controller = _controller()
        if controller:
            controller.key_pressed()

    # ---------------------------- Friends events ----------------------------

    @socketio.on("search_input", namespace=MESSENGER_NAMESPACE)
    def handle_search_input(data):
        controller = _controller()
        if controller:
            controller.search_input_changed(_text(data, "query"))

    @socketio.on("friend_request_send", namespace=MESSENGER_NAMESPACE)
    def handle_friend_request_send(data):
        controller = _controller()
        if controller:
            controller.send_friend_request(_text(data, "username"))

    @socketio.on("friend_request_accept", namespace=MESSENGER_NAMESPACE)
    def handle_friend_request_accept(data):
        controller = _controller()
        if controller:
            controller.accept_friend_request(_text(data, "key"), (data or {}).get("username"))

    @socketio.on("friend_request_reject", namespace=MESSENGER_NAMESPACE)
    def handle_friend_request_reject(data):
        controller = _controller()
        if controller:
            controller.reject_friend_request(_text(data, "key"))

    @socketio.on("friend_add_by_key", namespace=MESSENGER_NAMESPACE)
    def handle_friend_add_by_key(data):
        controller = _controller()
        if controller:
            controller.add_friend_by_key(_text(data, "key"), _text(data, "name"))

    @socketio.on("friend_chat_start", namespace=MESSENGER_NAMESPACE)
    def handle_friend_chat_start(data):
        controller = _controller()
        if controller:
            controller.start_chat_with_friend(_text(data, "key"), (data or {}).get("username"))

    @socketio.on("friends_show", namespace=MESSENGER_NAMESPACE)
    def handle_friends_show(data=None):
        controller = _controller()
        if controller:
            controller.show_friends()

    @socketio.on("requests_show", namespace=MESSENGER_NAMESPACE)
    def handle_requests_show(data=None):
        controller = _controller()
        if controller:
            controller.show_friend_requests()

    @socketio.on("account_show", namespace=MESSENGER_NAMESPACE)
    def handle_account_show(data=None):
        controller = _controller()
        if controller:
            controller.show_account()
