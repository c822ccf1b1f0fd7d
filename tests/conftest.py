from datetime import datetime, timedelta, timezone

import pytest

from mmessenger import create_app
from mmessenger.socketio_handlers.controller import PresentationController, Renderer
from mmessenger.socketio_handlers.messenger_core import ConversationStore
from mmessenger.socketio_handlers.presence import Scheduler, TimerHandle


class ManualTimer(TimerHandle):
    def __init__(self, due, callback):
        self.due = due
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler(Scheduler):
    """Virtual clock; timers only fire when a test calls ``advance``."""

    def __init__(self):
        self.now = 0.0
        self.timers = []

    def call_later(self, delay, callback):
        timer = ManualTimer(self.now + delay, callback)
        self.timers.append(timer)
        return timer

    def pending(self):
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def advance(self, seconds):
        target = self.now + seconds
        while True:
            due = sorted((t for t in self.pending() if t.due <= target), key=lambda t: t.due)
            if not due:
                break
            timer = due[0]
            self.now = timer.due
            timer.fired = True
            timer.callback()
        self.now = target


class RecordingRenderer(Renderer):
    def __init__(self):
        self.calls = []

    def _record(self, name, **payload):
        self.calls.append((name, payload))

    def names(self):
        return [name for name, _ in self.calls]

    def last(self, name):
        for call_name, payload in reversed(self.calls):
            if call_name == name:
                return payload
        return None

    def all(self, name):
        return [payload for call_name, payload in self.calls if call_name == name]

    def clear(self):
        self.calls = []

    def show_screen(self, screen):
        self._record("screen", screen=screen)

    def render_chat_list(self, chats):
        self._record("chat_list", chats=chats)

    def render_messages(self, chat, messages):
        self._record("messages", chat=chat, messages=messages)

    def render_friends(self, friends):
        self._record("friends", friends=friends)

    def render_friend_requests(self, requests):
        self._record("friend_requests", requests=requests)

    def render_search_results(self, term, results, hint=None):
        self._record("search_results", term=term, results=results, hint=hint)

    def render_account(self, account):
        self._record("account", **account)

    def show_typing(self, username):
        self._record("typing_show", username=username)

    def hide_typing(self):
        self._record("typing_hide")

    def notify(self, message, level="info", blocking=False):
        self._record("notice", message=message, level=level, blocking=blocking)


class StepClock:
    """Deterministic clock that moves forward by ``step`` on every call."""

    def __init__(self, start=None, step=timedelta(0)):
        self.current = start or datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
        self.step = step

    def __call__(self):
        value = self.current
        self.current = self.current + self.step
        return value


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def app(tmp_path, scheduler):
    app = create_app(
        test_config={
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'messenger.db'}",
            "UPLOAD_FOLDER": str(tmp_path / "uploads"),
            "MESSENGER_SIMULATE_TYPING": False,
            "MESSENGER_MAX_UPLOAD_BYTES": 1024,
        },
        scheduler=scheduler,
    )
    yield app


@pytest.fixture
def app_ctx(app):
    with app.app_context():
        yield


@pytest.fixture
def storage(app, app_ctx):
    return app.extensions["mmessenger"]["storage"]


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def make_store(storage, clock):
    def _make(**kwargs):
        kwargs.setdefault("clock", clock)
        return ConversationStore(storage, **kwargs)

    return _make


@pytest.fixture
def make_profile(storage, make_store):
    """Persist a profile named ``username`` and return ``(key, store)``."""

    def _make(username):
        key = storage.generate_key()
        store = make_store()
        store.load_for_user(key)
        store.persist_for_user(key, username)
        return key, store

    return _make


@pytest.fixture
def make_controller(storage, scheduler, make_store):
    def _make(typing_provider_factory=None, **kwargs):
        renderer = RecordingRenderer()
        controller = PresentationController(
            make_store(),
            renderer,
            scheduler,
            typing_provider_factory=typing_provider_factory,
            **kwargs,
        )
        return controller, renderer

    return _make
