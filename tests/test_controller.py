import pytest

from mmessenger.model.profile import FAVORITES_CHAT_ID
from mmessenger.socketio_handlers.controller import (
    SCREEN_CHAT,
    SCREEN_CHATS,
    SCREEN_WELCOME,
    chat_preview,
    message_type_for,
)
from mmessenger.socketio_handlers.presence import SimulatedTypingProvider


class FixedRandom:
    def __init__(self, roll):
        self.roll = roll

    def uniform(self, low, high):
        return low

    def random(self):
        return self.roll


@pytest.fixture
def alice(make_controller):
    controller, renderer = make_controller()
    controller.start()
    controller.submit_nickname("Alice")
    renderer.clear()
    return controller, renderer


def test_start_without_active_profile_shows_welcome(make_controller):
    controller, renderer = make_controller()
    controller.start()
    assert renderer.last("screen") == {"screen": SCREEN_WELCOME}
    assert controller.user_key is None


def test_blank_nickname_is_rejected(make_controller, storage):
    controller, renderer = make_controller()
    controller.start()
    controller.submit_nickname("   ")
    assert renderer.last("notice")["level"] == "warning"
    assert storage.get_active_key() is None
    assert controller.screen == SCREEN_WELCOME


def test_submit_nickname_creates_profile(make_controller, storage):
    controller, renderer = make_controller()
    controller.start()
    controller.submit_nickname("  Alice ")

    assert len(controller.user_key) == 16
    assert storage.get_active_key() == controller.user_key
    assert storage.load(controller.user_key)["username"] == "Alice"
    assert renderer.last("screen") == {"screen": SCREEN_CHATS}
    chats = renderer.last("chat_list")["chats"]
    assert [c["id"] for c in chats] == [FAVORITES_CHAT_ID]
    assert chats[0]["preview"] == "No messages"


def test_start_resumes_active_profile(alice, make_controller):
    first, _ = alice
    controller, renderer = make_controller()
    controller.start()
    assert controller.user_key == first.user_key
    assert controller.username == "Alice"
    assert renderer.last("screen") == {"screen": SCREEN_CHATS}


def test_create_chat_open_and_send(alice):
    controller, renderer = alice
    controller.create_chat("  Team ", "daily")
    chats = renderer.last("chat_list")["chats"]
    assert chats[-1]["name"] == "Team"

    controller.open_chat(chats[-1]["id"])
    assert renderer.last("screen") == {"screen": SCREEN_CHAT}
    assert renderer.last("messages")["chat"]["name"] == "Team"

    controller.send_message("  hello there  ")
    messages = renderer.last("messages")["messages"]
    assert len(messages) == 1
    assert messages[0]["text"] == "hello there"
    assert messages[0]["author"] == "Alice"
    assert messages[0]["own"] is True

    stored = controller.storage.load(controller.user_key)
    assert stored["chats"][-1]["messages"][0]["authorKey"] == controller.user_key


def test_create_chat_requires_name(alice):
    controller, renderer = alice
    controller.create_chat("   ")
    assert renderer.last("notice")["message"] == "Enter a chat name"
    assert len(controller.store.chats) == 1


def test_open_chat_accepts_string_ids(alice):
    controller, renderer = alice
    controller.open_chat(str(FAVORITES_CHAT_ID))
    assert controller.current_chat_id == FAVORITES_CHAT_ID
    controller.open_chat("404")
    assert renderer.last("notice")["message"] == "Chat not found"


def test_blank_message_is_ignored(alice):
    controller, renderer = alice
    controller.open_chat(FAVORITES_CHAT_ID)
    renderer.clear()
    controller.send_message("   ")
    assert renderer.calls == []


def test_message_view_shows_last_hundred(alice):
    controller, renderer = alice
    chat = controller.store.find_chat(FAVORITES_CHAT_ID)
    for i in range(150):
        controller.store.add_message(chat, "Alice", str(i), author_key=controller.user_key)
    controller.open_chat(FAVORITES_CHAT_ID)
    messages = renderer.last("messages")["messages"]
    assert len(messages) == 100
    assert messages[0]["text"] == "50"
    assert messages[-1]["text"] == "149"


def test_author_resolved_from_key(alice):
    controller, renderer = alice
    controller.store.add_friend("friendkey", "Robert")
    chat = controller.store.find_chat(FAVORITES_CHAT_ID)
    chat["messages"].append({"author": "Bob", "authorKey": "friendkey", "text": "hey", "time": "10:00"})
    chat["messages"].append({"author": "Stranger", "text": "legacy", "time": "10:01"})
    chat["messages"].append({"text": "no author at all"})
    controller.open_chat(FAVORITES_CHAT_ID)

    messages = renderer.last("messages")["messages"]
    assert [(m["author"], m["own"]) for m in messages] == [("Robert", False), ("Stranger", False)]


def test_select_file_builds_data_url(alice):
    controller, renderer = alice
    controller.open_chat(FAVORITES_CHAT_ID)
    controller.select_file("cat.png", "image/png", data=b"\x89PNG", text="look")
    message = renderer.last("messages")["messages"][-1]
    assert message["type"] == "image"
    assert message["file_name"] == "cat.png"
    assert message["file_data"].startswith("data:image/png;base64,")
    assert message["text"] == "look"


def test_select_file_with_upload_url(alice):
    controller, renderer = alice
    controller.open_chat(FAVORITES_CHAT_ID)
    controller.select_file("notes.txt", "text/plain", url="/api/messenger/uploads/x.txt")
    message = renderer.last("messages")["messages"][-1]
    assert message["type"] == "file"
    assert message["file_data"] == "/api/messenger/uploads/x.txt"


def test_select_file_without_payload(alice):
    controller, renderer = alice
    controller.open_chat(FAVORITES_CHAT_ID)
    controller.select_file("empty.bin", "application/octet-stream")
    assert renderer.last("notice")["message"] == "No file data received"


def test_typing_idle_timer_is_rearmed(alice, scheduler):
    controller, renderer = alice
    controller.open_chat(FAVORITES_CHAT_ID)
    renderer.clear()

    controller.key_pressed()
    assert renderer.all("typing_show") == [{"username": "Alice"}]
    scheduler.advance(0.6)
    controller.key_pressed()
    scheduler.advance(0.6)
    assert controller.is_typing
    assert renderer.all("typing_hide") == []

    scheduler.advance(0.5)
    assert not controller.is_typing
    assert renderer.all("typing_hide") == [{}]
    assert len(renderer.all("typing_show")) == 1


def test_sending_stops_typing(alice):
    controller, renderer = alice
    controller.open_chat(FAVORITES_CHAT_ID)
    controller.key_pressed()
    controller.send_message("done")
    assert not controller.is_typing
    assert renderer.names()[-1] == "typing_hide"


def test_autosave_persists_pending_changes(alice, scheduler):
    controller, _ = alice
    controller.store.add_friend("k2", "Bob")
    scheduler.advance(30)
    stored = controller.storage.load(controller.user_key)
    assert [f["key"] for f in stored["friends"]] == ["k2"]


def test_shutdown_saves_and_cancels_timers(alice, scheduler):
    controller, _ = alice
    controller.open_chat(FAVORITES_CHAT_ID)
    controller.key_pressed()
    controller.store.add_friend("k2", "Bob")
    controller.shutdown()

    assert scheduler.pending() == []
    stored = controller.storage.load(controller.user_key)
    assert [f["key"] for f in stored["friends"]] == ["k2"]


def test_restore_by_key(alice, make_controller):
    first, _ = alice
    first.create_chat("Team")
    first.logout()

    controller, renderer = make_controller()
    controller.start()
    controller.restore_by_key("doesnotexist")
    assert renderer.last("notice")["message"] == "No data found for this key"

    controller.restore_by_key(first.user_key)
    assert controller.username == "Alice"
    assert renderer.last("screen") == {"screen": SCREEN_CHATS}
    notice = renderer.last("notice")
    assert notice["level"] == "success"
    assert "Chats: 2" in notice["message"]
    assert "Friends: 0" in notice["message"]
    assert controller.storage.get_active_key() == first.user_key


def test_logout_clears_pointer_only(alice):
    controller, renderer = alice
    key = controller.user_key
    controller.logout()
    assert renderer.last("screen") == {"screen": SCREEN_WELCOME}
    assert controller.storage.get_active_key() is None
    assert controller.storage.load(key)["username"] == "Alice"
    assert controller.store.chats == []


def test_search_needs_two_characters(alice):
    controller, renderer = alice
    controller.search_input_changed(" a ")
    result = renderer.last("search_results")
    assert result["results"] == []
    assert result["hint"] == "Enter at least 2 characters"


def test_search_tags_friends_and_requests(alice, make_profile):
    controller, renderer = alice
    bob_key, _ = make_profile("Bob")
    bobby_key, _ = make_profile("Bobby")
    make_profile("Bobbie")
    controller.store.add_friend(bob_key, "Bob")
    controller.send_friend_request("Bobby")

    controller.search_input_changed("bob")
    statuses = {r["username"]: r["status"] for r in renderer.last("search_results")["results"]}
    assert statuses == {"Bob": "friend", "Bobby": "request_sent", "Bobbie": None}


def test_friend_request_to_unknown_user(alice):
    controller, renderer = alice
    controller.send_friend_request("Nobody")
    assert renderer.last("notice")["message"] == "User not found"


def test_friend_request_to_self(alice):
    controller, renderer = alice
    controller.send_friend_request("Alice")
    assert renderer.last("notice")["message"] == "Cannot send a friend request to yourself"


def test_accept_flow_between_two_connections(make_controller):
    alice, alice_view = make_controller()
    alice.start()
    alice.submit_nickname("Alice")
    bob, bob_view = make_controller()
    bob.start()
    bob.submit_nickname("Bob")

    alice.send_friend_request("Bob")
    assert alice_view.last("notice")["message"] == "Friend request sent"

    bob.show_friend_requests()
    requests = bob_view.last("friend_requests")["requests"]
    assert [r["key"] for r in requests] == [alice.user_key]

    bob.accept_friend_request(alice.user_key)
    assert bob_view.last("friend_requests")["requests"] == []
    assert bob_view.last("account")["request_count"] == 0
    assert bob_view.last("notice")["message"] == "Alice was added to your friends"

    alice.show_friends()
    assert [f["key"] for f in alice_view.last("friends")["friends"]] == [bob.user_key]


def test_accept_unknown_request(alice):
    controller, renderer = alice
    controller.accept_friend_request("missing")
    assert renderer.last("notice")["message"] == "Pending request not found"


def test_reject_flow(make_controller):
    alice, _ = make_controller()
    alice.start()
    alice.submit_nickname("Alice")
    bob, bob_view = make_controller()
    bob.start()
    bob.submit_nickname("Bob")
    alice.send_friend_request("Bob")

    bob.show_friend_requests()
    bob.reject_friend_request(alice.user_key)
    assert bob_view.last("friend_requests")["requests"] == []
    assert bob_view.last("account")["request_count"] == 0

    alice.refresh()
    assert [r["key"] for r in alice.store.sent_friend_requests] == [bob.user_key]


def test_add_friend_by_key_validation(alice, make_profile):
    controller, renderer = alice
    bob_key, _ = make_profile("Bob")

    controller.add_friend_by_key("", "Bob")
    assert renderer.last("notice")["message"] == "Enter the friend's key and name"
    controller.add_friend_by_key(controller.user_key, "Me")
    assert renderer.last("notice")["message"] == "You cannot add yourself as a friend"
    controller.add_friend_by_key("missingkey", "Ghost")
    assert renderer.last("notice")["message"] == "No user found with this key"

    controller.add_friend_by_key(bob_key, "Bob")
    assert [f["key"] for f in renderer.last("friends")["friends"]] == [bob_key]
    controller.add_friend_by_key(bob_key, "Bob")
    assert renderer.last("notice")["message"] == "This user is already your friend"


def test_start_chat_with_friend_reuses_private_chat(alice, make_profile):
    controller, renderer = alice
    bob_key, _ = make_profile("Bob")
    controller.add_friend_by_key(bob_key, "Bob")

    controller.start_chat_with_friend(bob_key)
    first_id = controller.current_chat_id
    assert renderer.last("screen") == {"screen": SCREEN_CHAT}
    assert renderer.last("messages")["chat"]["name"] == "Bob"

    controller.back_to_chats()
    controller.start_chat_with_friend(bob_key)
    assert controller.current_chat_id == first_id
    private = [c for c in controller.store.chats if c.get("type") == "private"]
    assert len(private) == 1


def test_show_account(alice):
    controller, renderer = alice
    controller.show_account()
    account = renderer.last("account")
    assert account["username"] == "Alice"
    assert account["key"] == controller.user_key
    assert account["request_count"] == 0


def test_operations_need_a_profile(make_controller):
    controller, renderer = make_controller()
    controller.start()
    controller.create_chat("Team")
    assert renderer.last("notice")["message"] == "Choose a username first"


def test_conflicting_tab_is_told_and_reloaded(alice, make_controller):
    first, _ = alice
    second, second_view = make_controller()
    second.start()
    assert second.user_key == first.user_key

    first.create_chat("from first tab")
    second.create_chat("from second tab")

    notice = second_view.last("notice")
    assert notice["level"] == "error"
    assert notice["blocking"] is True
    names = [c["name"] for c in second.store.chats]
    assert "from first tab" in names
    assert "from second tab" not in names
    assert second_view.last("chat_list")["chats"][-1]["name"] == "from first tab"


def test_quota_failure_leaves_stored_state(alice):
    controller, renderer = alice
    controller.open_chat(FAVORITES_CHAT_ID)
    controller.storage.quota_bytes = 2000
    controller.send_message("x" * 5000)

    notice = renderer.last("notice")
    assert notice["message"] == "Storage is full. The last change was not saved."
    assert notice["blocking"] is True
    assert controller.store.find_chat(FAVORITES_CHAT_ID)["messages"] == []


def test_active_profile_is_shared_by_every_connection(alice, make_controller, storage):
    first, _ = alice
    second, second_view = make_controller()
    second.start()
    assert second.user_key == first.user_key
    assert second_view.last("screen") == {"screen": SCREEN_CHATS}

    second.logout()
    assert storage.get_active_key() is None
    third, third_view = make_controller()
    third.start()
    assert third.user_key is None
    assert third_view.last("screen") == {"screen": SCREEN_WELCOME}


def test_failed_save_does_not_deliver_friend_request(alice, make_profile, storage):
    controller, renderer = alice
    bob_key, _ = make_profile("Bob")
    quota = storage.quota_bytes
    storage.quota_bytes = 10

    controller.send_friend_request("Bob")
    assert renderer.last("notice")["message"] == "Storage is full. The last change was not saved."
    assert controller.store.sent_friend_requests == []
    assert storage.pending_events(bob_key) == []

    storage.quota_bytes = quota
    controller.send_friend_request("Bob")
    assert renderer.last("notice")["message"] == "Friend request sent"
    assert [e["senderKey"] for e in storage.pending_events(bob_key)] == [controller.user_key]


def test_failed_save_does_not_deliver_acceptance(alice, make_profile, storage):
    controller, renderer = alice
    bob_key, bob = make_profile("Bob")
    bob.send_friend_request(controller.user_key, bob_key, "Bob")
    bob.persist_for_user(bob_key, "Bob")
    controller.show_friend_requests()
    storage.quota_bytes = 10

    controller.accept_friend_request(bob_key)
    assert renderer.last("notice")["blocking"] is True
    assert controller.store.friends == []
    assert [r["key"] for r in controller.store.friend_requests] == [bob_key]
    assert storage.pending_events(bob_key) == []

    bob.load_for_user(bob_key)
    assert bob.friends == []
    assert [r["key"] for r in bob.sent_friend_requests] == [controller.user_key]


def test_simulated_remote_typing_in_private_chat(make_controller, make_profile, scheduler, storage):
    bob_key, _ = make_profile("Bob")
    controller, renderer = make_controller(
        typing_provider_factory=lambda listener: SimulatedTypingProvider(
            listener, scheduler, storage, rng=FixedRandom(0.1)
        )
    )
    controller.start()
    controller.submit_nickname("Alice")
    controller.add_friend_by_key(bob_key, "Bob")
    controller.start_chat_with_friend(bob_key)
    renderer.clear()

    controller.key_pressed()
    scheduler.advance(1.5)
    assert {"username": "Bob"} in renderer.all("typing_show")

    scheduler.advance(3)
    assert renderer.names()[-1] == "typing_hide"


class CountingListener:
    def __init__(self):
        self.shown = 0
        self.hidden = 0

    def remote_typing_started(self, username):
        self.shown += 1

    def remote_typing_stopped(self):
        self.hidden += 1


def test_simulated_typing_forgets_fired_timers(make_profile, scheduler, storage):
    bob_key, _ = make_profile("Bob")
    listener = CountingListener()
    provider = SimulatedTypingProvider(listener, scheduler, storage, rng=FixedRandom(0.1))
    chat = {"id": 5, "name": "Bob", "type": "private", "participants": ["me", bob_key]}

    for _ in range(5):
        provider.local_typing(chat, "me")
        scheduler.advance(10)

    assert listener.shown == 5
    assert listener.hidden == 5
    assert provider._handles == []


def test_simulated_typing_can_stay_silent(make_controller, make_profile, scheduler, storage):
    bob_key, _ = make_profile("Bob")
    controller, renderer = make_controller(
        typing_provider_factory=lambda listener: SimulatedTypingProvider(
            listener, scheduler, storage, rng=FixedRandom(0.9)
        )
    )
    controller.start()
    controller.submit_nickname("Alice")
    controller.add_friend_by_key(bob_key, "Bob")
    controller.start_chat_with_friend(bob_key)
    renderer.clear()

    controller.key_pressed()
    scheduler.advance(10)
    assert renderer.all("typing_show") == [{"username": "Alice"}]


def test_no_remote_typing_outside_private_chats(make_controller, scheduler, storage):
    controller, renderer = make_controller(
        typing_provider_factory=lambda listener: SimulatedTypingProvider(
            listener, scheduler, storage, rng=FixedRandom(0.0)
        )
    )
    controller.start()
    controller.submit_nickname("Alice")
    controller.open_chat(FAVORITES_CHAT_ID)
    renderer.clear()

    controller.key_pressed()
    scheduler.advance(10)
    assert renderer.all("typing_show") == [{"username": "Alice"}]


def test_chat_preview_truncates():
    assert chat_preview({"messages": []}) == "No messages"
    assert chat_preview({"messages": [{"text": ""}]}) == "No messages"
    assert chat_preview({"messages": [{"text": "short"}]}) == "short"
    assert chat_preview({"messages": [{"text": "y" * 40}]}) == "y" * 30 + "..."


def test_message_type_for():
    assert message_type_for("image/jpeg") == "image"
    assert message_type_for("video/mp4") == "video"
    assert message_type_for("application/pdf") == "file"
    assert message_type_for(None) == "file"
