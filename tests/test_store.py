import asyncio

import pytest
from pymongo.errors import ConnectionFailure

from errors import PreconditionError
from schemas import Message, MessageReaction
from store import StoreState, append_message, patch_message, remove_message, set_messages
from tests.conftest import MUSIC, skill_data


def message(message_id, content="hi", pending=False):
    return Message(id=message_id, conversation_id="c1", sender_id="a", content=content, pending=pending)


# ---------- Reducers ----------

def test_append_never_duplicates_authoritative_entry():
    state = set_messages(StoreState(), "c1", [message("m1")])
    state = append_message(state, message("m1", "optimistic", pending=True))
    assert [(m.id, m.pending) for m in state.messages["c1"]] == [("m1", False)]


def test_append_replaces_pending_entry():
    state = append_message(StoreState(), message("m1", pending=True))
    state = append_message(state, message("m1", "second", pending=True))
    assert [m.content for m in state.messages["c1"]] == ["second"]


def test_patch_and_remove_uncached_message_are_noops():
    state = StoreState()
    assert patch_message(state, "ghost", {"content": "x"}) is state
    assert remove_message(state, "ghost") is state


def test_patch_message_finds_its_conversation():
    state = set_messages(StoreState(), "c1", [message("m1")])
    state = patch_message(state, "m1", {"reactions": [MessageReaction(emoji="👍", users=["b"])]})
    assert state.messages["c1"][0].reactions[0].users == ["b"]


# ---------- Session ----------

@pytest.fixture
def signed_in(store, make_user):
    async def sign_in():
        await make_user("b")
        await make_user("c")
        return await store.sign_in("a", {"display_name": "Ada", "email": "ada@example.com"})
    asyncio.run(sign_in())
    return store


def test_sign_in_sets_profile(signed_in):
    profile = signed_in.state.current_user_profile
    assert profile.id == "a"
    assert profile.display_name == "Ada"


def test_anonymous_notification_subscription_is_inert(store, db):
    sub = store.subscribe_to_notifications()
    assert sub.cancelled
    assert db.listener_count == 0


def test_actions_without_sign_in_record_error(store):
    asyncio.run(store.add_message_reaction("m1", "👍"))
    assert store.state.error == "User not authenticated"


def test_notification_reads_without_sign_in_are_silent(store):
    asyncio.run(store.load_notifications())
    asyncio.run(store.mark_all_notifications_as_read())
    assert store.state.error is None
    assert store.state.notifications == []


# ---------- Loading and errors ----------

def test_loading_flag_resets_after_failure(store, services, monkeypatch):
    async def unreachable(*args, **kwargs):
        raise ConnectionFailure("no route to host")

    monkeypatch.setattr(services.users, "search_users", unreachable)
    seen = []
    store.watch(lambda state: seen.append(state.is_loading_users))

    assert asyncio.run(store.load_users("py")) is None
    assert store.state.is_loading_users is False
    assert True in seen
    assert store.state.error.startswith("Database connection error")


def test_load_ratings_failure_returns_empty_list(store, services, monkeypatch):
    async def broken(user_id):
        raise RuntimeError("index missing")

    monkeypatch.setattr(services.ratings, "get_user_ratings", broken)
    assert asyncio.run(store.load_user_ratings("a")) == []
    assert store.state.error == "index missing"


def test_error_is_cleared_by_next_action(store):
    store.set_error("stale")
    asyncio.run(store.load_users())
    assert store.state.error is None


def test_precondition_failures_reach_caller(signed_in):
    with pytest.raises(PreconditionError):
        asyncio.run(signed_in.ban_user("b", ""))
    assert "reason" in signed_in.state.error
    with pytest.raises(PreconditionError):
        asyncio.run(signed_in.add_rating({"from_id": "a", "to_id": "b", "swap_request_id": "s", "rating": 0}))
    with pytest.raises(PreconditionError):
        asyncio.run(signed_in.send_broadcast_message("  "))


def test_create_conversation_reraises_remote_failure(signed_in, services, monkeypatch):
    async def offline(*args, **kwargs):
        raise RuntimeError("store offline")

    monkeypatch.setattr(services.messages, "create_conversation", offline)
    with pytest.raises(RuntimeError):
        asyncio.run(signed_in.create_conversation(["a", "b"]))
    assert signed_in.state.error == "store offline"
    assert signed_in.state.conversations == []


def test_other_remote_failures_are_recorded_not_raised(signed_in):
    asyncio.run(signed_in.send_message("missing", "a", "hello?"))
    assert "not found" in signed_in.state.error


# ---------- Skills & swap requests ----------

def test_concurrent_skill_adds_keep_both(signed_in):
    async def scenario():
        await asyncio.gather(
            signed_in.add_skill("a", skill_data("Python"), "offered"),
            signed_in.add_skill("a", skill_data("Piano", MUSIC), "offered"),
        )

    asyncio.run(scenario())
    names = {s.name for s in signed_in.state.user_skills.offered}
    assert names == {"Python", "Piano"}
    assert {s.name for s in signed_in.state.current_user_profile.skills_offered} == names


def test_remove_skill_updates_buckets(signed_in):
    skill_id = asyncio.run(signed_in.add_skill("a", skill_data(), "wanted"))
    asyncio.run(signed_in.remove_skill("a", skill_id, "wanted"))
    assert signed_in.state.user_skills.wanted == []


def test_optimistic_swap_request_is_replaced_on_reload(signed_in, services):
    async def scenario():
        offered = await signed_in.add_skill("a", skill_data("Python"), "offered")
        wanted = await services.skills.add_skill_to_user("b", skill_data("Piano", MUSIC), "offered")
        request_id = await signed_in.create_swap_request({
            "requester_id": "a", "target_id": "b", "offered_skill": offered, "requested_skill": wanted,
        })
        optimistic = list(signed_in.state.swap_requests)
        await signed_in.load_swap_requests("a", "outgoing")
        return request_id, optimistic

    request_id, optimistic = asyncio.run(scenario())
    assert [(r.id, r.pending) for r in optimistic] == [(request_id, True)]
    assert optimistic[0].requested_skill.name == "Piano"
    assert [(r.id, r.pending) for r in signed_in.state.swap_requests] == [(request_id, False)]


def test_invalid_swap_request_is_a_precondition_failure(signed_in):
    with pytest.raises(PreconditionError):
        asyncio.run(signed_in.create_swap_request({"requester_id": "a"}))


def test_status_update_patches_cached_request(signed_in, services):
    async def scenario():
        request_id = await services.swap_requests.create_swap_request({
            "requester_id": "b", "target_id": "a",
            "offered_skill": skill_data("Piano", MUSIC), "requested_skill": skill_data(),
        })
        await signed_in.load_swap_requests("a", "incoming")
        await signed_in.update_swap_request_status(request_id, "accepted")
        return request_id

    asyncio.run(scenario())
    assert signed_in.state.swap_requests[0].status == "accepted"


def test_service_rejection_is_recorded_not_raised(signed_in, services):
    async def scenario():
        request_id = await services.swap_requests.create_swap_request({
            "requester_id": "b", "target_id": "a",
            "offered_skill": skill_data("Piano", MUSIC), "requested_skill": skill_data(),
        })
        await signed_in.load_swap_requests("a", "incoming")
        await signed_in.update_swap_request_status(request_id, "completed")
        # Completed is terminal, so this one is refused by the service
        await signed_in.update_swap_request_status(request_id, "accepted")

    asyncio.run(scenario())
    assert signed_in.state.error == "Swap request is already completed"
    assert isinstance(signed_in.failure, PreconditionError)
    assert signed_in.state.swap_requests[0].status == "completed"


def test_verifying_banned_user_is_recorded_not_raised(signed_in, services):
    asyncio.run(services.admin.ban_user("b", "spam"))
    asyncio.run(signed_in.verify_user("b"))
    assert signed_in.state.error == "Banned users cannot be verified."
    asyncio.run(signed_in.load_users())
    assert signed_in.failure is None


def test_requests_survive_skill_removal(signed_in, services):
    async def scenario():
        offered = await signed_in.add_skill("a", skill_data("Python"), "offered")
        wanted = await services.skills.add_skill_to_user("b", skill_data("Piano", MUSIC), "offered")
        first = await signed_in.create_swap_request({
            "requester_id": "a", "target_id": "b", "offered_skill": offered, "requested_skill": wanted,
        })
        second = await signed_in.create_swap_request({
            "requester_id": "a", "target_id": "c", "offered_skill": offered, "requested_skill": skill_data("Chess"),
        })
        await signed_in.remove_skill("a", offered, "offered")
        await signed_in.load_swap_requests("a", "outgoing")
        return first, second

    first, second = asyncio.run(scenario())
    assert signed_in.state.error is None
    assert [r.id for r in signed_in.state.swap_requests] == [second, first]
    assert {r.offered_skill.name for r in signed_in.state.swap_requests} == {"Python"}


def test_swap_request_subscription_follows_writes(signed_in, services, db):
    def send(target):
        return asyncio.run(services.swap_requests.create_swap_request({
            "requester_id": "a", "target_id": target,
            "offered_skill": skill_data(), "requested_skill": skill_data("Piano", MUSIC),
        }))

    first = send("b")
    sub = signed_in.subscribe_to_swap_requests("outgoing")
    assert [r.id for r in signed_in.state.swap_requests] == [first]
    assert signed_in.subscribe_to_swap_requests("outgoing") is sub

    second = send("c")
    assert [r.id for r in signed_in.state.swap_requests] == [second, first]

    signed_in.close()
    assert sub.cancelled
    assert db.listener_count == 0
    send("b")
    assert len(signed_in.state.swap_requests) == 2


def test_anonymous_swap_request_subscription_is_inert(store, db):
    assert store.subscribe_to_swap_requests().cancelled
    assert db.listener_count == 0


# ---------- Messaging ----------

@pytest.fixture
def conversation(signed_in):
    return asyncio.run(signed_in.create_conversation(["a", "b", "c"]))


def test_new_conversation_is_cached_optimistically(signed_in, conversation):
    cached = signed_in.state.conversations
    assert [(c.id, c.pending, c.type) for c in cached] == [(conversation, True, "group")]
    assert cached[0].unread_count == {"a": 0, "b": 0, "c": 0}


def test_switching_conversation_cancels_old_listener(signed_in, services, db, conversation):
    async def scenario():
        other = await services.messages.create_conversation(["a", "b"])
        signed_in.set_active_conversation(conversation)
        assert db.listener_count == 1
        signed_in.set_active_conversation(other)
        assert db.listener_count == 1
        await services.messages.send_message(conversation, "b", "while away")
        await services.messages.send_message(other, "b", "here")
        return other

    other = asyncio.run(scenario())
    assert [m.content for m in signed_in.state.messages[other]] == ["here"]
    assert signed_in.state.messages[conversation] == []
    signed_in.set_active_conversation(None)
    assert db.listener_count == 0


def test_snapshot_and_optimistic_message_do_not_duplicate(signed_in, conversation):
    signed_in.set_active_conversation(conversation)
    asyncio.run(signed_in.send_enhanced_message(conversation, "hello"))
    messages = signed_in.state.messages[conversation]
    assert [(m.content, m.pending) for m in messages] == [("hello", False)]
    assert signed_in.state.conversations[0].last_message.content == "hello"


def test_unsubscribed_send_is_pending_until_reload(signed_in, conversation):
    asyncio.run(signed_in.send_enhanced_message(conversation, "hello"))
    assert [m.pending for m in signed_in.state.messages[conversation]] == [True]
    asyncio.run(signed_in.load_messages(conversation))
    assert [m.pending for m in signed_in.state.messages[conversation]] == [False]


def test_edit_and_delete_of_uncached_message_leave_cache_alone(signed_in, services, conversation):
    async def scenario():
        message_id = await services.messages.send_message(conversation, "b", "not loaded")
        await signed_in.edit_message(message_id, "changed")
        await signed_in.delete_message(message_id)

    asyncio.run(scenario())
    assert signed_in.state.messages == {}
    assert signed_in.state.error is None


def test_reactions_patch_cached_message(signed_in, conversation):
    async def scenario():
        await signed_in.send_enhanced_message(conversation, "vote")
        message_id = signed_in.state.messages[conversation][0].id
        await signed_in.add_message_reaction(message_id, "👍")
        await signed_in.add_message_reaction(message_id, "👍")
        return message_id

    asyncio.run(scenario())
    reactions = signed_in.state.messages[conversation][0].reactions
    assert [(r.emoji, r.users) for r in reactions] == [("👍", ["a"])]


def test_mark_as_read_clears_own_counter(signed_in, services, conversation):
    async def scenario():
        await services.messages.send_message(conversation, "b", "ping")
        await signed_in.load_conversations("a")
        await signed_in.load_messages(conversation)
        await signed_in.mark_messages_as_read(conversation)

    asyncio.run(scenario())
    cached = signed_in.state.conversations[0]
    assert cached.unread_count == {"a": 0, "b": 0, "c": 1}
    assert all(m.read for m in signed_in.state.messages[conversation])


# ---------- Notifications ----------

def test_notification_feed_tracks_unread_count(signed_in, services):
    signed_in.subscribe_to_notifications()

    async def scenario():
        await services.notifications.create_notification("a", "system_announcement", "Hi", "Welcome")
        await services.notifications.create_notification("a", "system_announcement", "Again", "Still here")
        assert signed_in.get_unread_notification_count() == 2
        first = signed_in.state.notifications[0].id
        await signed_in.mark_notification_as_read(first)
        assert signed_in.get_unread_notification_count() == 1
        await signed_in.delete_notification(first)
        await signed_in.mark_all_notifications_as_read()

    asyncio.run(scenario())
    assert signed_in.get_unread_notification_count() == 0
    assert len(signed_in.state.notifications) == 1


# ---------- Admin ----------

def test_admin_feed_and_close(signed_in, services, db):
    signed_in.subscribe_to_admin_data()
    asyncio.run(services.admin.send_broadcast_message("maintenance at noon", "warning"))
    asyncio.run(services.admin.flag_content("profile", "c", "b", "fake profile"))
    assert [m.content for m in signed_in.state.system_messages] == ["maintenance at noon"]
    assert len(signed_in.state.flagged_content) == 1
    assert db.listener_count == 2
    signed_in.close()
    assert db.listener_count == 0


def test_ban_and_unban_patch_cached_users(signed_in, make_user):
    async def scenario():
        await make_user("d", is_verified=True)
        await signed_in.load_all_users()
        await signed_in.ban_user("d", "spam")
        banned = next(u for u in signed_in.state.users if u.id == "d")
        await signed_in.unban_user("d")
        return banned

    banned = asyncio.run(scenario())
    after = next(u for u in signed_in.state.users if u.id == "d")
    assert banned.is_banned and not banned.is_verified
    assert not after.is_banned and not after.is_verified


def test_handle_flagged_content_updates_cache(signed_in, services):
    async def scenario():
        keep = await services.admin.flag_content("skill", "s1", "b", "copied")
        drop = await services.admin.flag_content("skill", "s2", "b", "spam")
        await signed_in.load_flagged_content()
        await signed_in.handle_flagged_content(keep, "approve")
        await signed_in.handle_flagged_content(drop, "reject")
        return keep

    keep = asyncio.run(scenario())
    assert [(f.id, f.reviewed) for f in signed_in.state.flagged_content] == [(keep, True)]


def test_reset_drops_state_and_listeners(signed_in, db, conversation):
    signed_in.set_active_conversation(conversation)
    signed_in.reset()
    assert signed_in.state == StoreState()
    assert db.listener_count == 0
