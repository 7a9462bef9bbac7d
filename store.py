"""
Client state store

One ``SwapskillStore`` per session caches the UI-visible slice of remote
state. Actions either fetch and replace a slice wholesale, or mutate remotely
and then patch the cache with a locally synthesized value. Every change goes
through a pure reducer applied to the state current at that moment, so an
optimistic patch never overwrites a sibling field another action wrote while
it was suspended.

Snapshot listeners replace slices wholesale. Optimistic entries carry
``pending=True`` so the next snapshot supersedes them; an optimistic insert
never duplicates an id already cached.
"""
import logging
import time
from functools import wraps
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from errors import InvalidInputError, NotAuthenticatedError, describe_error
from schemas import (
    Conversation,
    FlaggedContent,
    Message,
    MessageAttachment,
    MessageSummary,
    Notification,
    Rating,
    Skill,
    SwapRequest,
    SwapRequestCreate,
    SystemMessage,
    User,
)
from services import Services
from subscriptions import Subscription, SubscriptionBridge

logger = logging.getLogger(__name__)


def _now() -> int:
    return int(time.time() * 1000)


class SkillBuckets(BaseModel):
    offered: List[Skill] = Field(default_factory=list)
    wanted: List[Skill] = Field(default_factory=list)


class StoreState(BaseModel):
    # Users
    users: List[User] = Field(default_factory=list)
    current_user_profile: Optional[User] = None
    is_loading_users: bool = False

    # Skills
    user_skills: SkillBuckets = Field(default_factory=SkillBuckets)
    is_loading_skills: bool = False

    # Swap requests
    swap_requests: List[SwapRequest] = Field(default_factory=list)
    admin_requests: List[SwapRequest] = Field(default_factory=list)
    is_loading_requests: bool = False

    # Messaging
    conversations: List[Conversation] = Field(default_factory=list)
    messages: Dict[str, List[Message]] = Field(default_factory=dict)
    active_conversation: Optional[str] = None
    is_loading_messages: bool = False

    # Notifications
    notifications: List[Notification] = Field(default_factory=list)
    unread_notification_count: int = 0
    is_loading_notifications: bool = False

    # Search & filters
    search_query: str = ""
    selected_category: str = ""
    selected_location: str = ""
    search_results: List[User] = Field(default_factory=list)

    # Admin
    flagged_content: List[FlaggedContent] = Field(default_factory=list)
    system_messages: List[SystemMessage] = Field(default_factory=list)
    is_loading_admin_data: bool = False

    error: Optional[str] = None


# ---------- Reducers ----------

def replace(state: StoreState, **fields) -> StoreState:
    return state.model_copy(update=fields)


def _patch_items(items, item_id, fields):
    return [item.model_copy(update=fields) if item.id == item_id else item for item in items]


def set_notifications(state: StoreState, notifications: List[Notification]) -> StoreState:
    return state.model_copy(update={
        "notifications": list(notifications),
        "unread_notification_count": sum(1 for n in notifications if not n.read),
    })


def patch_notification(state: StoreState, notification_id: str, fields: Dict[str, Any]) -> StoreState:
    return set_notifications(state, _patch_items(state.notifications, notification_id, fields))


def mark_all_notifications_read(state: StoreState) -> StoreState:
    return set_notifications(state, [n.model_copy(update={"read": True}) for n in state.notifications])


def remove_notification(state: StoreState, notification_id: str) -> StoreState:
    return set_notifications(state, [n for n in state.notifications if n.id != notification_id])


def patch_user(state: StoreState, user_id: str, fields: Dict[str, Any]) -> StoreState:
    update = {
        "users": _patch_items(state.users, user_id, fields),
        "search_results": _patch_items(state.search_results, user_id, fields),
    }
    profile = state.current_user_profile
    if profile is not None and profile.id == user_id:
        update["current_user_profile"] = profile.model_copy(update=fields)
    return state.model_copy(update=update)


def set_user_skills(state: StoreState, skills: List[Skill], type: Optional[str] = None) -> StoreState:
    if type == "offered":
        buckets = state.user_skills.model_copy(update={"offered": list(skills)})
    elif type == "wanted":
        buckets = state.user_skills.model_copy(update={"wanted": list(skills)})
    else:
        buckets = SkillBuckets(
            offered=[s for s in skills if s.type == "offered"],
            wanted=[s for s in skills if s.type == "wanted"],
        )
    return state.model_copy(update={"user_skills": buckets})


def add_skill(state: StoreState, skill: Skill) -> StoreState:
    bucket = "offered" if skill.type == "offered" else "wanted"
    current = getattr(state.user_skills, bucket)
    if any(s.id == skill.id for s in current):
        return state
    update = {"user_skills": state.user_skills.model_copy(update={bucket: current + [skill]})}
    profile = state.current_user_profile
    if profile is not None and profile.id == skill.user_id:
        field = f"skills_{bucket}"
        update["current_user_profile"] = profile.model_copy(update={field: getattr(profile, field) + [skill]})
    return state.model_copy(update=update)


def remove_skill(state: StoreState, skill_id: str, type: str) -> StoreState:
    bucket = "offered" if type == "offered" else "wanted"
    remaining = [s for s in getattr(state.user_skills, bucket) if s.id != skill_id]
    update = {"user_skills": state.user_skills.model_copy(update={bucket: remaining})}
    profile = state.current_user_profile
    if profile is not None:
        field = f"skills_{bucket}"
        update["current_user_profile"] = profile.model_copy(
            update={field: [s for s in getattr(profile, field) if s.id != skill_id]}
        )
    return state.model_copy(update=update)


def add_swap_request(state: StoreState, request: SwapRequest) -> StoreState:
    if any(r.id == request.id for r in state.swap_requests):
        return state
    return state.model_copy(update={"swap_requests": state.swap_requests + [request]})


def patch_swap_request(state: StoreState, request_id: str, fields: Dict[str, Any]) -> StoreState:
    return state.model_copy(update={
        "swap_requests": _patch_items(state.swap_requests, request_id, fields),
        "admin_requests": _patch_items(state.admin_requests, request_id, fields),
    })


def add_conversation(state: StoreState, conversation: Conversation) -> StoreState:
    if any(c.id == conversation.id for c in state.conversations):
        return state
    return state.model_copy(update={"conversations": state.conversations + [conversation]})


def patch_conversation(state: StoreState, conversation_id: str, fields: Dict[str, Any]) -> StoreState:
    return state.model_copy(update={"conversations": _patch_items(state.conversations, conversation_id, fields)})


def reset_unread(state: StoreState, conversation_id: str, user_id: str) -> StoreState:
    conversations = [
        c.model_copy(update={"unread_count": {**c.unread_count, user_id: 0}}) if c.id == conversation_id else c
        for c in state.conversations
    ]
    return state.model_copy(update={"conversations": conversations})


def set_messages(state: StoreState, conversation_id: str, messages: List[Message]) -> StoreState:
    return state.model_copy(update={"messages": {**state.messages, conversation_id: list(messages)}})


def append_message(state: StoreState, message: Message) -> StoreState:
    current = state.messages.get(message.conversation_id, [])
    existing = next((m for m in current if m.id == message.id), None)
    if existing is not None:
        # A snapshot already delivered this message; keep the authoritative copy
        if not existing.pending:
            return state
        current = [m for m in current if m.id != message.id]
    return set_messages(state, message.conversation_id, current + [message])


def find_message_bucket(state: StoreState, message_id: str) -> Optional[str]:
    for conversation_id, messages in state.messages.items():
        if any(m.id == message_id for m in messages):
            return conversation_id
    return None


def patch_message(state: StoreState, message_id: str, fields: Dict[str, Any]) -> StoreState:
    conversation_id = find_message_bucket(state, message_id)
    if conversation_id is None:
        logger.debug(f"Message {message_id} not cached, nothing to patch")
        return state
    return set_messages(state, conversation_id, _patch_items(state.messages[conversation_id], message_id, fields))


def mark_messages_read(state: StoreState, conversation_id: str, message_ids) -> StoreState:
    message_ids = set(message_ids)
    current = state.messages.get(conversation_id)
    if not current or not message_ids:
        return state
    return set_messages(state, conversation_id, [
        m.model_copy(update={"read": True}) if m.id in message_ids else m for m in current
    ])


def remove_message(state: StoreState, message_id: str) -> StoreState:
    conversation_id = find_message_bucket(state, message_id)
    if conversation_id is None:
        return state
    return set_messages(state, conversation_id, [m for m in state.messages[conversation_id] if m.id != message_id])


def patch_flagged_content(state: StoreState, flag_id: str, fields: Dict[str, Any]) -> StoreState:
    return state.model_copy(update={"flagged_content": _patch_items(state.flagged_content, flag_id, fields)})


def remove_flagged_content(state: StoreState, flag_id: str) -> StoreState:
    return state.model_copy(update={"flagged_content": [f for f in state.flagged_content if f.id != flag_id]})


def apply_admin_feed(state: StoreState, kind: str, items: List[Any]) -> StoreState:
    if kind == "flagged_content":
        return state.model_copy(update={"flagged_content": list(items)})
    if kind == "system_messages":
        return state.model_copy(update={"system_messages": list(items)})
    raise ValueError(f"Unknown admin feed: {kind}")


# ---------- Actions ----------

def action(fallback: str, loading: Optional[str] = None, reraise: bool = False, default: Any = None):
    """
    Wrap a store action: clear the error slot, toggle the slice's loading
    flag, and record failures as one human-readable message. Rejected
    arguments (``InvalidInputError``) always reach the caller; every other
    failure, service-side preconditions included, only when ``reraise``.
    The exception itself is kept on ``store.failure``.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(self, *args, **kwargs):
            fields = {"error": None}
            if loading:
                fields[loading] = True
            self.failure = None
            self._set(**fields)
            try:
                return await func(self, *args, **kwargs)
            except InvalidInputError as e:
                self.failure = e
                self._set(error=str(e))
                raise
            except Exception as e:
                logger.error(f"{fallback}: {e}")
                self.failure = e
                self._set(error=describe_error(e, fallback))
                if reraise:
                    raise
                return default() if callable(default) else default
            finally:
                if loading:
                    self._set(**{loading: False})
        return wrapper
    return decorator


class SwapskillStore:
    def __init__(self, services: Services):
        self.services = services
        self.state = StoreState()
        self.subscriptions = SubscriptionBridge()
        self._watchers: List[Callable[[StoreState], None]] = []
        self.failure: Optional[Exception] = None

    # ---------- Plumbing ----------

    def watch(self, listener: Callable[[StoreState], None]) -> Callable[[], None]:
        """Call ``listener`` with the new state after every change"""
        self._watchers.append(listener)

        def unwatch():
            if listener in self._watchers:
                self._watchers.remove(listener)

        return unwatch

    def _apply(self, reducer, *args, **kwargs):
        self.state = reducer(self.state, *args, **kwargs)
        for listener in list(self._watchers):
            listener(self.state)

    def _set(self, **fields):
        self._apply(replace, **fields)

    def _current_user_id(self) -> str:
        profile = self.state.current_user_profile
        if profile is None:
            raise NotAuthenticatedError("User not authenticated")
        return profile.id

    # ---------- Users ----------

    @action("Failed to sign in", reraise=True)
    async def sign_in(self, user_id: str, data: Optional[Dict[str, Any]] = None) -> User:
        profile = await self.services.users.get_or_create_user_profile(user_id, data or {})
        self._set(current_user_profile=profile)
        return profile

    @action("Failed to load users", loading="is_loading_users")
    async def load_users(self, search_query=None, category=None, location=None):
        users = await self.services.users.search_users(search_query, category, location)
        self._set(users=users, search_results=users)

    @action("Failed to load users", loading="is_loading_users")
    async def load_all_users(self, search_query=None, category=None, location=None):
        users = await self.services.users.search_all_users_including_banned(search_query, category, location)
        self._set(users=users, search_results=users)

    @action("Failed to load profile")
    async def load_current_user_profile(self, user_id: str):
        profile = await self.services.users.get_user_profile(user_id)
        self._set(current_user_profile=profile)

    @action("Failed to update profile")
    async def update_user_profile(self, user_id: str, updates: Dict[str, Any]):
        written = await self.services.users.update_user_profile(user_id, updates)
        if written:
            self._apply(patch_user, user_id, {**written, "updated_at": _now()})

    @action("Failed to search users", loading="is_loading_users")
    async def search_users(self, query=None, category=None, location=None):
        users = await self.services.users.search_users(query, category, location)
        self._set(search_results=users)

    # ---------- Skills ----------

    @action("Failed to load skills", loading="is_loading_skills")
    async def load_user_skills(self, user_id: str, type: Optional[str] = None):
        skills = await self.services.skills.get_user_skills(user_id, type)
        self._apply(set_user_skills, skills, type)

    @action("Failed to add skill")
    async def add_skill(self, user_id: str, skill, type: str) -> Optional[str]:
        if isinstance(skill, dict):
            skill = Skill.model_validate(skill)
        skill_id = await self.services.skills.add_skill_to_user(user_id, skill, type)
        local = skill.model_copy(update={"id": skill_id, "user_id": user_id, "type": type, "created_at": _now()})
        self._apply(add_skill, local)
        return skill_id

    @action("Failed to remove skill")
    async def remove_skill(self, user_id: str, skill_id: str, type: str):
        await self.services.skills.remove_skill_from_user(user_id, skill_id, type)
        self._apply(remove_skill, skill_id, type)

    # ---------- Swap requests ----------

    @action("Failed to load requests", loading="is_loading_requests")
    async def load_swap_requests(self, user_id: str, type: Optional[str] = None):
        requests = await self.services.swap_requests.get_user_swap_requests(user_id, type)
        self._set(swap_requests=requests)

    @action("Failed to create request")
    async def create_swap_request(self, request_data) -> Optional[str]:
        try:
            request = SwapRequestCreate.model_validate(request_data)
        except ValidationError as e:
            raise InvalidInputError(f"Invalid swap request: {e.error_count()} invalid field(s)") from e
        request_id = await self.services.swap_requests.create_swap_request(request)
        now = _now()
        doc = {**request.model_dump(exclude_none=True), "id": request_id, "created_at": now, "updated_at": now}
        local = await self.services.swap_requests.resolve(doc)
        self._apply(add_swap_request, local.model_copy(update={"pending": True}))
        return request_id

    @action("Failed to update request")
    async def update_swap_request_status(self, request_id: str, status: str, admin_notes: Optional[str] = None):
        await self.services.swap_requests.update_swap_request_status(request_id, status, admin_notes)
        fields = {"status": status, "updated_at": _now()}
        if admin_notes:
            fields["admin_notes"] = admin_notes
        self._apply(patch_swap_request, request_id, fields)

    @action("Failed to load admin requests", loading="is_loading_requests")
    async def load_all_swap_requests(self, status: Optional[str] = None, priority: Optional[str] = None):
        requests = await self.services.swap_requests.get_all_swap_requests(status, priority)
        self._set(admin_requests=requests)

    async def load_admin_requests(self):
        await self.load_all_swap_requests()

    def subscribe_to_swap_requests(self, type: str = "outgoing") -> Subscription:
        """Keep ``swap_requests`` live for one direction of the signed-in user's requests"""
        profile = self.state.current_user_profile
        if profile is None:
            noop = Subscription(lambda: None, label="swap_requests:anonymous")
            noop.cancel()
            return noop
        return self.subscriptions.attach(
            SubscriptionBridge.SWAP_REQUESTS,
            f"{type}:{profile.id}",
            lambda: self.services.swap_requests.subscribe_to_swap_requests(
                profile.id, lambda requests: self._set(swap_requests=requests), type
            ),
        )

    # ---------- Ratings ----------

    @action("Failed to add rating")
    async def add_rating(self, rating_data) -> Optional[str]:
        try:
            rating = Rating.model_validate(rating_data)
        except ValidationError as e:
            raise InvalidInputError("Rating must be a whole number from 1 to 5") from e
        return await self.services.ratings.add_rating(rating)

    @action("Failed to load ratings", default=list)
    async def load_user_ratings(self, user_id: str) -> List[Rating]:
        return await self.services.ratings.get_user_ratings(user_id)

    # ---------- Messaging ----------

    @action("Failed to load conversations", loading="is_loading_messages")
    async def load_conversations(self, user_id: str):
        conversations = await self.services.messages.get_user_conversations(user_id)
        self._set(conversations=conversations)

    @action("Failed to load messages", loading="is_loading_messages")
    async def load_messages(self, conversation_id: str):
        messages = await self.services.messages.get_conversation_messages(conversation_id)
        self._apply(set_messages, conversation_id, messages)

    def _append_local_message(self, message_id, conversation_id, sender_id, content, type="text",
                              attachments=None, reply_to=None):
        now = _now()
        message = Message(
            id=message_id,
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            type=type,
            timestamp=now,
            attachments=attachments or [],
            reply_to=reply_to,
            pending=True,
        )
        self._apply(append_message, message)
        summary = MessageSummary(id=message_id, content=content, sender_id=sender_id, type=type, timestamp=now)
        self._apply(patch_conversation, conversation_id, {"last_message": summary, "updated_at": now})

    @action("Failed to send message")
    async def send_message(self, conversation_id: str, sender_id: str, content: str):
        message_id = await self.services.messages.send_message(conversation_id, sender_id, content)
        self._append_local_message(message_id, conversation_id, sender_id, content)

    @action("Failed to create conversation", reraise=True)
    async def create_conversation(self, participants: List[str], swap_request_id: Optional[str] = None,
                                  title: Optional[str] = None, type: Optional[str] = None) -> str:
        conversation_id = await self.services.messages.create_conversation(participants, swap_request_id, title, type)
        participants = list(dict.fromkeys(participants))
        now = _now()
        conversation = Conversation(
            id=conversation_id,
            participants=participants,
            swap_request_id=swap_request_id,
            title=title,
            type=type or ("swap_related" if swap_request_id else ("group" if len(participants) > 2 else "direct")),
            unread_count={p: 0 for p in participants},
            created_at=now,
            updated_at=now,
            pending=True,
        )
        self._apply(add_conversation, conversation)
        return conversation_id

    def subscribe_to_messages(self, conversation_id: str) -> Subscription:
        """Listen to one conversation; any listener on another conversation is cancelled first"""
        return self.subscriptions.attach(
            SubscriptionBridge.MESSAGES,
            conversation_id,
            lambda: self.services.messages.subscribe_to_messages(
                conversation_id, lambda messages: self._apply(set_messages, conversation_id, messages)
            ),
        )

    def set_active_conversation(self, conversation_id: Optional[str]) -> Optional[Subscription]:
        self._set(active_conversation=conversation_id)
        if conversation_id is None:
            self.subscriptions.cancel(SubscriptionBridge.MESSAGES)
            return None
        return self.subscribe_to_messages(conversation_id)

    @action("Failed to send enhanced message")
    async def send_enhanced_message(self, conversation_id: str, content: str, type: str = "text",
                                    attachments: Optional[List[Any]] = None, reply_to: Optional[str] = None):
        sender_id = self._current_user_id()
        attachments = [MessageAttachment.model_validate(a) if isinstance(a, dict) else a for a in attachments or []]
        message_id = await self.services.messages.send_message(
            conversation_id, sender_id, content, type, attachments, reply_to
        )
        self._append_local_message(message_id, conversation_id, sender_id, content, type, attachments, reply_to)

    @action("Failed to add message reaction")
    async def add_message_reaction(self, message_id: str, emoji: str):
        user_id = self._current_user_id()
        reactions = await self.services.messages.add_message_reaction(message_id, emoji, user_id)
        self._apply(patch_message, message_id, {"reactions": reactions})

    @action("Failed to remove message reaction")
    async def remove_message_reaction(self, message_id: str, emoji: str):
        user_id = self._current_user_id()
        reactions = await self.services.messages.remove_message_reaction(message_id, emoji, user_id)
        self._apply(patch_message, message_id, {"reactions": reactions})

    @action("Failed to edit message")
    async def edit_message(self, message_id: str, new_content: str):
        await self.services.messages.edit_message(message_id, new_content)
        self._apply(patch_message, message_id, {"content": new_content, "edited": True, "edited_at": _now()})

    @action("Failed to delete message")
    async def delete_message(self, message_id: str):
        await self.services.messages.delete_message(message_id)
        self._apply(remove_message, message_id)

    @action("Failed to mark messages as read")
    async def mark_messages_as_read(self, conversation_id: str, message_ids: Optional[List[str]] = None):
        user_id = self._current_user_id()
        marked = await self.services.messages.mark_conversation_as_read(conversation_id, user_id)
        self._apply(reset_unread, conversation_id, user_id)
        self._apply(mark_messages_read, conversation_id, set(marked) | set(message_ids or []))

    # ---------- Search & filters ----------

    def set_search_query(self, query: str):
        self._set(search_query=query)

    def set_selected_category(self, category: str):
        self._set(selected_category=category)

    def set_selected_location(self, location: str):
        self._set(selected_location=location)

    def clear_filters(self):
        self._set(search_query="", selected_category="", selected_location="", search_results=[])

    # ---------- Errors ----------

    def set_error(self, error: Optional[str]):
        self._set(error=error)

    def clear_error(self):
        self.failure = None
        self._set(error=None)

    # ---------- Admin ----------

    @action("Failed to load flagged content", loading="is_loading_admin_data")
    async def load_flagged_content(self):
        flagged = await self.services.admin.get_flagged_content()
        self._set(flagged_content=flagged)

    @action("Failed to handle flagged content")
    async def handle_flagged_content(self, flag_id: str, action: str):
        await self.services.admin.handle_flagged_content(flag_id, action)
        if action == "reject":
            self._apply(remove_flagged_content, flag_id)
        else:
            self._apply(patch_flagged_content, flag_id, {"reviewed": True, "reviewed_at": _now(), "action": action})

    @action("Failed to ban user")
    async def ban_user(self, user_id: str, reason: str):
        if not reason or not reason.strip():
            raise InvalidInputError("Please provide a reason for banning the user.")
        await self.services.admin.ban_user(user_id, reason)
        self._apply(patch_user, user_id, {
            "is_banned": True,
            "ban_reason": reason,
            "banned_at": _now(),
            "is_verified": False,
        })

    @action("Failed to unban user")
    async def unban_user(self, user_id: str):
        await self.services.admin.unban_user(user_id)
        self._apply(patch_user, user_id, {"is_banned": False, "ban_reason": None, "banned_at": None})

    @action("Failed to verify user")
    async def verify_user(self, user_id: str):
        await self.services.admin.verify_user(user_id)
        self._apply(patch_user, user_id, {"is_verified": True})

    @action("Failed to send broadcast message")
    async def send_broadcast_message(self, message: str, type: str = "info") -> Optional[str]:
        if not message or not message.strip():
            raise InvalidInputError("Broadcast message is empty")
        return await self.services.admin.send_broadcast_message(message, type)

    def subscribe_to_admin_data(self) -> Subscription:
        return self.subscriptions.attach(
            SubscriptionBridge.ADMIN,
            "admin",
            lambda: self.services.admin.subscribe_to_admin_data(
                lambda kind, items: self._apply(apply_admin_feed, kind, items)
            ),
        )

    # ---------- Notifications ----------

    @action("Failed to load notifications", loading="is_loading_notifications")
    async def load_notifications(self):
        profile = self.state.current_user_profile
        if profile is None:
            return
        notifications = await self.services.notifications.get_user_notifications(profile.id)
        self._apply(set_notifications, notifications)

    @action("Failed to mark notification as read")
    async def mark_notification_as_read(self, notification_id: str):
        await self.services.notifications.mark_notification_as_read(notification_id)
        self._apply(patch_notification, notification_id, {"read": True})

    @action("Failed to mark all notifications as read")
    async def mark_all_notifications_as_read(self):
        profile = self.state.current_user_profile
        if profile is None:
            return
        await self.services.notifications.mark_all_notifications_as_read(profile.id)
        self._apply(mark_all_notifications_read)

    @action("Failed to delete notification")
    async def delete_notification(self, notification_id: str):
        await self.services.notifications.delete_notification(notification_id)
        self._apply(remove_notification, notification_id)

    def subscribe_to_notifications(self) -> Subscription:
        profile = self.state.current_user_profile
        if profile is None:
            noop = Subscription(lambda: None, label="notifications:anonymous")
            noop.cancel()
            return noop
        return self.subscriptions.attach(
            SubscriptionBridge.NOTIFICATIONS,
            profile.id,
            lambda: self.services.notifications.subscribe_to_user_notifications(
                profile.id, lambda notifications: self._apply(set_notifications, notifications)
            ),
        )

    def get_unread_notification_count(self) -> int:
        return self.state.unread_notification_count

    # ---------- Lifecycle ----------

    def close(self):
        """Tear down every listener the session holds"""
        self.subscriptions.cancel_all()

    def reset(self):
        self.close()
        self.failure = None
        self.state = StoreState()
        for listener in list(self._watchers):
            listener(self.state)
