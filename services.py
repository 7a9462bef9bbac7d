"""
Collection access functions

Each service translates domain operations into document store queries and
mutations and normalizes the results into the pydantic shapes in schemas.py.
"""
import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from database import (
    SERVER_TIMESTAMP,
    ArrayRemove,
    ArrayUnion,
    DocumentStore,
    Increment,
    create_document,
    get_documents,
)
from errors import NotFoundError, PermissionDeniedError, PreconditionError
from schemas import (
    CLIENT_ONLY_FIELDS,
    SWAP_STATUSES,
    TERMINAL_SWAP_STATUSES,
    Collections,
    Conversation,
    FlaggedContent,
    Message,
    MessageAttachment,
    MessageReaction,
    Notification,
    Rating,
    Skill,
    SwapRequest,
    SwapRequestCreate,
    SystemMessage,
    User,
)
from subscriptions import CombinedSubscription, Subscription

logger = logging.getLogger(__name__)

SEARCH_RESULT_LIMIT = 20
SEARCH_SCAN_LIMIT = 100
NOTIFICATION_LIMIT = 50
SYSTEM_MESSAGE_LIMIT = 10
PREVIEW_LENGTH = 50

# Fields a profile self-edit may not touch
PROTECTED_USER_FIELDS = {
    "id",
    "role",
    "skills_offered",
    "skills_wanted",
    "rating",
    "review_count",
    "is_verified",
    "is_banned",
    "ban_reason",
    "banned_at",
    "created_at",
}

SWAP_STATUS_NOTIFICATIONS = {
    "accepted": ("swap_request_accepted", "Swap Request Accepted", "Your swap request has been accepted"),
    "approved": ("swap_request_accepted", "Swap Request Accepted", "Your swap request has been accepted"),
    "declined": ("swap_request_declined", "Swap Request Declined", "Your swap request has been declined"),
    "rejected": ("swap_request_declined", "Swap Request Declined", "Your swap request has been declined"),
    "completed": ("swap_request_completed", "Swap Completed", "Your skill swap has been completed"),
}


# ---------- Helpers ----------

def message_preview(content: str, length: int = PREVIEW_LENGTH) -> str:
    if len(content) > length:
        return content[:length] + "..."
    return content


def average_rating(values: Iterable[int]) -> float:
    """Mean rounded half-up to one decimal; 0 when there are no values"""
    values = list(values)
    if not values:
        return 0
    mean = Decimal(sum(values)) / Decimal(len(values))
    return float(mean.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def add_reaction(reactions: List[MessageReaction], emoji: str, user_id: str) -> List[MessageReaction]:
    result = []
    found = False
    for reaction in reactions:
        if reaction.emoji == emoji:
            found = True
            users = reaction.users if user_id in reaction.users else reaction.users + [user_id]
            result.append(MessageReaction(emoji=emoji, users=users))
        else:
            result.append(reaction)
    if not found:
        result.append(MessageReaction(emoji=emoji, users=[user_id]))
    return result


def remove_reaction(reactions: List[MessageReaction], emoji: str, user_id: str) -> List[MessageReaction]:
    result = []
    for reaction in reactions:
        if reaction.emoji == emoji:
            users = [u for u in reaction.users if u != user_id]
            # Drop the emoji entirely once nobody reacts with it
            if not users:
                continue
            result.append(MessageReaction(emoji=emoji, users=users))
        else:
            result.append(reaction)
    return result


def _payload(model, **extra) -> Dict[str, Any]:
    data = model.model_dump(exclude=CLIENT_ONLY_FIELDS, exclude_none=True)
    data.update(extra)
    return data


def _skill_field(skill_type: str) -> str:
    if skill_type not in ("offered", "wanted"):
        raise PreconditionError(f"Invalid skill type: {skill_type}")
    return "skills_offered" if skill_type == "offered" else "skills_wanted"


class KeyedLocks:
    """
    One asyncio.Lock per key, for read-modify-write sequences on a document.
    A key's lock is dropped once nobody holds or waits on it.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def __call__(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self):
        return len(self._locks)


# ---------- Notifications ----------

class NotificationService:
    def __init__(self, db: DocumentStore):
        self.db = db

    async def create_notification(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        action_url: Optional[str] = None,
    ) -> str:
        notification = Notification(
            user_id=user_id, type=type, title=title, message=message, data=data or {}, action_url=action_url
        )
        return await self.db.add(
            Collections.NOTIFICATIONS, _payload(notification, created_at=SERVER_TIMESTAMP)
        )

    def _query(self, user_id, limit=NOTIFICATION_LIMIT):
        return (
            self.db.collection(Collections.NOTIFICATIONS)
            .where("user_id", "==", user_id)
            .order_by("created_at", "desc")
            .limit(limit)
        )

    async def get_user_notifications(self, user_id: str, limit: int = NOTIFICATION_LIMIT) -> List[Notification]:
        docs = await self.db.query(self._query(user_id, limit))
        return [Notification.model_validate(d) for d in docs]

    async def mark_notification_as_read(self, notification_id: str):
        await self.db.update(Collections.NOTIFICATIONS, notification_id, {"read": True})

    async def mark_all_notifications_as_read(self, user_id: str) -> int:
        q = (
            self.db.collection(Collections.NOTIFICATIONS)
            .where("user_id", "==", user_id)
            .where("read", "==", False)
        )
        unread = await self.db.query(q)
        await asyncio.gather(*(
            self.db.update(Collections.NOTIFICATIONS, doc["id"], {"read": True}) for doc in unread
        ))
        return len(unread)

    async def delete_notification(self, notification_id: str):
        await self.db.delete(Collections.NOTIFICATIONS, notification_id)

    async def get_unread_count(self, user_id: str) -> int:
        docs = await get_documents(
            Collections.NOTIFICATIONS, {"user_id": user_id, "read": False}, store=self.db
        )
        return len(docs)

    def subscribe_to_user_notifications(
        self, user_id: str, callback: Callable[[List[Notification]], None]
    ) -> Subscription:
        unsubscribe = self.db.on_snapshot(
            self._query(user_id),
            lambda docs: callback([Notification.model_validate(d) for d in docs]),
        )
        return Subscription(unsubscribe, label=f"notifications:{user_id}")


# ---------- Skills ----------

class SkillService:
    def __init__(self, db: DocumentStore):
        self.db = db

    async def add_skill_to_user(self, user_id: str, skill: Union[Skill, Dict[str, Any]], type: str) -> str:
        field = _skill_field(type)
        if isinstance(skill, dict):
            skill = Skill.model_validate(skill)
        data = skill.model_dump(exclude={"id", "user_id", "type", "created_at"}, exclude_none=True)
        skill_id = await create_document(Collections.SKILLS, {**data, "user_id": user_id, "type": type}, store=self.db)
        try:
            await self.db.update(Collections.USERS, user_id, {field: ArrayUnion(skill_id)})
        except Exception:
            # Keep the user's id arrays and the skill documents in step
            logger.warning(f"Could not link skill {skill_id} to user {user_id}, removing it")
            await self.db.delete(Collections.SKILLS, skill_id)
            raise
        return skill_id

    async def remove_skill_from_user(self, user_id: str, skill_id: str, type: str):
        field = _skill_field(type)
        await self.db.delete(Collections.SKILLS, skill_id)
        await self.db.update(Collections.USERS, user_id, {field: ArrayRemove(skill_id)})

    async def get_user_skills(self, user_id: str, type: Optional[str] = None) -> List[Skill]:
        q = self.db.collection(Collections.SKILLS).where("user_id", "==", user_id)
        if type:
            _skill_field(type)
            q = q.where("type", "==", type)
        docs = await self.db.query(q.order_by("created_at", "asc"))
        return [Skill.model_validate(d) for d in docs]

    async def get_skill(self, skill_id: str) -> Optional[Skill]:
        doc = await self.db.get(Collections.SKILLS, skill_id)
        return Skill.model_validate(doc) if doc else None


# ---------- Users ----------

def _has_category(user: User, category: str) -> bool:
    category = category.lower()
    for skill in user.skills_offered + user.skills_wanted:
        if skill.category.id.lower() == category or skill.category.name.lower() == category:
            return True
    return False


def _matches_text(user: User, text: str) -> bool:
    text = text.lower().strip()
    haystack = [user.display_name, user.name, user.bio or "", user.location or ""]
    for skill in user.skills_offered + user.skills_wanted:
        haystack.append(skill.name)
        haystack.extend(skill.tags)
    return any(text in value.lower() for value in haystack if value)


class UserService:
    def __init__(self, db: DocumentStore, skills: SkillService):
        self.db = db
        self.skills = skills

    async def _with_skills(self, doc: Dict[str, Any]) -> User:
        # One skills query per user; fine at the target scale
        skills = await self.skills.get_user_skills(doc["id"])
        data = {k: v for k, v in doc.items() if k not in ("skills_offered", "skills_wanted")}
        return User.model_validate({
            **data,
            "skills_offered": [s for s in skills if s.type == "offered"],
            "skills_wanted": [s for s in skills if s.type == "wanted"],
        })

    async def create_user_profile(self, user_id: str, data: Dict[str, Any]) -> User:
        profile = {k: v for k, v in data.items() if k not in PROTECTED_USER_FIELDS and v is not None}
        display_name = data.get("display_name") or data.get("name") or ""
        profile.update({
            "display_name": display_name,
            "name": display_name,
            "role": "user",
            "created_at": SERVER_TIMESTAMP,
            "last_login_at": SERVER_TIMESTAMP,
            "skills_offered": [],
            "skills_wanted": [],
            "rating": 0,
            "review_count": 0,
            "total_swaps": 0,
            "is_verified": False,
            "is_banned": False,
        })
        await self.db.set(Collections.USERS, user_id, profile)
        logger.info(f"Created profile for user {user_id}")
        return await self.get_user_profile(user_id)

    async def get_user_profile(self, user_id: str) -> Optional[User]:
        doc = await self.db.get(Collections.USERS, user_id)
        if doc is None:
            return None
        return await self._with_skills(doc)

    async def get_or_create_user_profile(self, user_id: str, data: Dict[str, Any]) -> User:
        existing = await self.db.get(Collections.USERS, user_id)
        if existing is None:
            return await self.create_user_profile(user_id, data)
        await self.db.update(Collections.USERS, user_id, {"last_login_at": SERVER_TIMESTAMP})
        return await self.get_user_profile(user_id)

    async def update_user_profile(self, user_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a self-edit; returns the fields that were actually written"""
        fields = {k: v for k, v in updates.items() if k not in PROTECTED_USER_FIELDS}
        if fields:
            await self.db.update(Collections.USERS, user_id, {**fields, "updated_at": SERVER_TIMESTAMP})
        return fields

    async def search_users(
        self,
        search_query: Optional[str] = None,
        skill_category: Optional[str] = None,
        location: Optional[str] = None,
        verified_only: bool = True,
        limit: int = SEARCH_RESULT_LIMIT,
    ) -> List[User]:
        """
        Search profiles.

        Verification and the location prefix run in the store; the location
        range cannot be combined with ordering on rating, so ordering only
        runs there when no location is given. Category and free text run over
        the fetched page in memory. Results are ordered by rating descending.
        """
        q = self.db.collection(Collections.USERS)
        if verified_only:
            q = q.where("is_verified", "==", True)
        if location:
            q = q.where_prefix("location", location)
        else:
            q = q.order_by("rating", "desc")
        docs = await self.db.query(q.limit(SEARCH_SCAN_LIMIT))

        users = []
        for doc in docs:
            if verified_only and (doc.get("is_banned") or not doc.get("is_verified")):
                continue
            users.append(await self._with_skills(doc))

        if skill_category:
            users = [u for u in users if _has_category(u, skill_category)]
        if search_query and search_query.strip():
            users = [u for u in users if _matches_text(u, search_query)]
        users.sort(key=lambda u: (-u.rating, u.id))
        return users[:limit]

    async def search_all_users_including_banned(
        self,
        search_query: Optional[str] = None,
        skill_category: Optional[str] = None,
        location: Optional[str] = None,
    ) -> List[User]:
        return await self.search_users(
            search_query, skill_category, location, verified_only=False, limit=SEARCH_SCAN_LIMIT
        )


# ---------- Swap requests ----------

class SwapRequestService:
    def __init__(self, db: DocumentStore, skills: SkillService, notifications: NotificationService):
        self.db = db
        self.skills = skills
        self.notifications = notifications

    async def _resolve_skill(self, value, request_id: str, cache: Dict[str, Skill]) -> Skill:
        if not isinstance(value, str):
            return Skill.model_validate(value)
        if value not in cache:
            skill = await self.skills.get_skill(value)
            if skill is None:
                raise NotFoundError(f"Skill {value} referenced by swap request {request_id} does not exist")
            cache[value] = skill
        return cache[value]

    async def resolve(self, doc: Dict[str, Any], cache: Optional[Dict[str, Skill]] = None) -> SwapRequest:
        cache = {} if cache is None else cache
        return SwapRequest.model_validate({
            **doc,
            "offered_skill": await self._resolve_skill(doc.get("offered_skill"), doc["id"], cache),
            "requested_skill": await self._resolve_skill(doc.get("requested_skill"), doc["id"], cache),
        })

    async def _resolve_all(self, docs: List[Dict[str, Any]]) -> List[SwapRequest]:
        """Resolve a page of requests; one whose skill is gone is logged and left out"""
        cache: Dict[str, Skill] = {}
        requests = []
        for doc in docs:
            try:
                requests.append(await self.resolve(doc, cache))
            except NotFoundError as e:
                logger.warning(f"Skipping swap request {doc['id']}: {e}")
        return requests

    async def _embed_skill(self, value: Union[Skill, str], field: str) -> Skill:
        if not isinstance(value, str):
            return value
        skill = await self.skills.get_skill(value)
        if skill is None:
            raise PreconditionError(f"The {field.replace('_', ' ')} no longer exists")
        return skill

    def _direction_query(self, user_id: str, type: str):
        field = "target_id" if type == "incoming" else "requester_id"
        return (
            self.db.collection(Collections.SWAP_REQUESTS)
            .where(field, "==", user_id)
            .order_by("created_at", "desc")
        )

    async def create_swap_request(self, request: Union[SwapRequestCreate, Dict[str, Any]]) -> str:
        if isinstance(request, dict):
            request = SwapRequestCreate.model_validate(request)
        # Both skills are stored as snapshots, never as bare ids
        request = request.model_copy(update={
            "offered_skill": await self._embed_skill(request.offered_skill, "offered_skill"),
            "requested_skill": await self._embed_skill(request.requested_skill, "requested_skill"),
        })
        request_id = await create_document(
            Collections.SWAP_REQUESTS, request.model_dump(exclude_none=True), store=self.db
        )
        await self.notifications.create_notification(
            request.target_id,
            "swap_request_received",
            "New Swap Request",
            "Someone wants to swap skills with you!",
            data={"swap_request_id": request_id, "requester_id": request.requester_id},
            action_url="/dashboard/swaps",
        )
        return request_id

    async def get_swap_request(self, request_id: str) -> Optional[SwapRequest]:
        doc = await self.db.get(Collections.SWAP_REQUESTS, request_id)
        return await self.resolve(doc) if doc else None

    async def update_swap_request_status(
        self, request_id: str, status: str, admin_notes: Optional[str] = None, override: bool = False
    ):
        if status not in SWAP_STATUSES:
            raise PreconditionError(f"Invalid swap request status: {status}")
        doc = await self.db.get(Collections.SWAP_REQUESTS, request_id)
        if doc is None:
            raise NotFoundError(f"Swap request {request_id} not found")
        current = doc.get("status")
        if current in TERMINAL_SWAP_STATUSES and status != current and not override:
            raise PreconditionError(f"Swap request is already {current}")

        updates: Dict[str, Any] = {"status": status, "updated_at": SERVER_TIMESTAMP}
        if admin_notes:
            updates["admin_notes"] = admin_notes
        await self.db.update(Collections.SWAP_REQUESTS, request_id, updates)

        if status == current:
            return
        if status == "completed":
            for user_id in (doc["requester_id"], doc["target_id"]):
                try:
                    await self.db.update(Collections.USERS, user_id, {"total_swaps": Increment(1)})
                except NotFoundError:
                    logger.warning(f"Swap {request_id} completed for unknown user {user_id}")
        if status in SWAP_STATUS_NOTIFICATIONS:
            kind, title, message = SWAP_STATUS_NOTIFICATIONS[status]
            await self.notifications.create_notification(
                doc["requester_id"], kind, title, message,
                data={"swap_request_id": request_id}, action_url="/dashboard/swaps",
            )

    async def get_user_swap_requests(self, user_id: str, type: Optional[str] = None) -> List[SwapRequest]:
        if type in ("incoming", "outgoing"):
            docs = await self.db.query(self._direction_query(user_id, type))
            return await self._resolve_all(docs)
        if type is not None:
            raise PreconditionError(f"Invalid swap request direction: {type}")

        incoming, outgoing = await asyncio.gather(
            self.db.query(self._direction_query(user_id, "incoming")),
            self.db.query(self._direction_query(user_id, "outgoing")),
        )
        merged = {doc["id"]: doc for doc in incoming + outgoing}
        docs = sorted(merged.values(), key=lambda d: d.get("created_at") or 0, reverse=True)
        return await self._resolve_all(docs)

    async def get_all_swap_requests(self, status: Optional[str] = None, priority: Optional[str] = None) -> List[SwapRequest]:
        filters = {}
        if status:
            filters["status"] = status
        if priority:
            filters["priority"] = priority
        docs = await get_documents(
            Collections.SWAP_REQUESTS, filters, order_by=("created_at", "desc"), store=self.db
        )
        return await self._resolve_all(docs)

    def subscribe_to_swap_requests(
        self,
        user_id: str,
        callback: Callable[[List[SwapRequest]], None],
        type: str = "outgoing",
    ) -> Subscription:
        """
        Listen to one direction of a user's requests. Snapshots holding bare
        skill ids are resolved in a task; a newer snapshot or cancelling the
        handle drops the one still resolving.
        """
        state: Dict[str, Any] = {"generation": 0, "task": None, "closed": False}

        async def deliver(docs, generation):
            requests = await self._resolve_all(docs)
            if not state["closed"] and generation == state["generation"]:
                callback(requests)

        def finished(task):
            if state["task"] is task:
                state["task"] = None
            if not task.cancelled() and task.exception() is not None:
                logger.error(f"Resolving swap requests for {user_id} failed: {task.exception()}")

        def drop_pending():
            if state["task"] is not None:
                state["task"].cancel()
                state["task"] = None

        def on_docs(docs):
            if state["closed"]:
                return
            state["generation"] += 1
            drop_pending()
            if all(not isinstance(d.get(k), str) for d in docs for k in ("offered_skill", "requested_skill")):
                callback([SwapRequest.model_validate(d) for d in docs])
                return
            task = asyncio.get_running_loop().create_task(deliver(docs, state["generation"]))
            task.add_done_callback(finished)
            state["task"] = task

        unsubscribe = self.db.on_snapshot(self._direction_query(user_id, type), on_docs)

        def cancel():
            state["closed"] = True
            drop_pending()
            unsubscribe()

        return Subscription(cancel, label=f"swap_requests:{type}:{user_id}")


# ---------- Ratings ----------

class RatingService:
    def __init__(self, db: DocumentStore, notifications: NotificationService):
        self.db = db
        self.notifications = notifications
        self._locks = KeyedLocks()

    async def add_rating(self, rating: Union[Rating, Dict[str, Any]]) -> str:
        if isinstance(rating, dict):
            rating = Rating.model_validate(rating)
        # Insert and recompute as one step per rated user
        async with self._locks(rating.to_id):
            rating_id = await create_document(Collections.RATINGS, _payload(rating), store=self.db)
            await self.update_user_rating(rating.to_id)
        await self.notifications.create_notification(
            rating.to_id,
            "skill_rating_received",
            "New Rating Received",
            f"Someone rated your skill sharing {rating.rating}/5",
            data={"rating_id": rating_id, "swap_request_id": rating.swap_request_id},
            action_url="/profile",
        )
        return rating_id

    async def get_user_ratings(self, user_id: str) -> List[Rating]:
        docs = await get_documents(
            Collections.RATINGS, {"to_id": user_id}, order_by=("created_at", "desc"), store=self.db
        )
        return [Rating.model_validate(d) for d in docs]

    async def update_user_rating(self, user_id: str):
        ratings = await self.get_user_ratings(user_id)
        if not ratings:
            return
        await self.db.update(Collections.USERS, user_id, {
            "rating": average_rating(r.rating for r in ratings),
            "review_count": len(ratings),
            "updated_at": SERVER_TIMESTAMP,
        })


# ---------- Messaging ----------

class MessageService:
    def __init__(self, db: DocumentStore, notifications: NotificationService):
        self.db = db
        self.notifications = notifications

    async def create_conversation(
        self,
        participants: List[str],
        swap_request_id: Optional[str] = None,
        title: Optional[str] = None,
        type: Optional[str] = None,
    ) -> str:
        participants = list(dict.fromkeys(participants))
        if len(participants) < 2:
            raise PreconditionError("A conversation needs at least two participants")
        if type is None:
            type = "swap_related" if swap_request_id else ("group" if len(participants) > 2 else "direct")
        data = {
            "participants": participants,
            "type": type,
            "last_message": None,
            "unread_count": {p: 0 for p in participants},
        }
        if swap_request_id:
            data["swap_request_id"] = swap_request_id
        if title:
            data["title"] = title
        return await create_document(Collections.CONVERSATIONS, data, store=self.db)

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        doc = await self.db.get(Collections.CONVERSATIONS, conversation_id)
        return Conversation.model_validate(doc) if doc else None

    async def send_message(self, conversation_id: str, sender_id: str, content: str, type: str = "text") -> str:
        return await self._post_message(conversation_id, sender_id, content, type)

    async def _post_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        type: str = "text",
        attachments: Optional[List[MessageAttachment]] = None,
        reply_to: Optional[str] = None,
    ) -> str:
        attachments = attachments or []
        if not content.strip() and not attachments:
            raise PreconditionError("Message content is empty")
        conversation = await self.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        if sender_id not in conversation.participants:
            raise PermissionDeniedError("Only participants can post to this conversation")

        message = Message(
            id="",
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            type=type,
            attachments=attachments,
            reply_to=reply_to,
        )
        message_id = await self.db.add(Collections.MESSAGES, _payload(message, timestamp=SERVER_TIMESTAMP))

        others = [p for p in conversation.participants if p != sender_id]
        updates: Dict[str, Any] = {
            "last_message": {
                "id": message_id,
                "content": content,
                "sender_id": sender_id,
                "type": type,
                "timestamp": SERVER_TIMESTAMP,
            },
            "updated_at": SERVER_TIMESTAMP,
        }
        for participant in others:
            updates[f"unread_count.{participant}"] = Increment(1)
        await self.db.update(Collections.CONVERSATIONS, conversation_id, updates)

        preview = message_preview(content)
        for participant in others:
            await self.notifications.create_notification(
                participant,
                "new_message",
                "New Message",
                preview,
                data={"conversation_id": conversation_id, "message_id": message_id, "sender_id": sender_id},
                action_url=f"/messages?conversation={conversation_id}",
            )
        return message_id

    async def get_user_conversations(self, user_id: str) -> List[Conversation]:
        q = (
            self.db.collection(Collections.CONVERSATIONS)
            .where("participants", "array-contains", user_id)
            .order_by("updated_at", "desc")
        )
        return [Conversation.model_validate(d) for d in await self.db.query(q)]

    def _messages_query(self, conversation_id: str):
        return (
            self.db.collection(Collections.MESSAGES)
            .where("conversation_id", "==", conversation_id)
            .order_by("timestamp", "asc")
        )

    async def get_message(self, message_id: str) -> Optional[Message]:
        doc = await self.db.get(Collections.MESSAGES, message_id)
        return Message.model_validate(doc) if doc else None

    async def get_conversation_messages(self, conversation_id: str) -> List[Message]:
        docs = await self.db.query(self._messages_query(conversation_id))
        return [Message.model_validate(d) for d in docs]

    def subscribe_to_messages(self, conversation_id: str, callback: Callable[[List[Message]], None]) -> Subscription:
        unsubscribe = self.db.on_snapshot(
            self._messages_query(conversation_id),
            lambda docs: callback([Message.model_validate(d) for d in docs]),
        )
        return Subscription(unsubscribe, label=f"messages:{conversation_id}")

    async def mark_messages_as_read(self, conversation_id: str, user_id: str) -> List[str]:
        q = (
            self.db.collection(Collections.MESSAGES)
            .where("conversation_id", "==", conversation_id)
            .where("read", "==", False)
        )
        unread = [d for d in await self.db.query(q) if d.get("sender_id") != user_id]
        await asyncio.gather(*(
            self.db.update(Collections.MESSAGES, d["id"], {"read": True}) for d in unread
        ))
        return [d["id"] for d in unread]


class EnhancedMessageService(MessageService):
    """Typed messages with attachments, replies, reactions, edits and deletes"""

    def __init__(self, db: DocumentStore, notifications: NotificationService):
        super().__init__(db, notifications)
        self._locks = KeyedLocks()

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        type: str = "text",
        attachments: Optional[List[Union[MessageAttachment, Dict[str, Any]]]] = None,
        reply_to: Optional[str] = None,
    ) -> str:
        attachments = [MessageAttachment.model_validate(a) if isinstance(a, dict) else a for a in attachments or []]
        if reply_to:
            original = await self.db.get(Collections.MESSAGES, reply_to)
            if original is None or original.get("conversation_id") != conversation_id:
                raise NotFoundError(f"Message {reply_to} not found in this conversation")
        return await self._post_message(conversation_id, sender_id, content, type, attachments, reply_to)

    async def _update_reactions(self, message_id: str, change: Callable) -> List[MessageReaction]:
        async with self._locks(message_id):
            doc = await self.db.get(Collections.MESSAGES, message_id)
            if doc is None:
                raise NotFoundError(f"Message {message_id} not found")
            before = [MessageReaction.model_validate(r) for r in doc.get("reactions", [])]
            after = change(before)
            if after != before:
                await self.db.update(
                    Collections.MESSAGES, message_id, {"reactions": [r.model_dump() for r in after]}
                )
            return after

    async def add_message_reaction(self, message_id: str, emoji: str, user_id: str) -> List[MessageReaction]:
        return await self._update_reactions(message_id, lambda r: add_reaction(r, emoji, user_id))

    async def remove_message_reaction(self, message_id: str, emoji: str, user_id: str) -> List[MessageReaction]:
        return await self._update_reactions(message_id, lambda r: remove_reaction(r, emoji, user_id))

    async def edit_message(self, message_id: str, new_content: str):
        if not new_content.strip():
            raise PreconditionError("Message content is empty")
        await self.db.update(Collections.MESSAGES, message_id, {
            "content": new_content,
            "edited": True,
            "edited_at": SERVER_TIMESTAMP,
        })

    async def delete_message(self, message_id: str):
        # The conversation's last_message summary is left as it is
        await self.db.delete(Collections.MESSAGES, message_id)

    async def mark_conversation_as_read(self, conversation_id: str, user_id: str) -> List[str]:
        await self.db.update(Collections.CONVERSATIONS, conversation_id, {f"unread_count.{user_id}": 0})
        return await self.mark_messages_as_read(conversation_id, user_id)


# ---------- Admin ----------

class AdminService:
    def __init__(self, db: DocumentStore, notifications: NotificationService):
        self.db = db
        self.notifications = notifications

    def _flagged_query(self):
        return self.db.collection(Collections.FLAGGED_CONTENT).order_by("reported_at", "desc")

    def _system_messages_query(self):
        # Ordering cannot be combined with the is_active filter, so it happens in memory
        return self.db.collection(Collections.SYSTEM_MESSAGES).where("is_active", "==", True)

    @staticmethod
    def _newest_system_messages(docs, limit=SYSTEM_MESSAGE_LIMIT) -> List[SystemMessage]:
        docs = sorted(docs, key=lambda d: d.get("created_at") or 0, reverse=True)
        return [SystemMessage.model_validate(d) for d in docs[:limit]]

    async def get_flagged_content(self) -> List[FlaggedContent]:
        return [FlaggedContent.model_validate(d) for d in await self.db.query(self._flagged_query())]

    async def flag_content(self, content_type: str, content_id: str, reported_by: str, reason: str) -> str:
        if not reason.strip():
            raise PreconditionError("Please provide a reason for the report")
        return await self.db.add(Collections.FLAGGED_CONTENT, {
            "content_type": content_type,
            "content_id": content_id,
            "reported_by": reported_by,
            "reason": reason,
            "reported_at": SERVER_TIMESTAMP,
            "reviewed": False,
        })

    async def handle_flagged_content(self, flag_id: str, action: str):
        if action == "reject":
            # TODO: remove the reported skill/profile once moderation rules for it are agreed
            await self.db.delete(Collections.FLAGGED_CONTENT, flag_id)
        elif action == "approve":
            await self.db.update(Collections.FLAGGED_CONTENT, flag_id, {
                "reviewed": True,
                "reviewed_at": SERVER_TIMESTAMP,
                "action": "approve",
            })
        else:
            raise PreconditionError(f"Invalid moderation action: {action}")

    async def ban_user(self, user_id: str, reason: str):
        if not reason or not reason.strip():
            raise PreconditionError("Please provide a reason for banning the user.")
        await self.db.update(Collections.USERS, user_id, {
            "is_banned": True,
            "ban_reason": reason,
            "banned_at": SERVER_TIMESTAMP,
            "is_verified": False,
        })
        logger.info(f"User {user_id} banned: {reason}")

    async def unban_user(self, user_id: str):
        await self.db.update(Collections.USERS, user_id, {
            "is_banned": False,
            "ban_reason": None,
            "banned_at": None,
        })
        logger.info(f"User {user_id} unbanned")

    async def verify_user(self, user_id: str):
        doc = await self.db.get(Collections.USERS, user_id)
        if doc is None:
            raise NotFoundError(f"User {user_id} not found")
        if doc.get("is_banned"):
            raise PreconditionError("Banned users cannot be verified.")
        await self.db.update(Collections.USERS, user_id, {"is_verified": True, "updated_at": SERVER_TIMESTAMP})
        await self.notifications.create_notification(
            user_id, "account_verification", "Account Verification",
            "Your account has been verified", action_url="/profile",
        )

    async def send_broadcast_message(self, content: str, type: str = "info") -> str:
        if not content or not content.strip():
            raise PreconditionError("Broadcast message is empty")
        if type not in ("info", "warning", "success"):
            raise PreconditionError(f"Invalid broadcast type: {type}")
        return await self.db.add(Collections.SYSTEM_MESSAGES, {
            "content": content,
            "type": type,
            "created_at": SERVER_TIMESTAMP,
            "is_active": True,
        })

    async def deactivate_system_message(self, message_id: str):
        await self.db.update(Collections.SYSTEM_MESSAGES, message_id, {"is_active": False})

    async def get_active_system_messages(self, limit: int = SYSTEM_MESSAGE_LIMIT) -> List[SystemMessage]:
        return self._newest_system_messages(await self.db.query(self._system_messages_query()), limit)

    def subscribe_to_admin_data(self, callback: Callable[[str, List[Any]], None]) -> CombinedSubscription:
        """
        Listen to flagged content and active system messages. ``callback``
        gets ("flagged_content", [...]) or ("system_messages", [...]). The
        returned handle stops both listeners.
        """
        flagged = Subscription(
            self.db.on_snapshot(
                self._flagged_query(),
                lambda docs: callback("flagged_content", [FlaggedContent.model_validate(d) for d in docs]),
            ),
            label="admin:flagged_content",
        )
        try:
            messages = Subscription(
                self.db.on_snapshot(
                    self._system_messages_query(),
                    lambda docs: callback("system_messages", self._newest_system_messages(docs)),
                ),
                label="admin:system_messages",
            )
        except Exception:
            flagged.cancel()
            raise
        return CombinedSubscription(flagged, messages, label="admin")


class Services:
    """All access functions over one document store"""

    def __init__(self, db: DocumentStore):
        self.db = db
        self.notifications = NotificationService(db)
        self.skills = SkillService(db)
        self.users = UserService(db, self.skills)
        self.swap_requests = SwapRequestService(db, self.skills, self.notifications)
        self.ratings = RatingService(db, self.notifications)
        self.messages = EnhancedMessageService(db, self.notifications)
        self.admin = AdminService(db, self.notifications)
