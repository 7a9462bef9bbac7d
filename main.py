import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from database import db
from errors import NotAuthenticatedError, NotFoundError, PermissionDeniedError, PreconditionError, SwapskillError
from schemas import (
    BroadcastType,
    FlagAction,
    MessageAttachment,
    MessageType,
    Skill,
    SkillType,
    SwapDirection,
    SwapPriority,
    SwapRequestCreate,
    SwapStatus,
    User,
    UserProfileUpdate,
)
from services import Services
from store import SwapskillStore

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

# One session store per process
store = SwapskillStore(Services(db))


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    store.close()


app = FastAPI(title="Swapskill API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_store() -> SwapskillStore:
    return store


# ---------- Errors ----------

@app.exception_handler(PreconditionError)
async def precondition_failed(request: Request, exc: PreconditionError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(NotAuthenticatedError)
async def not_authenticated(request: Request, exc: NotAuthenticatedError):
    return JSONResponse(status_code=401, content={"detail": str(exc)})


@app.exception_handler(PermissionDeniedError)
async def permission_denied(request: Request, exc: PermissionDeniedError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


def settled(s: SwapskillStore, **data):
    """Return data unless the action left a message in the error slot"""
    if isinstance(s.failure, SwapskillError):
        raise s.failure
    if s.state.error:
        raise HTTPException(status_code=502, detail=s.state.error)
    return data


# ---------- Auth ----------

def current_user(s: SwapskillStore = Depends(get_store)) -> User:
    profile = s.state.current_user_profile
    if profile is None:
        raise NotAuthenticatedError("User not authenticated")
    return profile


def require_admin(user: User = Depends(current_user)) -> User:
    if user.role != "admin":
        raise PermissionDeniedError("Admin access required")
    return user


# ---------- Request Models ----------

class SessionCreate(BaseModel):
    user_id: str
    email: str = ""
    display_name: str = ""
    location: Optional[str] = None
    bio: Optional[str] = None


class SkillAdd(BaseModel):
    skill: Skill
    type: SkillType


class StatusUpdate(BaseModel):
    status: SwapStatus
    admin_notes: Optional[str] = None


class RatingCreate(BaseModel):
    to_id: str
    swap_request_id: str
    rating: int
    comment: Optional[str] = None


class ConversationCreate(BaseModel):
    participants: List[str]
    swap_request_id: Optional[str] = None
    title: Optional[str] = None


class MessageCreate(BaseModel):
    content: str
    type: MessageType = "text"
    attachments: List[MessageAttachment] = []
    reply_to: Optional[str] = None


class MessageEdit(BaseModel):
    content: str


class ReactionCreate(BaseModel):
    emoji: str


class ReadReceipt(BaseModel):
    message_ids: List[str] = []


class ReportCreate(BaseModel):
    content_type: str
    content_id: str
    reason: str


class FlagResolution(BaseModel):
    action: FlagAction


class BanRequest(BaseModel):
    reason: str = ""


class BroadcastCreate(BaseModel):
    content: str
    type: BroadcastType = "info"


# ---------- Core Endpoints ----------

@app.get("/")
def read_root():
    return {"message": "Swapskill Backend Running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        response["database"] = f"✅ Connected & Working ({db.name})"
        response["database_name"] = getattr(db, "database_name", db.name)
        response["connection_status"] = "Connected"
        response["collections"] = db.list_collection_names()
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
        response["connection_status"] = "Not Connected"
    return response


# Session
@app.post("/api/session")
async def sign_in(payload: SessionCreate, s: SwapskillStore = Depends(get_store)):
    data = payload.model_dump(exclude={"user_id"}, exclude_none=True)
    profile = await s.sign_in(payload.user_id, data)
    s.subscribe_to_notifications()
    return profile


@app.delete("/api/session")
def sign_out(s: SwapskillStore = Depends(get_store)):
    s.reset()
    return {"status": "signed_out"}


# Users
@app.get("/api/users")
async def search_users(q: Optional[str] = None, category: Optional[str] = None, location: Optional[str] = None,
                       s: SwapskillStore = Depends(get_store)):
    await s.search_users(q, category, location)
    return settled(s, users=s.state.search_results)["users"]


@app.get("/api/users/{user_id}")
async def get_user(user_id: str, s: SwapskillStore = Depends(get_store)):
    profile = await s.services.users.get_user_profile(user_id)
    if profile is None:
        raise HTTPException(404, "User not found")
    return profile


@app.patch("/api/users/{user_id}")
async def update_user(user_id: str, payload: UserProfileUpdate, user: User = Depends(current_user),
                      s: SwapskillStore = Depends(get_store)):
    if user.id != user_id:
        raise PermissionDeniedError("You can only edit your own profile")
    await s.update_user_profile(user_id, payload.model_dump(exclude_none=True))
    return settled(s, profile=s.state.current_user_profile)["profile"]


@app.get("/api/users/{user_id}/skills")
async def list_skills(user_id: str, type: Optional[SkillType] = None, s: SwapskillStore = Depends(get_store)):
    await s.load_user_skills(user_id, type)
    return settled(s, skills=s.state.user_skills)["skills"]


@app.post("/api/users/{user_id}/skills")
async def add_skill(user_id: str, payload: SkillAdd, user: User = Depends(current_user),
                    s: SwapskillStore = Depends(get_store)):
    if user.id != user_id:
        raise PermissionDeniedError("You can only edit your own skills")
    skill_id = await s.add_skill(user_id, payload.skill, payload.type)
    return settled(s, id=skill_id, skills=s.state.user_skills)


@app.delete("/api/users/{user_id}/skills/{skill_id}")
async def remove_skill(user_id: str, skill_id: str, type: SkillType, user: User = Depends(current_user),
                       s: SwapskillStore = Depends(get_store)):
    if user.id != user_id:
        raise PermissionDeniedError("You can only edit your own skills")
    await s.remove_skill(user_id, skill_id, type)
    return settled(s, skills=s.state.user_skills)


@app.get("/api/users/{user_id}/ratings")
async def list_ratings(user_id: str, s: SwapskillStore = Depends(get_store)):
    ratings = await s.load_user_ratings(user_id)
    return settled(s, ratings=ratings)["ratings"]


# Swap requests
@app.get("/api/swap-requests")
async def list_swap_requests(type: Optional[SwapDirection] = None, user: User = Depends(current_user),
                             s: SwapskillStore = Depends(get_store)):
    await s.load_swap_requests(user.id, type)
    if type:
        s.subscribe_to_swap_requests(type)
    return settled(s, requests=s.state.swap_requests)["requests"]


@app.post("/api/swap-requests")
async def create_swap_request(payload: SwapRequestCreate, user: User = Depends(current_user),
                              s: SwapskillStore = Depends(get_store)):
    if payload.requester_id != user.id:
        raise PermissionDeniedError("Swap requests are sent on your own behalf")
    request_id = await s.create_swap_request(payload)
    return settled(s, id=request_id)


@app.patch("/api/swap-requests/{request_id}")
async def update_swap_request(request_id: str, payload: StatusUpdate, user: User = Depends(current_user),
                              s: SwapskillStore = Depends(get_store)):
    request = await s.services.swap_requests.get_swap_request(request_id)
    if request is None:
        raise HTTPException(404, "Swap request not found")
    # The recipient moves a request along; the requester may only withdraw it
    is_recipient = request.target_id == user.id
    is_withdrawal = request.requester_id == user.id and payload.status == "cancelled"
    if not (is_recipient or is_withdrawal):
        raise PermissionDeniedError("Only the recipient can change this request")
    await s.update_swap_request_status(request_id, payload.status, payload.admin_notes)
    return settled(s, id=request_id, status=payload.status)


# Ratings
@app.post("/api/ratings")
async def add_rating(payload: RatingCreate, user: User = Depends(current_user), s: SwapskillStore = Depends(get_store)):
    rating_id = await s.add_rating({**payload.model_dump(), "from_id": user.id})
    return settled(s, id=rating_id)


# Conversations & messages
async def conversation_for(conversation_id: str, user: User, s: SwapskillStore):
    conversation = await s.services.messages.get_conversation(conversation_id)
    if conversation is None:
        raise NotFoundError(f"Conversation {conversation_id} not found")
    if user.id not in conversation.participants:
        raise PermissionDeniedError("You are not part of this conversation")
    return conversation


async def message_for(message_id: str, user: User, s: SwapskillStore, sender_only: bool = False):
    """Load a message the user may touch; edits and deletes are limited to its sender"""
    message = await s.services.messages.get_message(message_id)
    if message is None:
        raise NotFoundError(f"Message {message_id} not found")
    if sender_only and message.sender_id != user.id:
        raise PermissionDeniedError("You can only change your own messages")
    await conversation_for(message.conversation_id, user, s)
    return message


@app.get("/api/conversations")
async def list_conversations(user: User = Depends(current_user), s: SwapskillStore = Depends(get_store)):
    await s.load_conversations(user.id)
    return settled(s, conversations=s.state.conversations)["conversations"]


@app.post("/api/conversations")
async def create_conversation(payload: ConversationCreate, user: User = Depends(current_user),
                              s: SwapskillStore = Depends(get_store)):
    participants = [user.id] + [p for p in payload.participants if p != user.id]
    conversation_id = await s.create_conversation(participants, payload.swap_request_id, payload.title)
    return {"id": conversation_id}


@app.get("/api/conversations/{conversation_id}/messages")
async def list_messages(conversation_id: str, user: User = Depends(current_user),
                        s: SwapskillStore = Depends(get_store)):
    await conversation_for(conversation_id, user, s)
    s.set_active_conversation(conversation_id)
    await s.load_messages(conversation_id)
    return settled(s, messages=s.state.messages.get(conversation_id, []))["messages"]


@app.post("/api/conversations/{conversation_id}/messages")
async def send_message(conversation_id: str, payload: MessageCreate, user: User = Depends(current_user),
                       s: SwapskillStore = Depends(get_store)):
    await conversation_for(conversation_id, user, s)
    await s.send_enhanced_message(conversation_id, payload.content, payload.type, payload.attachments,
                                  payload.reply_to)
    return settled(s, messages=s.state.messages.get(conversation_id, []))["messages"]


@app.post("/api/conversations/{conversation_id}/read")
async def mark_read(conversation_id: str, payload: ReadReceipt, user: User = Depends(current_user),
                    s: SwapskillStore = Depends(get_store)):
    await conversation_for(conversation_id, user, s)
    await s.mark_messages_as_read(conversation_id, payload.message_ids)
    return settled(s, status="read")


@app.patch("/api/messages/{message_id}")
async def edit_message(message_id: str, payload: MessageEdit, user: User = Depends(current_user),
                       s: SwapskillStore = Depends(get_store)):
    await message_for(message_id, user, s, sender_only=True)
    await s.edit_message(message_id, payload.content)
    return settled(s, id=message_id)


@app.delete("/api/messages/{message_id}")
async def delete_message(message_id: str, user: User = Depends(current_user), s: SwapskillStore = Depends(get_store)):
    await message_for(message_id, user, s, sender_only=True)
    await s.delete_message(message_id)
    return settled(s, id=message_id)


@app.post("/api/messages/{message_id}/reactions")
async def add_reaction(message_id: str, payload: ReactionCreate, user: User = Depends(current_user),
                       s: SwapskillStore = Depends(get_store)):
    await message_for(message_id, user, s)
    await s.add_message_reaction(message_id, payload.emoji)
    return settled(s, id=message_id)


@app.delete("/api/messages/{message_id}/reactions/{emoji}")
async def remove_reaction(message_id: str, emoji: str, user: User = Depends(current_user),
                          s: SwapskillStore = Depends(get_store)):
    await message_for(message_id, user, s)
    await s.remove_message_reaction(message_id, emoji)
    return settled(s, id=message_id)


# Notifications
@app.get("/api/notifications")
async def list_notifications(user: User = Depends(current_user), s: SwapskillStore = Depends(get_store)):
    await s.load_notifications()
    return settled(s, notifications=s.state.notifications, unread=s.get_unread_notification_count())


@app.post("/api/notifications/read-all")
async def read_all_notifications(user: User = Depends(current_user), s: SwapskillStore = Depends(get_store)):
    await s.mark_all_notifications_as_read()
    return settled(s, unread=s.get_unread_notification_count())


@app.post("/api/notifications/{notification_id}/read")
async def read_notification(notification_id: str, user: User = Depends(current_user),
                            s: SwapskillStore = Depends(get_store)):
    await s.mark_notification_as_read(notification_id)
    return settled(s, unread=s.get_unread_notification_count())


@app.delete("/api/notifications/{notification_id}")
async def delete_notification(notification_id: str, user: User = Depends(current_user),
                              s: SwapskillStore = Depends(get_store)):
    await s.delete_notification(notification_id)
    return settled(s, unread=s.get_unread_notification_count())


# Reports from users
@app.post("/api/reports")
async def report_content(payload: ReportCreate, user: User = Depends(current_user),
                         s: SwapskillStore = Depends(get_store)):
    flag_id = await s.services.admin.flag_content(payload.content_type, payload.content_id, user.id, payload.reason)
    return {"id": flag_id}


# Admin
@app.get("/api/admin/requests")
async def admin_requests(status: Optional[SwapStatus] = None, priority: Optional[SwapPriority] = None,
                         admin: User = Depends(require_admin), s: SwapskillStore = Depends(get_store)):
    await s.load_all_swap_requests(status, priority)
    return settled(s, requests=s.state.admin_requests)["requests"]


@app.get("/api/admin/users")
async def admin_users(q: Optional[str] = None, admin: User = Depends(require_admin),
                      s: SwapskillStore = Depends(get_store)):
    await s.load_all_users(q)
    return settled(s, users=s.state.users)["users"]


@app.get("/api/admin/feed")
async def admin_feed(admin: User = Depends(require_admin), s: SwapskillStore = Depends(get_store)):
    s.subscribe_to_admin_data()
    return {"flagged_content": s.state.flagged_content, "system_messages": s.state.system_messages}


@app.post("/api/admin/flagged/{flag_id}")
async def resolve_flag(flag_id: str, payload: FlagResolution, admin: User = Depends(require_admin),
                       s: SwapskillStore = Depends(get_store)):
    await s.handle_flagged_content(flag_id, payload.action)
    return settled(s, flagged_content=s.state.flagged_content)


@app.post("/api/admin/users/{user_id}/ban")
async def ban_user(user_id: str, payload: BanRequest, admin: User = Depends(require_admin),
                   s: SwapskillStore = Depends(get_store)):
    await s.ban_user(user_id, payload.reason)
    return settled(s, id=user_id, banned=True)


@app.post("/api/admin/users/{user_id}/unban")
async def unban_user(user_id: str, admin: User = Depends(require_admin), s: SwapskillStore = Depends(get_store)):
    await s.unban_user(user_id)
    return settled(s, id=user_id, banned=False)


@app.post("/api/admin/users/{user_id}/verify")
async def verify_user(user_id: str, admin: User = Depends(require_admin), s: SwapskillStore = Depends(get_store)):
    await s.verify_user(user_id)
    return settled(s, id=user_id, verified=True)


@app.post("/api/admin/broadcasts")
async def broadcast(payload: BroadcastCreate, admin: User = Depends(require_admin),
                    s: SwapskillStore = Depends(get_store)):
    message_id = await s.send_broadcast_message(payload.content, payload.type)
    return settled(s, id=message_id)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
