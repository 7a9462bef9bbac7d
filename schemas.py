"""
Database Schemas for Swapskill

Each Pydantic model corresponds to a document store collection. Collection
names live in ``Collections``. Timestamps are epoch milliseconds assigned by
the store.
"""
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class Collections:
    USERS = "users"
    SKILLS = "skills"
    SWAP_REQUESTS = "swap_requests"
    RATINGS = "ratings"
    CONVERSATIONS = "conversations"
    MESSAGES = "messages"
    NOTIFICATIONS = "notifications"
    FLAGGED_CONTENT = "flagged_content"
    SYSTEM_MESSAGES = "system_messages"


UserRole = Literal["user", "admin"]
SkillLevel = Literal["beginner", "intermediate", "advanced", "expert"]
SkillType = Literal["offered", "wanted"]
SwapStatus = Literal["pending", "approved", "rejected", "accepted", "declined", "completed", "cancelled"]
SwapPriority = Literal["low", "normal", "high", "urgent"]
SwapDirection = Literal["incoming", "outgoing"]
MessageType = Literal["text", "image", "file", "system", "swap_request", "swap_update"]
ConversationType = Literal["direct", "swap_related", "group"]
NotificationType = Literal[
    "swap_request_received",
    "swap_request_accepted",
    "swap_request_declined",
    "swap_request_completed",
    "new_message",
    "system_announcement",
    "account_verification",
    "skill_rating_received",
    "admin_action",
]
BroadcastType = Literal["info", "warning", "success"]
FlagAction = Literal["approve", "reject"]

SWAP_STATUSES = ("pending", "approved", "rejected", "accepted", "declined", "completed", "cancelled")
TERMINAL_SWAP_STATUSES = ("completed", "cancelled")

# Fields that only exist on cached copies and are never written to the store
CLIENT_ONLY_FIELDS = {"id", "pending"}


class SkillCategory(BaseModel):
    id: str
    name: str
    icon: str = ""
    color: str = ""


DEFAULT_SKILL_CATEGORIES = [
    SkillCategory(id="programming", name="Programming", icon="💻", color="#3B82F6"),
    SkillCategory(id="design", name="Design", icon="🎨", color="#8B5CF6"),
    SkillCategory(id="music", name="Music", icon="🎵", color="#F59E0B"),
    SkillCategory(id="languages", name="Languages", icon="🗣️", color="#10B981"),
    SkillCategory(id="cooking", name="Cooking", icon="👨‍🍳", color="#EF4444"),
    SkillCategory(id="fitness", name="Fitness", icon="💪", color="#F97316"),
    SkillCategory(id="crafts", name="Crafts", icon="🛠️", color="#6366F1"),
    SkillCategory(id="business", name="Business", icon="💼", color="#059669"),
]


class Skill(BaseModel):
    """
    Collection: skills
    A skill owned by one user, either offered or wanted.
    """
    id: Optional[str] = None
    name: str = Field(..., description="Skill name")
    category: SkillCategory
    level: SkillLevel = "beginner"
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    user_id: Optional[str] = None
    type: Optional[SkillType] = None
    created_at: Optional[int] = None


class User(BaseModel):
    """
    Collection: users
    Profile document. The stored document keeps skills_offered/skills_wanted
    as skill id arrays; reads resolve them into Skill lists.
    """
    id: str
    email: str = ""
    display_name: str = ""
    name: str = ""
    role: UserRole = "user"
    profile_photo: Optional[str] = None
    location: Optional[str] = None
    bio: Optional[str] = None
    created_at: Optional[int] = None
    last_login_at: Optional[int] = None
    updated_at: Optional[int] = None
    skills_offered: List[Skill] = Field(default_factory=list)
    skills_wanted: List[Skill] = Field(default_factory=list)
    rating: float = Field(0, description="Mean of received ratings, one decimal")
    review_count: int = 0
    total_swaps: int = 0
    is_verified: bool = False
    is_banned: bool = False
    ban_reason: Optional[str] = None
    banned_at: Optional[int] = None


class UserProfileUpdate(BaseModel):
    display_name: Optional[str] = None
    name: Optional[str] = None
    profile_photo: Optional[str] = None
    location: Optional[str] = None
    bio: Optional[str] = None
    total_swaps: Optional[int] = None


class SwapRequestCreate(BaseModel):
    requester_id: str
    target_id: str
    # Either an embedded skill or a bare skill id resolved on read
    offered_skill: Union[Skill, str]
    requested_skill: Union[Skill, str]
    status: SwapStatus = "pending"
    message: Optional[str] = None
    priority: Optional[SwapPriority] = None
    scheduled_date: Optional[int] = None
    location: Optional[str] = None
    duration: Optional[int] = Field(None, description="Minutes")


class SwapRequest(BaseModel):
    """
    Collection: swap_requests
    A proposal to exchange offered_skill for requested_skill.
    """
    id: str
    requester_id: str
    target_id: str
    offered_skill: Skill
    requested_skill: Skill
    status: SwapStatus = "pending"
    message: Optional[str] = None
    admin_notes: Optional[str] = None
    priority: Optional[SwapPriority] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    scheduled_date: Optional[int] = None
    location: Optional[str] = None
    duration: Optional[int] = None
    pending: bool = False


class Rating(BaseModel):
    """
    Collection: ratings
    """
    id: Optional[str] = None
    from_id: str
    to_id: str
    swap_request_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    created_at: Optional[int] = None


class MessageAttachment(BaseModel):
    id: str
    name: str
    url: str
    type: Literal["image", "file"] = "file"
    size: int = 0


class MessageReaction(BaseModel):
    emoji: str
    users: List[str] = Field(default_factory=list)


class Message(BaseModel):
    """
    Collection: messages
    Deletion is a hard remove.
    """
    id: str
    conversation_id: str
    sender_id: str
    content: str
    type: MessageType = "text"
    timestamp: Optional[int] = None
    read: bool = False
    attachments: List[MessageAttachment] = Field(default_factory=list)
    reply_to: Optional[str] = None
    edited: bool = False
    edited_at: Optional[int] = None
    reactions: List[MessageReaction] = Field(default_factory=list)
    pending: bool = False


class MessageSummary(BaseModel):
    id: Optional[str] = None
    content: str
    sender_id: str
    type: MessageType = "text"
    timestamp: Optional[int] = None


class Conversation(BaseModel):
    """
    Collection: conversations
    unread_count holds one counter per participant.
    """
    id: str
    participants: List[str]
    swap_request_id: Optional[str] = None
    title: Optional[str] = None
    type: ConversationType = "direct"
    last_message: Optional[MessageSummary] = None
    unread_count: Dict[str, int] = Field(default_factory=dict)
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    pending: bool = False


class Notification(BaseModel):
    """
    Collection: notifications
    """
    id: Optional[str] = None
    user_id: str
    type: NotificationType
    title: str
    message: str
    read: bool = False
    data: Dict[str, Any] = Field(default_factory=dict)
    action_url: Optional[str] = None
    created_at: Optional[int] = None


class FlaggedContent(BaseModel):
    """
    Collection: flagged_content
    A user report awaiting admin review.
    """
    id: str
    content_type: Literal["skill", "profile", "message", "swap_request"] = "profile"
    content_id: Optional[str] = None
    reported_by: Optional[str] = None
    reason: str = ""
    reported_at: Optional[int] = None
    reviewed: bool = False
    reviewed_at: Optional[int] = None
    action: Optional[FlagAction] = None


class SystemMessage(BaseModel):
    """
    Collection: system_messages
    Broadcasts shown to every admin-dashboard viewer while active.
    """
    id: str
    content: str
    type: BroadcastType = "info"
    created_at: Optional[int] = None
    is_active: bool = True
