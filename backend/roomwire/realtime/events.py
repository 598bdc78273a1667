"""Wire schemas for the realtime event protocol.

Every WebSocket frame is a JSON object ``{"event": <name>, "data": {...}}``.
Inbound frames are parsed into one fixed payload model per event name and
anything unknown or malformed is rejected as ``ValidationError``. Outbound
frames are built from typed payload models, never from ad-hoc dicts.

Inbound events:
    - join_room / leave_room: {roomId}
    - send_message: {roomId, content?, type, replyToId?, files?}
    - typing_start / typing_stop: {roomId}
    - add_reaction: {messageId, emoji}
    - mark_read: {messageId} or {messageIds: [...]}
    - update_status: {status}

Outbound events:
    - connected, joined_room, left_room
    - new_message / message_updated: HydratedMessage
    - user_joined / user_left, user_typing, user_status_updated
    - message_read, error
"""
import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from roomwire.errors import ValidationError
from roomwire.store.schemas import (
    Attachment,
    AttachmentCreate,
    Message,
    MessageType,
    Reaction,
    User,
    UserStatus,
)

# =============================================================================
# Hydrated views (what clients see)
# =============================================================================


class UserProfile(BaseModel):
    """Public projection of a user shown next to messages and presence."""
    id: str
    username: str
    displayName: str
    avatar: Optional[str] = None
    status: UserStatus = UserStatus.OFFLINE
    isOnline: bool = False

    @classmethod
    def from_user(cls, user: User) -> "UserProfile":
        return cls(
            id=user.id,
            username=user.username,
            displayName=user.display_name,
            avatar=user.avatar,
            status=user.status,
            isOnline=user.is_online,
        )


class AttachmentView(BaseModel):
    id: str
    filename: str
    originalName: str
    mimeType: str
    size: int
    url: str
    thumbnailUrl: Optional[str] = None

    @classmethod
    def from_attachment(cls, item: Attachment) -> "AttachmentView":
        return cls(
            id=item.id,
            filename=item.filename,
            originalName=item.original_name,
            mimeType=item.mime_type,
            size=item.size,
            url=item.url,
            thumbnailUrl=item.thumbnail_url,
        )


class ReactionView(BaseModel):
    emoji: str
    userId: str
    user: Optional[UserProfile] = None

    @classmethod
    def from_reaction(cls, reaction: Reaction, users: Dict[str, User]) -> "ReactionView":
        user = users.get(reaction.user_id)
        return cls(
            emoji=reaction.emoji,
            userId=reaction.user_id,
            user=UserProfile.from_user(user) if user else None,
        )


class ReplyContext(BaseModel):
    """The message being replied to, trimmed to what a reply preview needs."""
    id: str
    content: Optional[str] = None
    senderId: str
    sender: Optional[UserProfile] = None
    isDeleted: bool = False


class HydratedMessage(BaseModel):
    """A message with sender profile, reply context, files and reactions."""
    id: str
    roomId: str
    senderId: str
    sender: Optional[UserProfile] = None
    content: Optional[str] = None
    type: MessageType = MessageType.TEXT
    replyToId: Optional[str] = None
    replyTo: Optional[ReplyContext] = None
    files: List[AttachmentView] = Field(default_factory=list)
    reactions: List[ReactionView] = Field(default_factory=list)
    isEdited: bool = False
    editedAt: Optional[datetime] = None
    isDeleted: bool = False
    deletedAt: Optional[datetime] = None
    createdAt: datetime

    @classmethod
    def build(
        cls,
        message: Message,
        users: Dict[str, User],
        reply_to: Optional[Message] = None,
        attachments: Optional[List[Attachment]] = None,
        reactions: Optional[List[Reaction]] = None,
    ) -> "HydratedMessage":
        sender = users.get(message.sender_id)
        reply = None
        if reply_to is not None:
            reply_sender = users.get(reply_to.sender_id)
            reply = ReplyContext(
                id=reply_to.id,
                content=reply_to.content,
                senderId=reply_to.sender_id,
                sender=UserProfile.from_user(reply_sender) if reply_sender else None,
                isDeleted=reply_to.is_deleted,
            )
        return cls(
            id=message.id,
            roomId=message.room_id,
            senderId=message.sender_id,
            sender=UserProfile.from_user(sender) if sender else None,
            content=message.content,
            type=message.type,
            replyToId=message.reply_to_id,
            replyTo=reply,
            files=[AttachmentView.from_attachment(a) for a in attachments or []],
            reactions=[ReactionView.from_reaction(r, users) for r in reactions or []],
            isEdited=message.is_edited,
            editedAt=message.edited_at,
            isDeleted=message.is_deleted,
            deletedAt=message.deleted_at,
            createdAt=message.created_at,
        )


class RoomFileView(AttachmentView):
    """Attachment as listed in a room's file history."""
    messageId: str
    userId: str
    uploader: Optional[UserProfile] = None
    createdAt: datetime

    @classmethod
    def build(cls, item: Attachment, users: Dict[str, User]) -> "RoomFileView":
        uploader = users.get(item.user_id)
        return cls(
            **AttachmentView.from_attachment(item).model_dump(),
            messageId=item.message_id,
            userId=item.user_id,
            uploader=UserProfile.from_user(uploader) if uploader else None,
            createdAt=item.created_at,
        )


class PinnedMessageView(BaseModel):
    roomId: str
    messageId: str
    pinnedBy: str
    pinnedAt: datetime
    message: Optional[HydratedMessage] = None


# =============================================================================
# Inbound events
# =============================================================================


class InboundEvent(str, Enum):
    JOIN_ROOM = "join_room"
    LEAVE_ROOM = "leave_room"
    SEND_MESSAGE = "send_message"
    TYPING_START = "typing_start"
    TYPING_STOP = "typing_stop"
    ADD_REACTION = "add_reaction"
    MARK_READ = "mark_read"
    UPDATE_STATUS = "update_status"


class _InboundPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RoomPayload(_InboundPayload):
    """Payload of join_room, leave_room, typing_start and typing_stop."""
    roomId: str = Field(..., min_length=1)


class AttachmentInput(_InboundPayload):
    filename: str = Field(..., min_length=1, max_length=255)
    originalName: str = Field(..., min_length=1, max_length=255)
    mimeType: str = Field(..., min_length=1, max_length=127)
    size: int = Field(..., ge=0)
    url: str = Field(..., min_length=1)
    thumbnailUrl: Optional[str] = None

    def to_create(self) -> AttachmentCreate:
        return AttachmentCreate(
            filename=self.filename,
            original_name=self.originalName,
            mime_type=self.mimeType,
            size=self.size,
            url=self.url,
            thumbnail_url=self.thumbnailUrl,
        )


class SendMessagePayload(_InboundPayload):
    roomId: str = Field(..., min_length=1)
    content: Optional[str] = None
    type: MessageType = MessageType.TEXT
    replyToId: Optional[str] = None
    files: Optional[List[AttachmentInput]] = None


class AddReactionPayload(_InboundPayload):
    messageId: str = Field(..., min_length=1)
    emoji: str = Field(..., min_length=1)


class MarkReadPayload(_InboundPayload):
    messageId: Optional[str] = Field(default=None, min_length=1)
    messageIds: Optional[List[str]] = None

    @model_validator(mode="after")
    def _one_target(self) -> "MarkReadPayload":
        if (self.messageId is None) == (self.messageIds is None):
            raise ValueError("exactly one of messageId or messageIds is required")
        if self.messageIds is not None and not self.messageIds:
            raise ValueError("messageIds must not be empty")
        return self

    @property
    def ids(self) -> List[str]:
        return [self.messageId] if self.messageId is not None else list(self.messageIds or [])


class UpdateStatusPayload(_InboundPayload):
    status: UserStatus

    @model_validator(mode="after")
    def _settable(self) -> "UpdateStatusPayload":
        if self.status == UserStatus.OFFLINE:
            raise ValueError("status must be one of online, away, busy")
        return self


INBOUND_PAYLOADS = {
    InboundEvent.JOIN_ROOM: RoomPayload,
    InboundEvent.LEAVE_ROOM: RoomPayload,
    InboundEvent.SEND_MESSAGE: SendMessagePayload,
    InboundEvent.TYPING_START: RoomPayload,
    InboundEvent.TYPING_STOP: RoomPayload,
    InboundEvent.ADD_REACTION: AddReactionPayload,
    InboundEvent.MARK_READ: MarkReadPayload,
    InboundEvent.UPDATE_STATUS: UpdateStatusPayload,
}

# Events whose payload may be sent as a bare room id string
_BARE_ROOM_ID_EVENTS = frozenset({InboundEvent.JOIN_ROOM, InboundEvent.LEAVE_ROOM})


def _describe(exc: PydanticValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "payload"
    return f"{location}: {first.get('msg', 'invalid value')}"


def parse_frame(raw: Union[str, bytes, Dict[str, Any]]) -> Tuple[InboundEvent, BaseModel]:
    """Parse one inbound frame into its event name and typed payload.

    Raises:
        ValidationError: Not JSON, not an envelope object, unknown event
            name, or a payload that does not match the event's schema.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise ValidationError("Frame is not valid JSON") from exc
    if not isinstance(raw, dict) or not isinstance(raw.get("event"), str):
        raise ValidationError("Frame must be an object with an 'event' name")
    unexpected = set(raw) - {"event", "data"}
    if unexpected:
        raise ValidationError(f"Unexpected frame fields: {', '.join(sorted(unexpected))}")

    try:
        event = InboundEvent(raw["event"])
    except ValueError:
        raise ValidationError(f"Unknown event: {raw['event']}") from None

    data = raw.get("data")
    if event in _BARE_ROOM_ID_EVENTS and isinstance(data, str):
        data = {"roomId": data}
    if not isinstance(data, dict):
        raise ValidationError(f"Invalid {event.value} payload: expected an object")

    try:
        payload = INBOUND_PAYLOADS[event].model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {event.value} payload: {_describe(exc)}") from exc
    return event, payload


# =============================================================================
# Outbound events
# =============================================================================


class OutboundEvent(str, Enum):
    CONNECTED = "connected"
    JOINED_ROOM = "joined_room"
    LEFT_ROOM = "left_room"
    NEW_MESSAGE = "new_message"
    MESSAGE_UPDATED = "message_updated"
    USER_JOINED = "user_joined"
    USER_LEFT = "user_left"
    USER_TYPING = "user_typing"
    USER_STATUS_UPDATED = "user_status_updated"
    MESSAGE_READ = "message_read"
    ERROR = "error"


class ConnectedNotice(BaseModel):
    connectionId: str
    user: UserProfile
    rooms: List[str]


class RoomRef(BaseModel):
    roomId: str


class RoomUserNotice(BaseModel):
    """Payload of user_joined and user_left."""
    roomId: str
    user: UserProfile


class TypingNotice(BaseModel):
    roomId: str
    user: UserProfile
    isTyping: bool


class StatusNotice(BaseModel):
    userId: str
    status: UserStatus
    user: UserProfile


class ReadNotice(BaseModel):
    messageId: str
    userId: str
    readAt: datetime


class ErrorNotice(BaseModel):
    message: str
    code: str = "error"


class Envelope(BaseModel):
    """One outbound frame."""
    event: OutboundEvent
    data: Dict[str, Any]

    def to_wire(self) -> Dict[str, Any]:
        return {"event": self.event.value, "data": self.data}


def envelope(event: OutboundEvent, payload: BaseModel) -> Envelope:
    return Envelope(event=event, data=payload.model_dump(mode="json"))
