from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter


class ThreadKind(str, Enum):
    INDIVIDUAL = "individual"
    GROUP = "group"


KNOWN_MESSAGE_TYPES = {
    "text",
    "image",
    "video",
    "audio",
    "location",
    "reaction",
    "group_invite",
    "unsupported",
}

MESSAGE_TYPE_ALIASES = {
    "rich_text": "text",
    "group-invite": "group_invite",
    "groupinvite": "group_invite",
    "unsupported_message_type": "unsupported",
    "voice": "audio",
    "ptt": "audio",
    "photo": "image",
}

THREAD_TYPE_ALIASES = {
    "individual": ThreadKind.INDIVIDUAL.value,
    "direct": ThreadKind.INDIVIDUAL.value,
    "group": ThreadKind.GROUP.value,
    "broadcast": ThreadKind.GROUP.value,
}


class TextContent(BaseModel):
    text: str = ""
    quoted_message_content: Optional[str] = None
    quoted_message_sender: Optional[str] = None


class MediaContent(BaseModel):
    caption: Optional[str] = Field(default=None, validation_alias=AliasChoices("caption", "text"))
    # base64 payload; stored by reference only, never rendered
    data: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, validation_alias=AliasChoices("mime_type", "mimeType"))


class LocationContent(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    name: Optional[str] = None
    address: Optional[str] = None


class ReactionContent(BaseModel):
    reaction: str = ""
    message_id: Optional[str] = None


class GroupInviteContent(BaseModel):
    group_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("group_name", "groupName"))
    invite_code: Optional[str] = Field(default=None, validation_alias=AliasChoices("invite_code", "inviteCode"))


class UnsupportedContent(BaseModel):
    model_config = ConfigDict(extra="allow")

    error: Optional[str] = None


class NormalizedMessage(BaseModel):
    """Type-free view of an inbound message, produced once at ingestion."""

    thread_id: str
    thread_kind: ThreadKind
    message_id: str
    message_type: str
    sender_number: str
    sender_name: str
    service: str
    text: str
    content: dict[str, Any]
    timestamp: Optional[datetime] = None
    is_from_agent: bool = False

    @property
    def is_group(self) -> bool:
        return self.thread_kind == ThreadKind.GROUP


class _InboundBase(BaseModel):
    """Envelope shared by every message type; subclasses define `message_content` and `render_text`."""

    thread_id: str
    thread_type: ThreadKind = ThreadKind.INDIVIDUAL
    message_id: str
    sender_number: str = ""
    sender_name: str = ""
    timestamp: Optional[datetime] = None
    service: str = "whatsapp"
    is_from_agent: bool = False
    a1_account_id: Optional[str] = None

    def content_for_storage(self) -> dict[str, Any]:
        return self.message_content.model_dump(exclude_none=True)

    def normalize(self) -> NormalizedMessage:
        return NormalizedMessage(
            thread_id=self.thread_id,
            thread_kind=self.thread_type,
            message_id=self.message_id,
            message_type=self.message_type,
            sender_number=self.sender_number,
            sender_name=self.sender_name,
            service=self.service,
            text=self.render_text(),
            content=self.content_for_storage(),
            timestamp=self.timestamp,
            is_from_agent=self.is_from_agent,
        )


def _media_label(kind: str, caption: Optional[str]) -> str:
    caption = (caption or "").strip()
    if caption:
        return f"[{kind} received: {caption}]"
    return f"[{kind} received]"


class TextMessage(_InboundBase):
    message_type: Literal["text"] = "text"
    message_content: TextContent = Field(default_factory=TextContent)

    def render_text(self) -> str:
        text = self.message_content.text.strip()
        quoted = (self.message_content.quoted_message_content or "").strip()
        if quoted:
            return f"> {quoted}\n{text}".strip()
        return text


class ImageMessage(_InboundBase):
    message_type: Literal["image"] = "image"
    message_content: MediaContent = Field(default_factory=MediaContent)

    def render_text(self) -> str:
        return _media_label("Image", self.message_content.caption)

    def content_for_storage(self) -> dict[str, Any]:
        return self.message_content.model_dump(exclude_none=True, exclude={"data"})


class VideoMessage(ImageMessage):
    message_type: Literal["video"] = "video"

    def render_text(self) -> str:
        return _media_label("Video", self.message_content.caption)


class AudioMessage(ImageMessage):
    message_type: Literal["audio"] = "audio"

    def render_text(self) -> str:
        return _media_label("Audio", self.message_content.caption)


class LocationMessage(_InboundBase):
    message_type: Literal["location"] = "location"
    message_content: LocationContent = Field(default_factory=LocationContent)

    def render_text(self) -> str:
        content = self.message_content
        parts = [part.strip() for part in (content.name, content.address) if part and part.strip()]
        label = ", ".join(parts)
        if content.latitude is not None and content.longitude is not None:
            coords = f"({content.latitude}, {content.longitude})"
            label = f"{label} {coords}" if label else coords
        return f"[Location: {label}]" if label else "[Location shared]"


class ReactionMessage(_InboundBase):
    message_type: Literal["reaction"] = "reaction"
    message_content: ReactionContent = Field(default_factory=ReactionContent)

    def render_text(self) -> str:
        return f"[Reaction: {self.message_content.reaction}]"


class GroupInviteMessage(_InboundBase):
    message_type: Literal["group_invite"] = "group_invite"
    message_content: GroupInviteContent = Field(default_factory=GroupInviteContent)

    def render_text(self) -> str:
        name = (self.message_content.group_name or "").strip()
        return f"[Group invite: {name}]" if name else "[Group invite]"


class UnsupportedMessage(_InboundBase):
    message_type: Literal["unsupported"] = "unsupported"
    message_content: UnsupportedContent = Field(default_factory=UnsupportedContent)

    def render_text(self) -> str:
        return "[Unsupported message]"

    def content_for_storage(self) -> dict[str, Any]:
        return {"error": self.message_content.error} if self.message_content.error else {}


InboundMessage = Annotated[
    Union[
        TextMessage,
        ImageMessage,
        VideoMessage,
        AudioMessage,
        LocationMessage,
        ReactionMessage,
        GroupInviteMessage,
        UnsupportedMessage,
    ],
    Field(discriminator="message_type"),
]

_inbound_adapter = TypeAdapter(InboundMessage)


def _coerce_str(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


def normalize_webhook_payload(payload: dict) -> dict:
    """Map provider aliases onto the canonical tagged shape before validation."""
    body = payload.get("body")
    if not isinstance(body, dict):
        body = payload
    data = dict(body)

    raw_type = str(data.get("message_type") or data.get("messageType") or "text").strip().lower()
    message_type = MESSAGE_TYPE_ALIASES.get(raw_type, raw_type)
    if message_type not in KNOWN_MESSAGE_TYPES:
        message_type = "unsupported"
    data["message_type"] = message_type

    raw_thread_type = str(data.get("thread_type") or "individual").strip().lower()
    data["thread_type"] = THREAD_TYPE_ALIASES.get(raw_thread_type, ThreadKind.INDIVIDUAL.value)

    content = data.get("message_content")
    if isinstance(content, str):
        content = {"text": content}
    elif not isinstance(content, dict):
        content = {}
    else:
        content = dict(content)
    if message_type == "text" and not content.get("text"):
        fallback = data.get("content")
        if isinstance(fallback, str):
            content["text"] = fallback
    data["message_content"] = content

    for key in ("thread_id", "message_id", "sender_number"):
        data[key] = _coerce_str(data.get(key))
    if data.get("sender_number") is None:
        data.pop("sender_number", None)
    if data.get("sender_name") is None:
        data.pop("sender_name", None)
    if not data.get("timestamp"):
        data.pop("timestamp", None)
    if not data.get("service"):
        data.pop("service", None)
    else:
        data["service"] = str(data["service"]).strip().lower()
    return data


def parse_inbound_message(payload: dict) -> InboundMessage:
    return _inbound_adapter.validate_python(normalize_webhook_payload(payload))


class WebhookResponse(BaseModel):
    success: bool
    message: str
    thread_id: Optional[str] = None
    route: Optional[str] = None
    replies: list[str] = Field(default_factory=list)


class OnboardingResetRequest(BaseModel):
    sender_number: str


class OnboardingResetResponse(BaseModel):
    success: bool
    thread_id: str
    user_id: Optional[str] = None
