from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

RequestType = Literal["construction", "renovation", "rental", "buySell"]
RequestStatus = Literal["Pending", "Accepted", "Rejected", "InProgress", "Completed", "Cancelled"]
NotificationKind = Literal["info", "success", "warning", "error", "admin", "system", "service-request", "status-update"]
ReviewTargetType = Literal["property", "construction", "renovation", "provider"]
DirectoryRole = Literal["client", "provider", "admin"]


class ConstructionDetails(BaseModel):
    request_type: Literal["construction"] = "construction"
    project_type: str
    description: str
    property_id: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None


class RenovationDetails(BaseModel):
    request_type: Literal["renovation"] = "renovation"
    service_category: str
    description: str
    property_id: Optional[str] = None
    preferred_date: Optional[str] = None
    photo_urls: List[str] = Field(default_factory=list)


class RentalDetails(BaseModel):
    request_type: Literal["rental"] = "rental"
    property_id: str
    start_date: str
    end_date: str
    guests: int = Field(default=1, ge=1)
    message: str = ""


class BuySellDetails(BaseModel):
    request_type: Literal["buySell"] = "buySell"
    property_id: str
    offer_type: Literal["buy", "sell"] = "buy"
    message: str = ""


RequestDetails = Annotated[
    Union[ConstructionDetails, RenovationDetails, RentalDetails, BuySellDetails],
    Field(discriminator="request_type"),
]


class ProgressNote(BaseModel):
    note: str
    actor_id: str
    at: str


class ServiceRequestCreate(BaseModel):
    client_id: str
    budget: float = Field(ge=0)
    requested_provider_id: Optional[str] = None
    details: RequestDetails


class ServiceRequest(BaseModel):
    id: str
    request_type: RequestType
    client_id: str
    provider_id: Optional[str] = None
    requested_provider_id: Optional[str] = None
    status: RequestStatus
    budget: float
    quote: Optional[float] = None
    quote_provider_id: Optional[str] = None
    quote_submitted_at: Optional[str] = None
    chat_id: Optional[str] = None
    progress_notes: List[ProgressNote] = Field(default_factory=list)
    details: RequestDetails
    created_at: str
    updated_at: str


class ProjectUpdate(BaseModel):
    id: str
    request_id: str
    status: str
    actor_id: str
    note: str = ""
    created_at: str


class RequestActionRequest(BaseModel):
    actor_user_id: str
    note: str = ""


class QuoteSubmitRequest(BaseModel):
    actor_user_id: str
    amount: float = Field(gt=0)


class Conversation(BaseModel):
    id: str
    participant_ids: List[str]
    last_message_snippet: str = ""
    unread_counts: Dict[str, int] = Field(default_factory=dict)
    created_at: str
    updated_at: str


class Message(BaseModel):
    id: str
    conversation_id: str
    sender_id: str
    text: str
    read: bool = False
    created_at: str


class ConversationStartRequest(BaseModel):
    user_id: str
    other_user_id: str


class MessageSendRequest(BaseModel):
    sender_id: str
    text: str = Field(min_length=1)


class MessageSendResponse(BaseModel):
    message: Message
    conversation: Conversation


class ConversationReadRequest(BaseModel):
    user_id: str


class NotificationRecord(BaseModel):
    id: str
    recipient_id: str
    title: str
    body: str
    kind: NotificationKind = "info"
    read: bool = False
    created_at: str
    link: Optional[str] = None


class FanoutFailure(BaseModel):
    recipient_id: str
    error: str


class FanoutResult(BaseModel):
    delivered: List[NotificationRecord] = Field(default_factory=list)
    failed: List[FanoutFailure] = Field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.delivered) and bool(self.failed)


class BroadcastRequest(BaseModel):
    actor_user_id: str
    recipient_ids: List[str] = Field(default_factory=list)
    role: Optional[DirectoryRole] = None
    title: str
    body: str
    kind: NotificationKind = "admin"
    link: Optional[str] = None


class DeviceTokenRegisterRequest(BaseModel):
    user_id: str
    device_token: str
    platform: Literal["android", "ios", "web"] = "android"


class Review(BaseModel):
    id: str
    reviewer_id: str
    target_id: str
    target_type: ReviewTargetType
    rating: int = Field(ge=1, le=5)
    comment: str
    created_at: str


class ReviewCreateRequest(BaseModel):
    reviewer_id: str
    target_id: str
    target_type: ReviewTargetType
    rating: int
    comment: str


class RatingSummary(BaseModel):
    average: float = 0.0
    count: int = 0


class DirectoryEntry(BaseModel):
    user_id: str
    role: DirectoryRole
    service_types: List[RequestType] = Field(default_factory=list)


class AuthLoginRequest(BaseModel):
    user_id: str
    password: str


class AuthLoginResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    expires_at: str


class AuthMeResponse(BaseModel):
    user_id: str
