import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr
from pydantic.alias_generators import to_camel
from sqlalchemy import JSON, DateTime, UniqueConstraint
from sqlmodel import Field, Relationship, SQLModel


def get_datetime_utc() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    CUSTOMER = "customer"
    AGENCY = "agency"


# Shared properties
class UserBase(SQLModel):
    email: EmailStr = Field(unique=True, index=True, max_length=255)
    is_active: bool = True
    full_name: str | None = Field(default=None, max_length=255)


# Properties to receive via API on creation
class UserCreate(UserBase):
    password: str = Field(min_length=8, max_length=128)
    role: UserRole = UserRole.CUSTOMER


class UserRegister(SQLModel):
    email: EmailStr = Field(max_length=255)
    password: str = Field(min_length=8, max_length=128)
    full_name: str | None = Field(default=None, max_length=255)


class UserUpdateMe(SQLModel):
    full_name: str | None = Field(default=None, max_length=255)
    email: EmailStr | None = Field(default=None, max_length=255)


class UpdatePassword(SQLModel):
    current_password: str = Field(min_length=8, max_length=128)
    new_password: str = Field(min_length=8, max_length=128)


# Database model, database table inferred from class name
class User(UserBase, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    hashed_password: str
    role: str = Field(default=UserRole.CUSTOMER.value, max_length=16)
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )
    documents: list["Document"] = Relationship(
        back_populates="owner", cascade_delete=True
    )
    profile: Optional["UserProfile"] = Relationship(
        back_populates="owner",
        cascade_delete=True,
        sa_relationship_kwargs={"uselist": False},
    )
    residency_progress: Optional["ResidencyProgress"] = Relationship(
        back_populates="owner",
        cascade_delete=True,
        sa_relationship_kwargs={"uselist": False},
    )
    conversations: list["ChatConversation"] = Relationship(
        back_populates="owner",
        cascade_delete=True,
        sa_relationship_kwargs={"foreign_keys": "ChatConversation.user_id"},
    )
    chat_participations: list["ChatParticipant"] = Relationship(
        back_populates="user", cascade_delete=True
    )

    @property
    def is_agency(self) -> bool:
        return self.role == UserRole.AGENCY.value


# Properties to return via API, id is always required
class UserPublic(UserBase):
    id: uuid.UUID
    role: UserRole
    created_at: datetime | None = None


class UsersPublic(SQLModel):
    data: list[UserPublic]
    count: int


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class DocumentType(str, Enum):
    PASSPORT = "Passport"
    IDENTITY_DOCUMENT = "Identity Document"
    BIRTH_CERTIFICATE = "Birth Certificate"
    MARRIAGE_CERTIFICATE = "Marriage Certificate"
    CRIMINAL_RECORD_CERTIFICATE = "Criminal Record Certificate"
    INTERPOL_CERTIFICATE = "Interpol Certificate"
    RESIDENCY_CARD = "Residency Card"
    ENTRY_PERMIT = "Entry Permit"


class AnalysisStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    REVIEW = "review"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Requirement(CamelModel):
    is_required: bool
    description: str
    validity_period: str | None = None


class DocumentRequirements(CamelModel):
    apostille: Requirement
    translation: Requirement
    validity: Requirement


class AnalysisResult(CamelModel):
    document_type: DocumentType
    country: str
    is_apostilled: bool
    status: AnalysisStatus = AnalysisStatus.REVIEW
    condition: str
    observations: list[str] = []
    requirements: DocumentRequirements
    validity_period: str | None = None


class Document(SQLModel, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(
        foreign_key="user.id", nullable=False, index=True, ondelete="CASCADE"
    )
    document_type: str = Field(max_length=64)
    analysis_result: dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    file_path: str = Field(max_length=1024)
    agency_notes: str | None = Field(default=None, max_length=4000)
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )

    owner: User | None = Relationship(back_populates="documents")


class DocumentPublic(SQLModel):
    id: uuid.UUID
    user_id: uuid.UUID
    document_type: DocumentType
    analysis_result: AnalysisResult
    file_path: str
    agency_notes: str | None = None
    created_at: datetime | None = None


class DocumentsPublic(SQLModel):
    data: list[DocumentPublic]
    count: int


class DocumentNotesUpdate(SQLModel):
    notes: str = Field(max_length=4000)


class DocumentDownloadUrl(SQLModel):
    url: str
    expires_in: int


# ---------------------------------------------------------------------------
# Residency progress
# ---------------------------------------------------------------------------


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class ProgressStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class ResidencyStep(SQLModel, table=True):
    __tablename__ = "residency_step"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    order_number: int = Field(unique=True, index=True)
    title: str = Field(max_length=255)
    description: str = Field(max_length=1000)
    estimated_time: str = Field(max_length=64)
    requirements: str = Field(max_length=2000)


class ResidencyProgress(SQLModel, table=True):
    __tablename__ = "residency_progress"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(
        foreign_key="user.id", nullable=False, unique=True, ondelete="CASCADE"
    )
    # Cache of the derived overall status, rewritten on every step write.
    status: str = Field(default=ProgressStatus.IN_PROGRESS.value, max_length=32)
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )
    updated_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )

    owner: User | None = Relationship(back_populates="residency_progress")
    step_progress: list["ResidencyStepProgress"] = Relationship(
        back_populates="progress", cascade_delete=True
    )


class ResidencyStepProgress(SQLModel, table=True):
    __tablename__ = "residency_step_progress"
    __table_args__ = (UniqueConstraint("progress_id", "step_id"),)

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    progress_id: uuid.UUID = Field(
        foreign_key="residency_progress.id", nullable=False, ondelete="CASCADE"
    )
    step_id: uuid.UUID = Field(
        foreign_key="residency_step.id", nullable=False, ondelete="CASCADE"
    )
    status: str = Field(default=StepStatus.PENDING.value, max_length=32)
    notes: str | None = Field(default=None, max_length=2000)
    completed_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore
    )

    progress: ResidencyProgress | None = Relationship(back_populates="step_progress")


class ResidencyStepPublic(SQLModel):
    id: uuid.UUID
    order: int
    title: str
    description: str
    estimated_time: str
    requirements: str
    status: StepStatus
    notes: str | None = None
    completed_at: datetime | None = None


class ResidencyProgressPublic(SQLModel):
    id: uuid.UUID
    user_id: uuid.UUID
    status: ProgressStatus
    steps: list[ResidencyStepPublic]
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ResidencyStepUpdate(SQLModel):
    status: StepStatus
    notes: str | None = Field(default=None, max_length=2000)


class CustomerProgressUpdate(ResidencyStepUpdate):
    step_id: uuid.UUID


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class SenderType(str, Enum):
    USER = "user"
    AGENCY = "agency"
    BOT = "bot"


class ChatConversation(SQLModel, table=True):
    __tablename__ = "chat_conversation"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(
        foreign_key="user.id", nullable=False, index=True, ondelete="CASCADE"
    )
    status: str = Field(default=ConversationStatus.ACTIVE.value, max_length=16)
    is_bot_active: bool = True
    agency_id: uuid.UUID | None = Field(
        default=None, foreign_key="user.id", ondelete="SET NULL"
    )
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )
    updated_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )

    owner: User | None = Relationship(
        back_populates="conversations",
        sa_relationship_kwargs={"foreign_keys": "ChatConversation.user_id"},
    )
    participants: list["ChatParticipant"] = Relationship(
        back_populates="conversation", cascade_delete=True
    )
    messages: list["ChatMessage"] = Relationship(
        back_populates="conversation", cascade_delete=True
    )


class ChatParticipant(SQLModel, table=True):
    __tablename__ = "chat_participant"
    __table_args__ = (UniqueConstraint("conversation_id", "user_id"),)

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    conversation_id: uuid.UUID = Field(
        foreign_key="chat_conversation.id", nullable=False, ondelete="CASCADE"
    )
    user_id: uuid.UUID = Field(
        foreign_key="user.id", nullable=False, ondelete="CASCADE"
    )
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )

    conversation: ChatConversation | None = Relationship(back_populates="participants")
    user: User | None = Relationship(back_populates="chat_participations")


class ChatMessage(SQLModel, table=True):
    __tablename__ = "chat_message"
    __table_args__ = (UniqueConstraint("conversation_id", "seq"),)

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    conversation_id: uuid.UUID = Field(
        foreign_key="chat_conversation.id",
        nullable=False,
        index=True,
        ondelete="CASCADE",
    )
    # Position in the conversation, assigned by the INSERT in commit order.
    seq: int | None = Field(default=None)
    # Null for bot messages.
    sender_id: uuid.UUID | None = Field(default=None)
    sender_type: str = Field(max_length=16)
    content: str = Field(max_length=4000)
    client_message_id: str | None = Field(default=None, max_length=64)
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )
    read_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore
    )

    conversation: ChatConversation | None = Relationship(back_populates="messages")


class ChatConversationPublic(SQLModel):
    id: uuid.UUID
    user_id: uuid.UUID
    status: ConversationStatus
    is_bot_active: bool
    agency_id: uuid.UUID | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ChatConversationUpdate(SQLModel):
    is_bot_active: bool | None = None
    assign_to_me: bool | None = None


class ChatConversationSummary(ChatConversationPublic):
    customer_email: str
    customer_name: str | None = None
    unread_count: int = 0
    last_message_at: datetime | None = None
    last_message_preview: str | None = None


class ChatConversationSummaries(SQLModel):
    data: list[ChatConversationSummary]
    count: int


class ChatMessageCreate(SQLModel):
    content: str = Field(min_length=1, max_length=4000)
    client_message_id: str | None = Field(default=None, max_length=64)


class ChatMessagePublic(SQLModel):
    id: uuid.UUID
    conversation_id: uuid.UUID
    seq: int | None = None
    sender_id: uuid.UUID | None = None
    sender_type: SenderType
    content: str
    client_message_id: str | None = None
    created_at: datetime | None = None
    read_at: datetime | None = None


class ChatMessagesPublic(SQLModel):
    data: list[ChatMessagePublic]
    count: int


class MarkMessagesRead(SQLModel):
    up_to_message_id: uuid.UUID | None = None


class MarkMessagesReadResult(SQLModel):
    updated: int


class ChangeEventPublic(SQLModel):
    cursor: int
    table: str
    event_type: str
    record: dict[str, Any]


class ChangeEventsPublic(SQLModel):
    data: list[ChangeEventPublic]
    cursor: int
    # True when events after the cursor were evicted; reload the messages.
    reset: bool = False


# ---------------------------------------------------------------------------
# User profile
# ---------------------------------------------------------------------------


class ResidencyType(str, Enum):
    TEMPORARY_SHORT = "temporary_short"
    TEMPORARY_LONG = "temporary_long"
    PERMANENT_INVESTMENT = "permanent_investment"


class ResidencyGoal(str, Enum):
    TAX_RESIDENCY = "tax_residency"
    PLAN_B = "plan_b"
    RELOCATION = "relocation"


class MaritalStatus(str, Enum):
    SINGLE = "single"
    MARRIED = "married"
    DIVORCED = "divorced"
    WIDOWED = "widowed"


class ShippingAddress(BaseModel):
    street: str = ""
    city: str = ""
    state: str = ""
    country: str = ""
    postal_code: str = ""


class UserProfileFields(SQLModel):
    first_name: str | None = Field(default=None, max_length=255)
    last_name: str | None = Field(default=None, max_length=255)
    country: str | None = Field(default=None, max_length=128)
    preferred_language: str | None = Field(default=None, max_length=64)
    whatsapp: str | None = Field(default=None, max_length=64)
    birth_date: date | None = None
    nationality_country: str | None = Field(default=None, max_length=128)
    birth_country: str | None = Field(default=None, max_length=128)
    primary_residency_country: str | None = Field(default=None, max_length=128)
    client_to_agency_notes: str | None = Field(default=None, max_length=4000)
    agency_to_client_notes: str | None = Field(default=None, max_length=4000)


class UserProfile(UserProfileFields, table=True):
    __tablename__ = "user_profile"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(
        foreign_key="user.id", nullable=False, unique=True, ondelete="CASCADE"
    )
    desired_residency_type: str | None = Field(default=None, max_length=32)
    residency_goal: str | None = Field(default=None, max_length=32)
    marital_status: str | None = Field(default=None, max_length=16)
    shipping_address: dict[str, Any] | None = Field(default=None, sa_type=JSON)
    # Visible to agency staff only.
    internal_agency_notes: str | None = Field(default=None, max_length=4000)
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )
    updated_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )

    owner: User | None = Relationship(back_populates="profile")


class UserProfileUpdate(UserProfileFields):
    desired_residency_type: ResidencyType | None = None
    residency_goal: ResidencyGoal | None = None
    marital_status: MaritalStatus | None = None
    shipping_address: ShippingAddress | None = None
    internal_agency_notes: str | None = Field(default=None, max_length=4000)


class UserProfilePublic(UserProfileFields):
    id: uuid.UUID
    user_id: uuid.UUID
    email: str
    desired_residency_type: ResidencyType | None = None
    residency_goal: ResidencyGoal | None = None
    marital_status: MaritalStatus | None = None
    shipping_address: ShippingAddress | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class UserProfileAgencyPublic(UserProfilePublic):
    internal_agency_notes: str | None = None


class UserWithProfilePublic(UserPublic):
    profile: UserProfileAgencyPublic | None = None


class UsersWithProfilesPublic(SQLModel):
    data: list[UserWithProfilePublic]
    count: int


class CustomerDetailPublic(SQLModel):
    user: UserWithProfilePublic
    documents: list[DocumentPublic]
    progress: ResidencyProgressPublic | None = None


# Generic message
class Message(SQLModel):
    message: str


# JSON payload containing access token
class Token(SQLModel):
    access_token: str
    token_type: str = "bearer"


# Contents of JWT token
class TokenPayload(SQLModel):
    sub: str | None = None


class AgencyLogin(SQLModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)
