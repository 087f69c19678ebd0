"""Pydantic models for identity server binding and lookup"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import InvalidThreePid

_PHONE_STRIP = re.compile(r"[\s\-().]")


class Email(BaseModel):
    """Email address ThreePid, normalized to lowercase"""
    model_config = ConfigDict(frozen=True)

    kind: Literal["email"] = "email"
    value: str

    @field_validator("value")
    @classmethod
    def normalize(cls, v: str) -> str:
        v = v.strip().lower()
        local, sep, domain = v.partition("@")
        if not sep or not local or not domain or "@" in domain:
            raise ValueError(f"Invalid email address: {v!r}")
        return v

    @property
    def medium(self) -> str:
        return "email"


class Phone(BaseModel):
    """Phone number ThreePid, normalized to international digits (no +)"""
    model_config = ConfigDict(frozen=True)

    kind: Literal["phone"] = "phone"
    value: str

    @field_validator("value")
    @classmethod
    def normalize(cls, v: str) -> str:
        v = _PHONE_STRIP.sub("", v.strip()).lstrip("+")
        if not v.isdigit() or not 6 <= len(v) <= 15:
            raise ValueError(f"Invalid phone number: {v!r}")
        return v

    @property
    def medium(self) -> str:
        return "msisdn"


ThreePid = Annotated[Union[Email, Phone], Field(discriminator="kind")]


def threepid_from_medium(medium: str, address: str) -> Union[Email, Phone]:
    """Build a ThreePid from its wire representation (medium, address)"""
    if medium == "email":
        return Email(value=address)
    if medium == "msisdn":
        return Phone(value=address)
    raise InvalidThreePid(f"Unknown ThreePid medium: {medium!r}")


class ServerStatus(str, Enum):
    UNCHECKED = "unchecked"
    VALID = "valid"
    INVALID_VERSION = "invalid-version"
    UNREACHABLE = "unreachable"


class IdentityServerConfig(BaseModel):
    """Snapshot of the identity server configuration.

    Frozen: every change builds a new instance so that readers always see a
    consistent url/status/token triple.
    """
    model_config = ConfigDict(frozen=True)

    url: Optional[str] = None
    default_url: Optional[str] = None
    status: ServerStatus = ServerStatus.UNCHECKED
    access_token: Optional[str] = None

    @field_validator("url", "default_url")
    @classmethod
    def non_empty(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            raise ValueError("Identity server url must not be empty")
        return v


class BindingState(str, Enum):
    NONE = "none"
    REQUESTED = "requested"
    CODE_SENT = "code_sent"
    SUBMITTED = "submitted"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BindingState.FINALIZED, BindingState.CANCELLED, BindingState.FAILED)


class BindingSession(BaseModel):
    """Data persisted for a pending ThreePid binding"""
    threepid: ThreePid
    client_secret: str
    sid: Optional[str] = None  # Issued by the identity server on requestToken
    state: BindingState = BindingState.REQUESTED
    send_attempt: int = 1
    retry_count: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SharedState(str, Enum):
    NOT_SHARED = "not_shared"
    BINDING_IN_PROGRESS = "binding_in_progress"
    SHARED = "shared"


class FoundThreePid(BaseModel):
    """A ThreePid the identity server resolved to a known user"""
    model_config = ConfigDict(frozen=True)

    threepid: ThreePid
    matrix_id: str


# API Request/Response models

class ThreePidRequest(BaseModel):
    """A ThreePid as sent over the wire"""
    medium: Literal["email", "msisdn"]
    address: str = Field(..., min_length=1, max_length=320)

    def to_threepid(self) -> Union[Email, Phone]:
        return threepid_from_medium(self.medium, self.address)


class SubmitCodeRequest(ThreePidRequest):
    code: str = Field(..., min_length=1, max_length=255)


class IdentityServerRequest(BaseModel):
    """New identity server; null disconnects"""
    url: Optional[str] = None


class ValidateServerRequest(BaseModel):
    url: str = Field(..., min_length=1)


class LookupRequest(BaseModel):
    threepids: list[ThreePidRequest] = Field(default_factory=list, max_length=1000)


class IdentityServerResponse(BaseModel):
    url: Optional[str] = None
    default_url: Optional[str] = None
    status: ServerStatus = ServerStatus.UNCHECKED


class BindingStatusResponse(BaseModel):
    medium: str
    address: str
    state: BindingState
    retry_count: int = 0
    created_at: Optional[datetime] = None


class FoundThreePidResponse(BaseModel):
    medium: str
    address: str
    matrix_id: str


class ShareStatusResponse(BaseModel):
    medium: str
    address: str
    state: SharedState
