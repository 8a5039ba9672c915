from datetime import datetime

from pydantic import BaseModel, ConfigDict, model_validator


class RegisterRequest(BaseModel):
    username: str
    email: str | None = None
    phone: str | None = None
    password: str

    @model_validator(mode="after")
    def one_contact(self):
        if not self.username or not self.password:
            raise ValueError("username and password are required")
        if bool(self.email) == bool(self.phone):
            raise ValueError("provide exactly one of email or phone")
        return self


class LoginRequest(BaseModel):
    identifier: str  # email, phone or username
    password: str


class UpdateProfileRequest(BaseModel):
    username: str | None = None
    email: str | None = None
    phone: str | None = None
    avatar_url: str | None = None


class UserResponse(BaseModel):
    id: str
    username: str
    email: str | None = None
    phone: str | None = None
    avatar_url: str | None = None

    model_config = ConfigDict(from_attributes=True)


class MessageResponse(BaseModel):
    """A stored message exactly as it travels over HTTP and the socket."""

    id: str
    sender_id: str
    receiver_id: str
    content: str | None = None
    type: str
    created_at: datetime
    read_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class ChatSummary(BaseModel):
    """One row of the chat list: the counterpart and their latest message."""

    id: str
    username: str | None = None
    avatar_url: str | None = None
    last_message: MessageResponse
    unread_count: int = 0
    online: bool = False
