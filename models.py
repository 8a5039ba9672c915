import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Text, DateTime, ForeignKey

from database import Base


def utcnow() -> datetime:
    # naive UTC, SQLite drops tzinfo on the way back anyway
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def default_avatar(username: str) -> str:
    return f"https://api.dicebear.com/7.x/initials/svg?seed={username}"


class MessageType(str, enum.Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    CALL_START = "call_start"
    CALL_END = "call_end"


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, index=True, default=new_id)
    username = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, unique=True, index=True, nullable=True)
    phone = Column(String, unique=True, index=True, nullable=True)
    password_hash = Column(String, nullable=True)
    avatar_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Session(Base):
    __tablename__ = "sessions"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    expires_at = Column(DateTime, nullable=False)


class Message(Base):
    __tablename__ = "messages"

    id = Column(String, primary_key=True, index=True, default=new_id)
    sender_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    receiver_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    content = Column(Text, nullable=True)
    type = Column(String, default=MessageType.TEXT.value, nullable=False)
    created_at = Column(DateTime, default=utcnow, index=True, nullable=False)
    read_at = Column(DateTime, nullable=True)
