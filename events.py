"""Frames exchanged over the realtime socket.

Inbound frames are parsed into one of three event models keyed on ``type``.
Anything else, including invalid JSON and missing fields, parses to ``None``.
"""
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from schemas import MessageResponse


class _Inbound(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    receiver_id: str = Field(alias="receiverId", min_length=1)


class ChatEvent(_Inbound):
    type: Literal["chat"]
    content: str


class CallSignalEvent(_Inbound):
    type: Literal["call_signal"]
    signal_data: Any = Field(alias="signalData")


class CallEndEvent(_Inbound):
    type: Literal["call_end"]


InboundEvent = Annotated[
    Union[ChatEvent, CallSignalEvent, CallEndEvent],
    Field(discriminator="type"),
]

_inbound = TypeAdapter(InboundEvent)


def parse_event(raw: str | bytes) -> ChatEvent | CallSignalEvent | CallEndEvent | None:
    try:
        return _inbound.validate_json(raw)
    except ValidationError:
        return None


def chat_ack(message: MessageResponse) -> dict:
    return {"type": "chat_ack", "message": message.model_dump(mode="json")}


def chat_new(message: MessageResponse) -> dict:
    return {"type": "chat_new", "message": message.model_dump(mode="json")}


def call_signal(sender_id: str, signal_data: Any) -> dict:
    return {"type": "call_signal", "senderId": sender_id, "signalData": signal_data}


def call_end(sender_id: str) -> dict:
    return {"type": "call_end", "senderId": sender_id}
