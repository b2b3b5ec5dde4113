from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

# WebSocket close codes used when tearing a call down.
CLOSE_NORMAL = 1000
CLOSE_PROTOCOL_ERROR = 1002
CLOSE_UNSUPPORTED_DATA = 1003
CLOSE_INTERNAL_ERROR = 1011

BEGIN_RESPONSE_ID = 0


class TranscriptUtterance(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)
    role: Literal["user", "agent"]
    content: str


class PlatformConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    auto_reconnect: bool
    call_details: bool


class InboundPingPong(BaseModel):
    model_config = ConfigDict(extra="ignore")
    interaction_type: Literal["ping_pong"]
    timestamp: int


class InboundCallDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")
    interaction_type: Literal["call_details"]
    call: dict[str, Any]


class InboundUpdateOnly(BaseModel):
    model_config = ConfigDict(extra="ignore")
    interaction_type: Literal["update_only"]
    transcript: list[TranscriptUtterance]
    turntaking: Optional[Literal["agent_turn", "user_turn"]] = None


class InboundResponseRequired(BaseModel):
    model_config = ConfigDict(extra="ignore")
    interaction_type: Literal["response_required"]
    response_id: int
    transcript: list[TranscriptUtterance]


class InboundReminderRequired(BaseModel):
    model_config = ConfigDict(extra="ignore")
    interaction_type: Literal["reminder_required"]
    response_id: int
    transcript: list[TranscriptUtterance]


InboundEvent = Annotated[
    Union[
        InboundPingPong,
        InboundCallDetails,
        InboundUpdateOnly,
        InboundResponseRequired,
        InboundReminderRequired,
    ],
    Field(discriminator="interaction_type"),
]

TurnRequest = Union[InboundResponseRequired, InboundReminderRequired]

_inbound_adapter = TypeAdapter(InboundEvent)


class OutboundConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    response_type: Literal["config"]
    config: PlatformConfig


class OutboundPingPong(BaseModel):
    model_config = ConfigDict(extra="forbid")
    response_type: Literal["ping_pong"]
    timestamp: int


class OutboundResponse(BaseModel):
    """One streamed fragment of a turn; `content_complete` marks the last one."""

    model_config = ConfigDict(extra="forbid")
    response_type: Literal["response", "reminder"]
    response_id: int
    content: str
    content_complete: bool
    end_call: Optional[bool] = None


OutboundEvent = Annotated[
    Union[
        OutboundConfig,
        OutboundPingPong,
        OutboundResponse,
    ],
    Field(discriminator="response_type"),
]

_outbound_adapter = TypeAdapter(OutboundEvent)


def parse_inbound_json(raw_text: str) -> InboundEvent:
    return parse_inbound_obj(json.loads(raw_text))


def parse_inbound_obj(obj: Any) -> InboundEvent:
    return _inbound_adapter.validate_python(obj)


def parse_outbound_json(raw_text: str) -> OutboundEvent:
    return _outbound_adapter.validate_python(json.loads(raw_text))


def dumps_outbound(event: OutboundEvent) -> str:
    return json.dumps(event.model_dump(exclude_none=True), separators=(",", ":"), sort_keys=True)
