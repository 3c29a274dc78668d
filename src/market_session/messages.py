"""Wire messages exchanged with the streaming gateway (tr_json2)."""

import json
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError, validator

from .exceptions import FrameDecodeError

LOGIN_STREAM_ID = 1
ITEM_STREAM_ID = 2

LOGIN_DOMAIN = "Login"
STREAM_OPEN = "Open"
DATA_OK = "Ok"


class MessageType(Enum):
    """Message types the session reacts to."""
    REFRESH = "Refresh"
    STATUS = "Status"
    PING = "Ping"
    PONG = "Pong"
    UNKNOWN = "Unknown"


class StreamState(BaseModel):
    """Nested State object carried by Refresh and Status messages."""
    stream: Optional[str] = Field(default=None, alias="Stream")
    data: Optional[str] = Field(default=None, alias="Data")
    code: Optional[str] = Field(default=None, alias="Code")
    text: Optional[str] = Field(default=None, alias="Text")

    class Config:
        populate_by_name = True
        extra = "allow"

    @property
    def stream_closed(self) -> bool:
        return self.stream is not None and self.stream != STREAM_OPEN


class DecodedMessage(BaseModel):
    """One logical message from an inbound frame."""
    type: MessageType = Field(default=MessageType.UNKNOWN, alias="Type")
    domain: Optional[str] = Field(default=None, alias="Domain")
    id: Optional[int] = Field(default=None, alias="ID")
    key: Optional[Dict[str, Any]] = Field(default=None, alias="Key")
    state: Optional[StreamState] = Field(default=None, alias="State")
    elements: Optional[Dict[str, Any]] = Field(default=None, alias="Elements")

    class Config:
        populate_by_name = True
        extra = "allow"

    @validator('type', pre=True)
    def coerce_type(cls, v):
        if isinstance(v, MessageType):
            return v
        try:
            return MessageType(v)
        except ValueError:
            return MessageType.UNKNOWN

    @property
    def is_login(self) -> bool:
        return self.domain == LOGIN_DOMAIN

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


def decode_frame(payload: Union[str, bytes]) -> List[DecodedMessage]:
    """
    Decode a complete inbound frame.

    The gateway batches messages as a JSON array; a bare object is accepted as
    a batch of one. Entries keep their array order.
    """
    try:
        raw = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as e:
        raise FrameDecodeError(f"Frame is not valid JSON: {e}") from e

    if isinstance(raw, dict):
        raw = [raw]
    if not isinstance(raw, list):
        raise FrameDecodeError(f"Frame must be a JSON array or object, got {type(raw).__name__}")

    messages = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise FrameDecodeError(f"Frame entry {index} is not a JSON object")
        try:
            messages.append(DecodedMessage.model_validate(item))
        except ValidationError as e:
            raise FrameDecodeError(f"Frame entry {index} is malformed: {e}") from e

    return messages


def login_request(
    app_id: str,
    position: str,
    access_token: str,
    is_refresh: bool = False
) -> Dict[str, Any]:
    """
    Login request carrying the bearer token.

    A refresh login sets ``Refresh: false`` so the gateway treats it as a
    credential update rather than a request for a new login refresh.
    """
    message: Dict[str, Any] = {
        "ID": LOGIN_STREAM_ID,
        "Domain": LOGIN_DOMAIN,
        "Key": {
            "NameType": "AuthnToken",
            "Elements": {
                "ApplicationId": app_id,
                "Position": position,
                "AuthenticationToken": access_token,
            },
        },
    }
    if is_refresh:
        message["Refresh"] = False
    return message


def subscription_request(ric: str, service: str) -> Dict[str, Any]:
    return {
        "ID": ITEM_STREAM_ID,
        "Key": {
            "Name": ric,
            "Service": service,
        },
    }


def pong() -> Dict[str, Any]:
    return {"Type": MessageType.PONG.value}


def encode(message: Dict[str, Any]) -> str:
    """Compact, ASCII-safe JSON text for one outbound frame."""
    return json.dumps(message, separators=(",", ":"), ensure_ascii=True)
