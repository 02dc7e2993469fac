"""Control messages exchanged across the trust boundary.

Wire shapes::

    {"type": "EXECUTE", "code": "..."}
    {"type": "SET_POLICY", "rules": {...}, "revision": 3}
    {"type": "RESET"}
    "READY"
    {"type": "LOG", "timestamp": ..., "source": "relay", "level": "log", ...}

Heartbeat payloads on the private channel are the bare strings
``"PING"``, ``"PONG"`` and ``"CONNECTED"``.

Raw payloads are parsed once at admission into the tagged union
:data:`Message`; everything downstream dispatches on the model type.
"""

from typing import Annotated, Any, Final, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from safesandbox.exceptions import ProtocolViolation
from safesandbox.policy import NetworkPolicy
from safesandbox.telemetry import TelemetryEvent

READY: Final = "READY"
PING: Final = "PING"
PONG: Final = "PONG"
CONNECTED: Final = "CONNECTED"


class ExecuteCommand(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["EXECUTE"] = "EXECUTE"
    code: str


class SetPolicyCommand(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["SET_POLICY"] = "SET_POLICY"
    rules: NetworkPolicy
    revision: int | None = None

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.type, "rules": self.rules.to_wire(), "revision": self.revision}


class ResetCommand(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["RESET"] = "RESET"


class ReadySignal(BaseModel):
    """The bare ``"READY"`` sentinel, lifted into the union."""

    model_config = ConfigDict(frozen=True)

    type: Literal["READY"] = "READY"


Message = Annotated[
    ExecuteCommand | SetPolicyCommand | ResetCommand | ReadySignal | TelemetryEvent,
    Field(discriminator="type"),
]

_adapter: TypeAdapter[Message] = TypeAdapter(Message)


def parse_message(data: Any) -> Message:
    """Parse a raw relay payload.

    Raises:
        ProtocolViolation: If the payload is not a known control message
    """
    if data == READY:
        return ReadySignal()
    if not isinstance(data, dict):
        raise ProtocolViolation(f"Unsupported payload type: {type(data).__name__}")
    try:
        return _adapter.validate_python(data)
    except ValidationError as e:
        raise ProtocolViolation(f"Malformed {data.get('type', 'untyped')} message") from e


def to_wire(message: BaseModel) -> Any:
    """Serialize a parsed message back to its wire shape."""
    if isinstance(message, ReadySignal):
        return READY
    if isinstance(message, (SetPolicyCommand, TelemetryEvent)):
        return message.to_wire()
    return message.model_dump(mode="json")


__all__ = [
    "CONNECTED",
    "PING",
    "PONG",
    "READY",
    "ExecuteCommand",
    "Message",
    "ReadySignal",
    "ResetCommand",
    "SetPolicyCommand",
    "parse_message",
    "to_wire",
]
