"""
Data model shared by the transport clients, the resolution engine and the
reporting reducers.

ARI/AMI responses are validated into these models at the transport boundary
so the rest of the code never touches raw JSON or raw AMI key/value dicts.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from telephony_errors import InvalidConnectionError

__all__ = [
    'ConnectionParams',
    'EndpointState',
    'STATE_MAP',
    'normalize_state',
    'PartyId',
    'DialplanLocation',
    'Endpoint',
    'Channel',
    'Bridge',
    'Queue',
    'OperatorCallState',
    'Call',
]


# ---------------------------------------------------------------------------
# Connection parameters
# ---------------------------------------------------------------------------
class ConnectionParams(BaseModel):
    """``{host, port, username, password}`` for one AMI or ARI server."""

    model_config = ConfigDict(frozen=True)

    host: str
    port: str
    username: str
    password: str = ''

    @field_validator('port', mode='before')
    @classmethod
    def _port_as_str(cls, v):
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator('password', mode='before')
    @classmethod
    def _password_default(cls, v):
        return '' if v is None else v

    @field_validator('host', 'port', 'username')
    @classmethod
    def _required(cls, v: str, info) -> str:
        v = v.strip()
        if not v:
            raise ValueError(f"{info.field_name} is required")
        return v

    @field_validator('port')
    @classmethod
    def _numeric_port(cls, v: str) -> str:
        if not v.isdigit() or not 0 < int(v) < 65536:
            raise ValueError(f"port must be a number between 1 and 65535, got {v!r}")
        return v

    @classmethod
    def coerce(cls, value: Any) -> 'ConnectionParams':
        """Validate a dict (or pass through an instance), raising InvalidConnectionError."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, dict):
            raise InvalidConnectionError(f"Invalid connection parameters: {value!r}")
        try:
            return cls.model_validate(value)
        except ValidationError as e:
            problems = ', '.join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise InvalidConnectionError(f"Invalid input: {problems}") from e


# ---------------------------------------------------------------------------
# State normalization
# ---------------------------------------------------------------------------
class EndpointState(str, Enum):
    OFFLINE = 'offline'
    AVAILABLE = 'available'
    RINGING = 'ringing'
    ON_CALL = 'on-call'
    DND = 'dnd'


STATE_MAP = {
    'not_inuse':   EndpointState.AVAILABLE,
    'dnd':         EndpointState.DND,
    'unavailable': EndpointState.OFFLINE,
    'invalid':     EndpointState.OFFLINE,
    'ring':        EndpointState.RINGING,
    'ringing':     EndpointState.RINGING,
    'up':          EndpointState.ON_CALL,
    'busy':        EndpointState.ON_CALL,
    # AMI DeviceState phrasing
    'not in use':  EndpointState.AVAILABLE,
    'in use':      EndpointState.ON_CALL,
    'on hold':     EndpointState.ON_CALL,
    'ring,in use': EndpointState.RINGING,
}


def normalize_state(raw: Optional[str]) -> str:
    """Map a raw endpoint/channel state to its semantic value.

    Matching is case-insensitive. Unknown values are returned unchanged so a
    new vendor state never breaks the dashboard.
    """
    if raw is None:
        return EndpointState.OFFLINE.value
    mapped = STATE_MAP.get(raw.strip().lower())
    return mapped.value if mapped else raw


# ---------------------------------------------------------------------------
# Telephony resources (read-only projections of Asterisk objects)
# ---------------------------------------------------------------------------
class PartyId(BaseModel):
    name: str = ''
    number: str = ''


class DialplanLocation(BaseModel):
    context: str = ''
    exten: str = ''
    priority: int = 0


class Endpoint(BaseModel):
    technology: str = 'PJSIP'
    resource: str
    state: str = 'unknown'
    channel_ids: List[str] = Field(default_factory=list)

    @field_validator('state', mode='before')
    @classmethod
    def _state_default(cls, v):
        return v or 'unknown'


class Channel(BaseModel):
    id: str
    name: str = ''
    state: str = ''
    caller: PartyId = Field(default_factory=PartyId)
    connected: PartyId = Field(default_factory=PartyId)
    dialplan: DialplanLocation = Field(default_factory=DialplanLocation)
    bridge_id: Optional[str] = None
    creator: Optional[str] = None


class Bridge(BaseModel):
    id: str
    technology: str = ''
    bridge_type: str = ''
    channels: List[str] = Field(default_factory=list)


class Queue(BaseModel):
    name: str


# ---------------------------------------------------------------------------
# Resolution engine output
# ---------------------------------------------------------------------------
class OperatorCallState(BaseModel):
    """What one operator is doing right now. Built once per poll, never mutated."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    endpoint_state: str
    extension: Optional[str] = None
    channel_id: Optional[str] = None
    channel_name: Optional[str] = None
    channel_state: Optional[str] = None
    peer_channel_id: Optional[str] = None
    caller_id: Optional[str] = None
    queue: Optional[str] = None
    unique_id: Optional[str] = None
    linked_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """camelCase dict for the UI, unset fields left out."""
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Historical call record (one CDR row)
# ---------------------------------------------------------------------------
class Call(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    linked_id: Optional[str] = None
    caller_number: str = ''
    called_number: str = ''
    operator_extension: Optional[str] = None
    queue: Optional[str] = None
    status: str = ''
    start_time: Optional[str] = None
    duration: int = 0
    billsec: int = 0
    wait_time: int = 0
    is_outgoing: bool = False
    direction: str = 'UNKNOWN'
    satisfaction: Optional[str] = None
    recording_file: Optional[str] = None

    @property
    def answered(self) -> bool:
        return self.status.upper() == 'ANSWERED'
