"""Typed provider callback payloads.

Each callback kind is a pydantic model tagged by ``kind``; ``parse_event``
validates raw form/query data into the matching model.
"""
from abc import ABC, abstractmethod
from typing import Annotated, Any, Dict, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

VOICE_CONNECT = "voice-connect"
AMD_RESULT = "amd-result"
DIAL_STATUS = "dial-status"
CONFERENCE_STATUS = "conference-status"
CALL_STATUS = "call-status"

TERMINAL_CALL_STATUSES = ("completed", "busy", "failed", "no-answer", "canceled")


class ProviderEvent(BaseModel, ABC):
    """Fields shared by every callback."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    token: Optional[str] = None
    call_sid: Optional[str] = Field(default=None, alias="CallSid")

    @abstractmethod
    def event_key(self) -> str:
        """Ledger key identifying one distinct delivery."""


class VoiceConnectEvent(ProviderEvent):
    kind: Literal["voice-connect"] = VOICE_CONNECT
    from_number: Optional[str] = Field(default=None, alias="From")
    to_number: Optional[str] = Field(default=None, alias="To")
    answered_by: Optional[str] = Field(default=None, alias="AnsweredBy")
    line_id: Optional[str] = Field(default=None, alias="lineId")
    name: Optional[str] = None

    def event_key(self) -> str:
        return f"{self.kind}:{self.call_sid}:{self.answered_by or '-'}"


class AmdResultEvent(ProviderEvent):
    kind: Literal["amd-result"] = AMD_RESULT
    answered_by: Optional[str] = Field(default=None, alias="AnsweredBy")
    machine_detection_duration: Optional[int] = Field(default=None, alias="MachineDetectionDuration")

    def event_key(self) -> str:
        return f"{self.kind}:{self.call_sid}:{self.answered_by or '-'}"


class DialStatusEvent(ProviderEvent):
    kind: Literal["dial-status"] = DIAL_STATUS
    dial_call_status: Optional[str] = Field(default=None, alias="DialCallStatus")
    dial_call_duration: Optional[int] = Field(default=None, alias="DialCallDuration")
    dial_call_sid: Optional[str] = Field(default=None, alias="DialCallSid")

    @property
    def is_terminal(self) -> bool:
        return self.dial_call_status in TERMINAL_CALL_STATUSES

    def event_key(self) -> str:
        return f"{self.kind}:{self.call_sid}:{self.dial_call_sid or '-'}:{self.dial_call_status}"


class ConferenceStatusEvent(ProviderEvent):
    kind: Literal["conference-status"] = CONFERENCE_STATUS
    conference_sid: Optional[str] = Field(default=None, alias="ConferenceSid")
    friendly_name: Optional[str] = Field(default=None, alias="FriendlyName")
    status_callback_event: Optional[str] = Field(default=None, alias="StatusCallbackEvent")
    participant_label: Optional[str] = Field(default=None, alias="ParticipantLabel")
    start_conference_on_enter: Optional[bool] = Field(default=None, alias="StartConferenceOnEnter")
    sequence_number: Optional[int] = Field(default=None, alias="SequenceNumber")

    def event_key(self) -> str:
        return (
            f"{self.kind}:{self.conference_sid or self.friendly_name}:"
            f"{self.status_callback_event}:{self.call_sid or '-'}:{self.sequence_number or '-'}"
        )


class CallStatusEvent(ProviderEvent):
    kind: Literal["call-status"] = CALL_STATUS
    call_status: Optional[str] = Field(default=None, alias="CallStatus")
    call_duration: Optional[int] = Field(default=None, alias="CallDuration")

    @property
    def is_terminal(self) -> bool:
        return self.call_status in TERMINAL_CALL_STATUSES

    def event_key(self) -> str:
        return f"{self.kind}:{self.call_sid}:{self.call_status}"


WebhookPayload = Annotated[
    Union[
        VoiceConnectEvent,
        AmdResultEvent,
        DialStatusEvent,
        ConferenceStatusEvent,
        CallStatusEvent,
    ],
    Field(discriminator="kind"),
]

_payload_adapter = TypeAdapter(WebhookPayload)


def parse_event(kind: str, form: Mapping[str, Any], query: Mapping[str, Any]) -> ProviderEvent:
    """Build the typed event for ``kind`` from a callback's form body and query string.

    Blank values are treated as absent.
    """
    data: Dict[str, Any] = {}
    for source in (form, query):
        for key, value in source.items():
            if value is None or (isinstance(value, str) and not value.strip()):
                continue
            data[key] = value
    data["kind"] = kind
    return _payload_adapter.validate_python(data)
