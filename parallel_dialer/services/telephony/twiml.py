"""TwiML responses for dialer calls."""
from typing import Dict, Optional

from twilio.twiml.voice_response import Dial, VoiceResponse

VOICE = "alice"


def hangup_twiml() -> str:
    """Generate TwiML that ends the call."""
    response = VoiceResponse()
    response.hangup()
    return str(response)


def error_twiml(message: str = "There was an error connecting your call.") -> str:
    """Generate TwiML that apologises and hangs up."""
    response = VoiceResponse()
    response.say(message, voice=VOICE)
    response.hangup()
    return str(response)


def _with_greeting(greeting_url: Optional[str]) -> VoiceResponse:
    response = VoiceResponse()
    if greeting_url and greeting_url.strip():
        response.play(greeting_url)
    return response


def hold_twiml(message: str, music_url: str, greeting_url: Optional[str] = None) -> str:
    """Generate TwiML for a held call: a message then an endless music loop.

    The call stays here until it is redirected into the conference or hangs up.
    """
    response = _with_greeting(greeting_url)
    if message:
        response.say(message, voice=VOICE)
    response.play(music_url, loop=0)
    return str(response)


def conference_bridge_twiml(
    conference_name: str,
    agent_present: bool,
    dial_status_url: str,
    conference_status_url: str,
    participant_label: str,
    wait_url: str = "",
    record: bool = False,
    greeting_url: Optional[str] = None,
) -> str:
    """Generate TwiML that bridges a customer leg into the agent's conference.

    Customer legs never start the conference; audio begins when the agent is in.
    """
    response = _with_greeting(greeting_url)
    dial_kwargs = {"action": dial_status_url, "method": "POST"}
    if record:
        dial_kwargs["record"] = "record-from-answer-dual"
    dial = Dial(**dial_kwargs)
    dial.conference(
        conference_name,
        start_conference_on_enter=False,
        end_conference_on_exit=False,
        beep=False,
        wait_url="" if agent_present else wait_url,
        participant_label=participant_label,
        status_callback=conference_status_url,
        status_callback_event="join leave",
    )
    response.append(dial)
    return str(response)


def agent_conference_twiml(conference_name: str, conference_status_url: str) -> str:
    """Generate TwiML for the agent's own leg; the agent starts and ends the conference."""
    response = VoiceResponse()
    dial = Dial()
    dial.conference(
        conference_name,
        start_conference_on_enter=True,
        end_conference_on_exit=True,
        beep=False,
        wait_url="",
        participant_label="agent",
        status_callback=conference_status_url,
        status_callback_event="start end join leave",
    )
    response.append(dial)
    return str(response)


def queue_join_twiml(
    conference_name: str,
    line_id: str,
    dial_status_url: str,
    conference_status_url: str,
) -> str:
    """Generate TwiML that moves a promoted held call into the conference."""
    response = VoiceResponse()
    dial = Dial(action=dial_status_url, method="POST")
    dial.conference(
        conference_name,
        start_conference_on_enter=False,
        end_conference_on_exit=False,
        beep=False,
        wait_url="",
        participant_label=line_id,
        status_callback=conference_status_url,
        status_callback_event="join leave",
    )
    response.append(dial)
    return str(response)


def direct_client_twiml(
    identity: str,
    caller_id: str,
    dial_status_url: str,
    status_url: str,
    parameters: Dict[str, str],
    record: bool = False,
    greeting_url: Optional[str] = None,
) -> str:
    """Generate TwiML that rings the agent's client directly (no conference open)."""
    response = _with_greeting(greeting_url)
    dial_kwargs = {
        "answer_on_bridge": True,
        "timeout": 30,
        "action": dial_status_url,
        "method": "POST",
        "caller_id": caller_id,
    }
    if record:
        dial_kwargs["record"] = "record-from-answer-dual"
    dial = Dial(**dial_kwargs)
    client = dial.client(
        status_callback=status_url,
        status_callback_event="initiated ringing answered completed",
        status_callback_method="POST",
    )
    client.identity(identity)
    for name, value in parameters.items():
        client.parameter(name=name, value=value)
    response.append(dial)
    return str(response)
