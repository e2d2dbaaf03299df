"""Post-call disposition inference."""
from typing import Optional

from parallel_dialer.services.dialer.amd import AmdResult, classify_answered_by

ANSWERED = "answered"
VOICEMAIL = "voicemail"
DISCONNECTED = "disconnected"
BUSY = "busy"
NO_ANSWER = "no-answer"
FAILED = "failed"

DISPOSITIONS = (ANSWERED, VOICEMAIL, DISCONNECTED, BUSY, NO_ANSWER, FAILED)

TERMINAL_DIAL_STATUSES = ("completed", "answered", "busy", "no-answer", "failed", "canceled")


def infer_disposition(dial_status: Optional[str], answered_by: Optional[str]) -> str:
    """Derive the call outcome from the final dial status and the AMD verdict."""
    status = (dial_status or "").strip().lower()
    amd = classify_answered_by(answered_by)

    if status in ("completed", "answered"):
        if amd == AmdResult.MACHINE:
            return VOICEMAIL
        if amd == AmdResult.FAX:
            return DISCONNECTED
        return ANSWERED
    if status == "busy":
        return BUSY
    if status == "no-answer":
        return NO_ANSWER
    if status in ("canceled", "failed"):
        return FAILED
    return NO_ANSWER
