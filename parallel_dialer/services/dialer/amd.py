"""Answering-machine detection: verdict classification and provider options."""
from enum import Enum
from typing import Any, Dict, Optional


class AmdResult(str, Enum):
    """Classified answering-machine detection verdict."""

    HUMAN = "human"
    MACHINE = "machine"
    FAX = "fax"
    UNKNOWN = "unknown"

    @property
    def is_non_human(self) -> bool:
        return self in (AmdResult.MACHINE, AmdResult.FAX)


# Provider tuning per sensitivity, in milliseconds. "standard" uses provider defaults.
SENSITIVITY_PARAMS: Dict[str, Dict[str, int]] = {
    "low": {
        "machine_detection_silence_timeout": 3000,
        "machine_detection_speech_threshold": 3000,
        "machine_detection_speech_end_threshold": 2000,
    },
    "standard": {},
    "high": {
        "machine_detection_silence_timeout": 1500,
        "machine_detection_speech_threshold": 1500,
        "machine_detection_speech_end_threshold": 1000,
    },
}

SENSITIVITIES = tuple(SENSITIVITY_PARAMS)


def classify_answered_by(answered_by: Optional[str]) -> AmdResult:
    """Map the provider's AnsweredBy value to an AmdResult.

    Anything starting with ``machine`` (machine_start, machine_end_beep, ...)
    is a machine. A missing value means detection has not finished.
    """
    value = (answered_by or "").strip().lower()
    if not value:
        return AmdResult.UNKNOWN
    if value.startswith("machine"):
        return AmdResult.MACHINE
    if value == "fax":
        return AmdResult.FAX
    if value == "human":
        return AmdResult.HUMAN
    return AmdResult.UNKNOWN


def amd_params(
    enabled: bool,
    timeout: int = 30,
    sensitivity: str = "standard",
    async_callback_url: Optional[str] = None,
) -> Dict[str, Any]:
    """Keyword arguments for ``calls.create`` enabling async AMD, or {} when disabled."""
    if not enabled:
        return {}
    params: Dict[str, Any] = {
        "machine_detection": "Enable",
        "machine_detection_timeout": timeout,
    }
    params.update(SENSITIVITY_PARAMS.get(sensitivity, {}))
    if async_callback_url:
        params["async_amd"] = "true"
        params["async_amd_status_callback"] = async_callback_url
        params["async_amd_status_callback_method"] = "POST"
    return params
