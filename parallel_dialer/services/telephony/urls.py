"""Callback URLs handed to the provider."""
from typing import Optional
from urllib.parse import urlencode

from parallel_dialer.core.security import WEBHOOK_PURPOSE, generate_token

WEBHOOK_PREFIX = "/webhooks/voice"


class CallbackUrls:
    """Builds signed provider callback URLs for one user."""

    def __init__(self, base_url: str, token: str):
        self.base_url = base_url.rstrip("/")
        self.token = token

    @classmethod
    def for_user(cls, base_url: str, user_id: int) -> "CallbackUrls":
        return cls(base_url, generate_token(user_id, WEBHOOK_PURPOSE))

    def _url(self, path: str, **params: Optional[str]) -> str:
        query = {"token": self.token}
        query.update({k: v for k, v in params.items() if v is not None})
        return f"{self.base_url}{WEBHOOK_PREFIX}{path}?{urlencode(query)}"

    def voice_url(self, line_id: str, name: Optional[str] = None) -> str:
        return self._url("/parallel-dialer", lineId=line_id, name=name or "Unknown")

    def status_url(self) -> str:
        return self._url("/status")

    def amd_status_url(self) -> str:
        return self._url("/amd-status")

    def dial_status_url(self) -> str:
        return self._url("/dial-status")

    def conference_status_url(self) -> str:
        return self._url("/conference-status")

    def join_agent_url(self, conference_name: str) -> str:
        return self._url("/conference/join-agent", conference=conference_name)

    def queue_join_url(self, conference_name: str, line_id: str) -> str:
        return self._url("/queue/join-conference", conference=conference_name, lineId=line_id)
