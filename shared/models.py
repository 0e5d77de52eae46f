# shared/models.py

import datetime
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional, Union


@dataclass
class ScheduledMessage:
    id: str
    channel: str
    text: str
    send_at: datetime.datetime  # aware, UTC
    sent: bool = False

    def is_due(self, now: datetime.datetime) -> bool:
        return not self.sent and self.send_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "channel": self.channel,
            "text": self.text,
            "sendAt": self.send_at.isoformat(),
            "sent": self.sent,
        }


@dataclass
class Credential:
    access_token: str
    refresh_token: Optional[str] = None
    team: Optional[Dict[str, Any]] = None
    authed_user: Optional[Dict[str, Any]] = None

    def refreshed(self, result: "RefreshedCredential") -> "Credential":
        """Returns a copy carrying the refreshed tokens.

        Slack may omit the refresh token when it is not rotated; the old one
        is kept in that case.
        """
        return replace(
            self,
            access_token=result.access_token,
            refresh_token=result.refresh_token or self.refresh_token,
        )


# === Delivery results ===

@dataclass(frozen=True)
class Delivered:
    timestamp: str


@dataclass(frozen=True)
class AuthExpired:
    error: str


@dataclass(frozen=True)
class RemoteRejected:
    reason: str


@dataclass(frozen=True)
class TransportFailure:
    cause: str


DeliveryResult = Union[Delivered, AuthExpired, RemoteRejected, TransportFailure]


# === Refresh results ===

@dataclass(frozen=True)
class RefreshedCredential:
    access_token: str
    refresh_token: Optional[str] = None


@dataclass(frozen=True)
class RefreshFailure:
    reason: str


RefreshResult = Union[RefreshedCredential, RefreshFailure]
