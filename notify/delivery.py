"""
notify/delivery.py -- Seam between the credential core and outbound email.

The core never sends anything. It produces a raw secret; this module turns
the secret into a link and hands a Message to a Notifier. Rendering and SMTP
transport belong to whatever Notifier the deployment plugs in.

  LogNotifier        -- default. Logs recipient and kind, never the link
                        (the link embeds a live secret).
  RecordingNotifier  -- keeps messages in memory for tests and local dev.

Layer rule: no imports from api/ or auth/. core.config is allowed.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from urllib.parse import urlencode

from core.config import Settings

logger = logging.getLogger("credgate.notify")

KIND_VERIFY = "verify_email"
KIND_RESET = "reset_password"


@dataclass(frozen=True, slots=True)
class Message:
    kind: str  # KIND_VERIFY | KIND_RESET
    to: str
    link: str
    name: str | None = None


def _link(settings: Settings, path: str, token: str) -> str:
    return f"{settings.frontend_url.rstrip('/')}{path}?{urlencode({'token': token})}"


def verification_link(settings: Settings, token: str) -> str:
    return _link(settings, "/verify-email", token)


def reset_link(settings: Settings, token: str) -> str:
    return _link(settings, "/reset-password", token)


class Notifier(ABC):
    """Delivery interface. Implementations must not raise for a bad address."""

    @abstractmethod
    def send(self, message: Message) -> None: ...


class LogNotifier(Notifier):
    def send(self, message: Message) -> None:
        logger.info("Would send %s message to %s", message.kind, message.to)


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.messages: list[Message] = []

    def send(self, message: Message) -> None:
        self.messages.append(message)

    def last(self, kind: str | None = None) -> Message | None:
        for message in reversed(self.messages):
            if kind is None or message.kind == kind:
                return message
        return None
