"""
tests/test_delivery.py -- Unit tests for notify/delivery.py.

Covers:
  - Notifier is an abstract interface; subclasses must implement send()
  - verification and reset links are built from frontend_url, token URL-encoded
  - LogNotifier never logs the link (it embeds a live secret)
  - RecordingNotifier.last() filters by kind
"""

from __future__ import annotations

import logging

import pytest

from notify.delivery import (
    KIND_RESET,
    KIND_VERIFY,
    LogNotifier,
    Message,
    Notifier,
    RecordingNotifier,
    reset_link,
    verification_link,
)


class TestNotifierInterface:
    def test_base_cannot_be_instantiated(self) -> None:
        with pytest.raises(TypeError):
            Notifier()

    def test_subclass_without_send_rejected(self) -> None:
        class Silent(Notifier):
            pass

        with pytest.raises(TypeError):
            Silent()


class TestLinks:
    def test_verification_link(self, settings) -> None:
        assert verification_link(settings, "abc") == "http://app.test/verify-email?token=abc"

    def test_reset_link_encodes_token(self, settings_factory) -> None:
        settings = settings_factory(frontend_url="http://app.test/")
        assert reset_link(settings, "a b&c") == "http://app.test/reset-password?token=a+b%26c"


class TestNotifiers:
    def test_log_notifier_hides_link(self, caplog: pytest.LogCaptureFixture) -> None:
        secret = "f" * 64
        with caplog.at_level(logging.INFO, logger="credgate.notify"):
            LogNotifier().send(Message(kind=KIND_VERIFY, to="ann@x.com", link=f"http://app.test/?token={secret}"))
        assert "ann@x.com" in caplog.text
        assert secret not in caplog.text

    def test_recording_notifier_last(self) -> None:
        notifier = RecordingNotifier()
        assert notifier.last() is None
        notifier.send(Message(kind=KIND_VERIFY, to="a@x.com", link="v"))
        notifier.send(Message(kind=KIND_RESET, to="b@x.com", link="r"))
        assert notifier.last().kind == KIND_RESET
        assert notifier.last(KIND_VERIFY).to == "a@x.com"
