"""Outbound account email.

Delivery is an external collaborator: the identity core only hands a
recipient and a one-time token to an ``EmailSender``. Deployments plug in a
real transport; ``LoggingEmailSender`` records that a message was due and
sends nothing.
"""

import logging
from typing import Protocol

from vdid.config import EMAIL_FROM

log = logging.getLogger(__name__)


class EmailSender(Protocol):
    def send_verification_email(self, to: str, token: str) -> None:
        ...

    def send_password_reset_email(self, to: str, token: str) -> None:
        ...


class LoggingEmailSender:
    """Default sender; logs the intent and never the token."""

    def __init__(self, sender: str = EMAIL_FROM):
        self.sender = sender

    def send_verification_email(self, to: str, token: str) -> None:
        log.info(f"Verification email from {self.sender} to {to} not delivered (no transport configured)")

    def send_password_reset_email(self, to: str, token: str) -> None:
        log.info(f"Password reset email from {self.sender} to {to} not delivered (no transport configured)")
