"""Operator notifications for recording events."""

from __future__ import annotations

import datetime as dt
import logging
import smtplib
import ssl
from email.message import EmailMessage

import requests

from .config import NotifierConfig

logger = logging.getLogger(__name__)


class Notifier:
    """Post recording start/stop/failure events to a webhook and/or an e-mail inbox.

    Delivery is best effort: failures are logged and never reach the caller,
    so a dead webhook cannot block a recording command.
    """

    def __init__(self, config: NotifierConfig, source: str = "DVR Relay"):
        self.config = config
        self.source = source

    @property
    def email_enabled(self) -> bool:
        return bool(self.config.smtp_host and self.config.email_from and self.config.email_to)

    @property
    def enabled(self) -> bool:
        return bool(self.config.webhook_url) or self.email_enabled

    def notify(self, subject: str, message: str) -> None:
        if self.config.webhook_url:
            self._post_webhook(subject, message)
        if self.email_enabled:
            self._send_email(subject, message)

    def _post_webhook(self, subject: str, message: str) -> None:
        payload = {
            "source": self.source,
            "subject": subject,
            "message": message,
            "sent_at": dt.datetime.now(dt.timezone.utc).isoformat(),
        }
        try:
            response = requests.post(self.config.webhook_url, json=payload, timeout=10)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.error("Failed to deliver webhook notification %r: %s", subject, exc)

    def _send_email(self, subject: str, message: str) -> None:
        email = EmailMessage()
        email["From"] = self.config.email_from
        email["To"] = self.config.email_to
        email["Subject"] = f"[{self.source}] {subject}"
        email.set_content(message)

        try:
            with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=10) as smtp:
                smtp.starttls(context=ssl.create_default_context())
                if self.config.smtp_username and self.config.smtp_password:
                    smtp.login(self.config.smtp_username, self.config.smtp_password)
                smtp.send_message(email)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to e-mail notification %r: %s", subject, exc)
