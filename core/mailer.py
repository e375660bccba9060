"""
mailer.py -- Outbound email delivery.

Delivery is a collaborator, not part of the auth core: AuthService is handed
any object with a send() method and only cares whether it returned True.

  PostmarkEmailSender -- Postmark's HTTP API over a pooled requests.Session.
  LoggingEmailSender  -- development fallback when no API key is configured;
                         logs recipient and subject only, never the body
                         (bodies carry single-use tokens).

Failures are logged and reported as False. They are never raised: a mail
outage must not turn "if your email is registered..." into a 500 that
reveals the account exists.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import requests

from core.config import Settings, get_settings

logger = logging.getLogger("gatehouse.mailer")

POSTMARK_API = "https://api.postmarkapp.com/email"


@dataclass
class EmailMessage:
    to: str
    subject: str
    html: str
    text: str = ""


class EmailSender(Protocol):
    def send(self, message: EmailMessage) -> bool: ...


class LoggingEmailSender:
    def send(self, message: EmailMessage) -> bool:
        logger.info("Email (not sent, no provider configured) to=%s subject=%r", message.to, message.subject)
        return True


class PostmarkEmailSender:
    def __init__(self, api_key: str, from_email: str, session: Optional[requests.Session] = None) -> None:
        self.api_key = api_key
        self.from_email = from_email
        self._session = session or requests.Session()
        # a known public API; no reason to follow long redirect chains
        self._session.max_redirects = 3

    def send(self, message: EmailMessage) -> bool:
        try:
            resp = self._session.post(
                POSTMARK_API,
                json={
                    "From": self.from_email,
                    "To": message.to,
                    "Subject": message.subject,
                    "HtmlBody": message.html,
                    "TextBody": message.text,
                    "MessageStream": "outbound",
                },
                headers={
                    "Accept": "application/json",
                    "X-Postmark-Server-Token": self.api_key,
                },
                timeout=10,
            )
            resp.raise_for_status()
            return resp.json().get("ErrorCode", 1) == 0
        except (requests.RequestException, ValueError) as e:
            logger.warning("Email delivery to %s failed: %s", message.to, e)
            return False


def build_sender(settings: Optional[Settings] = None) -> EmailSender:
    """Return a Postmark sender if POSTMARK_API_KEY is set, else the logging fallback."""
    settings = settings or get_settings()
    if settings.postmark_api_key:
        return PostmarkEmailSender(settings.postmark_api_key, settings.email_from)
    return LoggingEmailSender()
