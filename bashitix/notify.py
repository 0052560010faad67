"""Outbound notifications (email). Failures are logged, never raised."""
from __future__ import annotations
import html
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

import httpx

from .helpers import to_iso

log = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"


class Notifier(ABC):
    @abstractmethod
    async def send(self, to: str, subject: str, body_html: str) -> bool: ...

    async def welcome(self, to: str, full_name: str) -> bool:
        return await self.send(
            to,
            "Welcome to OKLAHOMABASHI",
            f"<h1>Welcome, {html.escape(full_name)}!</h1>"
            "<p>Your account has been created. Log in to explore cultural "
            "events and ticket purchasing.</p>",
        )

    async def tickets_issued(self, to: str, event: Dict,
                             codes: list[str]) -> bool:
        title = html.escape(event["title"])
        when = to_iso(event["starts_at"]) or ""
        imgs = "".join(
            f'<p><img src="{html.escape(c)}" alt="QR Code"/></p>'
            for c in codes
        )
        return await self.send(
            to,
            f"Your Ticket for {event['title']}",
            f"<h1>Ticket Confirmed!</h1><p>Event: {title}</p>"
            f"<p>Date: {when}</p>"
            f"<p>Location: {html.escape(event['location'])}</p>{imgs}",
        )


class LogNotifier(Notifier):
    async def send(self, to: str, subject: str, body_html: str) -> bool:
        log.info("mail (not sent, no provider): to=%s subject=%r", to, subject)
        return True


class ResendNotifier(Notifier):
    def __init__(self, http: httpx.AsyncClient, api_key: str,
                 mail_from: str) -> None:
        self.http = http
        self.api_key = api_key
        self.mail_from = mail_from

    async def send(self, to: str, subject: str, body_html: str) -> bool:
        try:
            r = await self.http.post(
                RESEND_URL,
                json={
                    "from": self.mail_from,
                    "to": to,
                    "subject": subject,
                    "html": body_html,
                },
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as e:
            log.warning("mail send failed: %s", e)
            return False
        if r.status_code >= 300:
            log.warning("mail send rejected: status=%s", r.status_code)
            return False
        return True


def new_notifier(http: Optional[httpx.AsyncClient], api_key: str,
                 mail_from: str) -> Notifier:
    if api_key and http is not None:
        return ResendNotifier(http, api_key, mail_from)
    return LogNotifier()
