"""Outbound notifications (email, webhooks).

Services only describe what should be sent. The HTTP layer appends those
descriptions to a Redis stream after the response is produced and the
worker delivers them. Nothing here may fail a registration, a review or a
scan.
"""
import asyncio
import json
import logging
import smtplib
from dataclasses import asdict, dataclass, field
from email.message import EmailMessage

import httpx

from . import config

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    kind: str  # "email" or "webhook"
    target: str  # address or url
    subject: str = ""
    body: str = ""
    payload: dict = field(default_factory=dict)

    def to_fields(self) -> dict:
        data = asdict(self)
        data["payload"] = json.dumps(self.payload)
        return data

    @classmethod
    def from_fields(cls, data: dict) -> "Notification":
        return cls(
            kind=data["kind"],
            target=data["target"],
            subject=data.get("subject", ""),
            body=data.get("body", ""),
            payload=json.loads(data.get("payload") or "{}"),
        )


def email(to: str, subject: str, body: str) -> Notification:
    return Notification(kind="email", target=to, subject=subject, body=body)


def webhook(url: str, payload: dict) -> Notification:
    return Notification(kind="webhook", target=url, payload=payload)


async def enqueue(redis, notifications: list):
    for n in notifications:
        if not n.target:
            continue
        try:
            await redis.xadd(config.NOTIFICATION_STREAM, n.to_fields())
        except Exception:
            logger.warning("could not queue %s notification for %s", n.kind, n.target, exc_info=True)


def send_email(n: Notification) -> bool:
    if not config.SMTP_HOST:
        logger.info("SMTP not configured, dropping email to %s (%s)", n.target, n.subject)
        return False

    msg = EmailMessage()
    msg["From"] = config.MAIL_FROM
    msg["To"] = n.target
    msg["Subject"] = n.subject
    msg.set_content(n.body, subtype="html")
    try:
        with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=10) as smtp:
            smtp.starttls()
            if config.SMTP_USER:
                smtp.login(config.SMTP_USER, config.SMTP_PASSWORD)
            smtp.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        logger.warning("email send failed to=%s: %s", n.target, e)
        return False
    logger.info("email sent to=%s", n.target)
    return True


async def post_webhook(client: httpx.AsyncClient, n: Notification) -> bool:
    try:
        r = await client.post(n.target, json=n.payload, timeout=5.0)
        r.raise_for_status()
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        logger.warning("webhook post failed url=%s: %s", n.target, e)
        return False
    return True


async def deliver(client: httpx.AsyncClient, n: Notification) -> bool:
    if n.kind == "email":
        return await asyncio.to_thread(send_email, n)
    if n.kind == "webhook":
        return await post_webhook(client, n)
    logger.warning("unknown notification kind %r", n.kind)
    return False
