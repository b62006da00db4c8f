"""Outbound message transports. The notifier renders; a transport only delivers."""

import asyncio
import smtplib
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from functools import partial
from typing import Deque, List

from loguru import logger

from clinicflow.config import SMTPSettings
from clinicflow.constants import MessageKind
from clinicflow.exceptions import TransportError
from clinicflow.resilience import CircuitBreakerConfig, CircuitOpenError, get_circuit_breaker

OUTBOX_CAPACITY = 500


@dataclass
class Message:
    kind: MessageKind
    to: str
    subject: str
    html: str
    text: str
    priority: str = "normal"


class Transport(ABC):
    @abstractmethod
    async def send(self, message: Message) -> str:
        """Deliver message and return its id. Raises TransportError."""


class SMTPTransport(Transport):
    """Send multipart (HTML + plain text) email over SMTP with STARTTLS."""

    def __init__(self, settings: SMTPSettings, sender_name: str = ""):
        if not settings.is_configured:
            raise RuntimeError("SMTP_USERNAME and SMTP_PASSWORD are required for the SMTP transport")
        self.settings = settings
        self.sender_name = sender_name
        self.circuit = get_circuit_breaker(
            "smtp", CircuitBreakerConfig(recovery_timeout=60.0, trip_on=(smtplib.SMTPException, OSError))
        )

    async def send(self, message: Message) -> str:
        message_id = make_msgid(domain=self.settings.host)
        loop = asyncio.get_running_loop()
        try:
            await self.circuit.call(loop.run_in_executor, None, partial(self._send_sync, message, message_id))
        except CircuitOpenError as e:
            raise TransportError(str(e)) from e
        except (smtplib.SMTPException, OSError) as e:
            raise TransportError(f"SMTP delivery of {message.kind.value} to {message.to} failed: {e}") from e
        logger.info(f"Email sent: {message.kind.value} to {message.to}")
        return message_id

    def _send_sync(self, message: Message, message_id: str) -> None:
        """Synchronous email send (run in executor)."""
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = (
            f"{self.sender_name} <{self.settings.username}>" if self.sender_name else self.settings.username
        )
        msg["To"] = message.to
        msg["Message-ID"] = message_id

        if message.priority == "high":
            msg["X-Priority"] = "1"
            msg["X-MSMail-Priority"] = "High"

        # Plain text first so clients that understand HTML prefer the last part
        msg.attach(MIMEText(message.text, "plain"))
        msg.attach(MIMEText(message.html, "html"))

        with smtplib.SMTP(self.settings.host, self.settings.port, timeout=30) as server:
            server.starttls()
            server.login(self.settings.username, self.settings.password)
            server.sendmail(self.settings.username, [message.to], msg.as_string())


class OutboxTransport(Transport):
    """Keeps sent messages in memory. Used when SMTP is not configured, and in tests."""

    def __init__(self, capacity: int = OUTBOX_CAPACITY):
        self.sent: Deque[Message] = deque(maxlen=capacity)

    async def send(self, message: Message) -> str:
        message_id = f"<{uuid.uuid4()}@outbox>"
        self.sent.append(message)
        logger.info(f"Outbox: {message.kind.value} to {message.to}: {message.subject}")
        return message_id

    def of_kind(self, kind: MessageKind) -> List[Message]:
        return [m for m in self.sent if m.kind is kind]


def create_transport(settings: SMTPSettings, sender_name: str = "") -> Transport:
    if settings.is_configured:
        logger.info(f"Email transport: SMTP via {settings.host}:{settings.port}")
        return SMTPTransport(settings, sender_name)
    logger.warning("Email transport: in-memory outbox (SMTP not configured)")
    return OutboxTransport()
