"""
Ticket confirmation emails.

Best effort by contract: `Dispatcher.dispatch()` schedules the sends as
detached tasks and returns at once. A failed send is logged and dropped;
nothing here can undo or fail an issuance.
"""
from __future__ import annotations
import asyncio
import logging
import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Dict, Iterable, List, Mapping, Optional, Set

from jinja2 import DictLoader, Environment, select_autoescape
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .helpers import format_date, normalize_email
from .infra.sql import atomic
from .infra.timings import timeit
from .model.db import Event, TicketType

logger = logging.getLogger(__name__)


# ----------------------------
# Templates
# ----------------------------
_TEMPLATES = {
    "confirmation.txt": """\
Hi {{ attendee_name }},

Your {{ "ticket is" if confirmation_ids|length == 1 else "tickets are" }} \
confirmed for {{ event_title }}.

Date: {{ event_date }}
Location: {{ event_location }}
Ticket type: {{ ticket_types|join(", ") }}

Confirmation {{ "code" if confirmation_ids|length == 1 else "codes" }}:
{% for cid in confirmation_ids %}  {{ cid }}
{% endfor %}
Show this code at the entrance.
""",
    "confirmation.html": """\
<p>Hi {{ attendee_name }},</p>
<p>Your booking for <strong>{{ event_title }}</strong> is confirmed.</p>
<ul>
  <li>Date: {{ event_date }}</li>
  <li>Location: {{ event_location }}</li>
  <li>Ticket type: {{ ticket_types|join(", ") }}</li>
</ul>
<p>Confirmation {{ "code" if confirmation_ids|length == 1 else "codes" }}:</p>
<ul>
{% for cid in confirmation_ids %}  <li><code>{{ cid }}</code></li>
{% endfor %}</ul>
""",
}

_env = Environment(
    loader=DictLoader(_TEMPLATES),
    autoescape=select_autoescape(enabled_extensions=("html",)),
    keep_trailing_newline=True,
)


def render_confirmation(c: Mapping) -> Dict[str, str]:
    return {
        "subject": f"Your tickets for {c['event_title']}",
        "text": _env.get_template("confirmation.txt").render(**c),
        "html": _env.get_template("confirmation.html").render(**c),
    }


def group_by_attendee(
    tickets: Iterable,
    *,
    event_title: str,
    event_date: Optional[float],
    event_location: str,
    ticket_type_names: Mapping[str, str],
) -> List[Dict]:
    """
    One confirmation per attendee email (case-insensitive), carrying every
    confirmation code and the distinct ticket type names of that attendee.
    """
    groups: Dict[str, Dict] = {}
    for t in tickets:
        key = normalize_email(t.attendee_email)
        g = groups.get(key)
        if g is None:
            g = groups[key] = {
                "attendee_email": key,
                "attendee_name": t.attendee_name,
                "event_title": event_title,
                "event_date": format_date(event_date),
                "event_location": event_location,
                "ticket_types": [],
                "confirmation_ids": [],
            }
        name = ticket_type_names.get(t.ticket_type_id, "General Admission")
        if name not in g["ticket_types"]:
            g["ticket_types"].append(name)
        g["confirmation_ids"].append(t.confirmation_id)
    return list(groups.values())


# ----------------------------
# Senders
# ----------------------------
class EmailSender(ABC):
    @abstractmethod
    async def send(
        self, to: str, subject: str, text: str, html: Optional[str] = None
    ) -> None: ...


class LogEmailSender(EmailSender):
    """Development sender: logs the message and keeps it in `sent`."""

    def __init__(self):
        self.sent: List[Dict[str, str]] = []

    async def send(self, to, subject, text, html=None) -> None:
        self.sent.append(
            {"to": to, "subject": subject, "text": text, "html": html or ""}
        )
        logger.info(
            "email (not sent, no SMTP): to=%s subject=%s", to, subject
        )


class SMTPEmailSender(EmailSender):
    def __init__(
        self, host: str, port: int, username: str, password: str,
        from_addr: str, use_tls: bool = True, timeout: float = 15.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_addr = from_addr
        self.use_tls = use_tls
        self.timeout = timeout

    def _build(self, to, subject, text, html) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.from_addr
        msg["To"] = to
        msg["Subject"] = subject
        msg["Date"] = formatdate(localtime=True)
        msg["Message-ID"] = make_msgid()
        msg.set_content(text)
        if html:
            msg.add_alternative(html, subtype="html")
        return msg

    def _send_sync(self, msg: EmailMessage) -> None:
        if self.port == 465:
            smtp = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        else:
            smtp = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        with smtp:
            if self.use_tls and self.port != 465:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password)
            smtp.send_message(msg)

    async def send(self, to, subject, text, html=None) -> None:
        msg = self._build(to, subject, text, html)
        # smtplib blocks; keep it off the event loop
        await asyncio.to_thread(self._send_sync, msg)
        logger.info("email sent: to=%s subject=%s", to, subject)


def new_sender(settings) -> EmailSender:
    if settings.smtp_host:
        return SMTPEmailSender(
            settings.smtp_host, settings.smtp_port, settings.smtp_user,
            settings.smtp_password, settings.email_from,
            use_tls=settings.smtp_use_tls, timeout=settings.smtp_timeout,
        )
    return LogEmailSender()


# ----------------------------
# Dispatcher
# ----------------------------
class Dispatcher:
    def __init__(self, sender: EmailSender):
        self.sender = sender
        self._tasks: Set[asyncio.Task] = set()

    async def _send_one(self, c: Mapping) -> None:
        try:
            msg = render_confirmation(c)
            async with timeit("notify.send"):
                await self.sender.send(
                    c["attendee_email"], msg["subject"], msg["text"],
                    msg["html"],
                )
        except Exception:
            logger.exception(
                "confirmation email failed: to=%s codes=%s",
                c.get("attendee_email"), c.get("confirmation_ids"),
            )

    def dispatch(self, confirmations: Iterable[Mapping]) -> int:
        n = 0
        for c in confirmations:
            task = asyncio.create_task(self._send_one(c))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            n += 1
        return n

    async def notify_tickets(
        self, session: AsyncSession, event_id: str, tickets: List
    ) -> int:
        """Load what the emails need, then dispatch. Never raises."""
        if not tickets:
            return 0
        try:
            async with atomic(session):
                ev = await session.get(Event, event_id)
                names = dict((await session.execute(
                    select(TicketType.id, TicketType.name).where(
                        TicketType.id.in_({t.ticket_type_id for t in tickets})
                    )
                )).all())
            return self.dispatch(group_by_attendee(
                tickets,
                event_title=ev.title,
                event_date=ev.date,
                event_location=ev.location,
                ticket_type_names=names,
            ))
        except Exception:
            logger.exception(
                "could not schedule confirmation emails: event=%s", event_id
            )
            return 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
