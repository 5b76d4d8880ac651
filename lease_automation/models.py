"""Data models for the lease automation core.

All models are plain dataclasses with type hints.  No ORM, no Pydantic --
persistence goes through ``to_dict()`` / ``from_dict()`` and JSON columns.

Datetimes are naive local wall-clock values for scheduling fields
(``next_execution``, ``last_execution``) because the daily gate compares
them against the host clock.  Audit timestamps are UTC ISO-8601 strings.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Self


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Frequency(Enum):
    """Recurrence of an automation.  Anything else advances by one day."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class AutomationType(Enum):
    """Categories of recurring task."""

    RENT_REVIEW = "rent_review"
    RECEIPT = "receipt"
    NOTICE = "notice"
    INSURANCE = "insurance"
    MAINTENANCE = "maintenance"
    REMINDER = "reminder"


class TemplateCategory(Enum):
    TENANT = "tenant"
    PROPERTY = "property"
    FINANCIAL = "financial"
    ADMINISTRATIVE = "administrative"
    OTHER = "other"


class VaultCategory(Enum):
    MAIL = "mail"
    DATABASE = "database"
    API = "api"
    SYSTEM = "system"
    SECURITY = "security"


class MailProvider(Enum):
    """Known SMTP providers.  OTHER leaves host/port/secure editable."""

    OVH = "ovh"
    GMAIL = "gmail"
    OUTLOOK = "outlook"
    SENDGRID = "sendgrid"
    MAILGUN = "mailgun"
    OTHER = "other"

    @classmethod
    def parse(cls, raw: str | None) -> MailProvider:
        for provider in cls:
            if provider.value == (raw or "").strip().lower():
                return provider
        return cls.OTHER


# provider -> (host, port, secure)
PROVIDER_PRESETS: dict[MailProvider, tuple[str, int, bool]] = {
    MailProvider.OVH:      ("ssl0.ovh.net", 465, True),
    MailProvider.GMAIL:    ("smtp.gmail.com", 587, False),
    MailProvider.OUTLOOK:  ("smtp-mail.outlook.com", 587, False),
    MailProvider.SENDGRID: ("smtp.sendgrid.net", 587, False),
    MailProvider.MAILGUN:  ("smtp.mailgun.org", 587, False),
}

DEFAULT_SMTP_PORT = 587


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------

def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _naive_local(value: datetime) -> datetime:
    # Schedules compare against naive local wall-clock time.
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


def _parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO string (or pass through a datetime).  Bad input -> None.

    Offset-aware values such as ``2025-01-10T09:00:00.000Z`` are converted
    to naive local time.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _naive_local(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    try:
        return _naive_local(datetime.fromisoformat(str(value)))
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Cadence
# ---------------------------------------------------------------------------

def _add_months(anchor: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = anchor.month - 1 + months
    year = anchor.year + month_index // 12
    month = month_index % 12 + 1
    day = min(anchor.day, calendar.monthrange(year, month)[1])
    return anchor.replace(year=year, month=month, day=day)


def next_execution_after(anchor: datetime, frequency: str | Frequency) -> datetime:
    """Advance ``anchor`` by one cadence step for ``frequency``.

    daily -> +1 day, weekly -> +7 days, monthly -> +1 calendar month,
    yearly -> +1 calendar year, anything else -> +1 day.

    >>> next_execution_after(datetime(2025, 1, 31), "monthly")
    datetime.datetime(2025, 2, 28, 0, 0)
    """
    value = frequency.value if isinstance(frequency, Frequency) else str(frequency).lower()
    if value == Frequency.WEEKLY.value:
        return anchor + timedelta(days=7)
    if value == Frequency.MONTHLY.value:
        return _add_months(anchor, 1)
    if value == Frequency.YEARLY.value:
        return _add_months(anchor, 12)
    return anchor + timedelta(days=1)


# ---------------------------------------------------------------------------
# Automations
# ---------------------------------------------------------------------------

@dataclass
class Automation:
    """A stored rule that periodically sends a templated email.

    ``frequency`` and ``type`` are kept as strings so that rows written by
    the admin surface with values outside the known enums still load.
    """

    id: str
    name: str
    next_execution: datetime
    frequency: str = Frequency.MONTHLY.value
    type: str = AutomationType.REMINDER.value
    description: str = ""
    active: bool = True
    last_execution: datetime | None = None
    property_id: str | None = None
    email_template_id: str | None = None
    document_template_id: str | None = None
    execution_time: str = "09:00"           # informational only
    owner_id: str = ""

    def __post_init__(self) -> None:
        if isinstance(self.next_execution, datetime):
            self.next_execution = _naive_local(self.next_execution)
        if isinstance(self.last_execution, datetime):
            self.last_execution = _naive_local(self.last_execution)

    @property
    def is_receipt(self) -> bool:
        return self.type == AutomationType.RECEIPT.value

    def is_due(self, now: datetime) -> bool:
        return self.active and self.next_execution <= now

    def rescheduled(self, now: datetime) -> Self:
        """Return a copy stamped with ``last_execution = now`` and the next slot."""
        anchor = self.next_execution or self.last_execution or now
        return replace(
            self,
            last_execution=now,
            next_execution=next_execution_after(anchor, self.frequency),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "type": self.type,
            "frequency": self.frequency,
            "next_execution": _iso(self.next_execution),
            "last_execution": _iso(self.last_execution),
            "active": self.active,
            "property_id": self.property_id,
            "email_template_id": self.email_template_id,
            "document_template_id": self.document_template_id,
            "execution_time": self.execution_time,
            "owner_id": self.owner_id,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Self:
        return cls(
            id=str(d["id"]),
            name=str(d.get("name", "")),
            description=str(d.get("description") or ""),
            type=str(d.get("type") or AutomationType.REMINDER.value),
            frequency=str(d.get("frequency") or Frequency.MONTHLY.value),
            next_execution=_parse_datetime(d.get("next_execution")) or datetime.now(),
            last_execution=_parse_datetime(d.get("last_execution")),
            active=bool(d.get("active", True)),
            property_id=d.get("property_id") or None,
            email_template_id=d.get("email_template_id") or None,
            document_template_id=d.get("document_template_id") or None,
            execution_time=str(d.get("execution_time") or "09:00"),
            owner_id=str(d.get("owner_id") or ""),
        )


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

@dataclass
class EmailTemplate:
    """A named subject/body pair with ``{{token}}`` placeholders."""

    id: str
    name: str
    subject: str
    content: str
    category: str = TemplateCategory.OTHER.value
    document_template_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "subject": self.subject,
            "content": self.content,
            "category": self.category,
            "document_template_id": self.document_template_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Self:
        return cls(
            id=str(d.get("id") or ""),
            name=str(d.get("name", "")),
            subject=str(d.get("subject", "")),
            content=str(d.get("content", "")),
            category=str(d.get("category") or TemplateCategory.OTHER.value),
            document_template_id=d.get("document_template_id") or None,
            created_at=d.get("created_at"),
            updated_at=d.get("updated_at"),
        )


@dataclass(frozen=True)
class RenderedTemplate:
    subject: str
    content: str
    document_template_id: str | None = None


# ---------------------------------------------------------------------------
# Outbound email
# ---------------------------------------------------------------------------

@dataclass
class EmailAttachment:
    filename: str
    content: str                            # base64 payload
    content_type: str = "application/pdf"
    encoding: str = "base64"

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "content": self.content,
            "contentType": self.content_type,
            "encoding": self.encoding,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Self:
        return cls(
            filename=str(d.get("filename", "")),
            content=str(d.get("content", "")),
            content_type=str(d.get("contentType") or d.get("content_type") or "application/pdf"),
            encoding=str(d.get("encoding") or "base64"),
        )


@dataclass
class EmailOptions:
    """A fully rendered outbound message."""

    to: list[str]
    subject: str
    text: str = ""
    html: str = ""
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    attachments: list[EmailAttachment] = field(default_factory=list)

    def __post_init__(self) -> None:
        if isinstance(self.to, str):
            self.to = [self.to]

    def to_dict(self) -> dict[str, Any]:
        """Camel-cased keys; this is also the relay's wire format."""
        payload: dict[str, Any] = {
            "to": list(self.to),
            "subject": self.subject,
            "text": self.text,
            "html": self.html,
        }
        if self.cc:
            payload["cc"] = list(self.cc)
        if self.bcc:
            payload["bcc"] = list(self.bcc)
        if self.attachments:
            payload["attachments"] = [a.to_dict() for a in self.attachments]
        return payload

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Self:
        return cls(
            to=list(d.get("to") or []),
            subject=str(d.get("subject", "")),
            text=str(d.get("text") or ""),
            html=str(d.get("html") or ""),
            cc=list(d.get("cc") or []),
            bcc=list(d.get("bcc") or []),
            attachments=[EmailAttachment.from_dict(a) for a in d.get("attachments") or []],
        )


@dataclass
class QueuedEmail:
    """A locally staged message awaiting a delivery attempt."""

    id: str
    options: EmailOptions
    created_at: str
    attempts: int = 0
    last_attempt: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "options": self.options.to_dict(),
            "created_at": self.created_at,
            "attempts": self.attempts,
            "last_attempt": self.last_attempt,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Self:
        return cls(
            id=str(d["id"]),
            options=EmailOptions.from_dict(d.get("options") or {}),
            created_at=str(d.get("created_at") or ""),
            attempts=int(d.get("attempts") or 0),
            last_attempt=d.get("last_attempt"),
            error=d.get("error"),
        )


@dataclass(frozen=True)
class SentEmail:
    """Append-only record of a terminal delivery outcome."""

    id: str
    to: list[str]
    subject: str
    sent_at: str
    success: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "to": list(self.to),
            "subject": self.subject,
            "sent_at": self.sent_at,
            "success": self.success,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Self:
        return cls(
            id=str(d["id"]),
            to=list(d.get("to") or []),
            subject=str(d.get("subject", "")),
            sent_at=str(d.get("sent_at") or ""),
            success=bool(d.get("success")),
            error=d.get("error"),
        )


@dataclass(frozen=True)
class EmailResult:
    success: bool
    message_id: str | None = None
    error: str | None = None
    backend: str = ""


@dataclass(frozen=True)
class VerifyResult:
    success: bool
    error: str | None = None
    backend: str = ""


# ---------------------------------------------------------------------------
# Mail configuration
# ---------------------------------------------------------------------------

@dataclass
class MailConfig:
    """SMTP account used by both delivery backends."""

    host: str
    port: int
    username: str
    password: str
    from_address: str
    secure: bool = False
    reply_to: str | None = None
    enabled: bool = True
    provider: MailProvider = MailProvider.OTHER

    def validate(self) -> list[str]:
        """Return the names of mandatory fields that are empty."""
        missing = []
        for name in ("host", "port", "username", "password", "from_address"):
            if not getattr(self, name):
                missing.append(name)
        return missing

    def with_provider(self, provider: MailProvider) -> Self:
        """Return a copy with host/port/secure filled from the provider preset."""
        preset = PROVIDER_PRESETS.get(provider)
        if preset is None:
            return replace(self, provider=provider, port=self.port or DEFAULT_SMTP_PORT)
        host, port, secure = preset
        return replace(self, provider=provider, host=host, port=port, secure=secure)

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "secure": self.secure,
            "username": self.username,
            "password": self.password,
            "from": self.from_address,
            "replyTo": self.reply_to,
            "enabled": self.enabled,
            "provider": self.provider.value,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Self:
        return cls(
            host=str(d.get("host") or ""),
            port=int(d.get("port") or 0),
            username=str(d.get("username") or ""),
            password=str(d.get("password") or ""),
            from_address=str(d.get("from") or d.get("from_address") or ""),
            secure=bool(d.get("secure", False)),
            reply_to=d.get("replyTo") or d.get("reply_to") or None,
            enabled=bool(d.get("enabled", True)),
            provider=MailProvider.parse(d.get("provider")),
        )


# ---------------------------------------------------------------------------
# Vault
# ---------------------------------------------------------------------------

@dataclass
class VaultEntry:
    key: str
    value: str
    encrypted: bool = False
    description: str = ""
    category: VaultCategory = VaultCategory.SYSTEM
    created_at: str | None = None
    updated_at: str | None = None


# ---------------------------------------------------------------------------
# Collaborator records
# ---------------------------------------------------------------------------

@dataclass
class Tenant:
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    lease_start: date | None = None
    lease_end: date | None = None
    id: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class Property:
    id: str
    name: str
    address: str = ""
    type: str = ""
    rent: float = 0.0
    charges: float = 0.0
    tenant: Tenant | None = None

    @property
    def total_amount(self) -> float:
        return self.rent + self.charges


@dataclass
class Document:
    """A generated document record owned by the document collaborator."""

    id: str
    template_id: str
    name: str = ""
    status: str = "generated"
    property_id: str | None = None
    tenant_id: str | None = None
    content: str = ""
