"""Lease Automation - scheduling and notification core.

Recurring automations (rent receipts, payment and insurance reminders,
lease-end notices) are run by a daily scheduler, rendered from templates
and delivered through a remote relay or a local retrying queue.  Mail
credentials live in an encrypted vault.
"""

from .models import (
    Automation,
    AutomationType,
    EmailAttachment,
    EmailOptions,
    EmailResult,
    EmailTemplate,
    Frequency,
    MailConfig,
    MailProvider,
    QueuedEmail,
    SentEmail,
    VaultCategory,
    VaultEntry,
    VerifyResult,
    next_execution_after,
)

from .automation_engine import AutomationEngine
from .context import AppContext, build_context
from .delivery import MailService
from .local_queue import LocalEmailBackend
from .scheduler import AutomationScheduler
from .template_engine import TemplateService
from .vault import Vault

__all__ = [
    "AppContext",
    "Automation",
    "AutomationEngine",
    "AutomationScheduler",
    "AutomationType",
    "EmailAttachment",
    "EmailOptions",
    "EmailResult",
    "EmailTemplate",
    "Frequency",
    "LocalEmailBackend",
    "MailConfig",
    "MailProvider",
    "MailService",
    "QueuedEmail",
    "SentEmail",
    "TemplateService",
    "Vault",
    "VaultCategory",
    "VaultEntry",
    "VerifyResult",
    "build_context",
    "next_execution_after",
]
