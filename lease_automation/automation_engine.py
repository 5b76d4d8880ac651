"""Lease Automation -- Automation Execution Engine.

Runs one automation to completion and reports success as a boolean:

    1. Due/active check (batch-level filter)
    2. Context assembly from the property/tenant directory
    3. Conditional document generation + PDF attachment (non-fatal)
    4. Template resolution, falling back to the automation's name/description
    5. Delivery dispatch: delivery service first, local queue as fallback
    6. Marking the generated document as sent (best effort)
    7. Rescheduling through the automation repository

Only a failure of the rescheduling step (or something genuinely
unexpected) makes a run return ``False``; every other stage degrades and
logs.  Runs inside a batch are strictly sequential.
"""

from __future__ import annotations

import base64
import html
import logging
import re
from datetime import datetime
from typing import Any, Callable, Optional

from .activity import ActivityRecorder
from .collaborators import AutomationRepository, DocumentGenerator, PropertyDirectory
from .config import EngineSettings
from .delivery import MailService
from .errors import DeliveryError, DocumentGenerationError, TemplateError
from .models import (
    Automation,
    Document,
    EmailAttachment,
    EmailOptions,
    EmailResult,
    Property,
)
from .template_engine import TemplateService, format_currency, format_date, format_month, html_to_plaintext

logger = logging.getLogger(__name__)


def due_automations(automations: list[Automation], now: datetime) -> list[Automation]:
    """Active automations whose next execution is at or before ``now``.

    A row whose schedule cannot be compared is logged and skipped.
    """
    due = []
    for automation in automations:
        try:
            if automation.is_due(now):
                due.append(automation)
        except (TypeError, ValueError):
            logger.exception("Skipping automation %s: unreadable schedule %r",
                             automation.id, automation.next_execution)
    return due


def _attachment_name(name: str, day: datetime) -> str:
    stem = re.sub(r"[^\w\-]+", "_", name).strip("_") or "document"
    return f"{stem}_{day.date().isoformat()}.pdf"


class AutomationEngine:
    """Orchestrates automation runs over the injected collaborators."""

    def __init__(
        self,
        automations: AutomationRepository,
        templates: TemplateService,
        mail: MailService,
        *,
        documents: Optional[DocumentGenerator] = None,
        properties: Optional[PropertyDirectory] = None,
        activity: Optional[ActivityRecorder] = None,
        settings: EngineSettings | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.automations = automations
        self.templates = templates
        self.mail = mail
        self.documents = documents
        self.properties = properties
        self.activity = activity or ActivityRecorder(None)
        self.settings = settings or EngineSettings()
        self._clock = clock

    # -------------------------------------------------------------------
    # Batch entry points
    # -------------------------------------------------------------------

    async def execute_all_due_automations(self, owner_id: str) -> int:
        """Run every due automation of ``owner_id``; returns the success count."""
        now = self._clock()
        try:
            automations = await self.automations.list_automations(owner_id)
        except Exception:
            logger.exception("Could not list automations for owner %r", owner_id)
            return 0

        due = due_automations(automations, now)
        logger.info("%d of %d automations due", len(due), len(automations))

        succeeded = 0
        for automation in due:
            try:
                if await self.run_automation(automation):
                    succeeded += 1
            except Exception:
                logger.exception("Unhandled error in automation %s", automation.id)
        logger.info("%d automations executed", succeeded)
        return succeeded

    async def execute_automation(self, automation_id: str) -> bool:
        try:
            automation = await self.automations.get_automation(automation_id)
        except Exception:
            logger.exception("Could not load automation %s", automation_id)
            return False
        if automation is None:
            logger.warning("Automation %s not found", automation_id)
            return False
        return await self.run_automation(automation)

    async def process_email_queue(self) -> int:
        try:
            processed = await self.mail.process_email_queue()
        except Exception:
            logger.exception("Email queue processing failed")
            return 0
        logger.info("%d emails processed", processed)
        return processed

    # -------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------

    async def run_automation(self, automation: Automation) -> bool:
        now = self._clock()
        logger.info("Running automation %s (%s, %s)", automation.id, automation.name, automation.type)

        try:
            context, prop = await self._build_context(automation, now)
            document, attachments = await self._generate_document(automation, context, prop, now)
            options = await self._build_message(automation, context, attachments)

            result = await self._dispatch(options)
            self.activity.record(
                "email_sent" if result.success else "email_failed",
                automation.id,
                to=options.to,
                subject=options.subject,
                backend=result.backend,
                error=result.error,
            )
            if document is not None and result.success:
                await self._mark_document_sent(document)

            rescheduled = automation.rescheduled(now)
            await self.automations.update_automation(rescheduled)
        except Exception as exc:
            logger.exception("Automation %s failed", automation.id)
            self.activity.record("automation_failed", automation.id, error=str(exc))
            return False

        logger.info(
            "Automation %s done; next execution %s",
            automation.id, rescheduled.next_execution.isoformat(),
        )
        self.activity.record(
            "automation_executed",
            automation.id,
            next_execution=rescheduled.next_execution.isoformat(),
        )
        return True

    async def _build_context(
        self, automation: Automation, now: datetime
    ) -> tuple[dict[str, Any], Optional[Property]]:
        context: dict[str, Any] = {
            "current_date": format_date(now.date()),
            "month": format_month(now.date()),
            "landlord_name": self.settings.landlord_name,
            "automation_name": automation.name,
        }
        if not automation.property_id or self.properties is None:
            return context, None

        try:
            prop = await self.properties.get_property(automation.property_id)
        except Exception as exc:
            logger.warning("Property lookup failed for %s: %s", automation.property_id, exc)
            return context, None
        if prop is None:
            logger.warning("Property %s not found for automation %s",
                           automation.property_id, automation.id)
            return context, None

        symbol = self.settings.currency_symbol
        context.update({
            "property_name": prop.name,
            "property_address": prop.address,
            "property_type": prop.type,
            "rent_amount": format_currency(prop.rent, symbol),
            "charges_amount": format_currency(prop.charges, symbol),
            "total_amount": format_currency(prop.total_amount, symbol),
        })
        tenant = prop.tenant
        if tenant is not None:
            context.update({
                "tenant_name": tenant.full_name,
                "tenant_email": tenant.email,
                "tenant_phone": tenant.phone,
                "lease_start_date": format_date(tenant.lease_start),
                "lease_end_date": format_date(tenant.lease_end),
            })
        return context, prop

    async def _generate_document(
        self,
        automation: Automation,
        context: dict[str, Any],
        prop: Optional[Property],
        now: datetime,
    ) -> tuple[Optional[Document], list[EmailAttachment]]:
        template_id = automation.document_template_id
        if not template_id and automation.is_receipt:
            template_id = self.settings.default_receipt_document_template_id
        if not template_id:
            return None, []
        if self.documents is None:
            logger.info("No document generator wired; %s sent without attachment", automation.id)
            return None, []

        tenant_id = prop.tenant.id if prop is not None and prop.tenant is not None else None
        try:
            document = await self.documents.generate_document(
                template_id, context, automation.property_id, tenant_id
            )
            document = await self.documents.save_document(document)
            pdf = await self.documents.generate_pdf(template_id, context)
        except Exception as exc:
            error = DocumentGenerationError(f"template {template_id}: {exc}")
            logger.warning("Document generation failed, continuing without attachment: %s", error)
            self.activity.record("document_failed", automation.id, error=str(error))
            return None, []

        self.activity.record("document_generated", automation.id, document_id=document.id)
        attachment = EmailAttachment(
            filename=_attachment_name(document.name or "document", now),
            content=base64.b64encode(pdf).decode("ascii"),
        )
        return document, [attachment]

    async def _build_message(
        self,
        automation: Automation,
        context: dict[str, Any],
        attachments: list[EmailAttachment],
    ) -> EmailOptions:
        recipient = context.get("tenant_email") or self.settings.fallback_recipient

        if automation.email_template_id:
            try:
                rendered = await self.templates.process_template(automation.email_template_id, context)
            except TemplateError as exc:
                logger.warning("Template %s unusable for %s, using fallback text: %s",
                               automation.email_template_id, automation.id, exc)
            else:
                return EmailOptions(
                    to=[recipient],
                    subject=rendered.subject,
                    html=rendered.content,
                    text=html_to_plaintext(rendered.content),
                    attachments=attachments,
                )

        body = automation.description or self.settings.fallback_body
        return EmailOptions(
            to=[recipient],
            subject=automation.name,
            text=body,
            html=f"<p>{html.escape(body)}</p>",
            attachments=attachments,
        )

    async def _dispatch(self, options: EmailOptions) -> EmailResult:
        """Delivery service when configured, local queue otherwise or on error."""
        try:
            if self.mail.is_configured():
                result = await self.mail.send_email(options)
                if not result.success:
                    logger.error("Delivery failed for '%s': %s", options.subject, result.error)
                return result
            logger.info("Delivery service not configured; handing '%s' to the local queue",
                        options.subject)
        except Exception as exc:
            logger.warning("Delivery service error, falling back to local queue: %s", exc)

        try:
            result = await self.mail.local.queue_email(options)
        except Exception as exc:
            result = EmailResult(success=False, error=str(exc), backend="local")
        if not result.success:
            logger.error("%s", DeliveryError(f"'{options.subject}' not delivered: {result.error}"))
        return result

    async def _mark_document_sent(self, document: Document) -> None:
        try:
            await self.documents.update_document_status(document.id, "sent")
        except Exception as exc:
            logger.warning("Could not mark document %s as sent: %s", document.id, exc)
