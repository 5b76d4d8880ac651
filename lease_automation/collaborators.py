"""Interfaces of the external collaborators the core depends on.

Every collaborator call is a coroutine and is always awaited before the
calling pipeline advances.  Reference implementations live in
``repository.py`` (SQLite), ``data_loader.py`` (workbook),
``delivery.py`` (HTTP relay) and ``activity.py`` (activity log).
"""

from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable

from .models import Automation, Document, EmailTemplate, Property


@runtime_checkable
class AutomationRepository(Protocol):
    """Owner-scoped automation persistence."""

    async def list_automations(self, owner_id: str) -> list[Automation]: ...

    async def get_automation(self, automation_id: str) -> Optional[Automation]: ...

    async def create_automation(self, automation: Automation) -> Automation: ...

    async def update_automation(self, automation: Automation) -> Automation: ...

    async def delete_automation(self, automation_id: str) -> bool: ...


@runtime_checkable
class TemplateRepository(Protocol):
    async def list_templates(self) -> list[EmailTemplate]: ...

    async def get_template(self, template_id: str) -> Optional[EmailTemplate]: ...

    async def create_template(self, template: EmailTemplate) -> EmailTemplate: ...

    async def update_template(self, template: EmailTemplate) -> EmailTemplate: ...

    async def delete_template(self, template_id: str) -> bool: ...


@runtime_checkable
class DocumentGenerator(Protocol):
    """Document generation and PDF rendering.  Failures are non-fatal to delivery."""

    async def generate_document(
        self,
        template_id: str,
        data: dict[str, Any],
        property_id: str | None = None,
        tenant_id: str | None = None,
    ) -> Document: ...

    async def save_document(self, document: Document) -> Document: ...

    async def generate_pdf(self, template_id: str, data: dict[str, Any]) -> bytes: ...

    async def update_document_status(self, document_id: str, status: str) -> None: ...


@runtime_checkable
class PropertyDirectory(Protocol):
    async def get_property(self, property_id: str) -> Optional[Property]: ...


@runtime_checkable
class RemoteRelay(Protocol):
    """Opaque relay call taking ``(config, action | email_options)``.

    Returns the relay's ``{"success": bool, "messageId" | "error": str}``
    payload.  Unreachable relays raise ``ConnectivityError``.
    """

    async def invoke(
        self,
        config: dict[str, Any],
        action: str | None = None,
        email_options: dict[str, Any] | None = None,
    ) -> dict[str, Any]: ...


@runtime_checkable
class ActivitySink(Protocol):
    async def add_activity(self, entry: dict[str, Any]) -> None: ...
