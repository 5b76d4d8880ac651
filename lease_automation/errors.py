"""Exception taxonomy for the lease automation core."""

from __future__ import annotations


class LeaseAutomationError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(LeaseAutomationError):
    """Mail configuration is missing, incomplete or disabled."""

    def __init__(self, message: str, missing: list[str] | None = None):
        super().__init__(message)
        self.missing = missing or []


class ConnectivityError(LeaseAutomationError):
    """The remote relay could not be reached or timed out."""


class TemplateError(LeaseAutomationError):
    """A template could not be resolved or rendered."""


class TemplateNotFoundError(TemplateError):
    """No template with the requested id exists in any store."""

    def __init__(self, template_id: str):
        super().__init__(f"Template not found: {template_id}")
        self.template_id = template_id


class TemplateRenderError(TemplateError):
    """Token substitution failed (syntax error or strict missing key)."""


class DocumentGenerationError(LeaseAutomationError):
    """The document collaborator failed; the run continues without attachment."""


class DeliveryError(LeaseAutomationError):
    """Both the remote and the local delivery paths failed."""


class VaultError(LeaseAutomationError):
    """A vault entry could not be encrypted, decrypted or persisted."""
