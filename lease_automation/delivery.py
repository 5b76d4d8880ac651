"""
Lease Automation -- Delivery Service

Sends a fully rendered message through one of two interchangeable backends:

    RelayBackend  -- remote HTTP relay that performs the SMTP handoff
    LocalEmailBackend -- local queue drained later by process_email_queue

``MailService`` picks the relay when one is wired and falls back to the
local queue on relay-side errors or when the relay is unreachable.  The
mail configuration is read from the vault, with the local state copy as a
fallback.

Relay wire format (JSON POST)::

    {"config": {...}, "action": "verify"}
    {"config": {...}, "emailOptions": {...}}
    -> {"success": true, "messageId": "..."} | {"success": false, "error": "..."}
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

import httpx

from .collaborators import RemoteRelay
from .errors import ConfigurationError, ConnectivityError, DeliveryError, VaultError
from .local_queue import LocalEmailBackend
from .models import EmailOptions, EmailResult, MailConfig, MailProvider, VerifyResult
from .vault import Vault

logger = logging.getLogger(__name__)

TEST_EMAIL_SUBJECT = "Test email"
TEST_EMAIL_BODY = (
    "This is a test email sent from your property management workspace.\n\n"
    "If you received it, your mail configuration works."
)


class DeliveryBackend(Protocol):
    name: str

    async def verify_connection(self, config: MailConfig | None = None) -> VerifyResult: ...

    async def send(self, config: MailConfig | None, options: EmailOptions) -> EmailResult: ...


# ===========================================================================
# Remote relay
# ===========================================================================

class HttpRelay:
    """Relay client over httpx.

    Args:
        url: Relay endpoint receiving the JSON payload.
        api_key: Optional bearer token.
        timeout: Seconds before the call is treated as unreachable.
        transport: Optional httpx transport (``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = httpx.Timeout(timeout, connect=min(timeout, 10.0))
        self._transport = transport

    async def invoke(
        self,
        config: dict[str, Any],
        action: str | None = None,
        email_options: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"config": config}
        if action:
            payload["action"] = action
        if email_options is not None:
            payload["emailOptions"] = email_options

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                r = await client.post(self.url, json=payload, headers=headers)
            except httpx.TimeoutException as exc:
                raise ConnectivityError(f"Relay timed out: {exc}") from exc
            except httpx.HTTPError as exc:
                raise ConnectivityError(f"Relay unreachable: {exc}") from exc

        if r.status_code >= 500:
            raise ConnectivityError(f"Relay returned HTTP {r.status_code}")
        try:
            data = r.json()
        except ValueError as exc:
            raise ConnectivityError("Relay returned a non-JSON response") from exc
        if not isinstance(data, dict):
            raise ConnectivityError("Relay returned an unexpected payload")
        if not r.is_success and "success" not in data:
            return {"success": False, "error": f"Relay rejected the request (HTTP {r.status_code})"}
        return data


class RelayBackend:
    """Adapts a RemoteRelay collaborator to the delivery backend interface."""

    name = "remote"

    def __init__(self, relay: RemoteRelay):
        self.relay = relay

    async def verify_connection(self, config: MailConfig | None = None) -> VerifyResult:
        if config is None:
            return VerifyResult(success=False, error="Mail configuration not found", backend=self.name)
        data = await self.relay.invoke(config.to_dict(), action="verify")
        return VerifyResult(
            success=bool(data.get("success")),
            error=data.get("error"),
            backend=self.name,
        )

    async def send(self, config: MailConfig | None, options: EmailOptions) -> EmailResult:
        if config is None:
            return EmailResult(success=False, error="Mail configuration not found", backend=self.name)
        data = await self.relay.invoke(config.to_dict(), email_options=options.to_dict())
        return EmailResult(
            success=bool(data.get("success")),
            message_id=data.get("messageId"),
            error=data.get("error"),
            backend=self.name,
        )


# ===========================================================================
# Mail service
# ===========================================================================

class MailService:
    """Delivery facade: remote relay first, local queue as fallback."""

    def __init__(
        self,
        local: LocalEmailBackend,
        vault: Vault | None = None,
        relay: RemoteRelay | None = None,
    ):
        self.local = local
        self.vault = vault
        self.remote = RelayBackend(relay) if relay is not None else None

    # -------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------

    def get_config(self) -> Optional[MailConfig]:
        if self.vault is not None:
            try:
                config = self.vault.get_mail_config()
            except VaultError as exc:
                logger.error("Could not read mail configuration from the vault: %s", exc)
                config = None
            if config is not None:
                return config
        return self.local.get_config()

    def save_config(self, config: MailConfig) -> MailConfig:
        """Validate and persist ``config`` (full replace).

        Raises:
            ConfigurationError: A mandatory field is empty.
        """
        missing = config.validate()
        if missing:
            raise ConfigurationError(
                f"Mail configuration incomplete: {', '.join(missing)}", missing=missing
            )
        if self.vault is not None:
            self.vault.store_mail_config(config)
        self.local.save_config(config)
        return config

    @staticmethod
    def apply_provider_preset(config: MailConfig, provider: MailProvider | str) -> MailConfig:
        if not isinstance(provider, MailProvider):
            provider = MailProvider.parse(provider)
        return config.with_provider(provider)

    def is_configured(self) -> bool:
        config = self.get_config()
        return config is not None and config.enabled

    # -------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------

    async def verify_connection(self) -> VerifyResult:
        config = self.get_config()
        if config is None:
            return VerifyResult(success=False, error="Mail configuration not found")
        if self.remote is None:
            return await self.local.verify_connection(config)
        try:
            return await self.remote.verify_connection(config)
        except ConnectivityError as exc:
            logger.warning("Relay unreachable, using local connectivity probe: %s", exc)
        except Exception:
            logger.exception("Relay verification failed, checking locally instead")
        return await self.local.verify_connection(config)

    async def send_email(self, options: EmailOptions) -> EmailResult:
        config = self.get_config()
        if config is None:
            logger.warning("Cannot send '%s': mail configuration not found", options.subject)
            return EmailResult(success=False, error="Mail configuration not found")
        if not config.enabled:
            logger.warning("Cannot send '%s': mail service is disabled", options.subject)
            return EmailResult(success=False, error="Mail service is disabled")

        if self.remote is None:
            return await self.local.queue_email(options, config)

        remote_error: str | None
        try:
            result = await self.remote.send(config, options)
            if result.success:
                logger.info("Relay accepted email to %s (%s)", ", ".join(options.to), result.message_id)
                return result
            remote_error = result.error or "relay reported failure"
        except ConnectivityError as exc:
            remote_error = str(exc)
        except Exception as exc:
            logger.exception("Relay raised while sending '%s'", options.subject)
            remote_error = str(exc) or type(exc).__name__
        logger.warning("Relay delivery failed, falling back to local queue: %s", remote_error)

        result = await self.local.queue_email(options, config)
        if not result.success:
            err = DeliveryError(f"remote: {remote_error}; local: {result.error}")
            logger.error("Both delivery paths failed for '%s': %s", options.subject, err)
        return result

    async def send_test_email(self, to: str) -> EmailResult:
        return await self.send_email(EmailOptions(
            to=[to],
            subject=TEST_EMAIL_SUBJECT,
            text=TEST_EMAIL_BODY,
            html="<p>" + TEST_EMAIL_BODY.replace("\n\n", "</p><p>") + "</p>",
        ))

    async def process_email_queue(self) -> int:
        return await self.local.process_email_queue(self.get_config())
