"""Application context: explicit construction of every service.

Nothing in the package is a module-level singleton.  ``build_context``
wires the reference implementations from a ``LeaseAutomationConfig``;
tests build an ``AppContext`` by hand with fakes.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Optional

from .activity import ActivityRecorder, SqliteActivityLog
from .automation_engine import AutomationEngine
from .collaborators import DocumentGenerator, PropertyDirectory
from .config import LeaseAutomationConfig, get_config
from .data_loader import WorkbookPropertyDirectory
from .delivery import HttpRelay, MailService
from .local_queue import LocalEmailBackend, SimulatedTransport, SmtpTransport, Transport
from .local_state import LocalStateStore
from .repository import SqliteAutomationRepository, SqliteTemplateRepository
from .scheduler import AutomationScheduler
from .template_engine import TemplateRenderer, TemplateService
from .vault import Vault, VaultCipher

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    config: LeaseAutomationConfig
    state: LocalStateStore
    vault: Vault
    templates: TemplateService
    local: LocalEmailBackend
    mail: MailService
    automations: SqliteAutomationRepository
    activity: ActivityRecorder
    engine: AutomationEngine
    scheduler: AutomationScheduler

    async def close(self) -> None:
        self.scheduler.stop()
        await self.activity.stop()
        self.state.close()


def _build_transport(config: LeaseAutomationConfig) -> Transport:
    if config.queue.transport == "smtp":
        return SmtpTransport(timeout=config.queue.smtp_timeout_seconds)
    if config.queue.transport != "simulated":
        logger.warning("Unknown queue transport %r -- using simulated delivery",
                       config.queue.transport)
    return SimulatedTransport(config.queue.simulated_success_rate, random.Random())


def build_context(
    config: LeaseAutomationConfig | None = None,
    *,
    documents: Optional[DocumentGenerator] = None,
    properties: Optional[PropertyDirectory] = None,
) -> AppContext:
    """Wire the full service graph from configuration.

    A property directory is built from ``storage.properties_xlsx`` when
    the file exists and none is passed in.
    """
    config = config or get_config()
    storage = config.storage

    state = LocalStateStore(storage.resolve(storage.state_db))
    vault = Vault(storage.resolve(storage.vault_db), VaultCipher.from_settings(config.vault))
    records_db = storage.resolve(storage.records_db)

    templates = TemplateService(
        SqliteTemplateRepository(records_db),
        state,
        TemplateRenderer(config.templates.missing_key_policy),
        cache_ttl_seconds=config.templates.cache_ttl_seconds,
        seed_defaults=config.templates.seed_defaults,
        receipt_document_template_id=config.engine.default_receipt_document_template_id,
    )

    local = LocalEmailBackend(
        state,
        _build_transport(config),
        max_attempts=config.queue.max_attempts,
        retry_interval_seconds=config.queue.retry_interval_seconds,
    )
    relay = None
    if config.relay.enabled:
        relay = HttpRelay(config.relay.url, config.relay.api_key, config.relay.timeout_seconds)
    mail = MailService(local, vault, relay)

    if properties is None:
        register = storage.resolve(storage.properties_xlsx)
        if register.exists():
            properties = WorkbookPropertyDirectory(register)
        else:
            logger.info("No property register at %s; contexts will omit property fields", register)

    automations = SqliteAutomationRepository(records_db)
    activity = ActivityRecorder(SqliteActivityLog(records_db), config.engine.activity_queue_size)
    engine = AutomationEngine(
        automations,
        templates,
        mail,
        documents=documents,
        properties=properties,
        activity=activity,
        settings=config.engine,
    )
    scheduler = AutomationScheduler(
        engine,
        config.scheduler.owner_id,
        state=state,
        check_interval_ms=config.scheduler.check_interval_ms,
        trigger_hour=config.scheduler.trigger_hour,
    )
    return AppContext(
        config=config,
        state=state,
        vault=vault,
        templates=templates,
        local=local,
        mail=mail,
        automations=automations,
        activity=activity,
        engine=engine,
        scheduler=scheduler,
    )
