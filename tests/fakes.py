"""In-memory collaborators and test doubles shared by the test modules."""

from lease_automation.errors import DeliveryError
from lease_automation.models import Document


# ============================================================================
# Fake collaborators
# ============================================================================

class FakeAutomationRepository:
    """Dict-backed AutomationRepository."""

    def __init__(self, automations=()):
        self.items = {a.id: a for a in automations}
        self.updates = []
        self.fail_update_ids = set()
        self.fail_list = False

    async def list_automations(self, owner_id):
        if self.fail_list:
            raise RuntimeError("database offline")
        return [a for a in self.items.values() if a.owner_id == owner_id]

    async def get_automation(self, automation_id):
        return self.items.get(automation_id)

    async def create_automation(self, automation):
        self.items[automation.id] = automation
        return automation

    async def update_automation(self, automation):
        if automation.id in self.fail_update_ids:
            raise RuntimeError(f"cannot update {automation.id}")
        self.items[automation.id] = automation
        self.updates.append(automation)
        return automation

    async def delete_automation(self, automation_id):
        return self.items.pop(automation_id, None) is not None


class FakeTemplateRepository:
    """Dict-backed TemplateRepository; ``fail`` makes every call raise."""

    def __init__(self, templates=()):
        self.items = {t.id: t for t in templates}
        self.created = []
        self.fail = False

    def _check(self):
        if self.fail:
            raise ConnectionError("template store unreachable")

    async def list_templates(self):
        self._check()
        return list(self.items.values())

    async def get_template(self, template_id):
        self._check()
        return self.items.get(template_id)

    async def create_template(self, template):
        self._check()
        self.items[template.id] = template
        self.created.append(template)
        return template

    async def update_template(self, template):
        self._check()
        self.items[template.id] = template
        return template

    async def delete_template(self, template_id):
        self._check()
        return self.items.pop(template_id, None) is not None


class FakeDocumentGenerator:
    """Records every call; ``fail`` makes generation raise."""

    PDF_BYTES = b"%PDF-1.4 fake receipt"

    def __init__(self):
        self.generated = []
        self.status_updates = []
        self.fail = False

    async def generate_document(self, template_id, data, property_id, tenant_id):
        if self.fail:
            raise RuntimeError("renderer crashed")
        self.generated.append((template_id, dict(data), property_id, tenant_id))
        return Document(
            id=f"doc-{len(self.generated)}",
            template_id=template_id,
            name="Rent receipt",
            property_id=property_id,
            tenant_id=tenant_id,
        )

    async def save_document(self, document):
        return document

    async def generate_pdf(self, template_id, data):
        return self.PDF_BYTES

    async def update_document_status(self, document_id, status):
        self.status_updates.append((document_id, status))


class FakePropertyDirectory:
    def __init__(self, properties=()):
        self.properties = {p.id: p for p in properties}

    async def get_property(self, property_id):
        return self.properties.get(property_id)


class FakeRelay:
    """RemoteRelay returning a canned payload, or raising ``error``."""

    def __init__(self, response=None, error=None):
        self.response = response if response is not None else {"success": True, "messageId": "relay-1"}
        self.error = error
        self.calls = []

    async def invoke(self, config, action=None, email_options=None):
        self.calls.append({"config": config, "action": action, "email_options": email_options})
        if self.error is not None:
            raise self.error
        return dict(self.response)


class FakeActivitySink:
    def __init__(self):
        self.entries = []

    async def add_activity(self, entry):
        self.entries.append(entry)

    @property
    def actions(self):
        return [e["action"] for e in self.entries]


class RecordingTransport:
    """Transport that records deliveries; addresses in ``failing`` are refused."""

    def __init__(self, fail_all=False):
        self.fail_all = fail_all
        self.failing = set()
        self.sent = []

    async def send(self, config, options):
        if self.fail_all or self.failing.intersection(options.to):
            raise DeliveryError("mailbox unavailable")
        self.sent.append(options)


class FixedClock:
    """Settable clock callable."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

