"""Tests for lease_automation.template_engine.

Covers:
- Token substitution and the three missing-key policies
- Formatting helpers and the HTML -> plain text conversion
- TemplateService catalogue: seeding, TTL cache, repository failures
- Template CRUD and resolution
"""

from datetime import date

import pytest
from jinja2 import TemplateNotFound

from fakes import FakeTemplateRepository
from lease_automation.errors import TemplateNotFoundError, TemplateRenderError
from lease_automation.local_state import EMAIL_TEMPLATES
from lease_automation.models import EmailTemplate, TemplateCategory
from lease_automation.template_engine import (
    DEFAULT_RECEIPT_DOCUMENT_TEMPLATE_ID,
    MissingKeyPolicy,
    TemplateRenderer,
    TemplateService,
    default_templates,
    format_currency,
    format_date,
    format_month,
    html_to_plaintext,
)


class TickingClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _template(template_id="tpl-1", **overrides) -> EmailTemplate:
    defaults = dict(
        id=template_id,
        name="Payment reminder",
        subject="Reminder for {{month}}",
        content="<p>Hi {{tenant_name}}, {{rent_amount}} is due.</p>",
        category=TemplateCategory.FINANCIAL.value,
    )
    defaults.update(overrides)
    return EmailTemplate(**defaults)


# ============================================================================
# Token substitution
# ============================================================================

class TestTemplateRenderer:

    def test_known_token_replaced(self):
        assert TemplateRenderer().render("Hi {{name}}", {"name": "Ana"}) == "Hi Ana"

    def test_keep_policy_leaves_token(self):
        assert TemplateRenderer("keep").render("Hi {{name}}", {}) == "Hi {{name}}"

    def test_empty_policy_blanks_token(self):
        assert TemplateRenderer("empty").render("Hi {{name}}", {}) == "Hi "

    def test_error_policy_raises(self):
        with pytest.raises(TemplateRenderError):
            TemplateRenderer("error").render("Hi {{name}}", {})

    def test_every_occurrence_replaced(self):
        rendered = TemplateRenderer().render("{{a}} and {{a}} and {{b}}", {"a": "x", "b": "y"})
        assert rendered == "x and x and y"

    def test_none_renders_empty(self):
        assert TemplateRenderer().render("[{{name}}]", {"name": None}) == "[]"

    def test_numbers_rendered_as_text(self):
        assert TemplateRenderer().render("{{n}} units", {"n": 3}) == "3 units"

    def test_values_are_not_escaped(self):
        assert TemplateRenderer().render("{{v}}", {"v": "<b>bold</b>"}) == "<b>bold</b>"

    def test_plain_text_passes_through(self):
        assert TemplateRenderer().render("No tokens here", {"x": 1}) == "No tokens here"

    def test_unbalanced_braces_pass_through(self):
        assert TemplateRenderer().render("Hi {{ name", {"name": "Ana"}) == "Hi {{ name"

    @pytest.mark.parametrize("source", [
        "Hi {{ name }}!",
        "Hi {{tenant.name}}!",
        "Hi {{first-name}}!",
        "Hi {{ lease end }}!",
    ])
    def test_unmatched_tokens_kept_byte_for_byte(self, source):
        assert TemplateRenderer("keep").render(source, {}) == source

    @pytest.mark.parametrize("source,data", [
        ("Hi {{ name }}!", {"name": "Ana"}),
        ("Hi {{tenant.name}}!", {"tenant.name": "Ana"}),
        ("Hi {{first-name}}!", {"first-name": "Ana"}),
    ])
    def test_any_key_shape_is_looked_up_exactly(self, source, data):
        assert TemplateRenderer().render(source, data) == "Hi Ana!"

    def test_empty_policy_blanks_unusual_keys(self):
        assert TemplateRenderer("empty").render("[{{tenant.name}}]", {}) == "[]"

    def test_substituted_values_are_not_rescanned(self):
        rendered = TemplateRenderer().render("{{a}}", {"a": "{{b}}", "b": "x"})
        assert rendered == "{{b}}"

    @pytest.mark.parametrize("payload", [
        "{{ cycler.__init__.__globals__.os.getcwd() }}",
        "{{ ''.__class__.__mro__ }}",
        "{% for x in range(3) %}{{ x }}{% endfor %}",
        "{{ 7 * 7 }}",
    ])
    def test_template_text_is_never_evaluated(self, payload):
        assert TemplateRenderer("keep").render(payload, {}) == payload
        assert "49" not in TemplateRenderer("empty").render(payload, {})

    def test_missing_tokens(self):
        renderer = TemplateRenderer()
        assert renderer.missing_tokens("{{a}} {{b}}", {"a": "1"}) == {"b"}

    def test_tokens_in_order_of_appearance(self):
        assert TemplateRenderer.tokens("{{b}} {{ a }} {{b}}") == ["b", "a"]

    def test_missing_token_logged(self, caplog):
        TemplateRenderer().render("Hi {{name}}", {}, label="greeting")
        assert "greeting" in caplog.text
        assert "name" in caplog.text

    @pytest.mark.parametrize("raw,expected", [
        ("keep", MissingKeyPolicy.KEEP),
        ("EMPTY", MissingKeyPolicy.EMPTY),
        (MissingKeyPolicy.ERROR, MissingKeyPolicy.ERROR),
        ("bogus", MissingKeyPolicy.KEEP),
    ])
    def test_policy_parse(self, raw, expected):
        assert MissingKeyPolicy.parse(raw) is expected


# ============================================================================
# Formatting helpers
# ============================================================================

class TestFormatting:

    @pytest.mark.parametrize("amount,symbol,expected", [
        (1510, "$", "$1,510.00"),
        (0.5, "$", "$0.50"),
        (None, "$", "$0.00"),
        (950, "€", "€950.00"),
    ])
    def test_format_currency(self, amount, symbol, expected):
        assert format_currency(amount, symbol) == expected

    def test_format_date(self):
        assert format_date(date(2026, 2, 5)) == "Feb 05, 2026"
        assert format_date(None) == ""

    def test_format_month(self):
        assert format_month(date(2025, 1, 15)) == "January 2025"

    def test_html_to_plaintext(self):
        html = "<p>Hello&nbsp;Ana</p><ul><li>Rent</li><li>Charges</li></ul><p>Bye<br>Me</p>"
        text = html_to_plaintext(html)
        assert "<" not in text
        assert "- Rent" in text
        assert "- Charges" in text
        assert "Bye\nMe" in text

    def test_html_links_keep_target(self):
        assert html_to_plaintext('<a href="https://example.com">site</a>') == "site (https://example.com)"


# ============================================================================
# Default catalogue
# ============================================================================

class TestDefaultTemplates:

    def test_six_defaults(self):
        templates = default_templates()
        assert len(templates) == 6
        assert len({t.id for t in templates}) == 6

    def test_only_receipt_linked_to_document(self):
        linked = [t for t in default_templates() if t.document_template_id]
        assert [t.id for t in linked] == ["default_rent_receipt"]
        assert linked[0].document_template_id == DEFAULT_RECEIPT_DOCUMENT_TEMPLATE_ID

    def test_bodies_loaded_from_files(self):
        for template in default_templates():
            assert "{{" in template.content

    def test_bodies_kept_as_raw_source(self):
        receipt = next(t for t in default_templates() if t.id == "default_rent_receipt")
        assert "{{tenant_name}}" in receipt.content
        assert TemplateRenderer.tokens(receipt.content)

    def test_missing_body_file(self, tmp_path):
        with pytest.raises(TemplateNotFound):
            default_templates(template_dir=tmp_path)


# ============================================================================
# Catalogue cache
# ============================================================================

class TestTemplateCatalogue:

    @pytest.mark.asyncio
    async def test_empty_store_seeds_defaults(self, state):
        service = TemplateService(None, state)
        templates = await service.get_templates()
        assert len(templates) == 6
        assert len(state.load(EMAIL_TEMPLATES)) == 6

    @pytest.mark.asyncio
    async def test_seeding_persists_to_repository(self, state):
        repo = FakeTemplateRepository()
        service = TemplateService(repo, state)
        await service.get_templates()
        assert len(repo.created) == 6

    @pytest.mark.asyncio
    async def test_seeding_disabled(self, state):
        service = TemplateService(FakeTemplateRepository(), state, seed_defaults=False)
        assert await service.get_templates() == []

    @pytest.mark.asyncio
    async def test_cache_served_within_ttl(self, state):
        clock = TickingClock()
        repo = FakeTemplateRepository([_template("tpl-1")])
        service = TemplateService(repo, state, cache_ttl_seconds=300, clock=clock)

        assert len(await service.get_templates()) == 1
        repo.items["tpl-2"] = _template("tpl-2")
        clock.now += 299
        assert len(await service.get_templates()) == 1
        clock.now += 2
        assert len(await service.get_templates()) == 2

    @pytest.mark.asyncio
    async def test_invalidate_forces_refresh(self, state):
        repo = FakeTemplateRepository([_template("tpl-1")])
        service = TemplateService(repo, state, clock=TickingClock())
        await service.get_templates()
        repo.items["tpl-2"] = _template("tpl-2")
        service.invalidate_cache()
        assert {t.id for t in await service.get_templates()} == {"tpl-1", "tpl-2"}

    @pytest.mark.asyncio
    async def test_refresh_failure_keeps_last_cache(self, state):
        clock = TickingClock()
        repo = FakeTemplateRepository([_template("tpl-1")])
        service = TemplateService(repo, state, clock=clock)
        await service.get_templates()

        repo.fail = True
        clock.now += 1000
        assert [t.id for t in await service.get_templates()] == ["tpl-1"]

    @pytest.mark.asyncio
    async def test_cold_start_failure_uses_fallback_store(self, state):
        state.save(EMAIL_TEMPLATES, [_template("tpl-local").to_dict()])
        repo = FakeTemplateRepository()
        repo.fail = True
        service = TemplateService(repo, state)
        assert [t.id for t in await service.get_templates()] == ["tpl-local"]

    @pytest.mark.asyncio
    async def test_templates_by_category(self, state):
        service = TemplateService(None, state)
        financial = await service.get_templates_by_category(TemplateCategory.FINANCIAL)
        assert {t.id for t in financial} == {
            "default_rent_receipt", "default_payment_reminder", "default_rent_revision",
        }


# ============================================================================
# CRUD
# ============================================================================

class TestTemplateCrud:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("template_id", ["", "template_1736930000000"])
    async def test_new_template_gets_real_id(self, state, template_id):
        repo = FakeTemplateRepository([_template("tpl-1")])
        service = TemplateService(repo, state)
        saved = await service.save_template(_template(template_id, name="Fresh"))

        assert saved.id not in ("", template_id)
        assert saved.created_at is not None
        assert saved.id in repo.items
        templates = await service.get_templates()
        assert templates[0].id == saved.id

    @pytest.mark.asyncio
    async def test_update_replaces_in_place(self, state):
        repo = FakeTemplateRepository([_template("tpl-1"), _template("tpl-2")])
        service = TemplateService(repo, state)
        await service.get_templates()

        await service.save_template(_template("tpl-2", subject="Updated"))
        templates = await service.get_templates()
        assert len(templates) == 2
        assert next(t for t in templates if t.id == "tpl-2").subject == "Updated"
        assert repo.items["tpl-2"].subject == "Updated"

    @pytest.mark.asyncio
    async def test_save_survives_repository_outage(self, state):
        repo = FakeTemplateRepository([_template("tpl-1")])
        service = TemplateService(repo, state)
        await service.get_templates()

        repo.fail = True
        saved = await service.save_template(_template("", name="Offline"))
        assert any(t.id == saved.id for t in await service.get_templates())
        assert any(d["id"] == saved.id for d in state.load(EMAIL_TEMPLATES))

    @pytest.mark.asyncio
    async def test_delete(self, state):
        repo = FakeTemplateRepository([_template("tpl-1"), _template("tpl-2")])
        service = TemplateService(repo, state)
        await service.get_templates()

        assert await service.delete_template("tpl-1") is True
        assert [t.id for t in await service.get_templates()] == ["tpl-2"]
        assert "tpl-1" not in repo.items

    @pytest.mark.asyncio
    async def test_delete_unknown(self, state):
        service = TemplateService(FakeTemplateRepository([_template("tpl-1")]), state)
        assert await service.delete_template("nope") is False

    @pytest.mark.asyncio
    async def test_get_template_falls_through_to_repository(self, state):
        clock = TickingClock()
        repo = FakeTemplateRepository([_template("tpl-1")])
        service = TemplateService(repo, state, clock=clock)
        await service.get_templates()

        repo.items["tpl-late"] = _template("tpl-late")
        template = await service.get_template("tpl-late")
        assert template is not None
        assert template.id == "tpl-late"

    @pytest.mark.asyncio
    async def test_get_template_unknown(self, state):
        service = TemplateService(FakeTemplateRepository([_template("tpl-1")]), state)
        assert await service.get_template("nope") is None


# ============================================================================
# Resolution
# ============================================================================

class TestProcessTemplate:

    @pytest.mark.asyncio
    async def test_renders_subject_and_body(self, state):
        service = TemplateService(FakeTemplateRepository([_template("tpl-1")]), state)
        rendered = await service.process_template(
            "tpl-1", {"month": "January 2025", "tenant_name": "Ana", "rent_amount": "$1,200.00"}
        )
        assert rendered.subject == "Reminder for January 2025"
        assert rendered.content == "<p>Hi Ana, $1,200.00 is due.</p>"
        assert rendered.document_template_id is None

    @pytest.mark.asyncio
    async def test_default_receipt_carries_document_template(self, state):
        service = TemplateService(None, state)
        rendered = await service.process_template(
            "default_rent_receipt", {"month": "January 2025", "tenant_name": "Ana"}
        )
        assert rendered.subject == "Rent receipt - January 2025"
        assert "Dear Ana" in rendered.content
        assert rendered.document_template_id == DEFAULT_RECEIPT_DOCUMENT_TEMPLATE_ID

    @pytest.mark.asyncio
    async def test_missing_values_kept_verbatim(self, state):
        service = TemplateService(FakeTemplateRepository([_template("tpl-1")]), state)
        rendered = await service.process_template("tpl-1", {"month": "May 2025"})
        assert "{{tenant_name}}" in rendered.content

    @pytest.mark.asyncio
    async def test_unknown_template(self, state):
        service = TemplateService(FakeTemplateRepository([_template("tpl-1")]), state)
        with pytest.raises(TemplateNotFoundError) as exc_info:
            await service.process_template("nope", {})
        assert exc_info.value.template_id == "nope"
