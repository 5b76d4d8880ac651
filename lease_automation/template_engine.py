"""
Lease Automation -- Template Rendering Service

Stores, caches and resolves named subject/body templates and substitutes
``{{token}}`` placeholders against a context map.

Responsibilities:
  1. Token substitution by exact key lookup with a
     configurable missing-key policy (keep / empty / error)
  2. A TTL-bound in-memory catalogue refreshed from the template repository
  3. A local fallback copy of the catalogue in the persisted local state
  4. Seeding the built-in default catalogue on first use
  5. Formatting helpers shared with the execution engine

Usage:
    service = TemplateService(repository, state_store)
    rendered = await service.process_template(template_id, {"tenant_name": "Ana"})
    print(rendered.subject)
"""

from __future__ import annotations

import html
import logging
import re
import time
import uuid
from dataclasses import replace
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from jinja2 import Environment, FileSystemLoader

from .collaborators import TemplateRepository
from .errors import TemplateNotFoundError, TemplateRenderError
from .local_state import EMAIL_TEMPLATES, LocalStateStore
from .models import EmailTemplate, RenderedTemplate, TemplateCategory

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_DEFAULT_TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"

# Ids starting with this prefix were minted by an editor and never persisted.
PLACEHOLDER_ID_PREFIX = "template_"

DEFAULT_RECEIPT_DOCUMENT_TEMPLATE_ID = "550e8400-e29b-41d4-a716-446655440003"

# Date format: "Feb 05, 2026"
_DATE_FORMAT = "%b %d, %Y"


# ---------------------------------------------------------------------------
# Helper: Format Utilities
# ---------------------------------------------------------------------------

def format_date(d: date | None) -> str:
    """Format a date as 'Mon DD, YYYY' (e.g. 'Feb 05, 2026').

    Returns empty string for None.
    """
    if d is None:
        return ""
    return d.strftime(_DATE_FORMAT)


def format_currency(amount: float | None, symbol: str = "$") -> str:
    """Format a float as currency: '$1,510.00'.  None -> '$0.00'."""
    if amount is None:
        amount = 0.0
    return f"{symbol}{amount:,.2f}"


def format_month(d: date) -> str:
    """Month label used in subjects, e.g. 'January 2025'."""
    return d.strftime("%B %Y")


def html_to_plaintext(html_content: str) -> str:
    """Convert an HTML email body to a plain-text alternative.

    Strips tags, turns block elements into line breaks and list items
    into dashes, and decodes entities.
    """
    text = html_content

    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</div>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</p>", "\n\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</li>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<li[^>]*>", "  - ", text, flags=re.IGNORECASE)
    text = re.sub(r"</?ul[^>]*>", "\n", text, flags=re.IGNORECASE)

    text = re.sub(
        r'<a[^>]+href=["\']([^"\']+)["\'][^>]*>(.*?)</a>',
        r"\2 (\1)",
        text,
        flags=re.IGNORECASE | re.DOTALL,
    )

    text = re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    return text.strip()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ===========================================================================
# Token substitution
# ===========================================================================

class MissingKeyPolicy(Enum):
    """What to do with a ``{{token}}`` that has no value in the context."""

    KEEP = "keep"
    EMPTY = "empty"
    ERROR = "error"

    @classmethod
    def parse(cls, raw: str | MissingKeyPolicy) -> MissingKeyPolicy:
        if isinstance(raw, cls):
            return raw
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            logger.warning("Unknown missing-key policy %r -- using 'keep'", raw)
            return cls.KEEP


# {{ key }}: the key is the brace contents with surrounding blanks trimmed.
_TOKEN_RE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


class TemplateRenderer:
    """Substitutes ``{{token}}`` placeholders by exact key lookup.

    Template text is never evaluated.  Each token is replaced by
    ``str(data[key])`` or handled by the missing-key policy; everything
    else, unbalanced braces included, is copied through unchanged.
    Values are inserted as-is: bodies are authored HTML.
    """

    def __init__(self, missing_key_policy: str | MissingKeyPolicy = MissingKeyPolicy.KEEP) -> None:
        self.policy = MissingKeyPolicy.parse(missing_key_policy)

    @staticmethod
    def tokens(source: str) -> list[str]:
        """Keys referenced by ``source``, in order of first appearance."""
        return list(dict.fromkeys(m.group(1) for m in _TOKEN_RE.finditer(source)))

    def missing_tokens(self, source: str, data: dict[str, Any]) -> set[str]:
        """Tokens referenced by ``source`` that ``data`` does not provide."""
        return {key for key in self.tokens(source) if key not in data}

    def render(self, source: str, data: dict[str, Any], label: str = "template") -> str:
        if "{{" not in source:
            return source

        missing = self.missing_tokens(source, data)
        if missing:
            logger.warning(
                "Unresolved tokens in %s (policy=%s): %s",
                label, self.policy.value, ", ".join(sorted(missing)),
            )
            if self.policy is MissingKeyPolicy.ERROR:
                raise TemplateRenderError(
                    f"Missing value in {label}: {', '.join(sorted(missing))}"
                )

        def substitute(match: re.Match[str]) -> str:
            key = match.group(1)
            if key in data:
                value = data[key]
                return "" if value is None else str(value)
            if self.policy is MissingKeyPolicy.EMPTY:
                return ""
            return match.group(0)

        return _TOKEN_RE.sub(substitute, source)


# ===========================================================================
# Default catalogue
# ===========================================================================

# (id, name, subject, body file, category)
_DEFAULT_TEMPLATE_SPECS: list[tuple[str, str, str, str, TemplateCategory]] = [
    ("default_rent_receipt", "Rent receipt",
     "Rent receipt - {{month}}", "rent_receipt.html", TemplateCategory.FINANCIAL),
    ("default_payment_reminder", "Payment reminder",
     "Reminder: rent payment for {{month}}", "payment_reminder.html", TemplateCategory.FINANCIAL),
    ("default_insurance_reminder", "Insurance certificate reminder",
     "Home insurance certificate required - {{property_name}}", "insurance_reminder.html",
     TemplateCategory.ADMINISTRATIVE),
    ("default_incident_notice", "Incident notice",
     "Incident reported - {{property_name}}", "incident_notice.html", TemplateCategory.PROPERTY),
    ("default_rent_revision", "Rent revision",
     "Rent revision - {{property_name}}", "rent_revision.html", TemplateCategory.FINANCIAL),
    ("default_lease_end", "Lease end notice",
     "Your lease ends on {{lease_end_date}}", "lease_end.html", TemplateCategory.TENANT),
]


def default_templates(
    receipt_document_template_id: str = DEFAULT_RECEIPT_DOCUMENT_TEMPLATE_ID,
    template_dir: Path = _DEFAULT_TEMPLATE_DIR,
) -> list[EmailTemplate]:
    """Build the built-in catalogue from the HTML bodies under ``templates/``.

    Bodies are read as raw source through a Jinja2 loader; their tokens
    are resolved later by :class:`TemplateRenderer`.

    Raises:
        jinja2.TemplateNotFound: A body file is missing.
    """
    env = Environment(loader=FileSystemLoader(str(template_dir)))
    now = _now_iso()
    templates = []
    for template_id, name, subject, body_file, category in _DEFAULT_TEMPLATE_SPECS:
        content, _, _ = env.loader.get_source(env, body_file)
        templates.append(EmailTemplate(
            id=template_id,
            name=name,
            subject=subject,
            content=content,
            category=category.value,
            document_template_id=(
                receipt_document_template_id if template_id == "default_rent_receipt" else None
            ),
            created_at=now,
            updated_at=now,
        ))
    return templates


# ===========================================================================
# Template Service
# ===========================================================================

class TemplateService:
    """Cached template catalogue with a local fallback store.

    Attributes:
        repository: Persistence collaborator, or None to run purely on the
            local fallback store.
        state: Local state store holding the fallback copy.
        renderer: Token substitution engine.
    """

    def __init__(
        self,
        repository: Optional[TemplateRepository],
        state: LocalStateStore,
        renderer: TemplateRenderer | None = None,
        *,
        cache_ttl_seconds: float = 300,
        seed_defaults: bool = True,
        receipt_document_template_id: str = DEFAULT_RECEIPT_DOCUMENT_TEMPLATE_ID,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.state = state
        self.renderer = renderer or TemplateRenderer()
        self.cache_ttl_seconds = cache_ttl_seconds
        self.seed_defaults = seed_defaults
        self.receipt_document_template_id = receipt_document_template_id
        self._clock = clock

        self._cache: list[EmailTemplate] = []
        self._cache_loaded_at: float | None = None
        self._loading = False
        self._bootstrapped = False

    # -------------------------------------------------------------------
    # Catalogue
    # -------------------------------------------------------------------

    def _cache_is_fresh(self) -> bool:
        if not self._cache or self._cache_loaded_at is None:
            return False
        return self._clock() - self._cache_loaded_at < self.cache_ttl_seconds

    def invalidate_cache(self) -> None:
        self._cache_loaded_at = None

    async def get_templates(self) -> list[EmailTemplate]:
        """Return the catalogue, refreshing it when empty or stale.

        A refresh failure returns the last known cache (or the local
        fallback copy).
        """
        if self._loading or self._cache_is_fresh():
            return list(self._cache)

        self._loading = True
        try:
            templates = await self._fetch()
            if not templates and self.seed_defaults and not self._bootstrapped:
                templates = await self._seed_defaults()
            self._bootstrapped = True
            self._set_cache(templates)
        finally:
            self._loading = False
        return list(self._cache)

    async def _fetch(self) -> list[EmailTemplate]:
        if self.repository is None:
            return self._load_fallback()
        try:
            return await self.repository.list_templates()
        except Exception as exc:
            logger.warning("Template refresh failed, keeping last known catalogue: %s", exc)
            return list(self._cache) or self._load_fallback()

    async def _seed_defaults(self) -> list[EmailTemplate]:
        defaults = default_templates(self.receipt_document_template_id)
        logger.info("Template catalogue is empty; seeding %d default templates", len(defaults))
        if self.repository is None:
            return defaults
        seeded = []
        for template in defaults:
            try:
                seeded.append(await self.repository.create_template(template))
            except Exception as exc:
                logger.warning("Could not persist default template %s: %s", template.id, exc)
                seeded.append(template)
        return seeded

    def _set_cache(self, templates: list[EmailTemplate]) -> None:
        self._cache = list(templates)
        self._cache_loaded_at = self._clock()
        self._save_fallback()

    def _load_fallback(self) -> list[EmailTemplate]:
        raw = self.state.load(EMAIL_TEMPLATES, [])
        return [EmailTemplate.from_dict(d) for d in raw if isinstance(d, dict)]

    def _save_fallback(self) -> None:
        self.state.save(EMAIL_TEMPLATES, [t.to_dict() for t in self._cache])

    def _find_cached(self, template_id: str) -> Optional[EmailTemplate]:
        for template in self._cache:
            if template.id == template_id:
                return template
        return None

    # -------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------

    async def save_template(self, template: EmailTemplate) -> EmailTemplate:
        """Create (empty or placeholder id) or update a template.

        The cache is updated as soon as the save succeeds.  When the
        repository fails the template is kept in the local fallback store.
        """
        now = _now_iso()
        is_new = not template.id or template.id.startswith(PLACEHOLDER_ID_PREFIX)
        if is_new:
            template = replace(template, id=str(uuid.uuid4()), created_at=now, updated_at=now)
        else:
            template = replace(template, updated_at=now)

        saved = template
        if self.repository is not None:
            try:
                if is_new:
                    saved = await self.repository.create_template(template)
                else:
                    saved = await self.repository.update_template(template)
            except Exception as exc:
                logger.warning(
                    "Template repository unavailable, saving %s locally: %s", template.id, exc
                )
                saved = template

        if is_new:
            self._cache.insert(0, saved)
        else:
            for i, existing in enumerate(self._cache):
                if existing.id == saved.id:
                    self._cache[i] = saved
                    break
            else:
                self._cache.insert(0, saved)
        if self._cache_loaded_at is None:
            self._cache_loaded_at = self._clock()
        self._save_fallback()
        return saved

    async def delete_template(self, template_id: str) -> bool:
        removed = False
        if self.repository is not None:
            try:
                removed = await self.repository.delete_template(template_id)
            except Exception as exc:
                logger.warning("Template repository delete failed for %s: %s", template_id, exc)

        before = len(self._cache)
        self._cache = [t for t in self._cache if t.id != template_id]
        removed = removed or len(self._cache) != before
        self._save_fallback()
        return removed

    async def get_template(self, template_id: str) -> Optional[EmailTemplate]:
        """Look up one template: cache, then repository, then local fallback."""
        await self.get_templates()
        template = self._find_cached(template_id)
        if template is not None:
            return template
        if self.repository is not None:
            try:
                template = await self.repository.get_template(template_id)
            except Exception as exc:
                logger.warning("Template lookup failed for %s: %s", template_id, exc)
            if template is not None:
                return template
        for fallback in self._load_fallback():
            if fallback.id == template_id:
                return fallback
        return None

    async def get_templates_by_category(self, category: str | TemplateCategory) -> list[EmailTemplate]:
        value = category.value if isinstance(category, TemplateCategory) else category
        return [t for t in await self.get_templates() if t.category == value]

    # -------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------

    async def process_template(self, template_id: str, data: dict[str, Any]) -> RenderedTemplate:
        """Render subject and body of ``template_id`` against ``data``.

        Raises:
            TemplateNotFoundError: The id is in neither the cache nor the
                local fallback store.
            TemplateRenderError: Substitution failed.
        """
        await self.get_templates()
        template = self._find_cached(template_id)
        if template is None:
            template = next((t for t in self._load_fallback() if t.id == template_id), None)
        if template is None:
            logger.warning("Template %s not found in cache or fallback store", template_id)
            raise TemplateNotFoundError(template_id)

        return RenderedTemplate(
            subject=self.renderer.render(template.subject, data, label=f"{template.name} subject"),
            content=self.renderer.render(template.content, data, label=f"{template.name} body"),
            document_template_id=template.document_template_id,
        )
