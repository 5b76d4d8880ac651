"""
Lease Automation -- Secure Config Store

Encrypted key/value storage for credentials, categorized by domain
(mail, database, api, system, security).  Values flagged ``encrypted`` are
sealed with Fernet (AES-128-CBC + HMAC-SHA256) under a key derived from the
configured master secret.  A value that fails to authenticate raises
``VaultError``; the vault never hands back ciphertext as if it were
plaintext.

Mail configuration convenience layer: a ``MailConfig`` is decomposed into
nine ``mail_server_*`` entries and recomposed on read.  Saving replaces the
whole group (delete-all-then-insert-all) in one transaction.

Usage:
    vault = Vault("data/vault.db", VaultCipher.from_secret("s3cret"))
    vault.store_entry(VaultEntry(key="api_token", value="abc", encrypted=True))
    vault.get_entry("api_token").value      # "abc"
    vault.store_mail_config(config)
"""

from __future__ import annotations

import base64
import logging
import secrets
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import VaultSettings
from .errors import VaultError
from .models import MailConfig, MailProvider, VaultCategory, VaultEntry

logger = logging.getLogger(__name__)

MASKED_VALUE = "[ENCRYPTED]"

_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
]

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS vault_entries (
    key          TEXT PRIMARY KEY,
    value        TEXT NOT NULL DEFAULT '',
    encrypted    INTEGER NOT NULL DEFAULT 0,
    description  TEXT NOT NULL DEFAULT '',
    category     TEXT NOT NULL DEFAULT 'system',
    created_at   TEXT NOT NULL DEFAULT '',
    updated_at   TEXT NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_vault_category ON vault_entries(category);
"""

# ---------------------------------------------------------------------------
# Mail configuration layout
# ---------------------------------------------------------------------------

MAIL_HOST = "mail_server_host"
MAIL_PORT = "mail_server_port"
MAIL_SECURE = "mail_server_secure"
MAIL_USERNAME = "mail_server_username"
MAIL_PASSWORD = "mail_server_password"
MAIL_FROM = "mail_server_from"
MAIL_REPLY_TO = "mail_server_reply_to"
MAIL_ENABLED = "mail_server_enabled"
MAIL_PROVIDER = "mail_server_provider"

# key -> (encrypted, description)
MAIL_CONFIG_KEYS: dict[str, tuple[bool, str]] = {
    MAIL_HOST:     (False, "SMTP server host"),
    MAIL_PORT:     (False, "SMTP server port"),
    MAIL_SECURE:   (False, "Use an implicit TLS connection"),
    MAIL_USERNAME: (True,  "SMTP account username"),
    MAIL_PASSWORD: (True,  "SMTP account password"),
    MAIL_FROM:     (False, "Sender address"),
    MAIL_REPLY_TO: (False, "Reply-to address"),
    MAIL_ENABLED:  (False, "Mail delivery enabled"),
    MAIL_PROVIDER: (False, "Mail provider preset"),
}


def _now_iso() -> str:
    """Return current UTC datetime as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _flag(value: bool) -> str:
    return "true" if value else "false"


# ===========================================================================
# Cipher
# ===========================================================================

class VaultCipher:
    """Authenticated symmetric encryption for vault values."""

    def __init__(self, fernet: Fernet):
        self._fernet = fernet

    @classmethod
    def from_secret(
        cls,
        secret: str,
        salt: str = "lease-automation-vault",
        iterations: int = 390_000,
    ) -> VaultCipher:
        """Derive a Fernet key from a master secret with PBKDF2-HMAC-SHA256."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt.encode("utf-8"),
            iterations=iterations,
        )
        key = base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))
        return cls(Fernet(key))

    @classmethod
    def from_settings(cls, settings: VaultSettings) -> VaultCipher:
        secret = settings.master_key
        if not secret:
            secret = secrets.token_urlsafe(32)
            logger.warning(
                "No vault master key configured (LEASE_VAULT_KEY); using an "
                "ephemeral key -- encrypted entries will not survive a restart"
            )
        return cls.from_secret(secret, settings.salt, settings.iterations)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            raise VaultError("Vault value failed authentication") from exc


# ===========================================================================
# Vault
# ===========================================================================

class Vault:
    """SQLite-backed encrypted key/value store."""

    def __init__(self, db_path: str | Path, cipher: VaultCipher):
        self.db_path = Path(db_path)
        self.cipher = cipher
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    # ------------------------------------------------------------------
    # Database connection helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        for pragma in _PRAGMA_SETTINGS:
            conn.execute(pragma)
        return conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        try:
            conn.executescript(_SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    def _seal(self, value: str, encrypted: bool) -> str:
        return self.cipher.encrypt(value) if encrypted else value

    def _row_to_entry(self, row: sqlite3.Row, reveal: bool = True) -> VaultEntry:
        encrypted = bool(row["encrypted"])
        if not encrypted:
            value = row["value"]
        elif reveal:
            value = self.cipher.decrypt(row["value"])
        else:
            value = MASKED_VALUE
        try:
            category = VaultCategory(row["category"])
        except ValueError:
            category = VaultCategory.SYSTEM
        return VaultEntry(
            key=row["key"],
            value=value,
            encrypted=encrypted,
            description=row["description"],
            category=category,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _insert(self, conn: sqlite3.Connection, entry: VaultEntry, now: str) -> None:
        conn.execute(
            """INSERT INTO vault_entries
                   (key, value, encrypted, description, category, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET
                   value = excluded.value,
                   encrypted = excluded.encrypted,
                   description = excluded.description,
                   category = excluded.category,
                   updated_at = excluded.updated_at""",
            (
                entry.key,
                self._seal(entry.value, entry.encrypted),
                1 if entry.encrypted else 0,
                entry.description,
                entry.category.value,
                now,
                now,
            ),
        )

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def store_entry(self, entry: VaultEntry) -> VaultEntry:
        """Insert or replace ``entry``; returns it with the plaintext value."""
        if not entry.key:
            raise VaultError("Vault entry key must not be empty")
        now = _now_iso()
        conn = self._get_conn()
        try:
            self._insert(conn, entry, now)
            conn.commit()
        finally:
            conn.close()
        logger.debug("Stored vault entry %s (encrypted=%s)", entry.key, entry.encrypted)
        return self.get_entry(entry.key) or entry

    def get_entry(self, key: str) -> Optional[VaultEntry]:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM vault_entries WHERE key = ?", (key,)
            ).fetchone()
        finally:
            conn.close()
        return self._row_to_entry(row) if row else None

    def update_entry(
        self,
        key: str,
        *,
        value: str | None = None,
        encrypted: bool | None = None,
        description: str | None = None,
        category: VaultCategory | None = None,
    ) -> Optional[VaultEntry]:
        """Apply partial updates; the value is re-sealed whenever it is written.

        Returns the updated entry, or None when ``key`` does not exist.
        """
        current = self.get_entry(key)
        if current is None:
            return None
        if value is not None:
            current.value = value
        if encrypted is not None:
            current.encrypted = encrypted
        if description is not None:
            current.description = description
        if category is not None:
            current.category = category

        conn = self._get_conn()
        try:
            conn.execute(
                """UPDATE vault_entries
                   SET value = ?, encrypted = ?, description = ?, category = ?, updated_at = ?
                   WHERE key = ?""",
                (
                    self._seal(current.value, current.encrypted),
                    1 if current.encrypted else 0,
                    current.description,
                    current.category.value,
                    _now_iso(),
                    key,
                ),
            )
            conn.commit()
        finally:
            conn.close()
        return self.get_entry(key)

    def delete_entry(self, key: str) -> bool:
        conn = self._get_conn()
        try:
            result = conn.execute("DELETE FROM vault_entries WHERE key = ?", (key,))
            conn.commit()
            return result.rowcount > 0
        finally:
            conn.close()

    def list_entries(self, category: VaultCategory | None = None) -> list[VaultEntry]:
        """List entries newest first; encrypted values are masked."""
        conn = self._get_conn()
        try:
            if category:
                rows = conn.execute(
                    """SELECT * FROM vault_entries WHERE category = ?
                       ORDER BY created_at DESC, key""",
                    (category.value,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM vault_entries ORDER BY created_at DESC, key"
                ).fetchall()
        finally:
            conn.close()
        return [self._row_to_entry(r, reveal=False) for r in rows]

    # ------------------------------------------------------------------
    # Mail configuration
    # ------------------------------------------------------------------

    def store_mail_config(self, config: MailConfig) -> None:
        """Replace every ``mail_server_*`` entry with ``config``."""
        values = {
            MAIL_HOST: config.host,
            MAIL_PORT: str(config.port),
            MAIL_SECURE: _flag(config.secure),
            MAIL_USERNAME: config.username,
            MAIL_PASSWORD: config.password,
            MAIL_FROM: config.from_address,
            MAIL_REPLY_TO: config.reply_to or "",
            MAIL_ENABLED: _flag(config.enabled),
            MAIL_PROVIDER: config.provider.value,
        }
        now = _now_iso()
        conn = self._get_conn()
        try:
            placeholders = ", ".join(["?"] * len(MAIL_CONFIG_KEYS))
            conn.execute(
                f"DELETE FROM vault_entries WHERE key IN ({placeholders})",
                list(MAIL_CONFIG_KEYS),
            )
            for key, (encrypted, description) in MAIL_CONFIG_KEYS.items():
                self._insert(conn, VaultEntry(
                    key=key,
                    value=values[key],
                    encrypted=encrypted,
                    description=description,
                    category=VaultCategory.MAIL,
                ), now)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        logger.info("Stored mail configuration for %s (%s)", config.host, config.provider.value)

    def get_mail_config(self) -> Optional[MailConfig]:
        """Recompose the mail configuration, or None if any mandatory part is missing."""
        conn = self._get_conn()
        try:
            placeholders = ", ".join(["?"] * len(MAIL_CONFIG_KEYS))
            rows = conn.execute(
                f"SELECT * FROM vault_entries WHERE key IN ({placeholders})",
                list(MAIL_CONFIG_KEYS),
            ).fetchall()
        finally:
            conn.close()

        parts = {row["key"]: self._row_to_entry(row).value for row in rows}
        mandatory = (MAIL_HOST, MAIL_PORT, MAIL_USERNAME, MAIL_PASSWORD, MAIL_FROM)
        if not all(parts.get(k) for k in mandatory):
            return None
        try:
            port = int(parts[MAIL_PORT])
        except ValueError:
            logger.warning("Ignoring mail configuration with invalid port: %r", parts[MAIL_PORT])
            return None

        return MailConfig(
            host=parts[MAIL_HOST],
            port=port,
            username=parts[MAIL_USERNAME],
            password=parts[MAIL_PASSWORD],
            from_address=parts[MAIL_FROM],
            secure=parts.get(MAIL_SECURE) == "true",
            reply_to=parts.get(MAIL_REPLY_TO) or None,
            enabled=parts.get(MAIL_ENABLED) == "true",
            provider=MailProvider.parse(parts.get(MAIL_PROVIDER)),
        )

    def clear_mail_config(self) -> int:
        conn = self._get_conn()
        try:
            placeholders = ", ".join(["?"] * len(MAIL_CONFIG_KEYS))
            result = conn.execute(
                f"DELETE FROM vault_entries WHERE key IN ({placeholders})",
                list(MAIL_CONFIG_KEYS),
            )
            conn.commit()
            return result.rowcount
        finally:
            conn.close()

    def test_vault_connection(self) -> bool:
        """True iff a listing completes without error."""
        try:
            self.list_entries()
        except (sqlite3.Error, VaultError) as exc:
            logger.error("Vault connection test failed: %s", exc)
            return False
        return True
