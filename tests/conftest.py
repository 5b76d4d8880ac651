"""Shared fixtures for the test suite."""

from datetime import date, datetime

import pytest
from cryptography.fernet import Fernet

from fakes import FixedClock, RecordingTransport
from lease_automation.local_queue import LocalEmailBackend
from lease_automation.local_state import LocalStateStore
from lease_automation.models import MailConfig, Property, Tenant
from lease_automation.vault import Vault, VaultCipher


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def state():
    store = LocalStateStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def mail_config() -> MailConfig:
    return MailConfig(
        host="smtp.example.com",
        port=587,
        username="landlord@example.com",
        password="s3cret",
        from_address="landlord@example.com",
    )


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def local_backend(state, transport) -> LocalEmailBackend:
    return LocalEmailBackend(state, transport)


@pytest.fixture
def cipher() -> VaultCipher:
    return VaultCipher(Fernet(Fernet.generate_key()))


@pytest.fixture
def vault(tmp_path, cipher) -> Vault:
    return Vault(tmp_path / "vault.db", cipher)


@pytest.fixture
def tenant() -> Tenant:
    return Tenant(
        id="T-1",
        first_name="Ana",
        last_name="Lopez",
        email="ana@example.com",
        phone="555-0100",
        lease_start=date(2024, 3, 1),
        lease_end=date(2027, 2, 28),
    )


@pytest.fixture
def occupied_property(tenant) -> Property:
    return Property(
        id="P-1",
        name="Maple Court 4B",
        address="12 Maple Court, Springfield",
        type="apartment",
        rent=1200.0,
        charges=150.0,
        tenant=tenant,
    )


@pytest.fixture
def january_15() -> FixedClock:
    return FixedClock(datetime(2025, 1, 15, 9, 0))
