"""Lease Automation - Property register loader.

Reads a property register workbook and serves it as the property/tenant
lookup collaborator used while assembling automation contexts.

Supported data sources
~~~~~~~~~~~~~~~~~~~~~~
* **File path** -- local ``.xlsx`` file exported from the property database.
* **Bytes buffer** -- ``io.BytesIO`` for uploads or HTTP downloads.

Sheet layout:

+-----------------+---------------------------------------------------+
| Sheet           | Purpose                                           |
+=================+===================================================+
| ``Properties``  | One row per property (rent, charges, tenant id)   |
| ``Tenants``     | One row per tenant (contact details, lease dates) |
+-----------------+---------------------------------------------------+

Usage::

    from lease_automation.data_loader import load_register

    result = load_register("data/properties.xlsx")
    prop = result.properties["P-001"]
    print(prop.tenant.email)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import IO, Optional, Union

import openpyxl
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from .models import Property, Tenant

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_PROPERTIES_SHEET = "Properties"
_TENANTS_SHEET = "Tenants"

# Column header aliases -- mapped by *header text* so we are resilient
# to column reordering between exports.
_PROPERTY_HEADERS: dict[str, list[str]] = {
    "id":        ["Property ID", "ID"],
    "name":      ["Name", "Property Name"],
    "address":   ["Address", "Property Address"],
    "type":      ["Type", "Property Type"],
    "rent":      ["Rent", "Rent Amount", "Monthly Rent"],
    "charges":   ["Charges", "Charges Amount", "Service Charges"],
    "tenant_id": ["Tenant ID", "Tenant"],
}

_TENANT_HEADERS: dict[str, list[str]] = {
    "id":          ["Tenant ID", "ID"],
    "first_name":  ["First Name"],
    "last_name":   ["Last Name"],
    "email":       ["Email", "Email Address"],
    "phone":       ["Phone", "Phone Number"],
    "lease_start": ["Lease Start", "Lease Start Date"],
    "lease_end":   ["Lease End", "Lease End Date"],
    "property_id": ["Property ID", "Property"],
}

# Cell values that should be treated as null / unknown.
_NULL_SIGNALS: set[str | None] = {"", "#N/A", "N/A", "#REF!", None}


# ---------------------------------------------------------------------------
# Result container
# ---------------------------------------------------------------------------

@dataclass
class RegisterLoadResult:
    """Aggregated output from :func:`load_register`."""

    properties: dict[str, Property] = field(default_factory=dict)
    tenants: dict[str, Tenant] = field(default_factory=dict)

    source_file: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def occupied(self) -> list[Property]:
        return [p for p in self.properties.values() if p.tenant is not None]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def load_register(source: Union[str, Path, IO[bytes]]) -> RegisterLoadResult:
    """Parse the property register and link each tenant to its property.

    A tenant is attached to the property named in the property row's
    ``Tenant ID`` column, or failing that, to the property named in the
    tenant row's ``Property ID`` column.

    Raises:
        FileNotFoundError: ``source`` is a path that does not exist.
        ValueError: The ``Properties`` sheet is missing.
    """
    wb = _open_workbook(source)
    result = RegisterLoadResult(
        source_file=str(source) if isinstance(source, (str, Path)) else None,
    )

    if _PROPERTIES_SHEET not in wb.sheetnames:
        raise ValueError(
            f"No '{_PROPERTIES_SHEET}' sheet found.  Available sheets: {wb.sheetnames}"
        )

    tenant_property: dict[str, str] = {}
    if _TENANTS_SHEET in wb.sheetnames:
        result.tenants, tenant_property = _parse_tenants(wb[_TENANTS_SHEET], result.warnings)
    else:
        result.warnings.append(f"No '{_TENANTS_SHEET}' sheet; properties loaded without tenants")

    properties, property_tenant = _parse_properties(wb[_PROPERTIES_SHEET])
    for prop in properties:
        tenant_id = property_tenant.get(prop.id)
        if tenant_id is None:
            tenant_id = next((t for t, p in tenant_property.items() if p == prop.id), None)
        if tenant_id:
            prop.tenant = result.tenants.get(tenant_id)
            if prop.tenant is None:
                result.warnings.append(f"Property {prop.id}: unknown tenant '{tenant_id}'")
        result.properties[prop.id] = prop

    logger.info(
        "Loaded %d properties (%d occupied) and %d tenants",
        len(result.properties), len(result.occupied), len(result.tenants),
    )
    for warning in result.warnings:
        logger.warning(warning)
    return result


class WorkbookPropertyDirectory:
    """Property lookup collaborator backed by a register workbook.

    The workbook is parsed on first lookup and cached; ``reload()`` drops
    the cache.
    """

    def __init__(self, source: Union[str, Path, IO[bytes]]):
        self.source = source
        self._result: RegisterLoadResult | None = None

    def reload(self) -> None:
        self._result = None

    def _load(self) -> RegisterLoadResult:
        if self._result is None:
            self._result = load_register(self.source)
        return self._result

    async def get_property(self, property_id: str) -> Optional[Property]:
        result = await asyncio.to_thread(self._load)
        return result.properties.get(property_id)


# ---------------------------------------------------------------------------
# Workbook opening
# ---------------------------------------------------------------------------

def _open_workbook(source: Union[str, Path, IO[bytes]]) -> Workbook:
    """Open an openpyxl Workbook from a file path or bytes buffer."""
    if isinstance(source, (str, Path)):
        path = Path(source)
        if not path.exists():
            raise FileNotFoundError(f"XLSX file not found: {path}")
        logger.info("Opening XLSX file: %s", path)
        return openpyxl.load_workbook(path, data_only=True, read_only=False)

    logger.info("Opening XLSX from bytes buffer")
    return openpyxl.load_workbook(source, data_only=True, read_only=False)


# ---------------------------------------------------------------------------
# Sheet parsing
# ---------------------------------------------------------------------------

def _parse_properties(ws: Worksheet) -> tuple[list[Property], dict[str, str]]:
    """Parse property rows.  Returns the properties and property_id -> tenant_id."""
    header_map = _build_header_map(ws, _PROPERTY_HEADERS)
    if "id" not in header_map:
        raise ValueError(f"'{ws.title}' sheet has no 'Property ID' column")

    properties: list[Property] = []
    property_tenant: dict[str, str] = {}
    for row in ws.iter_rows(min_row=2):
        prop_id = _clean_str(_cell_value(row, header_map, "id"))
        if not prop_id:
            continue
        properties.append(Property(
            id=prop_id,
            name=_clean_str(_cell_value(row, header_map, "name")) or prop_id,
            address=_clean_str(_cell_value(row, header_map, "address")),
            type=_clean_str(_cell_value(row, header_map, "type")),
            rent=_parse_amount(_cell_value(row, header_map, "rent")),
            charges=_parse_amount(_cell_value(row, header_map, "charges")),
        ))
        tenant_id = _clean_str(_cell_value(row, header_map, "tenant_id"))
        if tenant_id:
            property_tenant[prop_id] = tenant_id
    return properties, property_tenant


def _parse_tenants(ws: Worksheet, warnings: list[str]) -> tuple[dict[str, Tenant], dict[str, str]]:
    """Parse tenant rows.  Returns tenants by id and tenant_id -> property_id."""
    header_map = _build_header_map(ws, _TENANT_HEADERS)
    tenants: dict[str, Tenant] = {}
    tenant_property: dict[str, str] = {}
    for row_num, row in enumerate(ws.iter_rows(min_row=2), start=2):
        tenant_id = _clean_str(_cell_value(row, header_map, "id"))
        if not tenant_id:
            continue
        context = f"{ws.title} row {row_num}"
        tenants[tenant_id] = Tenant(
            id=tenant_id,
            first_name=_clean_str(_cell_value(row, header_map, "first_name")),
            last_name=_clean_str(_cell_value(row, header_map, "last_name")),
            email=_clean_str(_cell_value(row, header_map, "email")).lower(),
            phone=_clean_str(_cell_value(row, header_map, "phone")),
            lease_start=_parse_date(_cell_value(row, header_map, "lease_start"), context, warnings),
            lease_end=_parse_date(_cell_value(row, header_map, "lease_end"), context, warnings),
        )
        property_id = _clean_str(_cell_value(row, header_map, "property_id"))
        if property_id:
            tenant_property[tenant_id] = property_id
    return tenants, tenant_property


# ---------------------------------------------------------------------------
# Header map builder
# ---------------------------------------------------------------------------

def _build_header_map(
    ws: Worksheet,
    header_spec: dict[str, list[str]],
) -> dict[str, int]:
    """Map logical field names to 0-based column indices.

    Reads row 1 of the worksheet and matches each header cell against
    the known aliases in *header_spec*.
    """
    header_map: dict[str, int] = {}

    row1_values: list[str | None] = []
    for cell in ws[1]:
        val = cell.value
        row1_values.append(str(val).strip().lower() if val is not None else None)

    for logical_name, aliases in header_spec.items():
        wanted = {a.lower() for a in aliases}
        for idx, header_text in enumerate(row1_values):
            if header_text in wanted:
                header_map[logical_name] = idx
                break

    logger.debug("Header map for %s (%d/%d): %s",
                 ws.title, len(header_map), len(header_spec), list(header_map))
    return header_map


# ---------------------------------------------------------------------------
# Cell reading helpers
# ---------------------------------------------------------------------------

def _cell_value(row, header_map: dict[str, int], field_name: str):
    """Read a cell by logical field name; None when absent."""
    idx = header_map.get(field_name)
    if idx is None or idx >= len(row):
        return None
    return row[idx].value


def _clean_str(val) -> str:
    """Convert a cell value to a stripped string.  None becomes ``""``."""
    if val is None:
        return ""
    if isinstance(val, float) and val.is_integer():
        val = int(val)
    s = str(val).strip()
    return "" if s in _NULL_SIGNALS else s


def _parse_amount(val, default: float = 0.0) -> float:
    """Parse a money cell: numbers, ``"1,234.56"``, ``"$950"``, ``"(50.00)"``."""
    if val is None:
        return default
    if isinstance(val, (int, float)):
        return float(val)

    s = str(val).strip()
    if not s or s in _NULL_SIGNALS:
        return default

    negative = s.startswith("(") and s.endswith(")")
    if negative:
        s = s[1:-1]
    s = s.replace("$", "").replace("€", "").replace(",", "").strip()
    try:
        amount = float(s)
    except ValueError:
        return default
    return -amount if negative else amount


def _parse_date(val, context: str, warnings: list[str]) -> date | None:
    """Parse a date cell (datetime, Excel serial or common string formats)."""
    if val is None:
        return None
    if isinstance(val, datetime):
        return val.date()
    if isinstance(val, date):
        return val

    if isinstance(val, (int, float)):
        serial = int(val)
        if 20000 < serial < 80000:
            return (datetime(1899, 12, 30) + timedelta(days=serial)).date()

    s = str(val).strip()
    if not s or s in _NULL_SIGNALS:
        return None
    for fmt in ("%Y-%m-%d", "%d/%m/%Y", "%m/%d/%Y", "%b %d, %Y", "%B %d, %Y"):
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue

    warnings.append(f"{context}: could not parse date '{val}'")
    return None
