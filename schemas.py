"""
schemas.py
----------
Invoice Record Builder: Pydantic Data Contracts
-----------------------------------------------
Pydantic v2 models that act as the data contract between the callers
(HTTP surface, CLI, patient directory) and the bundle assembly engine.

Validation policy
-----------------
Models coerce shape, not completeness.  A model instance is structurally
sound (numbers are numbers, quantities and prices are non-negative, free
text is stripped of control characters) but may still be incomplete:
a missing patient, an empty title or a request with nothing billable is
reported by ``validation.validate_invoice_request()``, which aggregates
every problem into one list before any record is built.

Field names follow the patient-directory JSON (``user_ref_id``,
``abha_ref``, ``abha_addresses``) and also accept the camelCase names
used by the form layer (``externalRefId``, ``primaryHealthAddress``,
``alternateHealthAddresses``, ``unitPrice``, ...).

Public API
----------
    PatientRecord          Subject of the invoice, as supplied by the directory.
    NormalizedAddress      One ranked alternate health address.
    PractitionerRecord     Author identity (from configuration, not the form).
    OrganizationDetails    Issuing organization panel.
    InvoiceLine            One billable item.
    Attachment             One acquired file: filename, MIME type, raw bytes.
    InvoiceRecordRequest   The complete validated input record for one build.

Author: Invoice Record Builder team
Project: Invoice Record Builder
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Sanitisation helpers
# ---------------------------------------------------------------------------

# ASCII control characters to strip: \x00–\x08, \x0b–\x0c, \x0e–\x1f, \x7f
# Preserved: \x09 (tab), \x0a (newline), \x0d (carriage-return).
_CONTROL_CHAR_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

_MAX_STR_LEN = 500

COMPOSITION_STATUSES = ("preliminary", "final", "amended", "entered-in-error")
ATTESTER_MODES = ("personal", "professional", "legal", "official")

AttesterMode = Literal["personal", "professional", "legal", "official"]
AttesterPartyType = Literal["Practitioner", "Organization"]


def _sanitise_string(value: Any, *, max_len: int = _MAX_STR_LEN) -> str:
    """
    Coerce *value* to str, strip control characters and whitespace, and
    truncate to *max_len* characters.  ``None`` becomes ``""``.
    """
    if value is None:
        return ""
    cleaned = _CONTROL_CHAR_RE.sub("", str(value))
    return cleaned.strip()[:max_len]


def _coerce_amount(value: Any) -> Any:
    """Blank form inputs count as zero; everything else is left to pydantic."""
    if value is None:
        return 0
    if isinstance(value, str) and not value.strip():
        return 0
    return value


# ---------------------------------------------------------------------------
# Subject
# ---------------------------------------------------------------------------

class PatientRecord(BaseModel):
    """
    A patient as returned by the patient directory (remote API or local file).

    Fields
    ------
    id:                 Directory-local id, echoed back on submission as the
                        original patient reference.  Integers are stringified.
    user_ref_id:        External reference id.  Reused as the bundle-local
                        Patient.id when it is a valid UUID.
    abha_ref:           Primary health address, if the directory knows one.
    abha_addresses:     Alternate health addresses (strings or objects).
    additional_attributes: Free-form attributes; ``abha_addresses`` may be
                        nested here instead of at the top level.
    dob:                Free-form birth date, normalized at build time.
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore", populate_by_name=True)

    id:          Optional[str] = None
    name:        str           = ""
    gender:      str           = ""
    dob:         str           = Field(default="", validation_alias=AliasChoices("dob", "birthDate", "birth_date"))
    mobile:      str           = ""
    email:       str           = ""
    address:     str           = ""
    mrn:         str           = ""
    user_ref_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("user_ref_id", "externalRefId"))
    abha_ref:    Optional[str] = Field(default=None, validation_alias=AliasChoices("abha_ref", "primaryHealthAddress"))
    abha_addresses: List[Any]  = Field(
        default_factory=list,
        validation_alias=AliasChoices("abha_addresses", "alternateHealthAddresses"),
    )
    additional_attributes: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", "user_ref_id", "abha_ref", mode="before")
    @classmethod
    def stringify_ids(cls, v: Any) -> Optional[str]:
        """Directory ids arrive as ints or strings; blanks become ``None``."""
        if v is None:
            return None
        text = _sanitise_string(v)
        return text or None

    @field_validator("name", "gender", "dob", "mobile", "email", "address", "mrn", mode="before")
    @classmethod
    def clean_text(cls, v: Any) -> str:
        return _sanitise_string(v)

    @field_validator("abha_addresses", mode="before")
    @classmethod
    def listify_addresses(cls, v: Any) -> List[Any]:
        if v is None:
            return []
        if isinstance(v, (list, tuple)):
            return list(v)
        return [v]

    @field_validator("additional_attributes", mode="before")
    @classmethod
    def dictify_attributes(cls, v: Any) -> Dict[str, Any]:
        return v if isinstance(v, dict) else {}


class NormalizedAddress(BaseModel):
    """One alternate health address after normalization and ranking."""

    model_config = ConfigDict(frozen=True)

    value:   str
    label:   str
    primary: bool = False


# ---------------------------------------------------------------------------
# Author and issuer
# ---------------------------------------------------------------------------

class PractitionerRecord(BaseModel):
    """Author identity, sourced from configuration rather than the form."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore", populate_by_name=True)

    id:            Optional[str] = None
    display_name:  str = Field(default="Dr. ABC", validation_alias=AliasChoices("display_name", "displayName", "name"))
    license_value: str = Field(
        default="LIC-TEMP-0001",
        validation_alias=AliasChoices("license_value", "licenseValue", "license"),
    )


class OrganizationDetails(BaseModel):
    """Issuing organization panel: every field optional."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    id:      Optional[str] = None
    name:    str = ""
    gstin:   str = ""
    phone:   str = ""
    address: str = ""

    @field_validator("name", "gstin", "phone", "address", mode="before")
    @classmethod
    def clean_text(cls, v: Any) -> str:
        return _sanitise_string(v)


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------

class InvoiceLine(BaseModel):
    """
    One billable item.

    ``quantity`` and ``unit_price`` must be non-negative; blank inputs count
    as zero.  ``tax_percent`` is a line-level tax rate in percent (GST).
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore", populate_by_name=True)

    description: str   = ""
    quantity:    float = Field(default=1, ge=0, allow_inf_nan=False)
    unit:        str   = "unit"
    unit_price:  float = Field(default=0, ge=0, allow_inf_nan=False, validation_alias=AliasChoices("unit_price", "unitPrice"))
    tax_percent: float = Field(default=0, ge=0, allow_inf_nan=False, validation_alias=AliasChoices("tax_percent", "taxPercent"))

    @field_validator("description", mode="before")
    @classmethod
    def clean_description(cls, v: Any) -> str:
        return _sanitise_string(v)

    @field_validator("unit", mode="before")
    @classmethod
    def default_unit(cls, v: Any) -> str:
        return _sanitise_string(v) or "unit"

    @field_validator("quantity", "unit_price", "tax_percent", mode="before")
    @classmethod
    def blank_is_zero(cls, v: Any) -> Any:
        return _coerce_amount(v)


class Attachment(BaseModel):
    """One acquired attachment: the raw bytes have already been read."""

    model_config = ConfigDict(frozen=True)

    filename:     str
    content_type: str = "application/octet-stream"
    data:         bytes


# ---------------------------------------------------------------------------
# The build request
# ---------------------------------------------------------------------------

class InvoiceRecordRequest(BaseModel):
    """
    Everything the form layer collects for one Invoice Record build.

    Fields
    ------
    patient:                 Selected subject, or ``None`` when nothing is selected.
    selected_health_address: One of the patient's normalized health addresses,
                             or ``""``.
    status / title:          Composition metadata (mandatory).
    authored_at:             Local wall-clock ``YYYY-MM-DDTHH:MM``; ``None`` = now.
    invoice_date:            Invoice.date as a free-form date; ``None`` = the
                             authored timestamp.
    encounter_text:          Non-empty → an Encounter record is emitted.
    custodian_name:          Non-empty → a custodian Organization is emitted.
    attester_*:              Attester role and party; an Organization party
                             needs ``attester_org_name``.
    lines:                   Invoice line items.
    total_*_override:        Free-text overrides for the computed totals; used
                             only when numeric.
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore", populate_by_name=True)

    patient:                 Optional[PatientRecord] = None
    selected_health_address: str = Field(
        default="",
        validation_alias=AliasChoices("selected_health_address", "selectedHealthAddress"),
    )

    status:       str           = "final"
    title:        str           = "Invoice Record"
    authored_at:  Optional[str] = Field(default=None, validation_alias=AliasChoices("authored_at", "dateTime"))

    invoice_number: str = Field(default="", validation_alias=AliasChoices("invoice_number", "invoiceNumber"))
    invoice_type:   str = Field(default="healthcare", validation_alias=AliasChoices("invoice_type", "invoiceType"))
    payment_terms:  str = Field(default="", validation_alias=AliasChoices("payment_terms", "paymentTerms"))
    payment_status: str = Field(default="", validation_alias=AliasChoices("payment_status", "paymentStatus"))
    invoice_date:   Optional[str] = Field(default=None, validation_alias=AliasChoices("invoice_date", "invoiceDate"))
    organization:   Optional[OrganizationDetails] = None

    encounter_text:      str               = Field(default="", validation_alias=AliasChoices("encounter_text", "encounterText"))
    custodian_name:      str               = Field(default="", validation_alias=AliasChoices("custodian_name", "custodianName"))
    attester_mode:       AttesterMode      = Field(default="professional", validation_alias=AliasChoices("attester_mode", "attesterMode"))
    attester_party_type: AttesterPartyType = Field(
        default="Practitioner",
        validation_alias=AliasChoices("attester_party_type", "attesterPartyType"),
    )
    attester_org_name:   str               = Field(default="", validation_alias=AliasChoices("attester_org_name", "attesterOrgName"))

    lines: List[InvoiceLine] = Field(default_factory=list, validation_alias=AliasChoices("lines", "lineItems"))

    total_net_override:   str = Field(default="", validation_alias=AliasChoices("total_net_override", "totalNet"))
    total_tax_override:   str = Field(default="", validation_alias=AliasChoices("total_tax_override", "totalTax"))
    total_gross_override: str = Field(default="", validation_alias=AliasChoices("total_gross_override", "totalGross"))

    @field_validator(
        "selected_health_address", "status", "title", "invoice_number", "invoice_type",
        "payment_terms", "payment_status", "encounter_text", "custodian_name", "attester_org_name",
        mode="before",
    )
    @classmethod
    def clean_text(cls, v: Any) -> str:
        return _sanitise_string(v)

    @field_validator("total_net_override", "total_tax_override", "total_gross_override", mode="before")
    @classmethod
    def stringify_override(cls, v: Any) -> str:
        """Overrides may arrive as numbers from JSON callers; keep them as text."""
        return _sanitise_string(v, max_len=64)

    @field_validator("authored_at", "invoice_date", mode="before")
    @classmethod
    def blank_is_default(cls, v: Any) -> Optional[str]:
        text = _sanitise_string(v, max_len=64)
        return text or None
