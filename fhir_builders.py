"""
fhir_builders.py
----------------
Invoice Record Builder: FHIR R4 Resource Builders
-------------------------------------------------
Stateless constructors, one per record kind in an Invoice Record document
bundle.  Every builder takes validated inputs plus pre-generated ids and
returns a plain FHIR R4 resource dict ready for ``json.dumps``.

Record kinds produced:
  • Patient            Subject of the invoice.
  • Practitioner       Author (and default attester).
  • Organization       Issuer; optional custodian; optional attester party.
  • Encounter          Optional encounter context.
  • Invoice            Line items, price components, totals.
  • DocumentReference  One per attachment, pointing at its Binary.
  • Binary             Base64 attachment payload (no ``data:`` prefix).

Shared rules:
  * Every resource declares ``language`` from settings; every narrative
    ``div`` carries matching ``lang`` / ``xml:lang`` attributes.
  * Optional elements are omitted, never emitted as ``null`` or ``[]``.
  * Cross-references are ``urn:uuid:<id>`` so they resolve to bundle
    ``fullUrl`` values.
  * ``meta.profile`` comes from the configured profile set
    (``PROFILE_SETS``).

Public API:
    PROFILE_SETS, PLACEHOLDER_ATTACHMENT
    build_narrative()            XHTML narrative with language tags.
    build_patient()              Patient.
    build_practitioner()         Practitioner.
    build_issuer_organization()  Issuer Organization (GSTIN, phone, address).
    build_named_organization()   Name-only Organization (custodian / attester).
    build_encounter()            Encounter.
    build_invoice_line_items()   Invoice.lineItem list for one build.
    build_invoice()              Invoice.
    build_binary()               Binary.
    build_document_reference()   DocumentReference.

Author: Invoice Record Builder team
Project: Invoice Record Builder
"""

from __future__ import annotations

import base64
import html
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from config import InvoiceRecordSettings
from identifiers import urn_reference
from schemas import Attachment, InvoiceLine, OrganizationDetails, PatientRecord, PractitionerRecord
from temporal import normalize_date
from totals import InvoiceTotals, line_base_amount, line_tax_amount, round_money, to_decimal

logger = logging.getLogger(__name__)

Resource = Dict[str, Any]

# ---------------------------------------------------------------------------
# Profile sets
# ---------------------------------------------------------------------------
# "hl7-base" mirrors the validator-clean variant: HL7 base profiles except
# for Practitioner and Binary, which keep the NDHM profiles.
# "ndhm" attaches the NRCES/NDHM profile to every record.

_HL7_SD = "http://hl7.org/fhir/StructureDefinition"
_NDHM_SD = "https://nrces.in/ndhm/fhir/r4/StructureDefinition"

PROFILE_SETS: Dict[str, Dict[str, str]] = {
    "hl7-base": {
        "Bundle":            f"{_HL7_SD}/Bundle",
        "Composition":       f"{_HL7_SD}/Composition",
        "Patient":           f"{_HL7_SD}/Patient",
        "Practitioner":      f"{_NDHM_SD}/Practitioner",
        "Organization":      f"{_HL7_SD}/Organization",
        "Encounter":         f"{_HL7_SD}/Encounter",
        "Invoice":           f"{_HL7_SD}/Invoice",
        "DocumentReference": f"{_HL7_SD}/DocumentReference",
        "Binary":            f"{_NDHM_SD}/Binary",
    },
    "ndhm": {
        "Bundle":            f"{_NDHM_SD}/DocumentBundle",
        "Composition":       f"{_NDHM_SD}/InvoiceRecord",
        "Patient":           f"{_NDHM_SD}/Patient",
        "Practitioner":      f"{_NDHM_SD}/Practitioner",
        "Organization":      f"{_NDHM_SD}/Organization",
        "Encounter":         f"{_NDHM_SD}/Encounter",
        "Invoice":           f"{_NDHM_SD}/Invoice",
        "DocumentReference": f"{_NDHM_SD}/DocumentReference",
        "Binary":            f"{_NDHM_SD}/Binary",
    },
}

# ---------------------------------------------------------------------------
# Code systems and identifier namespaces
# ---------------------------------------------------------------------------

_V2_0203_SYSTEM        = "http://terminology.hl7.org/CodeSystem/v2-0203"
_ACT_CODE_SYSTEM       = "http://terminology.hl7.org/CodeSystem/v3-ActCode"
_HEALTH_ID_SYSTEM      = "https://healthid.ndhm.gov.in"
_ABHA_SYSTEM           = "https://abdm.gov.in/abha"
_DOCTOR_REGISTRY       = "https://doctor.ndhm.gov.in"
_GSTIN_SYSTEM          = "http://gst.gov.in/gstin"
_INVOICE_NUMBER_SYSTEM = "https://your.hospital.org/invoices"
_INVOICE_TYPE_SYSTEM   = "http://nrces.in/CodeSystem/invoice-type"
_INVOICE_ITEM_SYSTEM   = "http://nrces.in/CodeSystem/invoice-item"
_PRICE_COMPONENT_SYSTEM = "http://nrces.in/CodeSystem/price-component"
_RFC3986_SYSTEM        = "urn:ietf:rfc:3986"

_XHTML_NS = "http://www.w3.org/1999/xhtml"

_FHIR_GENDERS = {"male", "female", "other", "unknown"}
_GENDER_ALIASES = {"m": "male", "f": "female", "o": "other", "u": "unknown"}

_INVOICE_TYPE_LABELS = {
    "healthcare": "Healthcare invoice",
    "pharmacy":   "Pharmacy invoice",
    "other":      "Other invoice",
}

# %PDF-1.4 header: the payload used when the caller supplied no files.
PLACEHOLDER_PDF_B64 = "JVBERi0xLjQKJeLjz9MK"
PLACEHOLDER_ATTACHMENT = Attachment(
    filename="placeholder.pdf",
    content_type="application/pdf",
    data=base64.b64decode(PLACEHOLDER_PDF_B64),
)

# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _base_resource(resource_type: str, resource_id: str, settings: InvoiceRecordSettings) -> Resource:
    return {
        "resourceType": resource_type,
        "id":           resource_id,
        "language":     settings.language,
        "meta":         {"profile": [PROFILE_SETS[settings.profile_set][resource_type]]},
    }


def _reference(resource_id: str, display: Optional[str] = None) -> Dict[str, str]:
    ref = {"reference": urn_reference(resource_id)}
    if display:
        ref["display"] = display
    return ref


def _money(amount: Decimal, settings: InvoiceRecordSettings) -> Dict[str, Any]:
    return {"value": float(round_money(amount)), "currency": settings.currency}


def _format_quantity(quantity: float) -> str:
    return f"{quantity:g}"


def _normalize_gender(raw: str) -> Optional[str]:
    if not raw:
        return None
    value = raw.strip().lower()
    value = _GENDER_ALIASES.get(value, value)
    if value not in _FHIR_GENDERS:
        logger.warning("fhir_builders: gender '%s' is not a FHIR administrative gender, omitted.", raw)
        return None
    return value


def build_narrative(title: str, paragraphs: Sequence[str], language: str) -> Dict[str, str]:
    """
    Return a generated XHTML narrative whose ``div`` declares *language*.

    All text is HTML-escaped.
    """
    lang = html.escape(language, quote=True)
    body = "".join(f"<p>{html.escape(p)}</p>" for p in paragraphs if p)
    return {
        "status": "generated",
        "div": (
            f'<div xmlns="{_XHTML_NS}" lang="{lang}" xml:lang="{lang}">'
            f"<h3>{html.escape(title)}</h3>{body}</div>"
        ),
    }


# ---------------------------------------------------------------------------
# Subject / author / organizations
# ---------------------------------------------------------------------------

def build_patient(
    patient: PatientRecord,
    patient_id: str,
    selected_health_address: str,
    settings: InvoiceRecordSettings,
) -> Resource:
    """
    Construct the Patient (subject) resource.

    Identifiers, in order:
      1. Local record number: ``user_ref_id`` → ``mrn`` → ``abha_ref`` → ``id``.
      2. Primary health address (``abha_ref``).
      3. The selected health address, when it differs from ``abha_ref``.
    When none are available the bundle-local urn is used so ``identifier``
    is never empty.

    Unparseable birth dates and non-FHIR genders are omitted.
    """
    identifiers: List[Dict[str, Any]] = []
    local_number = patient.user_ref_id or patient.mrn or patient.abha_ref or patient.id
    if local_number:
        identifiers.append({
            "type": {
                "coding": [{"system": _V2_0203_SYSTEM, "code": "MR", "display": "Medical record number"}],
                "text": "MR",
            },
            "system": _HEALTH_ID_SYSTEM,
            "value":  str(local_number),
        })
    if patient.abha_ref:
        identifiers.append({"system": _ABHA_SYSTEM, "value": patient.abha_ref})
    if selected_health_address and selected_health_address != patient.abha_ref:
        identifiers.append({"system": _ABHA_SYSTEM, "value": selected_health_address})
    if not identifiers:
        identifiers.append({"system": _RFC3986_SYSTEM, "value": urn_reference(patient_id)})

    telecom: List[Dict[str, str]] = []
    if patient.mobile:
        telecom.append({"system": "phone", "value": patient.mobile, "use": "mobile"})
    if patient.email:
        telecom.append({"system": "email", "value": patient.email})
    if selected_health_address:
        telecom.append({"system": "url", "value": f"abha://{selected_health_address}"})

    resource = _base_resource("Patient", patient_id, settings)
    resource["identifier"] = identifiers
    if patient.name:
        resource["name"] = [{"text": patient.name}]
    gender = _normalize_gender(patient.gender)
    if gender:
        resource["gender"] = gender
    birth_date = normalize_date(patient.dob)
    if birth_date:
        resource["birthDate"] = birth_date
    if telecom:
        resource["telecom"] = telecom
    if patient.address:
        resource["address"] = [{"text": patient.address}]
    return resource


def build_practitioner(
    practitioner: PractitionerRecord,
    practitioner_id: str,
    settings: InvoiceRecordSettings,
) -> Resource:
    """Construct the Practitioner (author) resource; the license is its identifier."""
    resource = _base_resource("Practitioner", practitioner_id, settings)
    resource["identifier"] = [{
        "type": {
            "coding": [{"system": _V2_0203_SYSTEM, "code": "MD", "display": "Medical License number"}],
        },
        "system": _DOCTOR_REGISTRY,
        "value":  practitioner.license_value,
    }]
    resource["name"] = [{"text": practitioner.display_name}]
    return resource


def build_issuer_organization(
    details: Optional[OrganizationDetails],
    organization_id: str,
    settings: InvoiceRecordSettings,
) -> Resource:
    """
    Construct the issuing Organization.

    *details* may be ``None`` (organization panel disabled); the name then
    falls back to ``settings.default_organization_name``.
    """
    details = details or OrganizationDetails()
    resource = _base_resource("Organization", organization_id, settings)
    if details.gstin:
        resource["identifier"] = [{"type": {"text": "GSTIN"}, "system": _GSTIN_SYSTEM, "value": details.gstin}]
    resource["name"] = details.name or settings.default_organization_name
    if details.phone:
        resource["telecom"] = [{"system": "phone", "value": details.phone}]
    if details.address:
        resource["address"] = [{"text": details.address}]
    return resource


def build_named_organization(name: str, organization_id: str, settings: InvoiceRecordSettings) -> Resource:
    """Construct a name-only Organization (custodian or attester party)."""
    resource = _base_resource("Organization", organization_id, settings)
    resource["name"] = name
    return resource


def build_encounter(
    encounter_text: str,
    encounter_id: str,
    patient_id: str,
    period_start: str,
    settings: InvoiceRecordSettings,
) -> Resource:
    """Construct a finished ambulatory Encounter whose period is the authored instant."""
    resource = _base_resource("Encounter", encounter_id, settings)
    resource["status"] = "finished"
    resource["class"] = {"system": _ACT_CODE_SYSTEM, "code": "AMB", "display": "ambulatory"}
    resource["type"] = [{"text": encounter_text}]
    resource["subject"] = _reference(patient_id)
    resource["period"] = {"start": period_start, "end": period_start}
    return resource


# ---------------------------------------------------------------------------
# Invoice
# ---------------------------------------------------------------------------

def _price_component(kind: str, code: str, display: str, amount: Decimal, settings: InvoiceRecordSettings) -> Dict[str, Any]:
    return {
        "type":   kind,
        "code":   {"coding": [{"system": _PRICE_COMPONENT_SYSTEM, "code": code, "display": display}], "text": display},
        "amount": _money(amount, settings),
    }


def _line_price_components(line: InvoiceLine, settings: InvoiceRecordSettings) -> List[Dict[str, Any]]:
    components: List[Dict[str, Any]] = []
    tax = line_tax_amount(line)

    if settings.price_convention == "factor":
        unit_price = to_decimal(line.unit_price)
        if unit_price > 0:
            components.append(_price_component("base", "base-price", "Base price", unit_price, settings))
            components.append({"type": "informational", "code": {"text": "quantity"}, "factor": line.quantity})
    else:
        base = line_base_amount(line)
        if round_money(base) > 0:
            components.append(_price_component("base", "base-price", "Base price", base, settings))

    if round_money(tax) > 0:
        components.append(_price_component("tax", "gst", "GST", tax, settings))
    return components


def build_invoice_line_items(lines: Sequence[InvoiceLine], settings: InvoiceRecordSettings) -> List[Dict[str, Any]]:
    """
    Expand each line into one ``Invoice.lineItem``.

    The price convention (``settings.price_convention``) applies to every
    line of the build:
      * ``"extended"``  base component = quantity × unit price.
      * ``"factor"``    base component = unit price, plus an informational
                        component whose ``factor`` is the quantity.
    Zero base amounts are left out; a ``tax`` component is added when the
    line's tax is positive.
    """
    items: List[Dict[str, Any]] = []
    for sequence, line in enumerate(lines, start=1):
        label = line.description or "Charge"
        item: Dict[str, Any] = {
            "sequence": sequence,
            "chargeItemCodeableConcept": {
                "coding": [{"system": _INVOICE_ITEM_SYSTEM, "code": f"item-{sequence}", "display": label}],
                "text":   f"{label} ({_format_quantity(line.quantity)} {line.unit})",
            },
        }
        components = _line_price_components(line, settings)
        if components:
            item["priceComponent"] = components
        items.append(item)
    return items


def build_invoice(
    *,
    invoice_id: str,
    invoice_number: str,
    invoice_type: str,
    patient_id: str,
    patient_display: str,
    practitioner_id: str,
    practitioner_display: str,
    issuer_id: str,
    lines: Sequence[InvoiceLine],
    totals: InvoiceTotals,
    authored_on: str,
    settings: InvoiceRecordSettings,
    payment_terms: str = "",
    payment_status: str = "",
    invoice_date: Optional[str] = None,
) -> Resource:
    """
    Construct the Invoice resource.

    ``totals`` are the reconciled figures; ``totalPriceComponent`` is added
    only when tax is positive, so FHIR consumers can see the net/tax split.
    Payment status has no Invoice element and is carried as a note.
    ``invoice_date`` (``YYYY-MM-DD``) sets Invoice.date; without it the
    authored timestamp is used.
    """
    type_label = _INVOICE_TYPE_LABELS.get(invoice_type, f"{invoice_type.capitalize()} invoice")

    resource = _base_resource("Invoice", invoice_id, settings)
    resource["text"] = build_narrative(
        f"Invoice {invoice_number}",
        [f"Patient: {patient_display}" if patient_display else "",
         f"Total: {settings.currency} {round_money(totals.gross):.2f}"],
        settings.language,
    )
    resource["identifier"] = [{"system": _INVOICE_NUMBER_SYSTEM, "value": invoice_number}]
    resource["status"] = "issued"
    resource["type"] = {
        "coding": [{"system": _INVOICE_TYPE_SYSTEM, "code": invoice_type, "display": type_label}],
        "text":   type_label,
    }
    resource["subject"] = _reference(patient_id, patient_display or None)
    resource["recipient"] = _reference(patient_id)
    resource["date"] = invoice_date or authored_on
    resource["participant"] = [{
        "role":  {"text": "issuer"},
        "actor": _reference(practitioner_id, practitioner_display),
    }]
    resource["issuer"] = _reference(issuer_id)

    line_items = build_invoice_line_items(lines, settings)
    if line_items:
        resource["lineItem"] = line_items
    if totals.tax > 0:
        resource["totalPriceComponent"] = [
            _price_component("base", "base-price", "Base price", totals.net, settings),
            _price_component("tax", "gst", "GST", totals.tax, settings),
        ]
    resource["totalNet"] = _money(totals.net, settings)
    resource["totalGross"] = _money(totals.gross, settings)
    if payment_terms:
        resource["paymentTerms"] = payment_terms
    if payment_status:
        resource["note"] = [{"text": f"Payment status: {payment_status}"}]
    return resource


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------

def build_binary(attachment: Attachment, binary_id: str, settings: InvoiceRecordSettings) -> Resource:
    """Construct a Binary whose ``data`` is plain base64 (no ``data:`` prefix)."""
    resource = _base_resource("Binary", binary_id, settings)
    resource["contentType"] = attachment.content_type
    resource["data"] = base64.b64encode(attachment.data).decode("ascii")
    return resource


def build_document_reference(
    attachment: Attachment,
    document_id: str,
    binary_id: str,
    patient_id: str,
    authored_on: str,
    settings: InvoiceRecordSettings,
) -> Resource:
    """Construct a DocumentReference whose attachment URL points at *binary_id*."""
    resource = _base_resource("DocumentReference", document_id, settings)
    resource["status"] = "current"
    resource["type"] = {"text": "Invoice document"}
    resource["subject"] = _reference(patient_id)
    resource["date"] = authored_on
    resource["content"] = [{
        "attachment": {
            "contentType": attachment.content_type,
            "title":       attachment.filename,
            "url":         urn_reference(binary_id),
        }
    }]
    return resource
