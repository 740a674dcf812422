"""
test_invoice_record.py
----------------------
Invoice Record Builder: Test Suite for invoice_record.py
--------------------------------------------------------
End-to-end properties of assembled bundles.  Async builds are driven with
asyncio.run.

Tests cover:
    - Every locator equals urn:uuid:<record id>
    - No dangling references
    - Zero attachments yields exactly one placeholder Binary + DocumentReference
    - Supplied attachments replace the placeholder
    - Refused requests raise with every error and never read attachments
    - Net equals the rounded line sum when no override is supplied
    - Feature flags (organization panel, encounter, attester)
    - Reused external ids never collide inside one bundle
    - The bundle is stamped at assembly time; records keep the authored time
    - invoice_date sets Invoice.date independently of the Composition date
    - Two builds of one request differ only in identifiers and the assembly stamp

Run:
    pytest tests/test_invoice_record.py -v --tb=short

Author: Invoice Record Builder team
Project: Invoice Record Builder
"""

import asyncio
import json
import os
import re
import sys
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from attachments import AttachmentReadError, BytesAttachmentSource
from bundle_assembler import check_bundle_integrity, find_dangling_references
from config import InvoiceRecordSettings
from fhir_builders import PLACEHOLDER_PDF_B64
from identifiers import urn_reference
from invoice_record import assemble_invoice_record, build_invoice_record
from schemas import (
    Attachment,
    InvoiceLine,
    InvoiceRecordRequest,
    OrganizationDetails,
    PatientRecord,
    PractitionerRecord,
)
from validation import MISSING_PATIENT, NOTHING_BILLABLE, InvoiceRecordValidationError

PATIENT_REF = "3F2B8C1E-5A4D-4E7F-9B21-0C6D8E4F1A23"
UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}")


def _request(**overrides):
    data = {
        "patient": PatientRecord(
            id="101",
            name="Asha Raman",
            gender="female",
            dob="05-08-1990",
            user_ref_id=PATIENT_REF,
            abha_ref="asha.raman@abdm",
            abha_addresses=["asha.raman@abdm", "asha.r@sbx"],
        ),
        "selected_health_address": "asha.r@sbx",
        "authored_at": "2025-08-30T15:04",
        "invoice_number": "INV-2025-001",
        "lines": [
            InvoiceLine(description="Consultation", quantity=1, unit_price=500),
            InvoiceLine(description="Dressing", quantity=3, unit_price=33.335, tax_percent=12),
        ],
    }
    data.update(overrides)
    return InvoiceRecordRequest(**data)


def _resources(bundle, kind):
    return [e["resource"] for e in bundle["entry"] if e["resource"]["resourceType"] == kind]


def _strip_ids(bundle):
    stripped = json.loads(UUID_RE.sub("<id>", json.dumps(bundle)))
    stripped["timestamp"] = stripped["meta"]["lastUpdated"] = "<assembled>"
    return stripped


# ── Bundle invariants ─────────────────────────────────────────────────────────

def test_locators_equal_prefix_plus_id():
    """Every entry locator is urn:uuid:<resource.id>."""
    bundle = assemble_invoice_record(_request(), InvoiceRecordSettings())
    for entry in bundle["entry"]:
        assert entry["fullUrl"] == urn_reference(entry["resource"]["id"])


def test_no_dangling_references():
    """Every reference resolves to an entry."""
    request = _request(encounter_text="OPD visit", custodian_name="Records Dept",
                       attester_party_type="Organization", attester_org_name="Billing Office")
    bundle = assemble_invoice_record(request, InvoiceRecordSettings())
    assert find_dangling_references(bundle) == []
    assert check_bundle_integrity(bundle) == []


def test_ids_unique():
    """No two entries share an id."""
    bundle = assemble_invoice_record(_request(), InvoiceRecordSettings())
    ids = [e["resource"]["id"] for e in bundle["entry"]]
    assert len(ids) == len(set(ids))


def test_patient_id_reuses_external_reference():
    """A valid external UUID becomes the Patient id, lower-cased."""
    bundle = assemble_invoice_record(_request(), InvoiceRecordSettings())
    [patient] = _resources(bundle, "Patient")
    assert patient["id"] == PATIENT_REF.lower()


def test_timestamp_has_numeric_offset():
    """Composition date keeps the authored instant with a numeric offset."""
    bundle = assemble_invoice_record(_request(), InvoiceRecordSettings())
    [composition] = _resources(bundle, "Composition")
    assert composition["date"].startswith("2025-08-30T15:04:00")
    assert not bundle["timestamp"].endswith("Z")


def test_bundle_stamped_at_assembly_time():
    """A back-dated record still gets a current bundle timestamp."""
    before = datetime.now(timezone.utc).replace(microsecond=0)
    bundle = assemble_invoice_record(_request(authored_at="2020-01-01T10:00"), InvoiceRecordSettings())
    after = datetime.now(timezone.utc)
    [composition] = _resources(bundle, "Composition")
    [invoice] = _resources(bundle, "Invoice")
    stamped = datetime.fromisoformat(bundle["timestamp"])
    assert before <= stamped <= after
    assert bundle["meta"]["lastUpdated"] == bundle["timestamp"]
    assert composition["date"].startswith("2020-01-01T10:00:00")
    assert invoice["date"] == composition["date"]


def test_colliding_external_ids_are_replaced():
    """A reused id shared by two records is swapped for a fresh one."""
    request = _request(organization=OrganizationDetails(id=PATIENT_REF, name="City Clinic"))
    settings = InvoiceRecordSettings(practitioner=PractitionerRecord(id=PATIENT_REF))
    bundle = assemble_invoice_record(request, settings)
    [patient] = _resources(bundle, "Patient")
    [practitioner] = _resources(bundle, "Practitioner")
    [issuer] = _resources(bundle, "Organization")
    assert patient["id"] == PATIENT_REF.lower()
    assert practitioner["id"] != patient["id"]
    assert issuer["id"] not in (patient["id"], practitioner["id"])
    assert check_bundle_integrity(bundle) == []


# ── Attachments ───────────────────────────────────────────────────────────────

def test_zero_attachments_yield_one_placeholder():
    """Exactly one placeholder Binary and matching DocumentReference."""
    bundle = assemble_invoice_record(_request(), InvoiceRecordSettings())
    binaries = _resources(bundle, "Binary")
    documents = _resources(bundle, "DocumentReference")
    assert len(binaries) == 1 and len(documents) == 1
    assert binaries[0]["data"] == PLACEHOLDER_PDF_B64
    attachment = documents[0]["content"][0]["attachment"]
    assert attachment["title"] == "placeholder.pdf"
    assert attachment["url"] == urn_reference(binaries[0]["id"])


def test_supplied_attachments_replace_placeholder():
    """Caller files are used one-for-one, in order."""
    attachments = [
        Attachment(filename="bill.pdf", content_type="application/pdf", data=b"%PDF-bill"),
        Attachment(filename="scan.png", content_type="image/png", data=b"\x89PNG"),
    ]
    bundle = assemble_invoice_record(_request(), InvoiceRecordSettings(), attachments)
    titles = [d["content"][0]["attachment"]["title"] for d in _resources(bundle, "DocumentReference")]
    assert titles == ["bill.pdf", "scan.png"]
    assert len(_resources(bundle, "Binary")) == 2


def test_async_build_reads_sources():
    """build_invoice_record reads every source before assembly."""
    sources = [BytesAttachmentSource("bill.pdf", "application/pdf", data=b"%PDF-bill")]
    bundle = asyncio.run(build_invoice_record(_request(), InvoiceRecordSettings(), sources))
    [document] = _resources(bundle, "DocumentReference")
    assert document["content"][0]["attachment"]["title"] == "bill.pdf"


def test_async_build_attachment_failure_aborts():
    """One unreadable attachment fails the build with no bundle."""
    reader = AsyncMock(side_effect=OSError("unreadable"))
    sources = [
        BytesAttachmentSource("ok.pdf", "application/pdf", data=b"%PDF"),
        BytesAttachmentSource("bad.pdf", "application/pdf", reader=reader),
    ]
    with pytest.raises(AttachmentReadError):
        asyncio.run(build_invoice_record(_request(), InvoiceRecordSettings(), sources))


# ── Validation ────────────────────────────────────────────────────────────────

def test_refused_request_lists_both_errors():
    """Empty subject plus nothing billable: both errors, no bundle."""
    with pytest.raises(InvoiceRecordValidationError) as exc_info:
        assemble_invoice_record(_request(patient=None, selected_health_address="", lines=[]), InvoiceRecordSettings())
    assert MISSING_PATIENT in exc_info.value.errors
    assert NOTHING_BILLABLE in exc_info.value.errors


def test_refused_request_never_reads_sources():
    """Validation happens before any attachment read."""
    reader = AsyncMock(return_value=b"%PDF")
    sources = [BytesAttachmentSource("bill.pdf", "application/pdf", reader=reader)]
    with pytest.raises(InvoiceRecordValidationError):
        asyncio.run(build_invoice_record(_request(patient=None, selected_health_address=""), InvoiceRecordSettings(), sources))
    reader.assert_not_called()


# ── Totals ────────────────────────────────────────────────────────────────────

def test_net_is_rounded_line_sum():
    """500 + 3 x 33.335 = 600.005 rounds to 600.01."""
    bundle = assemble_invoice_record(_request(), InvoiceRecordSettings())
    [invoice] = _resources(bundle, "Invoice")
    assert Decimal(str(invoice["totalNet"]["value"])) == Decimal("600.01")


def test_non_numeric_override_ignored():
    """A junk override leaves the computed total in place."""
    bundle = assemble_invoice_record(_request(total_net_override="lots"), InvoiceRecordSettings())
    [invoice] = _resources(bundle, "Invoice")
    assert invoice["totalNet"]["value"] == 600.01


def test_numeric_override_used():
    """A numeric gross override replaces the computed gross."""
    bundle = assemble_invoice_record(_request(total_gross_override="750"), InvoiceRecordSettings())
    [invoice] = _resources(bundle, "Invoice")
    assert invoice["totalGross"]["value"] == 750.0


def test_zero_amount_lines_not_billed():
    """Lines with no amount do not become line items."""
    lines = [InvoiceLine(description="Consultation", quantity=1, unit_price=500), InvoiceLine(description="Free", unit_price=0)]
    bundle = assemble_invoice_record(_request(lines=lines), InvoiceRecordSettings())
    [invoice] = _resources(bundle, "Invoice")
    assert len(invoice["lineItem"]) == 1


def test_default_invoice_number():
    """A blank invoice number gets an INV- prefixed default."""
    bundle = assemble_invoice_record(_request(invoice_number=""), InvoiceRecordSettings())
    [invoice] = _resources(bundle, "Invoice")
    assert invoice["identifier"][0]["value"].startswith("INV-")


def test_invoice_date_sets_invoice_date_only():
    """invoiceDate is normalized onto Invoice.date; the Composition keeps the authored time."""
    bundle = assemble_invoice_record(_request(invoice_date="28-08-2025"), InvoiceRecordSettings())
    [invoice] = _resources(bundle, "Invoice")
    [composition] = _resources(bundle, "Composition")
    assert invoice["date"] == "2025-08-28"
    assert composition["date"].startswith("2025-08-30T15:04:00")


def test_unusable_invoice_date_falls_back_to_authored_time():
    """An invoice date that does not normalize is replaced by the authored time."""
    bundle = assemble_invoice_record(_request(invoice_date="2025-02-30"), InvoiceRecordSettings())
    [invoice] = _resources(bundle, "Invoice")
    [composition] = _resources(bundle, "Composition")
    assert invoice["date"] == composition["date"]


# ── Feature flags ─────────────────────────────────────────────────────────────

def test_optional_records_absent_by_default():
    """No encounter text, custodian or attester org: no optional records."""
    bundle = assemble_invoice_record(_request(), InvoiceRecordSettings())
    assert _resources(bundle, "Encounter") == []
    assert len(_resources(bundle, "Organization")) == 1
    [composition] = _resources(bundle, "Composition")
    assert "encounter" not in composition and "custodian" not in composition


def test_encounter_flag_off_suppresses_encounter():
    """include_encounter=False ignores encounter text."""
    settings = InvoiceRecordSettings(include_encounter=False)
    bundle = assemble_invoice_record(_request(encounter_text="OPD visit"), settings)
    assert _resources(bundle, "Encounter") == []


def test_encounter_flag_on():
    """Encounter text yields an Encounter referenced by the Composition."""
    bundle = assemble_invoice_record(_request(encounter_text="OPD visit"), InvoiceRecordSettings())
    [encounter] = _resources(bundle, "Encounter")
    [composition] = _resources(bundle, "Composition")
    assert composition["encounter"]["reference"] == urn_reference(encounter["id"])


def test_organization_panel_flag():
    """Panel details are honored only when the flag is on."""
    request = _request(organization=OrganizationDetails(name="City Clinic", gstin="29ABCDE1234F1Z5"))
    on = assemble_invoice_record(request, InvoiceRecordSettings())
    off = assemble_invoice_record(request, InvoiceRecordSettings(include_organization_panel=False))
    assert _resources(on, "Organization")[0]["name"] == "City Clinic"
    assert _resources(off, "Organization")[0]["name"] == "Default Hospital"


def test_attester_flag_off_uses_official_author():
    """include_attester=False falls back to the official author attester."""
    request = _request(attester_mode="legal", attester_party_type="Organization", attester_org_name="Billing Office")
    bundle = assemble_invoice_record(request, InvoiceRecordSettings(include_attester=False))
    [composition] = _resources(bundle, "Composition")
    [practitioner] = _resources(bundle, "Practitioner")
    assert composition["attester"][0]["mode"] == "official"
    assert composition["attester"][0]["party"]["reference"] == urn_reference(practitioner["id"])
    assert len(_resources(bundle, "Organization")) == 1


def test_attester_organization_emitted():
    """An Organization attester is built and referenced."""
    request = _request(attester_mode="legal", attester_party_type="Organization", attester_org_name="Billing Office")
    bundle = assemble_invoice_record(request, InvoiceRecordSettings())
    [composition] = _resources(bundle, "Composition")
    names = [o["name"] for o in _resources(bundle, "Organization")]
    assert names == ["Default Hospital", "Billing Office"]
    assert composition["attester"][0]["mode"] == "legal"
    assert composition["attester"][0]["party"]["display"] == "Billing Office"


# ── Idempotence ───────────────────────────────────────────────────────────────

def test_two_builds_differ_only_in_identifiers():
    """Identical input gives structurally identical bundles modulo ids."""
    settings = InvoiceRecordSettings()
    first = assemble_invoice_record(_request(), settings)
    second = assemble_invoice_record(_request(), settings)
    assert first["id"] != second["id"]
    assert _strip_ids(first) == _strip_ids(second)
