"""
invoice_record.py
-----------------
Invoice Record Builder: Assembly Engine
---------------------------------------
Entry point that turns one validated request into one FHIR document Bundle.

Pipeline
--------
    validate  ->  read attachments (concurrent)  ->  build records  ->
    Composition  ->  Bundle

Every call generates fresh identifiers, so two builds of the same request
produce structurally identical bundles that differ only in ids and
timestamps.  No state is shared between calls.

Public API:
    assemble_invoice_record()  Synchronous; attachments already in memory.
    build_invoice_record()     Async; reads attachment sources first.

Author: Invoice Record Builder team
Project: Invoice Record Builder
"""

from __future__ import annotations

import logging
import time
from typing import List, Optional, Sequence, Set

from attachments import AttachmentSource, read_attachments
from bundle_assembler import InvoiceRecordResources, assemble_bundle, build_composition
from config import InvoiceRecordSettings
from fhir_builders import (
    PLACEHOLDER_ATTACHMENT,
    Resource,
    build_binary,
    build_document_reference,
    build_encounter,
    build_invoice,
    build_issuer_organization,
    build_named_organization,
    build_patient,
    build_practitioner,
)
from identifiers import coerce_identifier, new_identifier
from schemas import Attachment, InvoiceRecordRequest
from temporal import normalize_date, to_offset_timestamp
from totals import compute_totals, line_base_amount, reconcile
from validation import InvoiceRecordValidationError, validate_invoice_request

logger = logging.getLogger(__name__)


def _default_invoice_number() -> str:
    return f"INV-{int(time.time() * 1000)}"


def _check(request: InvoiceRecordRequest, attachment_count: int) -> None:
    errors = validate_invoice_request(request, attachment_count)
    if errors:
        raise InvoiceRecordValidationError(errors)


def _claim_identifier(candidate: Optional[str], used: Set[str], role: str) -> str:
    """Reuse *candidate* when it is a free UUID, otherwise mint a new one."""
    identifier = coerce_identifier(candidate)
    if identifier in used:
        logger.warning("invoice_record: %s id %s already used in this record; generating a fresh one.", role, identifier)
        identifier = new_identifier()
    used.add(identifier)
    return identifier


def assemble_invoice_record(
    request: InvoiceRecordRequest,
    settings: InvoiceRecordSettings,
    attachments: Optional[Sequence[Attachment]] = None,
) -> Resource:
    """
    Build the Invoice Record document Bundle for *request*.

    Args:
        request:     Parsed request.
        settings:    Build configuration (practitioner, profiles, flags).
        attachments: Files already read into memory.  When empty, one
                     placeholder PDF is synthesized.

    Returns:
        The Bundle as a JSON-ready dict.

    Raises:
        InvoiceRecordValidationError: the request is incomplete.
        bundle_assembler.BundleStructureError: the record graph is inconsistent.
    """
    attachments = list(attachments or [])
    _check(request, len(attachments))

    authored_on = to_offset_timestamp(request.authored_at)
    patient = request.patient
    practitioner = settings.practitioner

    # Record ids must be unique within the bundle, even when callers reuse one.
    used_ids: Set[str] = set()
    patient_id = _claim_identifier(patient.user_ref_id, used_ids, "patient")
    practitioner_id = _claim_identifier(practitioner.id, used_ids, "practitioner")

    organization = request.organization if settings.include_organization_panel else None
    issuer_id = _claim_identifier(organization.id if organization else None, used_ids, "issuer")

    patient_resource = build_patient(patient, patient_id, request.selected_health_address, settings)
    practitioner_resource = build_practitioner(practitioner, practitioner_id, settings)
    issuer_resource = build_issuer_organization(organization, issuer_id, settings)

    billable_lines = [line for line in request.lines if line_base_amount(line) > 0]
    totals = reconcile(
        compute_totals(billable_lines),
        request.total_net_override,
        request.total_tax_override,
        request.total_gross_override,
    )

    invoice_resource = build_invoice(
        invoice_id=new_identifier(),
        invoice_number=request.invoice_number or _default_invoice_number(),
        invoice_type=request.invoice_type or "healthcare",
        patient_id=patient_id,
        patient_display=patient.name,
        practitioner_id=practitioner_id,
        practitioner_display=practitioner.display_name,
        issuer_id=issuer_id,
        lines=billable_lines,
        totals=totals,
        authored_on=authored_on,
        settings=settings,
        payment_terms=request.payment_terms,
        payment_status=request.payment_status,
        invoice_date=normalize_date(request.invoice_date),
    )

    resources = InvoiceRecordResources(
        patient=patient_resource,
        practitioner=practitioner_resource,
        issuer=issuer_resource,
        invoice=invoice_resource,
    )

    if settings.include_encounter and request.encounter_text:
        resources.encounter = build_encounter(
            request.encounter_text, new_identifier(), patient_id, authored_on, settings
        )
    if request.custodian_name:
        resources.custodian = build_named_organization(request.custodian_name, new_identifier(), settings)

    attester_mode: Optional[str] = None
    if settings.include_attester:
        attester_mode = request.attester_mode
        if request.attester_party_type == "Organization" and request.attester_org_name:
            resources.attester_organization = build_named_organization(
                request.attester_org_name, new_identifier(), settings
            )

    files: List[Attachment] = attachments or [PLACEHOLDER_ATTACHMENT]
    if not attachments:
        logger.info("invoice_record: no attachments supplied, using placeholder '%s'.", PLACEHOLDER_ATTACHMENT.filename)
    for attachment in files:
        binary_id = new_identifier()
        resources.binaries.append(build_binary(attachment, binary_id, settings))
        resources.document_references.append(
            build_document_reference(attachment, new_identifier(), binary_id, patient_id, authored_on, settings)
        )

    composition = build_composition(
        composition_id=new_identifier(),
        resources=resources,
        status=request.status,
        title=request.title,
        authored_on=authored_on,
        settings=settings,
        attester_mode=attester_mode,
        attester_party_type=request.attester_party_type,
    )
    # The bundle is stamped at assembly time, not with the authored time.
    bundle = assemble_bundle(composition, resources, to_offset_timestamp(), settings)

    logger.info(
        "invoice_record: built %s with %d entries (%d line items, %d attachments, gross %s %s).",
        bundle["id"], len(bundle["entry"]), len(billable_lines), len(files), totals.gross, settings.currency,
    )
    return bundle


async def build_invoice_record(
    request: InvoiceRecordRequest,
    settings: InvoiceRecordSettings,
    sources: Sequence[AttachmentSource] = (),
) -> Resource:
    """
    Validate, read every attachment source, then assemble.

    Validation runs before any read, so a refused request never touches
    the sources.

    Raises:
        InvoiceRecordValidationError: the request is incomplete.
        attachments.AttachmentReadError: any attachment read failed.
    """
    _check(request, len(sources))
    attachments = await read_attachments(sources)
    return assemble_invoice_record(request, settings, attachments)
