"""
bundle_assembler.py
-------------------
Invoice Record Builder: Reference Graph Assembler
-------------------------------------------------
Builds the Composition (the document's root descriptor) and wraps it with
every other record into a FHIR ``document`` Bundle.

Entry order:
    Composition, Patient, Practitioner, Organization (issuer), Invoice,
    then the optional Encounter / custodian Organization / attester
    Organization, then DocumentReferences, then Binaries.

Each entry's ``fullUrl`` is ``urn:uuid:<resource.id>``, so every
``urn:uuid:`` reference inside the bundle can be resolved without a
positional lookup.  :func:`check_bundle_integrity` verifies this together
with id uniqueness and the absence of dangling references.

Author: Invoice Record Builder team
Project: Invoice Record Builder
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, Field

from config import InvoiceRecordSettings
from fhir_builders import PROFILE_SETS, Resource, build_narrative
from identifiers import new_identifier, urn_reference

logger = logging.getLogger(__name__)

_DOCUMENT_TYPE_SYSTEM = "http://nrces.in/CodeSystem/document-type"
_RFC3986_SYSTEM = "urn:ietf:rfc:3986"

SECTION_TITLE = "Invoice section"
DOCUMENT_TITLE_TEXT = "Invoice Record"


class BundleStructureError(Exception):
    """The record set cannot form a self-consistent document bundle."""


class InvoiceRecordResources(BaseModel):
    """Every record of one build except the Composition."""

    patient:               Resource
    practitioner:          Resource
    issuer:                Resource
    invoice:               Resource
    encounter:             Optional[Resource] = None
    custodian:             Optional[Resource] = None
    attester_organization: Optional[Resource] = None
    document_references:   List[Resource] = Field(default_factory=list)
    binaries:              List[Resource] = Field(default_factory=list)

    def ordered(self) -> List[Resource]:
        """Records in bundle order, optional ones skipped when absent."""
        records = [self.patient, self.practitioner, self.issuer, self.invoice]
        records.extend(r for r in (self.encounter, self.custodian, self.attester_organization) if r)
        records.extend(self.document_references)
        records.extend(self.binaries)
        return records


def _reference(resource: Resource, display: Optional[str] = None) -> Dict[str, str]:
    ref = {"reference": urn_reference(resource["id"])}
    if display:
        ref["display"] = display
    return ref


def _display_name(resource: Resource) -> Optional[str]:
    names = resource.get("name")
    if isinstance(names, list) and names:
        return names[0].get("text")
    if isinstance(names, str):
        return names
    return None


def _build_attester(
    resources: InvoiceRecordResources,
    attester_mode: Optional[str],
    attester_party_type: str,
    authored_on: str,
) -> Dict[str, Any]:
    if attester_mode is None:
        return {"mode": "official", "time": authored_on, "party": _reference(resources.practitioner)}

    if attester_party_type == "Organization" and resources.attester_organization:
        party = resources.attester_organization
    else:
        party = resources.practitioner
    return {"mode": attester_mode, "time": authored_on, "party": _reference(party, _display_name(party))}


def build_composition(
    *,
    composition_id: str,
    resources: InvoiceRecordResources,
    status: str,
    title: str,
    authored_on: str,
    settings: InvoiceRecordSettings,
    attester_mode: Optional[str] = None,
    attester_party_type: str = "Practitioner",
) -> Resource:
    """
    Construct the Composition for an Invoice Record.

    The single section lists the Invoice first, then every
    DocumentReference.  ``attester_mode=None`` yields the default official
    attester (the author).  An Organization party is used only when an
    attester Organization was built; otherwise the author attests.
    """
    patient_display = _display_name(resources.patient)
    practitioner_display = _display_name(resources.practitioner)

    doc_type: Dict[str, Any] = {"text": DOCUMENT_TITLE_TEXT}
    if settings.profile_set == "ndhm":
        doc_type["coding"] = [{"system": _DOCUMENT_TYPE_SYSTEM, "code": "INVR", "display": DOCUMENT_TITLE_TEXT}]

    entries = [_reference(resources.invoice)]
    entries.extend(_reference(d) for d in resources.document_references)

    composition: Resource = {
        "resourceType": "Composition",
        "id":           composition_id,
        "language":     settings.language,
        "meta":         {"profile": [PROFILE_SETS[settings.profile_set]["Composition"]]},
        "text": build_narrative(
            title,
            [f"Patient: {patient_display}" if patient_display else "",
             f"Author: {practitioner_display}" if practitioner_display else "",
             f"Documents attached: {len(resources.document_references)}"],
            settings.language,
        ),
        "status":  status,
        "type":    doc_type,
        "subject": _reference(resources.patient, patient_display),
    }
    if resources.encounter:
        composition["encounter"] = _reference(resources.encounter)
    composition["date"] = authored_on
    composition["author"] = [_reference(resources.practitioner, practitioner_display)]
    composition["title"] = title
    composition["attester"] = [_build_attester(resources, attester_mode, attester_party_type, authored_on)]
    if resources.custodian:
        composition["custodian"] = _reference(resources.custodian, _display_name(resources.custodian))
    composition["section"] = [{
        "title": SECTION_TITLE,
        "code":  {"text": DOCUMENT_TITLE_TEXT},
        "entry": entries,
    }]
    logger.debug("bundle_assembler: composition %s built with %d section entries.", composition_id, len(entries))
    return composition


# ---------------------------------------------------------------------------
# Reference graph
# ---------------------------------------------------------------------------

def _walk_references(node: Any) -> Iterator[str]:
    if isinstance(node, dict):
        for key, value in node.items():
            if key == "reference" and isinstance(value, str):
                yield value
            elif key == "url" and isinstance(value, str) and value.startswith("urn:uuid:"):
                # Attachment.url pointing at a Binary in the same bundle.
                yield value
            else:
                yield from _walk_references(value)
    elif isinstance(node, list):
        for item in node:
            yield from _walk_references(item)


def collect_references(resource: Resource) -> List[str]:
    """
    Return every reference string embedded anywhere in *resource*.

    Covers ``Reference.reference`` values and ``urn:uuid:`` attachment URLs.
    """
    return list(_walk_references(resource))


def find_dangling_references(bundle: Resource) -> List[Tuple[str, str]]:
    """
    Return ``(resource id, reference)`` pairs whose target is not an entry.
    """
    entries = bundle.get("entry", [])
    locators = {entry.get("fullUrl") for entry in entries}
    dangling: List[Tuple[str, str]] = []
    for entry in entries:
        resource = entry.get("resource", {})
        for ref in collect_references(resource):
            if ref not in locators:
                dangling.append((resource.get("id", ""), ref))
    return dangling


def check_bundle_integrity(bundle: Resource) -> List[str]:
    """
    Check the structural invariants of a document bundle.

    Returns:
        A list of human-readable issues; empty when the bundle is sound.
        Checked: every locator equals ``urn:uuid:<resource.id>``, ids are
        unique, the first entry is the Composition, and no reference dangles.
    """
    issues: List[str] = []
    entries = bundle.get("entry", [])
    if not entries:
        return ["Bundle has no entries"]

    seen: set = set()
    for index, entry in enumerate(entries):
        resource = entry.get("resource") or {}
        resource_id = resource.get("id")
        if not resource_id:
            issues.append(f"Entry {index} resource missing id")
            continue
        expected = urn_reference(resource_id)
        if entry.get("fullUrl") != expected:
            issues.append(f"Entry {index} fullUrl mismatch: expected {expected}, got {entry.get('fullUrl')}")
        if resource_id in seen:
            issues.append(f"Entry {index} duplicates id {resource_id}")
        seen.add(resource_id)

    if entries[0].get("resource", {}).get("resourceType") != "Composition":
        issues.append("First entry is not a Composition")

    for source_id, ref in find_dangling_references(bundle):
        issues.append(f"Resource {source_id} references missing entry {ref}")
    return issues


def assemble_bundle(
    composition: Resource,
    resources: InvoiceRecordResources,
    timestamp: str,
    settings: InvoiceRecordSettings,
    bundle_id: Optional[str] = None,
) -> Resource:
    """
    Wrap *composition* and *resources* into a ``document`` Bundle.

    Raises:
        BundleStructureError: A Composition reference has no matching record,
            or the finished bundle fails :func:`check_bundle_integrity`.
    """
    records = [composition] + resources.ordered()

    known = {urn_reference(r["id"]) for r in records}
    missing = [ref for ref in collect_references(composition) if ref not in known]
    if missing:
        raise BundleStructureError(f"Composition references records not in the bundle: {missing}")

    bundle_id = bundle_id or new_identifier()
    bundle: Resource = {
        "resourceType": "Bundle",
        "id":           f"InvoiceBundle-{bundle_id}",
        "language":     settings.language,
        "meta": {
            "profile":     [PROFILE_SETS[settings.profile_set]["Bundle"]],
            "lastUpdated": timestamp,
        },
        "identifier": {"system": _RFC3986_SYSTEM, "value": urn_reference(bundle_id)},
        "type":       "document",
        "timestamp":  timestamp,
        "entry": [{"fullUrl": urn_reference(r["id"]), "resource": r} for r in records],
    }

    issues = check_bundle_integrity(bundle)
    if issues:
        raise BundleStructureError("; ".join(issues))

    logger.debug("bundle_assembler: bundle %s assembled with %d entries.", bundle["id"], len(records))
    return bundle
