"""
validation.py
-------------
Invoice Record Builder: Pre-build Validator
-------------------------------------------
Checks a request for completeness before any record is built.  Every
problem is collected into one list so the caller can fix them all at once;
an empty list means the build may proceed.

Author: Invoice Record Builder team
Project: Invoice Record Builder
"""

from __future__ import annotations

import logging
from typing import Any, List, Mapping

from pydantic import ValidationError

from health_addresses import health_address_values
from schemas import COMPOSITION_STATUSES, InvoiceRecordRequest
from temporal import is_wall_clock
from totals import line_base_amount

logger = logging.getLogger(__name__)

MISSING_PATIENT = "Select a patient (required)."
MISSING_STATUS = "Status is required."
MISSING_TITLE = "Title is required."
NOTHING_BILLABLE = "Add at least one invoice line with amount > 0, or upload at least one document."


class InvoiceRecordValidationError(ValueError):
    """A build was refused; ``errors`` lists every reason."""

    def __init__(self, errors: List[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


def validate_invoice_request(request: InvoiceRecordRequest, attachment_count: int) -> List[str]:
    """
    Return every completeness problem with *request*.

    Args:
        request:          The parsed request.
        attachment_count: Number of files the caller supplied (the
                          placeholder is not counted).

    Returns:
        Error messages in a stable order; empty when the build may proceed.
    """
    errors: List[str] = []

    if request.patient is None:
        errors.append(MISSING_PATIENT)

    if not request.status:
        errors.append(MISSING_STATUS)
    elif request.status not in COMPOSITION_STATUSES:
        errors.append(f"Status must be one of {', '.join(COMPOSITION_STATUSES)} (got '{request.status}').")

    if not request.title:
        errors.append(MISSING_TITLE)

    if request.authored_at and not is_wall_clock(request.authored_at):
        errors.append(f"Date/time '{request.authored_at}' is not a valid local date-time.")

    if request.selected_health_address and request.patient is not None:
        if request.selected_health_address not in health_address_values(request.patient):
            errors.append(
                f"Health address '{request.selected_health_address}' is not one of the patient's addresses."
            )

    if request.attester_party_type == "Organization" and not request.attester_org_name:
        errors.append("Attester organization name is required when the attester is an Organization.")

    billable = any(line_base_amount(line) > 0 for line in request.lines)
    if not billable and attachment_count <= 0:
        errors.append(NOTHING_BILLABLE)

    if errors:
        logger.info("validation: request refused with %d error(s).", len(errors))
    return errors


def parse_invoice_request(raw: Mapping[str, Any]) -> InvoiceRecordRequest:
    """
    Parse a raw JSON mapping into :class:`InvoiceRecordRequest`.

    Raises:
        InvoiceRecordValidationError: with one message per pydantic error.
    """
    try:
        return InvoiceRecordRequest.model_validate(raw)
    except ValidationError as exc:
        errors = [
            f"{'.'.join(str(p) for p in err['loc']) or 'request'}: {err['msg']}"
            for err in exc.errors()
        ]
        raise InvoiceRecordValidationError(errors) from exc
