"""
patient_directory.py
--------------------
Invoice Record Builder: Patient Directory
-----------------------------------------
Loads the list of patients a caller can pick as the invoice subject.

Lookup strategy:
  1. PRIMARY   Remote patient API (``settings.patient_api_url``) with the
               configured bearer token.
  2. SECONDARY Local JSON file (``settings.patients_file``), used when the
               API is not configured, fails, or returns an empty list.

Both sources may return a bare JSON list or an object wrapping the list
under ``"patients"`` or ``"data"``.  Entries that do not validate as a
:class:`schemas.PatientRecord` are skipped with a warning.

Author: Invoice Record Builder team
Project: Invoice Record Builder
"""

from __future__ import annotations

import json
import logging
from typing import Any, List, Literal, Optional

import httpx
from pydantic import BaseModel, ValidationError

from config import InvoiceRecordSettings
from schemas import PatientRecord
from submission_client import GatewayAPIError, bearer_headers

logger = logging.getLogger(__name__)

PatientSource = Literal["api", "file", "none"]


class PatientDirectoryResult(BaseModel):
    """Patients found, and which source they came from."""

    patients: List[PatientRecord]
    source:   PatientSource


def _extract_list(payload: Any) -> List[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("patients", "data"):
            if isinstance(payload.get(key), list):
                return payload[key]
    return []


def _to_records(raw: List[Any], source: str) -> List[PatientRecord]:
    records: List[PatientRecord] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            logger.warning("patient_directory: %s entry %d is not an object, skipped.", source, index)
            continue
        try:
            records.append(PatientRecord.model_validate(item))
        except ValidationError as exc:
            logger.warning("patient_directory: %s entry %d invalid (%d errors), skipped.", source, index, exc.error_count())
    return records


async def _fetch_from_api(
    settings: InvoiceRecordSettings,
    transport: Optional[httpx.AsyncBaseTransport],
) -> List[PatientRecord]:
    async with httpx.AsyncClient(timeout=settings.http_timeout, transport=transport) as http:
        try:
            resp = await http.get(settings.patient_api_url, headers=bearer_headers(settings.auth_token))
        except httpx.HTTPError as exc:
            raise GatewayAPIError(0, str(exc)) from exc
    if resp.status_code not in range(200, 300):
        raise GatewayAPIError(resp.status_code, resp.text[:300])
    try:
        payload = resp.json()
    except ValueError as exc:
        raise GatewayAPIError(resp.status_code, "response is not JSON") from exc
    return _to_records(_extract_list(payload), "api")


def _load_from_file(path: str) -> List[PatientRecord]:
    try:
        with open(path, encoding="utf-8") as f:
            payload = json.load(f)
    except (FileNotFoundError, json.JSONDecodeError) as exc:
        logger.warning("patient_directory: could not load %s (%s).", path, exc)
        return []
    return _to_records(_extract_list(payload), "file")


async def load_patients(
    settings: InvoiceRecordSettings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> PatientDirectoryResult:
    """
    Load the patient directory, API first, then the local file.

    Args:
        settings:  Build settings (API URL, token, local file path).
        transport: Optional ``httpx`` transport for tests.

    Returns:
        :class:`PatientDirectoryResult`.  ``source`` is ``"none"`` when both
        sources came back empty.
    """
    if settings.patient_api_url:
        try:
            patients = await _fetch_from_api(settings, transport)
        except GatewayAPIError as exc:
            logger.warning(
                "patient_directory: API lookup failed (HTTP %d), falling back to %s.",
                exc.status_code, settings.patients_file,
            )
        else:
            if patients:
                logger.info("patient_directory: %d patient(s) loaded from API.", len(patients))
                return PatientDirectoryResult(patients=patients, source="api")
            logger.warning("patient_directory: API returned no patients, falling back to %s.", settings.patients_file)

    patients = _load_from_file(settings.patients_file)
    if patients:
        logger.info("patient_directory: %d patient(s) loaded from %s.", len(patients), settings.patients_file)
        return PatientDirectoryResult(patients=patients, source="file")
    return PatientDirectoryResult(patients=[], source="none")
