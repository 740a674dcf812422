"""
main.py
-------
Invoice Record Builder: FastAPI server
--------------------------------------
Exposes the Invoice Record bundle engine as a REST API.

Endpoints:
    GET  /health                  Service health check
    GET  /patients                Patient directory (API first, local file fallback)
    POST /invoice-records/bundle  Build a document Bundle from a form payload + files
    POST /invoice-records/submit  Build, then submit the Bundle to the records gateway

Both build endpoints take ``multipart/form-data``:
    payload  JSON text of an ``InvoiceRecordRequest``
    files    zero or more attachments (read concurrently before assembly)

Errors:
    422  {"errors": [...]}                  request refused by validation
    400  {"errors": [...], "filename": ...} an attachment could not be read
    500  {"errors": [...]}                  the assembled bundle failed its integrity check

Author: Invoice Record Builder team
Project: Invoice Record Builder
"""

import json
import logging
from datetime import datetime, timezone
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse
import httpx

from attachments import AttachmentReadError, BytesAttachmentSource
from bundle_assembler import BundleStructureError
from config import InvoiceRecordSettings, load_settings
from health_addresses import normalize_health_addresses
from invoice_record import build_invoice_record
from patient_directory import load_patients
from schemas import InvoiceRecordRequest
from submission_client import BundleSubmissionClient
from validation import InvoiceRecordValidationError, parse_invoice_request

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# ── Config ─────────────────────────────────────────────────────────────────────

VERSION = "1.0.0"
SERVICE_NAME = "Invoice Record Builder"

_settings: Optional[InvoiceRecordSettings] = None


def get_settings() -> InvoiceRecordSettings:
    """Settings loaded once from the environment on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def get_transport() -> Optional[httpx.AsyncBaseTransport]:
    """Outbound HTTP transport; ``None`` means the real network."""
    return None


# ── FastAPI app ────────────────────────────────────────────────────────────────

app = FastAPI(
    title=SERVICE_NAME,
    version=VERSION,
    description="Builds FHIR R4 Invoice Record document bundles.",
)


@app.exception_handler(InvoiceRecordValidationError)
async def _validation_error_handler(_: Request, exc: InvoiceRecordValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"errors": exc.errors})


@app.exception_handler(AttachmentReadError)
async def _attachment_error_handler(_: Request, exc: AttachmentReadError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"errors": [str(exc)], "filename": exc.filename})


@app.exception_handler(BundleStructureError)
async def _bundle_structure_error_handler(_: Request, exc: BundleStructureError) -> JSONResponse:
    logger.error("main: bundle assembly failed: %s", exc)
    return JSONResponse(status_code=500, content={"errors": [str(exc)]})


# ── Helpers ────────────────────────────────────────────────────────────────────

def _parse_payload(payload: str) -> InvoiceRecordRequest:
    try:
        raw = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise InvoiceRecordValidationError([f"payload: not valid JSON ({exc.msg})"]) from exc
    if not isinstance(raw, dict):
        raise InvoiceRecordValidationError(["payload: expected a JSON object"])
    return parse_invoice_request(raw)


def _upload_sources(files: Optional[List[UploadFile]]) -> List[BytesAttachmentSource]:
    return [
        BytesAttachmentSource(filename=f.filename, content_type=f.content_type, reader=f.read)
        for f in (files or [])
    ]


# ── Endpoints ──────────────────────────────────────────────────────────────────

@app.get("/health")
def health_check() -> dict:
    """
    Return service health status.

    Returns:
        dict: service, version, status, timestamp.
    """
    return {
        "service": SERVICE_NAME,
        "version": VERSION,
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/patients")
async def list_patients(
    settings: InvoiceRecordSettings = Depends(get_settings),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(get_transport),
) -> dict:
    """
    Return the patient directory with each patient's ranked health addresses.

    Returns:
        dict: {"source": "api" | "file" | "none", "patients": [...]}
    """
    result = await load_patients(settings, transport=transport)
    return {
        "source": result.source,
        "patients": [
            {
                "index": index,
                "id": patient.id,
                "name": patient.name,
                "gender": patient.gender,
                "dob": patient.dob,
                "health_addresses": [a.model_dump() for a in normalize_health_addresses(patient)],
            }
            for index, patient in enumerate(result.patients)
        ],
    }


@app.post("/invoice-records/bundle")
async def build_bundle(
    payload: str = Form(...),
    files: Optional[List[UploadFile]] = File(None),
    settings: InvoiceRecordSettings = Depends(get_settings),
) -> dict:
    """
    Build an Invoice Record document Bundle.

    Returns:
        dict: {"bundle": <Bundle>}
    """
    request = _parse_payload(payload)
    bundle = await build_invoice_record(request, settings, _upload_sources(files))
    return {"bundle": bundle}


@app.post("/invoice-records/submit")
async def submit_bundle(
    payload: str = Form(...),
    files: Optional[List[UploadFile]] = File(None),
    settings: InvoiceRecordSettings = Depends(get_settings),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(get_transport),
) -> dict:
    """
    Build the Bundle, then submit it to ``settings.submit_url``.

    A failed submission does not discard the bundle; both are returned so
    the caller can retry the submission.

    Returns:
        dict: {"bundle": <Bundle>, "submission": SubmissionResult}
    """
    request = _parse_payload(payload)
    bundle = await build_invoice_record(request, settings, _upload_sources(files))
    async with BundleSubmissionClient(settings, transport=transport) as client:
        result = await client.submit(bundle, request.patient.id)
    return {"bundle": bundle, "submission": result.model_dump()}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000)
