"""
test_submission_client.py
-------------------------
Invoice Record Builder: Test Suite for submission_client.py
-----------------------------------------------------------
All HTTP is served by httpx.MockTransport; no network is touched.

Tests cover:
    - Request body {bundle, patient} and bearer header
    - 2xx responses produce success with the parsed body
    - Non-2xx and transport failures are returned, not raised
    - No retry on failure
    - Using the client without connecting raises RuntimeError

Run:
    pytest tests/test_submission_client.py -v --tb=short

Author: Invoice Record Builder team
Project: Invoice Record Builder
"""

import asyncio
import json
import os
import sys

import httpx
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import InvoiceRecordSettings
from submission_client import BundleSubmissionClient, bearer_headers

BUNDLE = {"resourceType": "Bundle", "id": "InvoiceBundle-test", "type": "document", "entry": []}
SETTINGS = InvoiceRecordSettings(submit_url="https://gateway.test/fhir-bundle", auth_token="tok-123")


def _submit(handler, settings=SETTINGS, patient_ref="101"):
    async def run():
        async with BundleSubmissionClient(settings, transport=httpx.MockTransport(handler)) as client:
            return await client.submit(BUNDLE, patient_ref)
    return asyncio.run(run())


# ── Success ───────────────────────────────────────────────────────────────────

def test_submit_posts_bundle_and_patient():
    """The body carries the bundle and the original patient reference."""
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["method"] = request.method
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"status": "stored"})

    result = _submit(handler)
    assert result.success is True
    assert result.status_code == 200
    assert result.body == {"status": "stored"}
    assert seen["method"] == "POST"
    assert seen["url"] == "https://gateway.test/fhir-bundle"
    assert seen["auth"] == "Bearer tok-123"
    assert seen["body"] == {"bundle": BUNDLE, "patient": "101"}


def test_no_token_no_authorization_header():
    """Without a token no Authorization header is sent."""
    assert "Authorization" not in bearer_headers(None)


def test_empty_success_body():
    """A 204 yields success with no body."""
    result = _submit(lambda request: httpx.Response(204))
    assert result.success is True
    assert result.body is None


# ── Failure ───────────────────────────────────────────────────────────────────

def test_http_error_returned_not_raised():
    """A 500 is reported with its status and body."""
    result = _submit(lambda request: httpx.Response(500, text="upstream exploded"))
    assert result.success is False
    assert result.status_code == 500
    assert result.body == "upstream exploded"
    assert "500" in result.error


def test_transport_error_returned_not_raised():
    """A connection failure is reported with status 0."""
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = _submit(handler)
    assert result.success is False
    assert result.status_code == 0
    assert "connection refused" in result.error


def test_no_retry_on_failure():
    """A failed submission is attempted exactly once."""
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    _submit(handler)
    assert len(calls) == 1


def test_submit_requires_connection():
    """Submitting without connect() raises RuntimeError."""
    client = BundleSubmissionClient(SETTINGS)
    with pytest.raises(RuntimeError):
        asyncio.run(client.submit(BUNDLE, "101"))
