"""
submission_client.py
--------------------
Invoice Record Builder: Bundle Submission Client
------------------------------------------------
Async client that POSTs a finished document Bundle to the records
gateway.

Request body:
    {"bundle": <Bundle>, "patient": <directory-local patient id>}

Submission is not part of the build.  ``submit()`` never raises for HTTP
or transport failures; it returns a :class:`SubmissionResult` describing
the outcome, and it never retries.  The caller keeps the bundle and may
submit it again.

Usage (async context manager, preferred):
    async with BundleSubmissionClient(settings) as client:
        result = await client.submit(bundle, patient.id)

Usage (manual lifecycle):
    client = BundleSubmissionClient(settings)
    await client.connect()
    result = await client.submit(bundle, patient.id)
    await client.close()

Author: Invoice Record Builder team
Project: Invoice Record Builder
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx
from pydantic import BaseModel

from config import InvoiceRecordSettings

logger = logging.getLogger(__name__)

_BODY_SNIPPET_LEN = 1000


class GatewayAPIError(Exception):
    """Raised when a gateway call returns a non-2xx response or fails in transport."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Gateway API error {status_code}: {body}")


class SubmissionResult(BaseModel):
    """
    Outcome of one submission attempt.

    ``status_code`` is 0 when no HTTP response was received.  ``body`` is
    the parsed JSON response when there is one, else the raw text.
    """

    success:     bool
    status_code: int = 0
    body:        Any = None
    error:       Optional[str] = None


def bearer_headers(token: Optional[str]) -> dict[str, str]:
    """JSON request headers, with ``Authorization`` only when a token is set."""
    headers = {"Accept": "application/json", "Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def _parse_body(resp: httpx.Response) -> Any:
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return resp.text[:_BODY_SNIPPET_LEN]


class BundleSubmissionClient:
    """
    Submits Invoice Record bundles to ``settings.submit_url``.

    Args:
        settings:  Build settings (endpoint, bearer token, timeout).
        transport: Optional ``httpx`` transport, e.g. ``httpx.MockTransport``
                   in tests.
    """

    def __init__(
        self,
        settings: InvoiceRecordSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.submit_url = settings.submit_url
        self.timeout = settings.http_timeout
        self._token = settings.auth_token
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Open the underlying HTTP connection pool."""
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
            logger.debug("BundleSubmissionClient: HTTP transport initialised.")

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None
            logger.debug("BundleSubmissionClient: HTTP transport closed.")

    async def __aenter__(self) -> "BundleSubmissionClient":
        await self.connect()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    # ── Internal request helper ──────────────────────────────────────────────

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        if self._http is None:
            raise RuntimeError(
                "BundleSubmissionClient is not connected. "
                "Use 'async with BundleSubmissionClient(settings) as client:' or call connect() first."
            )
        try:
            resp = await self._http.post(self.submit_url, json=payload, headers=bearer_headers(self._token))
        except httpx.HTTPError as exc:
            raise GatewayAPIError(0, str(exc)) from exc
        if resp.status_code not in range(200, 300):
            raise GatewayAPIError(resp.status_code, resp.text[:_BODY_SNIPPET_LEN])
        return resp

    # ── Public API ───────────────────────────────────────────────────────────

    async def submit(self, bundle: dict[str, Any], patient_ref: Optional[str]) -> SubmissionResult:
        """
        POST *bundle* with the directory-local patient reference.

        Args:
            bundle:      A Bundle produced by ``invoice_record``.
            patient_ref: The patient's directory id (``PatientRecord.id``).

        Returns:
            :class:`SubmissionResult`; ``success`` is True for any 2xx.

        Raises:
            RuntimeError: if the client is not connected.
        """
        payload = {"bundle": bundle, "patient": patient_ref}
        try:
            resp = await self._post(payload)
        except GatewayAPIError as exc:
            logger.warning(
                "BundleSubmissionClient: submission of %s failed: HTTP %d.",
                bundle.get("id", "<no id>"), exc.status_code,
            )
            return SubmissionResult(
                success=False,
                status_code=exc.status_code,
                body=exc.body if exc.status_code else None,
                error=str(exc),
            )

        logger.info(
            "BundleSubmissionClient: bundle %s accepted (HTTP %d).",
            bundle.get("id", "<no id>"), resp.status_code,
        )
        return SubmissionResult(success=True, status_code=resp.status_code, body=_parse_body(resp))
