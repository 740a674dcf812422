#!/usr/bin/env python3

# Author: Invoice Record Builder team
# Project: Invoice Record Builder
"""
build_invoice_bundle.py
-----------------------
Invoice Record Builder: Command-line Build and Download
-------------------------------------------------------
Builds an Invoice Record document Bundle from a JSON request file and
writes it to disk, optionally submitting it to the records gateway.

  Step 1  LOAD    read the request JSON and settings (.env + environment)
  Step 2  BUILD   validate, read attachments concurrently, assemble
  Step 3  WRITE   save the Bundle (default ``invoice-bundle-<epoch-ms>.json``)
  Step 4  SUBMIT  (--submit) POST the Bundle; failures are reported but
                  the written file is kept

Exit codes: 0 success, 1 request refused, 2 attachment unreadable,
3 submission failed.

Usage:
    python scripts/build_invoice_bundle.py --request request.json \\
        [--attachment bill.pdf --attachment receipt.png] [--output out.json] [--submit]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import time

# ── Path bootstrap ────────────────────────────────────────────────────────────
_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
_REPO_ROOT = os.path.dirname(_SCRIPT_DIR)
sys.path.insert(0, _REPO_ROOT)

from dotenv import load_dotenv
load_dotenv(os.path.join(_REPO_ROOT, ".env"), override=False)

from attachments import AttachmentReadError, FileAttachmentSource   # noqa: E402
from config import load_settings                                      # noqa: E402
from invoice_record import build_invoice_record                       # noqa: E402
from submission_client import BundleSubmissionClient                  # noqa: E402
from validation import InvoiceRecordValidationError, parse_invoice_request  # noqa: E402

# ── Logging ───────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s [%(name)s] %(message)s",
)
log = logging.getLogger("build_invoice_bundle")


async def run(args: argparse.Namespace) -> int:
    with open(args.request, encoding="utf-8") as f:
        raw = json.load(f)

    settings = load_settings()
    sources = [FileAttachmentSource(path) for path in args.attachment]

    try:
        request = parse_invoice_request(raw)
        bundle = await build_invoice_record(request, settings, sources)
    except InvoiceRecordValidationError as exc:
        for message in exc.errors:
            log.error("  %s", message)
        log.error("Build refused: %d error(s).", len(exc.errors))
        return 1
    except AttachmentReadError as exc:
        log.error("%s", exc)
        return 2

    output = args.output or f"invoice-bundle-{int(time.time() * 1000)}.json"
    with open(output, "w", encoding="utf-8") as f:
        json.dump(bundle, f, indent=2, ensure_ascii=False)
    log.info("Wrote %s (%d entries).", output, len(bundle["entry"]))

    if not args.submit:
        return 0

    async with BundleSubmissionClient(settings) as client:
        result = await client.submit(bundle, request.patient.id)
    if not result.success:
        log.error("Submission failed (HTTP %d): %s", result.status_code, result.error)
        return 3
    log.info("Submitted (HTTP %d).", result.status_code)
    return 0


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Build an Invoice Record FHIR document bundle.")
    parser.add_argument("--request",    required=True, help="Path to the InvoiceRecordRequest JSON file.")
    parser.add_argument("--attachment", action="append", default=[], help="File to attach (repeatable).")
    parser.add_argument("--output",     default="", help="Output path for the bundle JSON.")
    parser.add_argument("--submit",     action="store_true", help="Submit the bundle after writing it.")
    return parser.parse_args()


if __name__ == "__main__":
    sys.exit(asyncio.run(run(_parse_args())))
