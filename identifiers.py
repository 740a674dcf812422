"""
identifiers.py
--------------
Invoice Record Builder: Identifier Generator
--------------------------------------------
Content-addressing identifiers for every record in an Invoice Record bundle.

Every resource id is a lower-case RFC 4122 UUID (8-4-4-4-12 hex groups,
version nibble 1-5, variant nibble 8/9/a/b).  Bundle entries locate their
resource through ``urn:uuid:<id>`` so any record can be found by id alone.

Public API:
    URN_PREFIX                   Fixed locator prefix ``"urn:uuid:"``.
    new_identifier()             Fresh random (version 4) identifier.
    is_identifier()              True when a string matches the UUID pattern.
    coerce_identifier()          Reuse a trusted external id when it is a valid
                                 UUID (lower-cased), otherwise generate one.
    urn_reference()              ``urn:uuid:<id>`` for an identifier.
    identifier_from_reference()  Inverse of ``urn_reference``.

``uuid.uuid4`` draws from ``os.urandom``, so identifiers come from the
operating system's cryptographically secure generator.

Author: Invoice Record Builder team
Project: Invoice Record Builder
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Optional

logger = logging.getLogger(__name__)

URN_PREFIX = "urn:uuid:"

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$"
)


def new_identifier() -> str:
    """Return a fresh random version-4 UUID string (lower-case)."""
    return str(uuid.uuid4())


def is_identifier(candidate: Any) -> bool:
    """Return True when *candidate* is a string matching the UUID pattern (any case)."""
    if not isinstance(candidate, str):
        return False
    return bool(_UUID_RE.match(candidate.strip().lower()))


def coerce_identifier(candidate: Any) -> str:
    """
    Return *candidate* lower-cased if it is a valid UUID, else a new identifier.

    Never raises: absent, non-string, or malformed candidates fall back
    silently to :func:`new_identifier`.
    """
    if is_identifier(candidate):
        return candidate.strip().lower()
    if candidate:
        logger.debug("identifiers: '%s' is not a UUID, generating a fresh id.", candidate)
    return new_identifier()


def urn_reference(identifier: str) -> str:
    """Return the content-addressed locator for *identifier*."""
    return f"{URN_PREFIX}{identifier}"


def identifier_from_reference(reference: str) -> Optional[str]:
    """
    Return the identifier embedded in a ``urn:uuid:`` reference.

    Returns ``None`` for references that do not use the content-addressed
    prefix (e.g. ``"Patient/123"`` or external URLs).
    """
    if isinstance(reference, str) and reference.startswith(URN_PREFIX):
        return reference[len(URN_PREFIX):]
    return None
