"""
health_addresses.py
-------------------
Invoice Record Builder: Contact Normalizer
------------------------------------------
Ranks a patient's alternate health addresses (ABHA addresses) for display
and selection.

Raw directory entries come in three shapes.  Each entry is classified once,
at this module's boundary, into a tagged union so nothing downstream has to
re-inspect raw JSON:

    BareAddress(value)                  ``"jane@abdm"``
    KeyedAddress(value, primary)        ``{"address": "jane@abdm", "isPrimary": true}``
    OpaqueAddress(serialized, primary)  any other object, rendered as compact JSON

Ordering: primary-marked entries first, then lexical order of the value.
Duplicate values are preserved; the source list is not deduplicated.

Lookup order for the raw list:
    1. ``patient.additional_attributes["abha_addresses"]`` (nested)
    2. ``patient.abha_addresses`` (top level)

Author: Invoice Record Builder team
Project: Invoice Record Builder
"""

from __future__ import annotations

import json
import logging
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict

from schemas import NormalizedAddress, PatientRecord

logger = logging.getLogger(__name__)

# Object keys that carry the address value, and the primary flag, in order.
_VALUE_KEYS = ("address", "value")
_PRIMARY_KEYS = ("isPrimary", "primary")

_FALSE_STRINGS = {"", "false", "0", "no", "off"}


class BareAddress(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: str

    @property
    def primary(self) -> bool:
        return False


class KeyedAddress(BaseModel):
    model_config = ConfigDict(frozen=True)

    value:   str
    primary: bool = False


class OpaqueAddress(BaseModel):
    model_config = ConfigDict(frozen=True)

    serialized: str
    primary:    bool = False

    @property
    def value(self) -> str:
        return self.serialized


HealthAddressEntry = Union[BareAddress, KeyedAddress, OpaqueAddress]


def _truthy(flag: Any) -> bool:
    if isinstance(flag, str):
        return flag.strip().lower() not in _FALSE_STRINGS
    return bool(flag)


def _primary_flag(item: dict) -> bool:
    return any(_truthy(item.get(key)) for key in _PRIMARY_KEYS)


def classify_address_entry(item: Any) -> Optional[HealthAddressEntry]:
    """
    Classify one raw directory entry.

    Returns ``None`` for entries that normalize to nothing: ``None``,
    blank strings, objects whose value fields are all blank, and objects
    that cannot be rendered as JSON.  A blank value key falls through to
    the next one; string flags such as ``"false"`` are not primary.
    """
    if item is None or isinstance(item, bool):
        return None

    if isinstance(item, str):
        text = item.strip()
        return BareAddress(value=text) if text else None

    if isinstance(item, (int, float)):
        return BareAddress(value=str(item))

    if isinstance(item, dict):
        present = [key for key in _VALUE_KEYS if item.get(key) is not None]
        for key in present:
            text = str(item[key]).strip()
            if text:
                return KeyedAddress(value=text, primary=_primary_flag(item))
        if present:
            return None
        try:
            serialized = json.dumps(item, separators=(",", ":"), ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            logger.warning("health_addresses: dropping unserialisable entry (%s).", exc)
            return None
        return OpaqueAddress(serialized=serialized, primary=_primary_flag(item))

    logger.warning("health_addresses: unrecognised entry type %s dropped.", type(item).__name__)
    return None


def _raw_entries(patient: PatientRecord) -> List[Any]:
    nested = patient.additional_attributes.get("abha_addresses")
    if isinstance(nested, list):
        return nested
    return list(patient.abha_addresses)


def _to_normalized(entry: HealthAddressEntry) -> NormalizedAddress:
    label = f"{entry.value} (primary)" if entry.primary else entry.value
    return NormalizedAddress(value=entry.value, label=label, primary=entry.primary)


def normalize_health_addresses(patient: Optional[PatientRecord]) -> List[NormalizedAddress]:
    """
    Return the patient's health addresses, primary first, then by value.

    Args:
        patient: The selected patient, or ``None``.

    Returns:
        Ordered list of :class:`NormalizedAddress`; empty when the patient
        is ``None`` or has no usable entries.
    """
    if patient is None:
        return []

    entries = [e for e in (classify_address_entry(item) for item in _raw_entries(patient)) if e]
    entries.sort(key=lambda e: (not e.primary, e.value))
    return [_to_normalized(e) for e in entries]


def health_address_values(patient: Optional[PatientRecord]) -> List[str]:
    """Values of :func:`normalize_health_addresses`, in the same order."""
    return [a.value for a in normalize_health_addresses(patient)]
