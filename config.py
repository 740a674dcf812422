"""
config.py
---------
Invoice Record Builder: Build Configuration
-------------------------------------------
One explicit settings object per build.  Nothing in the assembly engine
reads the environment; callers (``main.py``, the CLI script) load settings
once with :func:`load_settings` and pass them in.

Environment variables (all optional, read after ``load_dotenv()``):

    INVOICE_RECORD_PRACTITIONER_ID        Practitioner.id (UUID; else generated)
    INVOICE_RECORD_PRACTITIONER_NAME      Author display name
    INVOICE_RECORD_PRACTITIONER_LICENSE   Author license number
    INVOICE_RECORD_ORGANIZATION_NAME      Default issuing organization name
    INVOICE_RECORD_PATIENT_API_URL        Patient directory endpoint
    INVOICE_RECORD_AUTH_TOKEN             Bearer token for directory and submission
    INVOICE_RECORD_PATIENTS_FILE          Local patients.json fallback
    INVOICE_RECORD_SUBMIT_URL             Bundle submission endpoint
    INVOICE_RECORD_HTTP_TIMEOUT           Seconds (float)
    INVOICE_RECORD_CURRENCY               ISO 4217 code
    INVOICE_RECORD_LANGUAGE               BCP 47 tag for resource.language and narratives
    INVOICE_RECORD_PROFILE_SET            "hl7-base" | "ndhm"
    INVOICE_RECORD_PRICE_CONVENTION       "extended" | "factor"
    INVOICE_RECORD_INCLUDE_ORGANIZATION   true/false
    INVOICE_RECORD_INCLUDE_ENCOUNTER      true/false
    INVOICE_RECORD_INCLUDE_ATTESTER       true/false

Author: Invoice Record Builder team
Project: Invoice Record Builder
"""

from __future__ import annotations

import logging
import os
from typing import Literal, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from schemas import PractitionerRecord

logger = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

DEFAULT_SUBMIT_URL = "https://uat.discharge.org.in/api/v5/fhir-bundle"
DEFAULT_PATIENTS_FILE = os.path.join(BASE_DIR, "mock_data", "patients.json")

ProfileSet = Literal["hl7-base", "ndhm"]
PriceConvention = Literal["extended", "factor"]

_ENV_PREFIX = "INVOICE_RECORD_"
_TRUE_VALUES = {"1", "true", "yes", "on"}


class InvoiceRecordSettings(BaseModel):
    """
    Configuration for one or more Invoice Record builds.

    Feature flags
    -------------
    include_organization_panel: Honor the request's issuing-organization
        details (name, GSTIN, phone, address).  When off, the issuer is built
        from ``default_organization_name`` alone.
    include_encounter: Honor ``encounter_text``; when off no Encounter is emitted.
    include_attester:  Honor the request's attester mode and party; when off
        the Composition carries the default official attester (the author).
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    practitioner: PractitionerRecord = Field(default_factory=PractitionerRecord)
    default_organization_name: str = "Default Hospital"

    currency:         str             = "INR"
    language:         str             = "en-IN"
    profile_set:      ProfileSet      = "hl7-base"
    price_convention: PriceConvention = "extended"

    include_organization_panel: bool = True
    include_encounter:          bool = True
    include_attester:           bool = True

    patient_api_url: Optional[str] = None
    auth_token:      Optional[str] = None
    patients_file:   str           = DEFAULT_PATIENTS_FILE
    submit_url:      str           = DEFAULT_SUBMIT_URL
    http_timeout:    float         = 30.0


def _flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(_ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES


def load_settings(env: Optional[Mapping[str, str]] = None) -> InvoiceRecordSettings:
    """
    Build :class:`InvoiceRecordSettings` from environment variables.

    Args:
        env: Mapping to read instead of ``os.environ`` (tests).  When
             omitted, ``.env`` is loaded first via ``python-dotenv``.

    Returns:
        A frozen settings object.  Unset variables keep their defaults.
    """
    if env is None:
        load_dotenv()
        env = os.environ

    def get(name: str) -> Optional[str]:
        value = env.get(_ENV_PREFIX + name)
        return value.strip() if value and value.strip() else None

    defaults = InvoiceRecordSettings()
    practitioner = PractitionerRecord(
        id=get("PRACTITIONER_ID"),
        display_name=get("PRACTITIONER_NAME") or defaults.practitioner.display_name,
        license_value=get("PRACTITIONER_LICENSE") or defaults.practitioner.license_value,
    )

    timeout = defaults.http_timeout
    raw_timeout = get("HTTP_TIMEOUT")
    if raw_timeout:
        try:
            timeout = float(raw_timeout)
        except ValueError:
            logger.warning("config: INVOICE_RECORD_HTTP_TIMEOUT=%r is not a number; using %.1f s.", raw_timeout, timeout)

    settings = InvoiceRecordSettings(
        practitioner=practitioner,
        default_organization_name=get("ORGANIZATION_NAME") or defaults.default_organization_name,
        currency=get("CURRENCY") or defaults.currency,
        language=get("LANGUAGE") or defaults.language,
        profile_set=get("PROFILE_SET") or defaults.profile_set,
        price_convention=get("PRICE_CONVENTION") or defaults.price_convention,
        include_organization_panel=_flag(env, "INCLUDE_ORGANIZATION", defaults.include_organization_panel),
        include_encounter=_flag(env, "INCLUDE_ENCOUNTER", defaults.include_encounter),
        include_attester=_flag(env, "INCLUDE_ATTESTER", defaults.include_attester),
        patient_api_url=get("PATIENT_API_URL"),
        auth_token=get("AUTH_TOKEN"),
        patients_file=get("PATIENTS_FILE") or defaults.patients_file,
        submit_url=get("SUBMIT_URL") or defaults.submit_url,
        http_timeout=timeout,
    )
    logger.debug(
        "config: settings loaded (profile_set=%s, price_convention=%s, api=%s).",
        settings.profile_set, settings.price_convention, bool(settings.patient_api_url),
    )
    return settings
