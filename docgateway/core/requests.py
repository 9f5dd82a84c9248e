"""Diagnostic documentation request model and structural validation.

A DiagnosticRequest is built exactly once per inbound call from the raw
body fields and never mutated afterwards. Validation happens here, at the
boundary, so the orchestrator only ever sees well-formed requests.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from docgateway.core.errors import InvalidRequestError

log = structlog.get_logger(__name__)

VEHICLE_IDENTIFIER_LENGTH = 17
ANONYMOUS_CALLER = "anonymous"

MAX_NOTES_LENGTH = 10_000
MAX_FIELD_LENGTH = 255


def _clean(value: str | None) -> str:
    if value is None:
        return ""
    return value.replace("\x00", "").strip()


def parse_diagnostic_codes(raw: str | None) -> tuple[str, ...]:
    """Split a comma-separated code list ("P0300, p0171") into upper-cased codes."""
    if not raw:
        return ()
    return tuple(code.strip().upper() for code in raw.split(",") if code.strip())


@dataclass(frozen=True)
class DiagnosticRequest:
    vehicle_identifier: str
    subsystem: str
    notes: str
    diagnostic_codes: tuple[str, ...] = ()
    submitter: str = ""
    organization: str = ""
    authorized: bool = False
    caller_id: str = ANONYMOUS_CALLER

    @property
    def identifier_suffix(self) -> str:
        """Last four characters of the vehicle identifier - the only part ever audited."""
        return self.vehicle_identifier[-4:]

    @classmethod
    def build(
        cls,
        *,
        vehicle_identifier: str | None,
        subsystem: str | None,
        notes: str | None,
        diagnostic_codes: str | None = None,
        submitter: str | None = None,
        organization: str | None = None,
        authorized: bool = False,
        caller_id: str | None = None,
    ) -> DiagnosticRequest:
        """Validate raw fields and return an immutable request.

        Raises:
            InvalidRequestError: required field missing, identifier length
                wrong, or a field exceeds its maximum length.
        """
        vin = _clean(vehicle_identifier).upper()
        system = _clean(subsystem)
        text = _clean(notes)

        missing = [
            name
            for name, value in (
                ("vehicleIdentifier", vin),
                ("subsystem", system),
                ("notes", text),
            )
            if not value
        ]
        if missing:
            log.info("request.validation_failed", reason="missing_fields", fields=missing)
            raise InvalidRequestError(
                f"Missing required fields: {', '.join(missing)}",
                field=missing[0],
            )

        if len(vin) != VEHICLE_IDENTIFIER_LENGTH:
            log.info("request.validation_failed", reason="identifier_length", length=len(vin))
            raise InvalidRequestError(
                f"vehicleIdentifier must be exactly {VEHICLE_IDENTIFIER_LENGTH} characters",
                field="vehicleIdentifier",
            )

        if len(text) > MAX_NOTES_LENGTH:
            raise InvalidRequestError(
                f"notes must be at most {MAX_NOTES_LENGTH} characters",
                field="notes",
            )

        for name, value in (
            ("subsystem", system),
            ("submitter", submitter),
            ("organization", organization),
            ("diagnosticCodes", diagnostic_codes),
        ):
            if value and len(value) > MAX_FIELD_LENGTH:
                raise InvalidRequestError(
                    f"{name} must be at most {MAX_FIELD_LENGTH} characters",
                    field=name,
                )

        return cls(
            vehicle_identifier=vin,
            subsystem=system,
            notes=text,
            diagnostic_codes=parse_diagnostic_codes(diagnostic_codes),
            submitter=_clean(submitter),
            organization=_clean(organization),
            authorized=bool(authorized),
            caller_id=_clean(caller_id) or ANONYMOUS_CALLER,
        )
