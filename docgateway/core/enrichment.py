"""Static enrichment data attached to freshly generated documentation.

The tables are pure data keyed by canonical subsystem. Every table carries
an explicit ``unknown`` entry, and lookups never fall through to anything
else, so an unrecognised subsystem still gets a complete enrichment block.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

UNKNOWN_SUBSYSTEM = "unknown"

KNOWN_SUBSYSTEMS: frozenset[str] = frozenset(
    {
        "engine",
        "transmission",
        "electrical",
        "hvac",
        "brakes",
        "suspension",
        "steering",
        "emissions",
        "fuel",
        "network",
        "body",
    }
)

# Free-form spellings seen from service writers -> canonical subsystem
_ALIASES = MappingProxyType(
    {
        "engine performance": "engine",
        "powertrain": "engine",
        "drivability": "engine",
        "trans": "transmission",
        "transaxle": "transmission",
        "drivetrain": "transmission",
        "electric": "electrical",
        "charging": "electrical",
        "starting": "electrical",
        "a/c": "hvac",
        "ac": "hvac",
        "climate": "hvac",
        "climate control": "hvac",
        "heating": "hvac",
        "brake": "brakes",
        "abs": "brakes",
        "chassis": "suspension",
        "evap": "emissions",
        "exhaust": "emissions",
        "fuel system": "fuel",
        "communication": "network",
        "communications": "network",
        "can bus": "network",
        "module": "network",
        "body electrical": "body",
    }
)

PROTOCOLS = MappingProxyType(
    {
        "engine": "Engine Performance Diagnostic Procedure",
        "transmission": "Transmission Adaptive Learn & Pressure Test Procedure",
        "electrical": "Electrical Circuit Voltage-Drop Diagnostic Procedure",
        "hvac": "HVAC Actuator Calibration & Performance Test",
        "brakes": "Brake System Inspection & ABS Self-Test Procedure",
        "suspension": "Suspension Component Inspection Procedure",
        "steering": "Steering System Inspection & Angle Sensor Calibration",
        "emissions": "EVAP Smoke Test & Catalyst Efficiency Procedure",
        "fuel": "Fuel Pressure & Injector Balance Test Procedure",
        "network": "Serial Data Network Integrity Test & Module Programming",
        "body": "Body Control Module Diagnostic Procedure",
        UNKNOWN_SUBSYSTEM: "General Diagnostic Procedure",
    }
)

# Historical first-visit fix rate, percent
SUCCESS_RATES = MappingProxyType(
    {
        "engine": 94,
        "transmission": 89,
        "electrical": 87,
        "hvac": 92,
        "brakes": 96,
        "suspension": 93,
        "steering": 91,
        "emissions": 90,
        "fuel": 91,
        "network": 85,
        "body": 88,
        UNKNOWN_SUBSYSTEM: 85,
    }
)

TIME_ESTIMATES = MappingProxyType(
    {
        "engine": "1.5-2.5 hours",
        "transmission": "2.0-4.0 hours",
        "electrical": "1.0-3.0 hours",
        "hvac": "1.0-2.0 hours",
        "brakes": "1.0-1.5 hours",
        "suspension": "1.5-3.0 hours",
        "steering": "1.0-2.0 hours",
        "emissions": "1.0-2.5 hours",
        "fuel": "1.0-2.0 hours",
        "network": "1.5-3.5 hours",
        "body": "1.0-2.5 hours",
        UNKNOWN_SUBSYSTEM: "1.0-3.0 hours",
    }
)

_WHITESPACE = re.compile(r"\s+")


def canonical_subsystem(subsystem: str) -> str:
    """Map a free-form subsystem name onto the known set, or ``unknown``."""
    key = _WHITESPACE.sub(" ", subsystem).strip().casefold()
    if key in KNOWN_SUBSYSTEMS:
        return key
    return _ALIASES.get(key, UNKNOWN_SUBSYSTEM)


@dataclass(frozen=True)
class Enrichment:
    category: str
    protocol: str
    success_rate: int
    time_estimate: str
    diagnostic_codes: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "protocol": self.protocol,
            "successRate": self.success_rate,
            "timeEstimate": self.time_estimate,
            "diagnosticCodes": list(self.diagnostic_codes),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Enrichment:
        return cls(
            category=data["category"],
            protocol=data["protocol"],
            success_rate=int(data["successRate"]),
            time_estimate=data["timeEstimate"],
            diagnostic_codes=tuple(data.get("diagnosticCodes", ())),
        )


def enrich(subsystem: str, diagnostic_codes: tuple[str, ...] = ()) -> Enrichment:
    category = canonical_subsystem(subsystem)
    return Enrichment(
        category=category,
        protocol=PROTOCOLS[category],
        success_rate=SUCCESS_RATES[category],
        time_estimate=TIME_ESTIMATES[category],
        diagnostic_codes=diagnostic_codes,
    )
