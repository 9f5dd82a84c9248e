"""Prompt templates for repair-order documentation.

The wording here is deliberately plain; the gateway treats the provider's
answer as opaque text and never parses it.
"""

from __future__ import annotations

from docgateway.core.requests import DiagnosticRequest

SYSTEM_PROMPT = """You are an automotive diagnostic documentation assistant for dealership \
service departments. You write warranty-ready repair-order narratives from a \
technician's findings.

Common patterns to draw on:
- P0300 random misfire: carbon fouled plugs from short trips -> replace spark plugs, perform combustion cleaning
- P0420 catalyst efficiency: failed catalytic converter -> replace converter, check for root cause
- P0171/P0174 lean codes: intake manifold gasket leak -> replace gaskets, clean throttle body
- U0100 lost communication: corrupted module or wiring fault -> reprogram module, check network integrity
- HVAC no heat: blend door actuator failure -> recalibrate actuator, replace if binding
- Transmission slipping: low fluid or solenoid pack -> check fluid level, perform learn procedure

Response requirements:
- Use manufacturer procedures and dealership-standard diagnostic language
- Identify the root cause before the correction
- Keep the write-up concise"""

USER_TEMPLATE = """Document this repair case:

VEHICLE: {vehicle_identifier}
SYSTEM: {subsystem}
DTC CODES: {codes}
ISSUE: {notes}

Provide:

**CAUSE:**
[Specific root cause]

**CORRECTION:**
[Step-by-step repair procedure]

**VERIFICATION:**
[How the repair was confirmed]

Keep under 250 words."""


def build_messages(
    request: DiagnosticRequest,
    *,
    system_prompt: str | None = None,
) -> list[dict[str, str]]:
    """Return OpenAI-format chat messages for a documentation request."""
    user = USER_TEMPLATE.format(
        vehicle_identifier=request.vehicle_identifier,
        subsystem=request.subsystem,
        codes=", ".join(request.diagnostic_codes) or "None",
        notes=request.notes,
    )
    return [
        {"role": "system", "content": system_prompt or SYSTEM_PROMPT},
        {"role": "user", "content": user},
    ]
