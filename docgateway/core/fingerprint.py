"""Request fingerprinting for the response cache.

The fingerprint is a SHA-256 over the semantically significant fields of a
request: vehicle identifier, subsystem and a bounded prefix of the notes.
Diagnostic codes and submitter details are deliberately left out.

Notes normalisation:
    NFC -> collapse whitespace runs -> strip -> casefold -> first N code points

N is ``Settings.fingerprint_notes_prefix_chars``. Requests whose notes agree
on the first N normalised code points share one cache entry, so minor
wording differences at the end of long notes do not trigger a second
provider call. Raising N trades cache hit rate for precision.
"""

from __future__ import annotations

import hashlib
import re
import unicodedata

from docgateway.core.requests import DiagnosticRequest

DEFAULT_NOTES_PREFIX_CHARS = 100

_FINGERPRINT_NS = "docgen"
_WHITESPACE = re.compile(r"\s+")
# Unit separator: cannot appear in a stripped identifier or subsystem
_SEP = "\x1f"


def normalize_notes(notes: str, prefix_chars: int = DEFAULT_NOTES_PREFIX_CHARS) -> str:
    """Return the normalised, truncated notes prefix used in the fingerprint."""
    text = unicodedata.normalize("NFC", notes)
    text = _WHITESPACE.sub(" ", text).strip().casefold()
    return text[:prefix_chars]


def fingerprint(
    request: DiagnosticRequest,
    *,
    notes_prefix_chars: int = DEFAULT_NOTES_PREFIX_CHARS,
) -> str:
    """Build the deterministic cache key for a request.

    Returns:
        String of the form "docgen:<hex_digest>"
    """
    parts = (
        request.vehicle_identifier.strip().upper(),
        _WHITESPACE.sub(" ", request.subsystem).strip().casefold(),
        normalize_notes(request.notes, notes_prefix_chars),
    )
    digest = hashlib.sha256(_SEP.join(parts).encode("utf-8")).hexdigest()
    return f"{_FINGERPRINT_NS}:{digest}"
