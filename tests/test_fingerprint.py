"""Tests for request fingerprinting."""

from __future__ import annotations

import pytest

from docgateway.core.fingerprint import fingerprint, normalize_notes
from docgateway.core.requests import DiagnosticRequest

VIN = "1GKS2BKC5LR123456"


def _req(**overrides) -> DiagnosticRequest:
    fields = {
        "vehicle_identifier": VIN,
        "subsystem": "Engine",
        "notes": "Rough idle on cold start, misfire counts on cylinder 3.",
    }
    fields.update(overrides)
    return DiagnosticRequest.build(**fields)


class TestFingerprint:
    def test_deterministic(self):
        assert fingerprint(_req()) == fingerprint(_req())

    def test_namespaced_sha256(self):
        fp = fingerprint(_req())
        prefix, digest = fp.split(":")
        assert prefix == "docgen"
        assert len(digest) == 64

    def test_different_identifier_differs(self):
        assert fingerprint(_req()) != fingerprint(_req(vehicle_identifier="1GKS2BKC5LR999999"))

    def test_different_subsystem_differs(self):
        assert fingerprint(_req()) != fingerprint(_req(subsystem="Transmission"))

    def test_subsystem_case_insensitive(self):
        assert fingerprint(_req(subsystem="ENGINE")) == fingerprint(_req(subsystem="engine"))

    def test_identifier_case_insensitive(self):
        assert fingerprint(_req(vehicle_identifier=VIN.lower())) == fingerprint(_req())

    def test_whitespace_and_case_in_notes_ignored(self):
        a = _req(notes="Rough   idle\n on COLD start")
        b = _req(notes="rough idle on cold start")
        assert fingerprint(a) == fingerprint(b)

    def test_notes_sharing_prefix_collide(self):
        prefix = "x" * 100
        a = _req(notes=prefix + " first ending")
        b = _req(notes=prefix + " a completely different ending")
        assert fingerprint(a) == fingerprint(b)

    def test_notes_differing_inside_prefix_differ(self):
        assert fingerprint(_req(notes="misfire cylinder 3")) != fingerprint(_req(notes="misfire cylinder 4"))

    def test_codes_and_submitter_not_significant(self):
        a = _req(diagnostic_codes="P0300", submitter="A", organization="X")
        b = _req(diagnostic_codes="P0171", submitter="B", organization="Y")
        assert fingerprint(a) == fingerprint(b)

    def test_custom_prefix_length(self):
        a = _req(notes="abcdefghij-one")
        b = _req(notes="abcdefghij-two")
        assert fingerprint(a, notes_prefix_chars=10) == fingerprint(b, notes_prefix_chars=10)
        assert fingerprint(a, notes_prefix_chars=20) != fingerprint(b, notes_prefix_chars=20)


class TestNormalizeNotes:
    def test_nfc_composition(self):
        composed = "caf\u00e9 noise"
        decomposed = "cafe\u0301 noise"
        assert normalize_notes(composed) == normalize_notes(decomposed)

    @pytest.mark.parametrize("prefix", [1, 5, 100])
    def test_truncates_by_code_points(self, prefix):
        text = "\u00e9" * 200
        assert len(normalize_notes(text, prefix)) == prefix

    def test_collapses_whitespace(self):
        assert normalize_notes("  A \t B\n\nC  ") == "a b c"
