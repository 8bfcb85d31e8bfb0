from __future__ import annotations

import pytest

from packages.shared.utils.redaction import find_phi, redact_error_message, redact_phi


@pytest.mark.parametrize(
    "text, expected",
    [
        ("contact jane.doe@example.org", ["email"]),
        ("call 555-123-4567 today", ["phone"]),
        ("seen on 2024-03-01", ["date"]),
        ("seen on 03/01/2024", ["date"]),
        ("ssn 123-45-6789", ["ssn"]),
        ("MRN: 884422", ["mrn"]),
        ("ref 123e4567-e89b-12d3-a456-426614174000", ["uuid"]),
    ],
)
def test_find_phi_detects_patterns(text, expected):
    assert find_phi(text) == expected


def test_scores_are_not_dates():
    assert find_phi("Overall score: 57.5/100") == []
    assert find_phi("Priority: 95/100") == []


def test_redact_phi_replaces_every_occurrence():
    out = redact_phi("mail a@b.com or c@d.org on 2024-01-02")
    assert "a@b.com" not in out and "c@d.org" not in out
    assert out.count("[REDACTED-EMAIL]") == 2
    assert "[REDACTED-DATE]" in out


def test_redact_error_message_truncates():
    msg = redact_error_message("x" * 900)
    assert len(msg) == 500
    assert msg.endswith("...")


def test_redact_error_message_strips_ids():
    msg = redact_error_message("Job 123e4567-e89b-12d3-a456-426614174000 failed")
    assert "123e4567" not in msg
