"""Tests for pipeline entry checks."""

from __future__ import annotations

from flowsmith.build.intake import is_valid_email, normalize_brief, normalize_contact, validate_raw_request
from flowsmith.core.errors import ErrorKind
from flowsmith.core.models import RawRequest


def test_normalize_brief():
    assert normalize_brief("  build \n\n  X\t now ") == "build X now"


def test_normalize_contact():
    assert normalize_contact("  Ops@Example.COM ") == "ops@example.com"
    assert normalize_contact("   ") is None
    assert normalize_contact(None) is None


def test_is_valid_email():
    assert is_valid_email("a@b.co")
    assert not is_valid_email("not-an-email")
    assert not is_valid_email("a@b")


class TestValidateRawRequest:
    def test_accepts_short_valid_brief(self):
        brief, errors = validate_raw_request(RawRequest("build X"))
        assert brief == "build X"
        assert errors == []

    def test_missing_brief_is_fatal(self):
        brief, errors = validate_raw_request(RawRequest("   "))
        assert brief == ""
        assert len(errors) == 1
        assert errors[0].fatal
        assert errors[0].kind is ErrorKind.VALIDATION_INPUT
        assert errors[0].stage == "intake"

    def test_too_short_is_fatal(self):
        _, errors = validate_raw_request(RawRequest("abc"), min_length=5)
        assert errors[0].fatal
        assert "minimum is 5" in errors[0].message

    def test_too_long_is_truncated_not_fatal(self):
        brief, errors = validate_raw_request(RawRequest("word " * 50), max_length=20)
        assert len(brief) <= 20
        assert len(errors) == 1
        assert not errors[0].fatal
        assert "truncated" in errors[0].message

    def test_bad_contact_is_fatal(self):
        _, errors = validate_raw_request(RawRequest("build X", contact_ref="nope"))
        assert [e.fatal for e in errors] == [True]

    def test_good_contact(self):
        _, errors = validate_raw_request(RawRequest("build X", contact_ref="Ops@Example.com"))
        assert errors == []
