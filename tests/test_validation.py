"""
Unit tests for payload validation and sanitisation.
"""

import pytest

from credit_gate.config.loader import default_config
from credit_gate.core.errors import InvalidInput
from credit_gate.core.validation import sanitize_text, validate_optional_text, validate_text

LIMITS = default_config().input_limits


class TestValidateText:
    """Test required text fields."""

    def test_trims_and_returns(self):
        assert validate_text("  Led a team of five engineers  ", "bullet", LIMITS) == "Led a team of five engineers"

    @pytest.mark.parametrize("value", [None, "", 42])
    def test_missing(self, value):
        with pytest.raises(InvalidInput, match="Bullet point is required"):
            validate_text(value, "bullet", LIMITS)

    def test_too_short(self):
        with pytest.raises(InvalidInput, match="Job description must be at least 50 characters"):
            validate_text("Python developer wanted", "job_description", LIMITS)

    def test_too_long(self):
        with pytest.raises(InvalidInput, match="Cover letter must be less than 2000 characters"):
            validate_text("x" * 2001, "cover_letter", LIMITS)

    def test_length_checked_after_trim(self):
        with pytest.raises(InvalidInput, match="at least 10"):
            validate_text("   short   ", "bullet", LIMITS)

    def test_markup_only_is_missing(self):
        with pytest.raises(InvalidInput, match="Job description is required"):
            validate_text("<div class='job-posting-section-wrapper'></div>" * 2, "job_description", LIMITS)

    def test_length_checked_after_sanitising(self):
        padded = "<span>Led team</span>" + "<br/>" * 20
        with pytest.raises(InvalidInput, match="Bullet point must be at least 10 characters"):
            validate_text(padded, "bullet", LIMITS)

    def test_returns_sanitised_text(self):
        value = "<p>Led a <b>team</b> of five engineers</p>"
        assert validate_text(value, "bullet", LIMITS) == "Led a team of five engineers"


class TestValidateOptionalText:
    """Test optional free-text fields."""

    @pytest.mark.parametrize("value", [None, ""])
    def test_empty_becomes_none(self, value):
        assert validate_optional_text(value, "Company name", LIMITS) is None

    def test_non_string(self):
        with pytest.raises(InvalidInput, match="Company name must be a string"):
            validate_optional_text(["Acme"], "Company name", LIMITS)

    def test_short_text_limit(self):
        with pytest.raises(InvalidInput, match="Job title must be less than 2000 characters"):
            validate_optional_text("a" * 2001, "Job title", LIMITS)

    def test_field_selects_limit(self):
        context = "a" * 5000
        assert validate_optional_text(context, "Job context", LIMITS, field="job_description") == context

    def test_sanitised(self):
        assert validate_optional_text("<b>Acme</b> Corp", "Company name", LIMITS) == "Acme Corp"


class TestSanitizeText:
    """Test markup stripping."""

    def test_removes_script_blocks(self):
        assert sanitize_text("Hello <script>alert('x')</script>world") == "Hello world"

    def test_removes_tags_and_handlers(self):
        assert sanitize_text('<a href="javascript:run()">Apply</a> now') == "Apply now"
        assert sanitize_text("Click onclick= here") == "Click  here"

    def test_non_string(self):
        assert sanitize_text(None) == ""
        assert sanitize_text(12) == ""
