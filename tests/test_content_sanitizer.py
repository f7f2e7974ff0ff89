"""Tests for content sanitizer."""


from portfolio_agent.core.content_sanitizer import contains_phone_number, sanitize_generated_answer


class TestSanitizeGeneratedAnswer:
    """Tests for generated answer sanitization."""

    def test_drops_sentence_with_phone_number(self):
        text = "Ryan built the sales dashboard. Call him at 555-123-4567. He uses DAX daily."
        result = sanitize_generated_answer(text)
        assert result == "Ryan built the sales dashboard. He uses DAX daily."

    def test_redacts_when_phone_is_the_only_sentence(self):
        result = sanitize_generated_answer("Reach Ryan at (800) 555-0199")
        assert "555-0199" not in result
        assert "[PHONE]" in result

    def test_international_phone(self):
        result = sanitize_generated_answer("Portfolio evidence is linked. Phone +44 20 7946 0958 works too.")
        assert "7946" not in result
        assert result == "Portfolio evidence is linked."

    def test_no_phone_stripping_when_disabled(self):
        text = "Call me at 555-123-4567"
        result = sanitize_generated_answer(text, strip_phone_numbers=False)
        assert "555-123-4567" in result

    def test_redacts_emails_when_asked(self):
        result = sanitize_generated_answer("Write to ryan@example.com for details.", redact_emails=True)
        assert "ryan@example.com" not in result
        assert "[EMAIL]" in result

    def test_keeps_emails_by_default(self):
        text = "Write to ryan@example.com for details."
        assert sanitize_generated_answer(text) == text

    def test_preserves_normal_content(self):
        text = "Ryan shipped 12 dashboards in 2023 using Power BI and Azure Synapse."
        assert sanitize_generated_answer(text) == text

    def test_normalizes_whitespace(self):
        text = "Paragraph one.\n\n\n\n\nParagraph   two."
        assert sanitize_generated_answer(text) == "Paragraph one.\n\nParagraph two."

    def test_empty_returns_empty(self):
        assert sanitize_generated_answer("") == ""
        assert sanitize_generated_answer("   ") == ""


class TestContainsPhoneNumber:
    def test_detects_us_formats(self):
        assert contains_phone_number("555-123-4567")
        assert contains_phone_number("(555) 123 4567")
        assert contains_phone_number("555.123.4567")

    def test_ignores_short_numbers(self):
        assert not contains_phone_number("12 dashboards across 3 projects in 2024")

    def test_ignores_bare_digit_runs(self):
        assert not contains_phone_number("The pipeline processed 1234567890 rows")
        assert not contains_phone_number("Order id 15551234567")

    def test_detects_prefixed_formats(self):
        assert contains_phone_number("+1 555 123 4567")
        assert contains_phone_number("+15551234567")


class TestLargeCounts:
    def test_sentence_with_large_count_is_kept(self):
        text = "The pipeline processed 1234567890 rows. It ran nightly."
        assert sanitize_generated_answer(text) == text

    def test_handles_none(self):
        assert not contains_phone_number(None)
