"""Output sanitization for generated answers.

Removes personal contact details the generator may echo back from its
context. The human fallback is supplied separately through CONTACT_LINE,
so sentences that exist only to carry a phone number are dropped whole.
"""

import re

# Phone number patterns (US, international). Digit groups need separators,
# a parenthesized area code or a leading +, so bare counts never match.
_PHONE_PATTERNS = [
    r"(?<![\d+])(?:\+?1[-.\s])?(?:\(\d{3}\)\s?|\d{3}[-.\s])\d{3}[-.\s]\d{4}(?!\d)",  # US formats
    r"\+\d{1,3}[-.\s]?\d{2,4}[-.\s]?\d{3,4}[-.\s]?\d{3,4}(?!\d)",  # International
]
_PHONE_RE = re.compile("|".join(_PHONE_PATTERNS))

_EMAIL_RE = re.compile(r"\b[\w.+-]+@[\w-]+\.[\w.-]+\b")

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")


def _redact_contacts(text: str, redact_phones: bool, redact_emails: bool) -> str:
    """Replace phone numbers and emails with placeholders."""
    if redact_phones:
        text = _PHONE_RE.sub("[PHONE]", text)
    if redact_emails:
        text = _EMAIL_RE.sub("[EMAIL]", text)
    return text


def contains_phone_number(text: str) -> bool:
    return bool(_PHONE_RE.search(text or ""))


def sanitize_generated_answer(
    text: str,
    strip_phone_numbers: bool = True,
    redact_emails: bool = False,
) -> str:
    """
    Sanitize generator output before it reaches the client.

    Processing order:
    1. Drop sentences that carry a phone number
    2. Redact any remaining phone numbers (and emails, if asked)
    3. Normalize whitespace

    Args:
        text: Raw answer text
        strip_phone_numbers: Remove phone numbers
        redact_emails: Replace email addresses as well

    Returns:
        Sanitized answer text
    """
    if not text:
        return ""

    result = text.strip()

    if strip_phone_numbers and contains_phone_number(result):
        sentences = _SENTENCE_SPLIT_RE.split(result)
        kept = [s for s in sentences if not contains_phone_number(s)]
        # Never strip the whole answer; fall back to in-place redaction
        result = " ".join(kept) if kept else result

    result = _redact_contacts(result, strip_phone_numbers, redact_emails)

    result = re.sub(r"[ \t]{2,}", " ", result)
    result = re.sub(r"\n{3,}", "\n\n", result)

    return result.strip()
