import re

from threadline.services.result import Result

DEFAULT_SMS_MAX_LENGTH = 1200

SMS_TOO_LONG_FALLBACK = (
    "Sorry, my reply was too long to send by SMS. "
    "Message me on WhatsApp to get the full answer."
)

_UNSUPPORTED_CHARS_RE = re.compile(r"[^\x00-\x7F\u00A0-\u00FF\u20AC]")

SMS_REPLACEMENTS = {
    "\u2018": "'",
    "\u2019": "'",
    "\u201C": '"',
    "\u201D": '"',
    "\u2014": "-",
    "\u2013": "-",
    "\u2026": "...",
    "\u2022": "*",
    "\u2122": "TM",
    "\u00A0": " ",
    "\u2192": "->",
    "\u2190": "<-",
    "\u2665": "<3",
    "\u2605": "*",
    "\u2606": "*",
    "\u2713": "OK",
    "\u2714": "OK",
    "\u2717": "X",
    "\u2718": "X",
}


def sanitize_for_sms(text: str) -> str:
    """Replace common Unicode punctuation with GSM-friendly text and drop what cannot be sent."""
    for source, target in SMS_REPLACEMENTS.items():
        text = text.replace(source, target)
    return _UNSUPPORTED_CHARS_RE.sub("", text)


def validate_sms(text: str, max_length: int = DEFAULT_SMS_MAX_LENGTH) -> Result[str]:
    """Sanitized text on success; an SMS_TOO_LONG failure carries both lengths."""
    sanitized = sanitize_for_sms(text or "")
    if len(sanitized) > max_length:
        return Result.failure(
            f"Message too long for SMS ({len(sanitized)}/{max_length} characters)",
            code="SMS_TOO_LONG",
            length=len(sanitized),
            max_length=max_length,
        )
    return Result.success(sanitized, length=len(sanitized))
