"""Validation helpers for decoded inspection codes."""

import re

from utils.exceptions import ValidationError

MIN_CODE_LENGTH = 5
MAX_CODE_LENGTH = 500

_ALLOWED_CODE = re.compile(r"^[a-zA-Z0-9\-_^:;.,\s]+$")


def normalize_code(raw: str) -> str:
    """Return the trimmed code, dropping a leading byte-order mark."""
    if not isinstance(raw, str):
        raise ValidationError("Code is empty or not a string.")
    return raw.lstrip("\ufeff").strip()


def validate_code(raw: str) -> str:
    """Validate a decoded code and return its normalised form.

    Codes must be 5 to 500 characters of letters, digits, whitespace and
    the punctuation `- _ ^ : ; . ,`. Scanners frequently prefix payloads
    with a BOM, so that is stripped before checking.

    Raises:
        ValidationError: If the code is empty, too short, too long or
            contains characters outside the allowed set.
    """
    code = normalize_code(raw)
    if not code:
        raise ValidationError("Code is empty or not a string.")
    if len(code) < MIN_CODE_LENGTH:
        raise ValidationError(f"Code too short (at least {MIN_CODE_LENGTH} characters).")
    if len(code) > MAX_CODE_LENGTH:
        raise ValidationError(f"Code too long (at most {MAX_CODE_LENGTH} characters).")
    if not _ALLOWED_CODE.match(code):
        raise ValidationError("Code contains invalid characters.")
    return code
