"""Phone number canonicalization.

A single ``PhoneNormalizer`` is applied at every ingestion point (push
initiation, callbacks, manual entry, matching) so that two spellings of the
same subscriber number always compare equal.

Canonical form: ``<country code><national number>``, digits only,
e.g. ``254712345678``.
"""

from __future__ import annotations

import re
from typing import Callable

from mpesa_reconciliation.config import PhoneConfig
from mpesa_reconciliation.errors import ValidationError

# Gateway payloads sometimes carry a SHA-256 of the MSISDN instead of the number
CORRUPTED_PHONE_PATTERN = re.compile(r"^[a-f0-9]{64}$", re.IGNORECASE)

DATA_ERROR_LABEL = "Data Error"
UNKNOWN_LABEL = "Unknown"

PhoneRule = Callable[[str], "str | None"]


def is_corrupted_phone(value: str | None) -> bool:
    """True when the stored value is a 64-character hex digest, not a number."""
    if not value:
        return False
    return bool(CORRUPTED_PHONE_PATTERN.match(value.strip()))


def display_phone(value: str | None) -> str:
    """Render a stored phone value for operators."""
    if not value:
        return UNKNOWN_LABEL
    if is_corrupted_phone(value):
        return DATA_ERROR_LABEL
    return value


class PhoneNormalizer:
    """Canonicalizes subscriber numbers.

    Accepted spellings for the default (Kenya) configuration:
    - ``0712345678``     trunk prefix + national number
    - ``+254712345678``  international with plus
    - ``254712345678``   canonical
    - ``712345678``      bare national number

    Spaces, dashes and parentheses are ignored. Extra rules run first on the
    digits-only string and may return a canonical number to short-circuit.
    """

    def __init__(
        self,
        config: PhoneConfig | None = None,
        extra_rules: list[PhoneRule] | None = None,
    ):
        self.config = config or PhoneConfig()
        self.extra_rules = list(extra_rules or [])

    def normalize(self, raw: str | None) -> str:
        """Return the canonical form or raise ValidationError."""
        if raw is None or not str(raw).strip():
            raise ValidationError("Phone number is required")

        text = str(raw).strip()
        if is_corrupted_phone(text):
            raise ValidationError("Phone number is corrupted", phone=DATA_ERROR_LABEL)

        digits = re.sub(r"\D", "", text)
        for rule in self.extra_rules:
            result = rule(digits)
            if result is not None:
                return self._check(result, raw)

        cfg = self.config
        if digits.startswith(cfg.country_code) and len(digits) == len(cfg.country_code) + cfg.national_number_length:
            national = digits[len(cfg.country_code):]
        elif cfg.trunk_prefix and digits.startswith(cfg.trunk_prefix) and (
            len(digits) == len(cfg.trunk_prefix) + cfg.national_number_length
        ):
            national = digits[len(cfg.trunk_prefix):]
        elif len(digits) == cfg.national_number_length:
            national = digits
        else:
            raise ValidationError(f"Cannot normalize phone number '{raw}'", phone=str(raw))

        return self._check(cfg.country_code + national, raw)

    def canonical_or_none(self, raw: str | None) -> str | None:
        """Like normalize(), but returns None for unusable input."""
        try:
            return self.normalize(raw)
        except ValidationError:
            return None

    def same_subscriber(self, a: str | None, b: str | None) -> bool:
        """True when both values normalize to the same canonical number."""
        left = self.canonical_or_none(a)
        return left is not None and left == self.canonical_or_none(b)

    def _check(self, canonical: str, raw: str | None) -> str:
        cfg = self.config
        expected = len(cfg.country_code) + cfg.national_number_length
        if not canonical.isdigit() or len(canonical) != expected or not canonical.startswith(cfg.country_code):
            raise ValidationError(f"Cannot normalize phone number '{raw}'", phone=str(raw))
        if cfg.leading_digits and canonical[len(cfg.country_code)] not in cfg.leading_digits:
            raise ValidationError(f"Unsupported number range for '{raw}'", phone=str(raw))
        return canonical
