import hashlib
import re

NON_DIGIT_RE = re.compile(r"\D")


def sha256_hash(value: str) -> str:
    """One-way hash used for every PII field sent to Meta (trimmed, lower-cased, hex)."""
    return hashlib.sha256(value.strip().lower().encode("utf-8")).hexdigest()


def normalize_phone(phone: str) -> str:
    """Keep digits only; a bare 10-digit US number gets the "1" country code."""
    digits = NON_DIGIT_RE.sub("", phone)
    if len(digits) == 10:
        return f"1{digits}"
    return digits
