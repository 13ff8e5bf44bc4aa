# core/utils/iban.py

"""IBAN helpers used for Airwallex bank transfers."""

import re

IBAN_RE = re.compile(r"^[A-Z]{2}[0-9]{2}[A-Z0-9]{4,30}$")

# Countries where the full length is known and enforced
IBAN_LENGTHS = {
    "PT": 25,
    "ES": 24,
    "FR": 27,
    "DE": 22,
    "NL": 18,
    "BE": 16,
    "IT": 27,
    "IE": 22,
}


def clean_iban(iban: str | None) -> str:
    return re.sub(r"\s+", "", iban or "").upper()


def validate_iban(iban: str | None) -> bool:
    """Format check only (country prefix, check digits, length). No mod-97."""
    cleaned = clean_iban(iban)
    if not IBAN_RE.match(cleaned):
        return False

    expected = IBAN_LENGTHS.get(cleaned[:2])
    if expected and len(cleaned) != expected:
        return False
    return True


def mask_iban(iban: str | None) -> str:
    cleaned = clean_iban(iban)
    if len(cleaned) <= 8:
        return cleaned
    return f"{cleaned[:4]}{'*' * (len(cleaned) - 8)}{cleaned[-4:]}"
