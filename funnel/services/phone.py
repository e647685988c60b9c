import re

COUNTRY_CODE = "55"
MIN_PHONE_DIGITS = 10

_NON_DIGITS = re.compile(r"\D")


class InvalidPhoneError(ValueError):
    pass


def normalize_phone(raw: str | None) -> str:
    """Reduce a carrier-raw phone (or WhatsApp JID) to canonical national digits.

    Brazilian mobiles sometimes arrive with a spurious extra ``9`` after the area
    code (``55 11 9 9XXXXXXXX``, 14 digits); it is collapsed to the 13-digit form.
    """
    digits = _NON_DIGITS.sub("", raw or "")
    if len(digits) == 14 and digits.startswith(COUNTRY_CODE) and digits[4] == "9":
        digits = digits[:4] + digits[5:]
    if len(digits) < MIN_PHONE_DIGITS:
        raise InvalidPhoneError(f"Unparseable phone: {raw!r}")
    return digits


def compose_phone(extension: str | None, area_code: str | None, number: str | None) -> str:
    """Build a normalized phone from payment-provider phone parts."""
    return normalize_phone(f"{extension or COUNTRY_CODE}{area_code or ''}{number or ''}")
