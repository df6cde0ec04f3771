def normalize_phone(phone: str) -> str | None:
    """Normalize a contact phone to digits, keeping a leading '+' if present.

    - Strips spaces, dashes, dots and brackets
    - Accepts 7-15 digits after normalization (E.164 upper bound)
    """
    raw = (phone or "").strip()
    if not raw:
        return None
    plus = raw.startswith("+")
    digits = "".join(ch for ch in raw if ch.isdigit())
    if not digits:
        return None
    if len(digits) < 7 or len(digits) > 15:
        return None
    return f"+{digits}" if plus else digits


def format_contact(contact_phone: str | None) -> str:
    phone = (contact_phone or "").strip()
    return phone or "—"
