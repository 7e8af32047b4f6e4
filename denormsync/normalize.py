from typing import Any, Dict, Optional


def normalize_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def normalize_email(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    return normalized or None


def build_name_from_parts(first_name: Any, last_name: Any) -> Optional[str]:
    parts = [p for p in (normalize_text(first_name), normalize_text(last_name)) if p]
    combined = " ".join(parts).strip()
    return combined or None


def build_name_from_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    prefix = email.split("@", 1)[0].strip()
    return prefix or None


def build_owner_display_name(user: Optional[Dict[str, Any]]) -> Optional[str]:
    """Display name, else first + last name, else the email local part."""
    if not user:
        return None

    display_name = normalize_text(user.get("displayName"))
    if display_name:
        return display_name

    from_parts = build_name_from_parts(user.get("firstName"), user.get("lastName"))
    if from_parts:
        return from_parts

    return build_name_from_email(normalize_email(user.get("email")))


MEDICATION_NAME_FIELDS = ("name", "medicationName", "canonicalName", "drugName")
UNTITLED_MEDICATION = "Untitled medication"


def resolve_medication_name(record: Dict[str, Any]) -> str:
    for field in MEDICATION_NAME_FIELDS:
        value = normalize_text(record.get(field))
        if value:
            return value
    return UNTITLED_MEDICATION


def diff_fields(current: Dict[str, Any], desired: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Return {field: {"old", "new"}} for every desired field that differs."""
    changed = {}
    for k, nv in desired.items():
        ov = current.get(k)
        if ov != nv:
            changed[k] = {"old": ov, "new": nv}
    return changed
