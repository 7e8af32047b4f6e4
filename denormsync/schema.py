from typing import Any, Dict, List

SNAPSHOT_FIELDS = ["before", "after"]


def _is_non_empty_str(v: Any) -> bool:
    return isinstance(v, str) and v.strip() != ""


def validate_change_event(data: Any) -> List[str]:
    """
    Returns a list of validation error messages. Empty list means valid.
    Checks the {entityId, before, after} shape delivered by trigger hosts.
    """
    if not isinstance(data, dict):
        return ["Event must be a JSON object"]

    errors: List[str] = []

    if "entityId" not in data:
        errors.append("Missing required field: entityId")
    elif not _is_non_empty_str(data["entityId"]):
        errors.append("Field 'entityId' must be a non-empty string")

    # Snapshots: absent or null means the entity did not exist on that side
    for f in SNAPSHOT_FIELDS:
        if data.get(f) is not None and not isinstance(data[f], dict):
            errors.append(f"Field '{f}' must be an object or null")

    return errors


def validate_medication_event(data: Any) -> List[str]:
    """Change event checks plus the owning userId a medication write needs."""
    errors = validate_change_event(data)
    if errors:
        return errors
    after = data.get("after")
    if after is not None and not _is_non_empty_str(after.get("userId")):
        errors.append("Medication 'after' snapshot must carry a non-empty userId")
    return errors
