"""
Change Resolvers.

Responsibilities:
- Derive the desired denormalized values from a source entity's
  before/after snapshots.
- Decide whether a change event requires any propagation at all.

Non-Responsibilities:
- No store access.
- No knowledge of dependent records.

Invariant:
Resolvers are pure: identical (before, after) inputs give identical results,
and the returned value is always the full desired field set.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from .normalize import build_owner_display_name, normalize_email, normalize_text

Record = Dict[str, Any]


@dataclass(frozen=True)
class OwnerUpdate:
    owner_name: Optional[str]
    owner_email: Optional[str]

    def fields(self) -> Dict[str, Optional[str]]:
        return {"ownerName": self.owner_name, "ownerEmail": self.owner_email}


@dataclass(frozen=True)
class CaregiverUpdate:
    caregiver_email: Optional[str]

    def fields(self) -> Dict[str, Optional[str]]:
        return {"caregiverEmail": self.caregiver_email}


@dataclass(frozen=True)
class ReminderUpdate:
    medication_name: str
    medication_dose: Optional[str]

    def fields(self) -> Dict[str, Optional[str]]:
        return {"medicationName": self.medication_name, "medicationDose": self.medication_dose}


def resolve_owner_update(
    before: Optional[Record], after: Optional[Record]
) -> Optional[OwnerUpdate]:
    """
    Resolve owner name/email for shares and invites owned by a user.

    Returns:
        OwnerUpdate with the after-derived values, or None when the user was
        removed or neither derived value changed
    """
    if after is None:
        return None

    before_name = build_owner_display_name(before)
    after_name = build_owner_display_name(after)
    before_email = normalize_email((before or {}).get("email"))
    after_email = normalize_email(after.get("email"))

    if before_name == after_name and before_email == after_email:
        return None

    return OwnerUpdate(owner_name=after_name, owner_email=after_email)


def resolve_caregiver_email_update(
    before: Optional[Record], after: Optional[Record]
) -> Optional[CaregiverUpdate]:
    """Resolve the caregiver email carried by shares and invites."""
    if after is None:
        return None

    before_email = normalize_email((before or {}).get("email"))
    after_email = normalize_email(after.get("email"))
    if before_email == after_email:
        return None

    return CaregiverUpdate(caregiver_email=after_email)


def resolve_medication_reminder_update(
    before: Optional[Record], after: Optional[Record]
) -> Optional[ReminderUpdate]:
    """
    Resolve medication name/dose for reminders of a medication.

    A reminder always needs a name, so the before-name is kept when the
    after snapshot lost it; with no name on either side nothing is resolved.
    """
    if after is None:
        return None

    before_name = normalize_text((before or {}).get("name"))
    after_name = normalize_text(after.get("name"))
    before_dose = normalize_text((before or {}).get("dose"))
    after_dose = normalize_text(after.get("dose"))

    if before_name == after_name and before_dose == after_dose:
        return None

    medication_name = after_name or before_name
    if not medication_name:
        return None

    return ReminderUpdate(medication_name=medication_name, medication_dose=after_dose)
