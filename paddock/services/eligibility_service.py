"""
Inspection eligibility.

A team may book an inspection type only if it has not passed it yet and has
passed every prerequisite. Evaluation never raises: an ineligible outcome
carries the reason shown to the team.
"""
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Set

from paddock.orm.inspection import Booking, BookingStatus, InspectionType


LOADING_REASON = "Loading team data..."
ALREADY_PASSED_REASON = "Already passed."


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    reason: str = ""


def dedupe_catalog(inspection_types: Iterable[InspectionType]) -> List[InspectionType]:
    """Keep the first inspection type per key, preserving catalog order."""
    seen: Set[str] = set()
    unique = []
    for inspection_type in inspection_types:
        if inspection_type.key in seen:
            continue
        seen.add(inspection_type.key)
        unique.append(inspection_type)
    return unique


def passed_keys(
    team_bookings: Iterable[Booking],
    catalog: Sequence[InspectionType],
) -> Set[str]:
    """Keys of the inspection types the team holds a passed booking for."""
    key_by_id = {t.id: t.key for t in catalog}
    return {
        key_by_id[b.inspection_type_id]
        for b in team_bookings
        if b.status == BookingStatus.PASSED.value and b.inspection_type_id in key_by_id
    }


def evaluate_eligibility(
    team_id: Optional[int],
    team_bookings: Optional[Sequence[Booking]],
    catalog: Optional[Sequence[InspectionType]],
    target: InspectionType,
) -> Eligibility:
    """
    Decide whether the team may book `target`.

    Prerequisites are checked in the order the target lists them; the first
    missing one is reported.
    """
    if team_id is None or team_bookings is None or catalog is None:
        return Eligibility(False, LOADING_REASON)

    passed = passed_keys(team_bookings, catalog)

    if target.key in passed:
        return Eligibility(False, ALREADY_PASSED_REASON)

    name_by_key = {}
    for inspection_type in catalog:
        name_by_key.setdefault(inspection_type.key, inspection_type.name)

    for prerequisite in target.prerequisites or []:
        if prerequisite not in passed:
            name = name_by_key.get(prerequisite, prerequisite)
            return Eligibility(False, f"Requires {name} to be passed.")

    return Eligibility(True)
