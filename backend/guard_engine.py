"""
Candidate ranking for automatic guard (cover duty) assignment.

Pure functions over plain dict documents as stored in MongoDB, so the
server only has to gather the context and persist the picks.
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

ADMINISTRATIVE_ROLES = {
    "Cap de departament",
    "Coordinador",
    "Secretari",
    "Director",
    "Cap d'estudis",
}
DUTY_SUBJECT = "GUARDIA"
WORKLOAD_WINDOW_DAYS = 30

PRIORITY_FREED_BY_OUTING = 1
PRIORITY_ON_DUTY = 10
PRIORITY_ADMINISTRATIVE = 20
PRIORITY_BASE = 30


@dataclass
class AssignmentPriority:
    professor_id: int
    priority: int
    reason: str
    workload_score: int


def time_overlaps(start1: str, end1: str, start2: str, end2: str) -> bool:
    return start1 < end2 and start2 < end1


def weekday_number(day: str) -> int:
    """ISO weekday of a YYYY-MM-DD string (1 = dilluns)."""
    return date.fromisoformat(day).isoweekday()


def required_professors(tipus_guardia: Optional[str]) -> int:
    if tipus_guardia == "Pati":
        return 2
    return 1


def workload_score(recent_guards: Iterable[Dict[str, Any]]) -> int:
    """Score the guards a professor covered recently; higher means busier."""
    total = patio = library = 0
    for guard in recent_guards:
        total += 1
        if guard.get("tipus_guardia") == "Pati":
            patio += 1
        elif guard.get("tipus_guardia") == "Biblioteca":
            library += 1
    return total * 10 + patio * 5 + library * 3


def recent_guards_by_professor(
    assignments: Iterable[Dict[str, Any]],
    guards_by_id: Dict[int, Dict[str, Any]],
    today: date,
    window_days: int = WORKLOAD_WINDOW_DAYS,
) -> Dict[int, List[Dict[str, Any]]]:
    cutoff = (today - timedelta(days=window_days)).isoformat()
    result: Dict[int, List[Dict[str, Any]]] = {}
    for assignment in assignments:
        guard = guards_by_id.get(assignment.get("guardia_id"))
        if not guard or guard.get("data", "") < cutoff:
            continue
        result.setdefault(assignment.get("professor_id"), []).append(guard)
    return result


def _outing_window_on(sortida: Dict[str, Any], day: str) -> Optional[tuple]:
    """Return the (HH:MM, HH:MM) slice of an outing that falls on day, if any."""
    try:
        start = datetime.fromisoformat(sortida["data_inici"])
        end = datetime.fromisoformat(sortida["data_fi"])
    except (KeyError, TypeError, ValueError):
        return None
    target = date.fromisoformat(day)
    if not (start.date() <= target <= end.date()):
        return None
    window_start = start.strftime("%H:%M") if start.date() == target else "00:00"
    window_end = end.strftime("%H:%M") if end.date() == target else "23:59"
    return window_start, window_end


def freed_by_outing(
    professor_id: int,
    guardia: Dict[str, Any],
    sortides: Iterable[Dict[str, Any]],
    horaris: List[Dict[str, Any]],
) -> Optional[str]:
    """Name of an outing that frees this professor during the guard, if any."""
    day = guardia["data"]
    weekday = weekday_number(day)
    for sortida in sortides:
        window = _outing_window_on(sortida, day)
        if not window or not time_overlaps(guardia["hora_inici"], guardia["hora_fi"], *window):
            continue
        for horari in horaris:
            if (
                horari.get("professor_id") == professor_id
                and horari.get("grup_id") is not None
                and horari.get("grup_id") == sortida.get("grup_id")
                and horari.get("dia_setmana") == weekday
                and time_overlaps(guardia["hora_inici"], guardia["hora_fi"], horari["hora_inici"], horari["hora_fi"])
            ):
                return sortida.get("nom_sortida", "")
    return None


def has_duty_slot(professor_id: int, guardia: Dict[str, Any], horaris: List[Dict[str, Any]]) -> bool:
    weekday = weekday_number(guardia["data"])
    return any(
        horari.get("professor_id") == professor_id
        and (horari.get("assignatura") or "").upper() == DUTY_SUBJECT
        and horari.get("dia_setmana") == weekday
        and time_overlaps(guardia["hora_inici"], guardia["hora_fi"], horari["hora_inici"], horari["hora_fi"])
        for horari in horaris
    )


def rank_candidates(
    guardia: Dict[str, Any],
    professors: List[Dict[str, Any]],
    sortides: List[Dict[str, Any]],
    horaris: List[Dict[str, Any]],
    current_assignments: List[Dict[str, Any]],
    recent_guards: Dict[int, List[Dict[str, Any]]],
) -> List[AssignmentPriority]:
    """Order eligible professors from best to worst pick for a guard."""
    excluded = {a.get("professor_id") for a in current_assignments}
    if guardia.get("professor_original_id") is not None:
        excluded.add(guardia["professor_original_id"])

    priorities = []
    for professor in professors:
        professor_id = professor["id"]
        if professor_id in excluded:
            continue
        score = workload_score(recent_guards.get(professor_id, []))
        outing = freed_by_outing(professor_id, guardia, sortides, horaris)
        if outing is not None:
            priority, reason = PRIORITY_FREED_BY_OUTING, f"Alliberat per sortida: {outing}"
        elif has_duty_slot(professor_id, guardia, horaris):
            priority, reason = PRIORITY_ON_DUTY, "Guàrdia assignada en horari"
        elif professor.get("carrec") in ADMINISTRATIVE_ROLES:
            priority, reason = PRIORITY_ADMINISTRATIVE, f"Càrrec administratiu: {professor['carrec']}"
        else:
            priority, reason = PRIORITY_BASE + score // 10, "Equilibri de càrrega"
        priorities.append(AssignmentPriority(professor_id, priority, reason, score))

    priorities.sort(key=lambda p: (p.priority, p.workload_score))
    return priorities


def select_candidates(guardia: Dict[str, Any], ranked: List[AssignmentPriority]) -> List[AssignmentPriority]:
    return ranked[: required_professors(guardia.get("tipus_guardia"))]
