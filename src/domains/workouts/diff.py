"""Pure diff engine for workout plan trees.

Compares the last-fetched server snapshot with the planner's tree and produces
added/updated/deleted sets per level (phases, sessions, exercises). Nothing here
touches the database.

Order markers
-------------
Exercises carry a free-text order marker ("A", "A1", "B12", "7") that is shown
as-is and also defines their position in the session. The accepted format is an
optional group of one to three letters (case-insensitive) followed by an
optional group of one to three digits. ``convert_order_to_number`` maps that
format monotonically:

* blank markers map to 0
* digit-only markers map to their value, below every letter marker
* letter markers map to ``NUMERIC_CEILING + letters * 1000 + digits`` where
  ``letters`` is a fixed-width base-27 number (A=1 .. Z=26), so "A" < "AA" <
  "AB" < "B" and "A2" < "A10"

Markers outside the format still map, using their first letter group
(truncated to three letters) and first digit group (clamped to 999). Distinct
markers may then collide, so ordering always goes through ``order_sort_key``,
which breaks ties by marker text and finally by identifier.
"""
import re
from typing import Any, Iterable, Sequence
from uuid import UUID

from pydantic import BaseModel

from src.domains.workouts.schemas import (
    ExerciseChanges,
    ExerciseDiff,
    ExerciseItem,
    ExerciseRow,
    ExerciseUpdate,
    PhaseChanges,
    PhaseDiff,
    PhaseItem,
    PhaseRow,
    PhaseUpdate,
    PlanChanges,
    SessionChanges,
    SessionDiff,
    SessionItem,
    SessionRow,
    SessionUpdate,
)

ORDER_MARKER_PATTERN = re.compile(r"^([A-Za-z]{1,3})?(\d{1,3})?$")
_LETTER_GROUP = re.compile(r"[A-Za-z]+")
_DIGIT_GROUP = re.compile(r"\d+")

LETTER_WIDTH = 3
LETTER_BASE = 27
DIGIT_SPAN = 1000
NUMERIC_CEILING = 10**6

PHASE_FIELDS = ("name", "order_number", "is_active")
SESSION_FIELDS = ("phase_id", "name", "order_number", "duration")
EXERCISE_FIELDS = (
    "session_id",
    "exercise_id",
    "description",
    "order",
    "motion",
    "target_area",
    "sets_min",
    "sets_max",
    "reps_min",
    "reps_max",
    "tempo",
    "tut",
    "rest_min",
    "rest_max",
    "customizations",
    "notes",
)


def is_valid_order_marker(marker: str | None) -> bool:
    """Check a marker against the documented format."""
    if marker is None or not marker.strip():
        return False
    return ORDER_MARKER_PATTERN.match(marker.strip()) is not None


def _letters_value(letters: str) -> int:
    value = 0
    padded = letters.upper()[:LETTER_WIDTH].ljust(LETTER_WIDTH, "@")  # "@" is 64, maps to 0
    for char in padded:
        value = value * LETTER_BASE + (ord(char) - 64)
    return value


def convert_order_to_number(marker: str | None) -> int:
    """Map an order marker to a sortable integer."""
    if marker is None:
        return 0
    text = marker.strip()
    if not text:
        return 0

    match = ORDER_MARKER_PATTERN.match(text)
    if match:
        letters, digits = match.group(1) or "", match.group(2) or ""
    else:
        letter_match = _LETTER_GROUP.search(text)
        digit_match = _DIGIT_GROUP.search(text)
        letters = letter_match.group(0) if letter_match else ""
        digits = digit_match.group(0) if digit_match else ""

    if not letters:
        if not digits:
            return 0
        return min(int(digits), NUMERIC_CEILING - 1)

    number = min(int(digits), DIGIT_SPAN - 1) if digits else 0
    return NUMERIC_CEILING + _letters_value(letters) * DIGIT_SPAN + number


def order_sort_key(marker: str | None, identifier: Any = "") -> tuple[int, str, str, str]:
    """Total order for exercises: mapped number, then marker text, then id."""
    text = marker or ""
    return (convert_order_to_number(text), text.casefold(), text, str(identifier))


def rank_exercise_orders(items: Iterable[tuple[UUID, str | None]]) -> dict[UUID, int]:
    """Zero-based rank of each (id, marker) pair within one session."""
    ordered = sorted(items, key=lambda item: order_sort_key(item[1], item[0]))
    return {identifier: rank for rank, (identifier, _) in enumerate(ordered)}


# Tree <-> rows

def flatten_plan_tree(
    phases: Sequence[PhaseItem],
) -> tuple[list[PhaseRow], list[SessionRow], list[ExerciseRow]]:
    """Flatten a nested plan tree, filling parent ids and positional order numbers."""
    phase_rows: list[PhaseRow] = []
    session_rows: list[SessionRow] = []
    exercise_rows: list[ExerciseRow] = []

    for phase_index, phase in enumerate(phases):
        phase_rows.append(
            PhaseRow(
                id=phase.id,
                name=phase.name,
                order_number=phase.order_number if phase.order_number is not None else phase_index,
                is_active=phase.is_active,
            )
        )
        for session_index, session in enumerate(phase.sessions):
            session_row, rows = flatten_session(phase.id, session, session_index)
            session_rows.append(session_row)
            exercise_rows.extend(rows)

    return phase_rows, session_rows, exercise_rows


def flatten_session(
    phase_id: UUID,
    session: SessionItem,
    position: int = 0,
) -> tuple[SessionRow, list[ExerciseRow]]:
    """Flatten one session subtree under the given phase."""
    session_row = SessionRow(
        id=session.id,
        phase_id=phase_id,
        name=session.name,
        order_number=session.order_number if session.order_number is not None else position,
        duration=session.duration,
    )
    exercise_rows = [
        ExerciseRow(session_id=session.id, **exercise.model_dump())
        for exercise in session.exercises
    ]
    return session_row, exercise_rows


def nest_plan_rows(
    phases: Sequence[PhaseRow],
    sessions: Sequence[SessionRow],
    exercises: Sequence[ExerciseRow],
) -> list[PhaseItem]:
    """Rebuild the nested tree from flat rows, ordered for display."""
    exercises_by_session: dict[UUID, list[ExerciseRow]] = {}
    for exercise in exercises:
        exercises_by_session.setdefault(exercise.session_id, []).append(exercise)

    sessions_by_phase: dict[UUID, list[SessionItem]] = {}
    for session in sorted(sessions, key=lambda row: row.order_number):
        session_exercises = sorted(
            exercises_by_session.get(session.id, []),
            key=lambda row: order_sort_key(row.order, row.id),
        )
        sessions_by_phase.setdefault(session.phase_id, []).append(
            SessionItem(
                id=session.id,
                name=session.name,
                order_number=session.order_number,
                duration=session.duration,
                exercises=[
                    ExerciseItem(**row.model_dump(exclude={"session_id"}))
                    for row in session_exercises
                ],
            )
        )

    return [
        PhaseItem(
            id=phase.id,
            name=phase.name,
            order_number=phase.order_number,
            is_active=phase.is_active,
            sessions=sessions_by_phase.get(phase.id, []),
        )
        for phase in sorted(phases, key=lambda row: row.order_number)
    ]


# Diffing

def _diff_rows(
    server_rows: Sequence[BaseModel],
    client_rows: Sequence[BaseModel],
    fields: Sequence[str],
    changes_model: type[BaseModel],
    update_model: type[BaseModel],
    ignore_when_missing: frozenset[str] = frozenset(),
) -> tuple[list, list, list[UUID]]:
    server_by_id = {row.id: row for row in server_rows}
    client_ids: set[UUID] = set()
    added = []
    updated = []

    for row in client_rows:
        if row.id in client_ids:
            continue
        client_ids.add(row.id)

        current = server_by_id.get(row.id)
        if current is None:
            added.append(row)
            continue

        changes = {}
        for field in fields:
            value = getattr(row, field)
            if value is None and field in ignore_when_missing:
                continue
            if value != getattr(current, field):
                changes[field] = value
        if changes:
            updated.append(update_model(id=row.id, changes=changes_model(**changes)))

    deleted = [row.id for row in server_rows if row.id not in client_ids]
    return added, updated, deleted


def diff_phases(server: Sequence[PhaseRow], client: Sequence[PhaseRow]) -> PhaseDiff:
    added, updated, deleted = _diff_rows(server, client, PHASE_FIELDS, PhaseChanges, PhaseUpdate)
    return PhaseDiff(added=added, updated=updated, deleted=deleted)


def diff_sessions(server: Sequence[SessionRow], client: Sequence[SessionRow]) -> SessionDiff:
    added, updated, deleted = _diff_rows(
        server, client, SESSION_FIELDS, SessionChanges, SessionUpdate
    )
    return SessionDiff(added=added, updated=updated, deleted=deleted)


def diff_exercises(server: Sequence[ExerciseRow], client: Sequence[ExerciseRow]) -> ExerciseDiff:
    # A planner row without a catalog id is matched by description instead
    added, updated, deleted = _diff_rows(
        server,
        client,
        EXERCISE_FIELDS,
        ExerciseChanges,
        ExerciseUpdate,
        ignore_when_missing=frozenset({"exercise_id"}),
    )
    return ExerciseDiff(added=added, updated=updated, deleted=deleted)


def diff_plan_trees(
    server_phases: Sequence[PhaseItem],
    client_phases: Sequence[PhaseItem],
) -> PlanChanges:
    """Diff two nested trees into a plan change-set."""
    server_rows = flatten_plan_tree(server_phases)
    client_rows = flatten_plan_tree(client_phases)
    return diff_plan_rows(server_rows, client_rows)


def diff_plan_rows(
    server_rows: tuple[Sequence[PhaseRow], Sequence[SessionRow], Sequence[ExerciseRow]],
    client_rows: tuple[Sequence[PhaseRow], Sequence[SessionRow], Sequence[ExerciseRow]],
) -> PlanChanges:
    """Diff flattened (phases, sessions, exercises) row tuples."""
    server_phases, server_sessions, server_exercises = server_rows
    client_phases, client_sessions, client_exercises = client_rows
    return PlanChanges(
        phases=diff_phases(server_phases, client_phases),
        sessions=diff_sessions(server_sessions, client_sessions),
        exercises=diff_exercises(server_exercises, client_exercises),
    )
