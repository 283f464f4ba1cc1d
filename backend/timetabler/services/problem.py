from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Literal

from timetabler.schemas.entities import (
    DAY_VALUES,
    Course,
    Room,
    SchedulingConstraints,
    Subject,
    Teacher,
    TimeSlot,
    day_order,
    minutes_to_time,
    parse_time_to_minutes,
)

logger = logging.getLogger(__name__)

DEFAULT_WEEK = DAY_VALUES[:5]


@lru_cache(maxsize=4096)
def clock_minutes(value: str) -> int:
    return parse_time_to_minutes(value)


@dataclass(frozen=True)
class DemandUnit:
    course_id: str
    section: str
    subject_id: str
    semester: int
    session_type: Literal["theory", "lab"]
    sessions_per_week: int
    student_count: int
    required_equipment: tuple[str, ...] = ()

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.course_id, self.section, self.subject_id)

    @property
    def requires_distinct_days(self) -> bool:
        return self.session_type == "theory"


@dataclass
class DemandProgress:
    unit: DemandUnit
    remaining: int
    used_days: set[str] = field(default_factory=set)

    @classmethod
    def for_unit(cls, unit: DemandUnit) -> "DemandProgress":
        return cls(unit=unit, remaining=unit.sessions_per_week)

    def can_use_day(self, day: str) -> bool:
        return not (self.unit.requires_distinct_days and day in self.used_days)

    def record(self, day: str) -> None:
        self.remaining -= 1
        self.used_days.add(day)


@dataclass
class ClassAssignment:
    id: str
    course_id: str
    subject_id: str
    section: str
    semester: int
    teacher_id: str
    room_id: str
    time_slot_id: str
    day: str
    start_time: str
    end_time: str

    @property
    def demand_key(self) -> tuple[str, str, str]:
        return (self.course_id, self.section, self.subject_id)

    @property
    def start_minutes(self) -> int:
        return clock_minutes(self.start_time)

    @property
    def end_minutes(self) -> int:
        return clock_minutes(self.end_time)

    def move_to(self, slot: TimeSlot) -> None:
        self.time_slot_id = slot.id
        self.day = slot.day
        self.start_time = slot.start_time
        self.end_time = slot.end_time

    def signature(self) -> tuple[str, str, str, str, str, str, str]:
        return (
            self.course_id,
            self.subject_id,
            self.section,
            self.teacher_id,
            self.room_id,
            self.day,
            self.start_time,
        )


def default_time_slots(
    constraints: SchedulingConstraints,
    days: tuple[str, ...] = DEFAULT_WEEK,
) -> list[TimeSlot]:
    """Build a weekly grid between the preferred start and end times.

    Every third period uses the lab interval, the others the theory interval.
    """
    start = parse_time_to_minutes(constraints.preferred_start_time)
    end = parse_time_to_minutes(constraints.preferred_end_time)
    slots: list[TimeSlot] = []
    for day in days:
        current = start
        while current < end:
            step = constraints.lab_interval_minutes if len(slots) % 3 == 2 else constraints.theory_interval_minutes
            finish = current + step
            if finish > end:
                break
            slots.append(
                TimeSlot(
                    id=f"{day}_{minutes_to_time(current)}",
                    day=day,
                    start_time=minutes_to_time(current),
                    end_time=minutes_to_time(finish),
                )
            )
            current = finish
    return slots


class SchedulingProblem:
    """Immutable lookup tables shared by the CSP and genetic engines."""

    def __init__(
        self,
        *,
        courses: list[Course],
        subjects: list[Subject],
        teachers: list[Teacher],
        rooms: list[Room],
        time_slots: list[TimeSlot],
        constraints: SchedulingConstraints,
    ) -> None:
        self.courses = list(courses)
        self.subjects = list(subjects)
        self.teachers = list(teachers)
        self.rooms = list(rooms)
        self.constraints = constraints
        self.warnings: list[str] = []

        self.time_slots = sorted(
            time_slots,
            key=lambda slot: (day_order(slot.day), slot.day, slot.start_minutes, slot.id),
        )
        self.course_by_id = {item.id: item for item in self.courses}
        self.subject_by_id = {item.id: item for item in self.subjects}
        self.teacher_by_id = {item.id: item for item in self.teachers}
        self.room_by_id = {item.id: item for item in self.rooms}
        self.slot_by_id = {item.id: item for item in self.time_slots}

        self.preferred_start = parse_time_to_minutes(constraints.preferred_start_time)
        self.preferred_end = parse_time_to_minutes(constraints.preferred_end_time)

        self.teacher_slot_ids = {item.id: self._available_slot_ids(item) for item in self.teachers}
        self.demand_units = self._build_demand_units()
        self.unit_by_key = {unit.key: unit for unit in self.demand_units}
        self.total_sessions = sum(unit.sessions_per_week for unit in self.demand_units)

        self._qualified_cache: dict[tuple[str, str], list[Teacher]] = {}
        self._room_cache: dict[tuple[str, str, str], list[Room]] = {}

    def warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    def _available_slot_ids(self, teacher: Teacher) -> frozenset[str]:
        available: set[str] = set()
        for entry in teacher.availability:
            for slot_id in entry.time_slot_ids:
                slot = self.slot_by_id.get(slot_id)
                if slot is None:
                    continue
                if slot.day == entry.day:
                    available.add(slot_id)
        return frozenset(available)

    def _build_demand_units(self) -> list[DemandUnit]:
        subjects_by_course: dict[str, list[Subject]] = {}
        for subject in self.subjects:
            if subject.course_id not in self.course_by_id:
                self.warn(f"Subject {subject.id} references unknown course {subject.course_id}; skipped")
                continue
            if not self.constraints.allows_semester(subject.semester):
                continue
            subjects_by_course.setdefault(subject.course_id, []).append(subject)

        units: list[DemandUnit] = []
        for course in self.courses:
            course_subjects = subjects_by_course.get(course.id, [])
            if not course_subjects:
                continue
            if not course.sections:
                self.warn(f"Course {course.id} has no sections; its subjects were not scheduled")
                continue
            for section in course.sections:
                for subject in course_subjects:
                    units.append(
                        DemandUnit(
                            course_id=course.id,
                            section=section,
                            subject_id=subject.id,
                            semester=subject.semester,
                            session_type=subject.type,
                            sessions_per_week=subject.sessions_per_week,
                            student_count=course.students_count,
                            required_equipment=tuple(course.required_equipment),
                        )
                    )
        return units

    def session_type_for(self, subject_id: str) -> str | None:
        subject = self.subject_by_id.get(subject_id)
        return subject.type if subject is not None else None

    def qualified_teachers(self, subject_id: str, course_id: str) -> list[Teacher]:
        key = (subject_id, course_id)
        cached = self._qualified_cache.get(key)
        if cached is None:
            cached = [item for item in self.teachers if item.is_qualified(subject_id, course_id)]
            self._qualified_cache[key] = cached
        return cached

    def compatible_rooms(self, unit: DemandUnit) -> list[Room]:
        key = unit.key
        cached = self._room_cache.get(key)
        if cached is None:
            needed = set(unit.required_equipment)
            cached = [
                room
                for room in self.rooms
                if room.type == unit.session_type
                and room.capacity >= unit.student_count
                and needed.issubset(room.equipment)
            ]
            self._room_cache[key] = cached
        return cached

    def is_teacher_available(self, teacher_id: str, slot_id: str) -> bool:
        return slot_id in self.teacher_slot_ids.get(teacher_id, frozenset())

    def teacher_slots(self, teacher_id: str) -> list[TimeSlot]:
        available = self.teacher_slot_ids.get(teacher_id, frozenset())
        return [slot for slot in self.time_slots if slot.id in available]

    def is_preferred_time(self, start_time: str) -> bool:
        start = clock_minutes(start_time)
        return self.preferred_start <= start <= self.preferred_end

    def unit_for(self, assignment: ClassAssignment) -> DemandUnit | None:
        return self.unit_by_key.get(assignment.demand_key)

    def make_assignment(
        self,
        *,
        assignment_id: str,
        unit: DemandUnit,
        teacher_id: str,
        room_id: str,
        slot: TimeSlot,
    ) -> ClassAssignment:
        return ClassAssignment(
            id=assignment_id,
            course_id=unit.course_id,
            subject_id=unit.subject_id,
            section=unit.section,
            semester=unit.semester,
            teacher_id=teacher_id,
            room_id=room_id,
            time_slot_id=slot.id,
            day=slot.day,
            start_time=slot.start_time,
            end_time=slot.end_time,
        )

    @staticmethod
    def assignment_id(unit: DemandUnit, ordinal: int) -> str:
        return f"{unit.course_id}-{unit.section}-{unit.subject_id}-{ordinal}"

    def variable_estimate(self) -> int:
        return len(self.courses) * len(self.subjects) * max(len(self.teachers), 1)
