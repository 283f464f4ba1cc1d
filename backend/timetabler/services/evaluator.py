from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Literal

from timetabler.services.problem import ClassAssignment, SchedulingProblem

CONFLICT_PENALTIES = {"high": 100.0, "medium": 30.0, "low": 10.0}

BASE_FITNESS = 1000.0
WORKLOAD_WEIGHT = 80.0
ROOM_UTILIZATION_WEIGHT = 60.0
TIME_DISTRIBUTION_WEIGHT = 40.0
CONSTRAINT_WEIGHT = 100.0
GAP_WEIGHT = 20.0
COVERAGE_WEIGHT = 150.0

ConflictKind = Literal["room", "teacher", "section", "same_day", "workload"]


@dataclass(frozen=True)
class RoomDayKey:
    room_id: str
    day: str


@dataclass(frozen=True)
class TeacherDayKey:
    teacher_id: str
    day: str


@dataclass(frozen=True)
class SectionDayKey:
    course_id: str
    section: str
    day: str


@dataclass(frozen=True)
class SubjectDayKey:
    course_id: str
    section: str
    subject_id: str
    day: str


@dataclass(frozen=True)
class Conflict:
    kind: ConflictKind
    severity: Literal["high", "medium", "low"]
    description: str
    assignment_ids: tuple[str, ...]


@dataclass
class ScheduleMetrics:
    total_conflicts: int
    room_utilization: float
    teacher_workload_balance: float
    student_satisfaction: float
    constraint_satisfaction: float
    coverage: float


@dataclass
class EvaluationResult:
    fitness: float
    conflicts: list[Conflict]
    workload_balance: float
    room_utilization: float
    time_distribution: float
    constraint_satisfaction: float
    gap_penalty: float
    coverage: float


def intervals_overlap(start_a: int, end_a: int, start_b: int, end_b: int) -> bool:
    return start_a < end_b and start_b < end_a


def resource_keys(assignment: ClassAssignment) -> tuple[RoomDayKey, TeacherDayKey, SectionDayKey]:
    return (
        RoomDayKey(assignment.room_id, assignment.day),
        TeacherDayKey(assignment.teacher_id, assignment.day),
        SectionDayKey(assignment.course_id, assignment.section, assignment.day),
    )


class OccupancyIndex:
    """Booked intervals per (resource, day), keyed by explicit key types."""

    def __init__(self, problem: SchedulingProblem | None = None) -> None:
        self.problem = problem
        self._intervals: dict[object, list[tuple[int, int, str]]] = defaultdict(list)

    def _keys_for(self, assignment: ClassAssignment) -> list[object]:
        keys: list[object] = list(resource_keys(assignment))
        if self._needs_distinct_days(assignment):
            keys.append(SubjectDayKey(assignment.course_id, assignment.section, assignment.subject_id, assignment.day))
        return keys

    def _needs_distinct_days(self, assignment: ClassAssignment) -> bool:
        if self.problem is None:
            return False
        return self.problem.session_type_for(assignment.subject_id) == "theory"

    def clashes(self, assignment: ClassAssignment) -> bool:
        start, end = assignment.start_minutes, assignment.end_minutes
        for key in self._keys_for(assignment):
            booked = self._intervals.get(key)
            if not booked:
                continue
            if isinstance(key, SubjectDayKey):
                return True
            for other_start, other_end, _ in booked:
                if intervals_overlap(start, end, other_start, other_end):
                    return True
        return False

    def add(self, assignment: ClassAssignment) -> None:
        entry = (assignment.start_minutes, assignment.end_minutes, assignment.id)
        for key in self._keys_for(assignment):
            self._intervals[key].append(entry)


class FitnessEvaluator:
    def __init__(self, problem: SchedulingProblem) -> None:
        self.problem = problem
        self.teacher_start_times: dict[str, set[tuple[str, int]]] = {}
        for teacher_id, slot_ids in problem.teacher_slot_ids.items():
            self.teacher_start_times[teacher_id] = {
                (problem.slot_by_id[slot_id].day, problem.slot_by_id[slot_id].start_minutes) for slot_id in slot_ids
            }

    def detect_conflicts(self, schedule: list[ClassAssignment]) -> list[Conflict]:
        conflicts: list[Conflict] = []
        buckets: dict[object, list[ClassAssignment]] = defaultdict(list)
        subject_days: dict[SubjectDayKey, list[ClassAssignment]] = defaultdict(list)
        for assignment in schedule:
            for key in resource_keys(assignment):
                buckets[key].append(assignment)
            if self.problem.session_type_for(assignment.subject_id) == "theory":
                subject_days[
                    SubjectDayKey(assignment.course_id, assignment.section, assignment.subject_id, assignment.day)
                ].append(assignment)

        for key, members in buckets.items():
            if len(members) < 2:
                continue
            for index, first in enumerate(members):
                for second in members[index + 1:]:
                    if not intervals_overlap(
                        first.start_minutes, first.end_minutes, second.start_minutes, second.end_minutes
                    ):
                        continue
                    conflicts.append(self._pair_conflict(key, first, second))

        for key, members in subject_days.items():
            for index, first in enumerate(members):
                for second in members[index + 1:]:
                    conflicts.append(
                        Conflict(
                            kind="same_day",
                            severity="medium",
                            description=(
                                f"Subject {key.subject_id} for section {key.section} meets twice on {key.day}"
                            ),
                            assignment_ids=(first.id, second.id),
                        )
                    )

        conflicts.extend(self._workload_conflicts(schedule))
        return conflicts

    @staticmethod
    def _pair_conflict(key: object, first: ClassAssignment, second: ClassAssignment) -> Conflict:
        if isinstance(key, RoomDayKey):
            return Conflict(
                kind="room",
                severity="high",
                description=f"Room {key.room_id} double-booked on {key.day} at {first.start_time}",
                assignment_ids=(first.id, second.id),
            )
        if isinstance(key, TeacherDayKey):
            return Conflict(
                kind="teacher",
                severity="high",
                description=f"Teacher {key.teacher_id} double-booked on {key.day} at {first.start_time}",
                assignment_ids=(first.id, second.id),
            )
        return Conflict(
            kind="section",
            severity="high",
            description=f"Section {key.course_id}/{key.section} double-booked on {key.day} at {first.start_time}",
            assignment_ids=(first.id, second.id),
        )

    def _workload_conflicts(self, schedule: list[ClassAssignment]) -> list[Conflict]:
        daily: dict[tuple[str, str], list[ClassAssignment]] = defaultdict(list)
        weekly: dict[str, list[ClassAssignment]] = defaultdict(list)
        for assignment in schedule:
            daily[(assignment.teacher_id, assignment.day)].append(assignment)
            weekly[assignment.teacher_id].append(assignment)

        conflicts: list[Conflict] = []
        for (teacher_id, day), members in daily.items():
            teacher = self.problem.teacher_by_id.get(teacher_id)
            if teacher is None:
                continue
            hours = sum(item.end_minutes - item.start_minutes for item in members) / 60
            if hours > teacher.max_hours_per_day:
                conflicts.append(
                    Conflict(
                        kind="workload",
                        severity="low",
                        description=(
                            f"Teacher {teacher_id} teaches {hours:g}h on {day} "
                            f"(max {teacher.max_hours_per_day:g}h)"
                        ),
                        assignment_ids=tuple(item.id for item in members),
                    )
                )
        for teacher_id, members in weekly.items():
            teacher = self.problem.teacher_by_id.get(teacher_id)
            if teacher is None:
                continue
            hours = sum(item.end_minutes - item.start_minutes for item in members) / 60
            if hours > teacher.max_hours_per_week:
                conflicts.append(
                    Conflict(
                        kind="workload",
                        severity="low",
                        description=(
                            f"Teacher {teacher_id} teaches {hours:g}h per week "
                            f"(max {teacher.max_hours_per_week:g}h)"
                        ),
                        assignment_ids=tuple(item.id for item in members),
                    )
                )
        return conflicts

    def workload_balance(self, schedule: list[ClassAssignment]) -> float:
        loads = list(Counter(item.teacher_id for item in schedule).values())
        if not loads:
            return 0.0
        mean = sum(loads) / len(loads)
        variance = sum((load - mean) ** 2 for load in loads) / len(loads)
        return max(0.0, 1 - variance / (mean * mean or 1))

    def room_utilization(self, schedule: list[ClassAssignment]) -> float:
        if not self.problem.rooms or not self.problem.time_slots:
            return 0.0
        usage = Counter(item.room_id for item in schedule)
        slot_count = len(self.problem.time_slots)
        rates = [min(1.0, usage.get(room.id, 0) / slot_count) for room in self.problem.rooms]
        return sum(rates) / len(rates)

    def time_distribution(self, schedule: list[ClassAssignment]) -> float:
        counts = list(Counter((item.day, item.start_time) for item in schedule).values())
        if not counts:
            return 0.0
        mean = sum(counts) / len(counts)
        variance = sum((count - mean) ** 2 for count in counts) / len(counts)
        return max(0.0, 1 - variance / (mean or 1))

    def constraint_satisfaction(self, schedule: list[ClassAssignment]) -> float:
        if not schedule:
            return 0.0
        satisfied = 0
        for item in schedule:
            if (item.day, item.start_minutes) in self.teacher_start_times.get(item.teacher_id, ()):
                satisfied += 1
            if self.problem.is_preferred_time(item.start_time):
                satisfied += 1
            room = self.problem.room_by_id.get(item.room_id)
            session_type = self.problem.session_type_for(item.subject_id)
            if room is not None and session_type is not None and room.type == session_type:
                satisfied += 1
        return satisfied / (3 * len(schedule))

    def gap_penalty(self, schedule: list[ClassAssignment]) -> float:
        by_teacher_day: dict[tuple[str, str], list[ClassAssignment]] = defaultdict(list)
        for item in schedule:
            by_teacher_day[(item.teacher_id, item.day)].append(item)

        threshold = self.problem.constraints.min_break_minutes + 60
        total = 0
        for members in by_teacher_day.values():
            members.sort(key=lambda item: item.start_minutes)
            for current, following in zip(members, members[1:]):
                gap = following.start_minutes - current.end_minutes
                if gap > threshold:
                    total += gap // 60
        return float(total)

    def coverage(self, schedule: list[ClassAssignment]) -> float:
        total = len(self.problem.demand_units)
        if total == 0:
            return 0.0
        scheduled = {item.demand_key for item in schedule}
        covered = sum(1 for unit in self.problem.demand_units if unit.key in scheduled)
        return covered / total

    def unscheduled_sessions(self, schedule: list[ClassAssignment]) -> int:
        counts = Counter(item.demand_key for item in schedule)
        delivered = sum(min(counts.get(unit.key, 0), unit.sessions_per_week) for unit in self.problem.demand_units)
        return self.problem.total_sessions - delivered

    def evaluate(self, schedule: list[ClassAssignment]) -> EvaluationResult:
        conflicts = self.detect_conflicts(schedule)
        workload = self.workload_balance(schedule)
        utilization = self.room_utilization(schedule)
        distribution = self.time_distribution(schedule)
        satisfaction = self.constraint_satisfaction(schedule)
        gaps = self.gap_penalty(schedule)
        coverage = self.coverage(schedule)

        fitness = BASE_FITNESS
        fitness -= sum(CONFLICT_PENALTIES[item.severity] for item in conflicts)
        fitness += WORKLOAD_WEIGHT * workload
        fitness += ROOM_UTILIZATION_WEIGHT * utilization
        fitness += TIME_DISTRIBUTION_WEIGHT * distribution
        fitness += CONSTRAINT_WEIGHT * satisfaction
        fitness -= GAP_WEIGHT * gaps
        fitness += COVERAGE_WEIGHT * coverage

        return EvaluationResult(
            fitness=max(fitness, 0.0),
            conflicts=conflicts,
            workload_balance=workload,
            room_utilization=utilization,
            time_distribution=distribution,
            constraint_satisfaction=satisfaction,
            gap_penalty=gaps,
            coverage=coverage,
        )

    def fitness(self, schedule: list[ClassAssignment]) -> float:
        return self.evaluate(schedule).fitness

    def metrics(self, schedule: list[ClassAssignment], evaluation: EvaluationResult | None = None) -> ScheduleMetrics:
        evaluation = evaluation or self.evaluate(schedule)
        total_conflicts = len(evaluation.conflicts)
        if schedule:
            student_satisfaction = max(0.0, 1 - total_conflicts / len(schedule))
        else:
            student_satisfaction = 0.0
        return ScheduleMetrics(
            total_conflicts=total_conflicts,
            room_utilization=evaluation.room_utilization,
            teacher_workload_balance=evaluation.workload_balance,
            student_satisfaction=student_satisfaction,
            constraint_satisfaction=evaluation.constraint_satisfaction,
            coverage=evaluation.coverage,
        )



@dataclass
class Individual:
    schedule: list[ClassAssignment]
    evaluation: EvaluationResult

    @property
    def fitness(self) -> float:
        return self.evaluation.fitness

    @property
    def conflict_count(self) -> int:
        return len(self.evaluation.conflicts)

    def signatures(self) -> set[tuple[str, ...]]:
        return {item.signature() for item in self.schedule}


@dataclass(frozen=True)
class GenerationStats:
    generation: int
    best: float
    average: float
    worst: float


@dataclass
class SearchOutcome:
    """Result of one engine phase (a CSP solve or a generation loop)."""

    best: Individual
    history: list[GenerationStats] = field(default_factory=list)
    population: list[Individual] = field(default_factory=list)
    used_fallback: bool | None = None
    relocated: int = 0
    dropped: int = 0
    constraints: list = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def fitness(self) -> float:
        return self.best.fitness

    @property
    def schedule(self) -> list[ClassAssignment]:
        return self.best.schedule
