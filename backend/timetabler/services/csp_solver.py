from __future__ import annotations

import logging
import math
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from time import perf_counter
from typing import Literal

from timetabler.core.config import Settings, get_settings
from timetabler.schemas.entities import TimeSlot
from timetabler.services.evaluator import (
    FitnessEvaluator,
    Individual,
    OccupancyIndex,
    RoomDayKey,
    SearchOutcome,
    SectionDayKey,
    SubjectDayKey,
    TeacherDayKey,
    intervals_overlap,
)
from timetabler.services.problem import ClassAssignment, DemandProgress, DemandUnit, SchedulingProblem

logger = logging.getLogger(__name__)

ConstraintKind = Literal["resource_conflict", "coverage", "diversity", "workload"]


class InfeasibleAssignment(Exception):
    """The search could not reach the coverage threshold within its budget."""


@dataclass
class SelectionVariable:
    id: int
    unit: DemandUnit
    teacher_id: str
    room_id: str
    slot: TimeSlot
    value: bool | None = None

    @property
    def is_candidate(self) -> bool:
        return self.value is None

    @property
    def duration_minutes(self) -> int:
        return self.slot.end_minutes - self.slot.start_minutes


@dataclass
class Constraint:
    kind: ConstraintKind
    scope: tuple[int, ...]
    label: str
    satisfied: bool = False


@dataclass
class _Frame:
    mark: int
    variable_id: int
    pending: list[bool] = field(default_factory=lambda: [False])


class CSPSolver:
    """Boolean selection model over feasible (unit, teacher, room, slot) tuples.

    At-most-one groups cover teacher+slot, room+slot and section+slot, plus
    unit+day for theory units. Every unit needs between one and
    ``sessions_per_week`` selected variables. The search is an iterative
    depth-first backtrack over a trail, bounded by ``csp_max_nodes`` and
    ``csp_time_limit_seconds``; when it fails, a greedy constructive pass
    produces the schedule instead.
    """

    def __init__(
        self,
        problem: SchedulingProblem,
        evaluator: FitnessEvaluator | None = None,
        *,
        settings: Settings | None = None,
    ) -> None:
        self.problem = problem
        self.evaluator = evaluator or FitnessEvaluator(problem)
        self.settings = settings or get_settings()

        self.variables: list[SelectionVariable] = []
        self.constraints: list[Constraint] = []
        self.nodes = 0
        self._deadline = math.inf
        self._reset_state()

    def _reset_state(self) -> None:
        self.variables = []
        self.constraints = []
        self._unit_vars: dict[tuple[str, str, str], list[int]] = defaultdict(list)
        self._teacher_vars: dict[str, list[int]] = defaultdict(list)
        self._var_keys: list[tuple[object, ...]] = []
        self._buckets: dict[object, list[int]] = defaultdict(list)
        self._var_groups: dict[int, list[int]] = defaultdict(list)
        self._resource_groups: list[Constraint] = []
        self._coverage_units: dict[int, DemandUnit] = {}
        self._workload_teachers: dict[int, str] = {}

        self._trail: list[int] = []
        self._unit_selected: Counter = Counter()
        self._unit_open: Counter = Counter()
        self._teacher_day_minutes: Counter = Counter()
        self._teacher_week_minutes: Counter = Counter()
        self._section_teachers: dict[tuple[str, str], Counter] = defaultdict(Counter)

    # Model construction

    def build_model(self) -> None:
        self._reset_state()
        problem = self.problem
        groups: dict[tuple[str, ...], list[int]] = defaultdict(list)

        for unit in problem.demand_units:
            rooms = problem.compatible_rooms(unit)
            for teacher in problem.qualified_teachers(unit.subject_id, unit.course_id):
                for slot in problem.teacher_slots(teacher.id):
                    if not problem.is_preferred_time(slot.start_time):
                        continue
                    for room in rooms:
                        variable = SelectionVariable(
                            id=len(self.variables),
                            unit=unit,
                            teacher_id=teacher.id,
                            room_id=room.id,
                            slot=slot,
                        )
                        self.variables.append(variable)
                        self._index_variable(variable, groups)

        for (kind, *parts), scope in groups.items():
            constraint = Constraint(
                kind="resource_conflict",
                scope=tuple(scope),
                label=f"{kind}:{'/'.join(parts)}",
            )
            index = len(self.constraints)
            self.constraints.append(constraint)
            self._resource_groups.append(constraint)
            for variable_id in scope:
                self._var_groups[variable_id].append(index)

        for unit in problem.demand_units:
            self._coverage_units[len(self.constraints)] = unit
            self.constraints.append(
                Constraint(
                    kind="coverage",
                    scope=tuple(self._unit_vars.get(unit.key, ())),
                    label=f"coverage:{'/'.join(unit.key)}",
                )
            )

        diversity: dict[tuple[str, str, str], list[int]] = defaultdict(list)
        for variable in self.variables:
            diversity[(variable.unit.course_id, variable.unit.section, variable.teacher_id)].append(variable.id)
        for (course_id, section, teacher_id), scope in diversity.items():
            subjects = {self.variables[item].unit.subject_id for item in scope}
            if len(subjects) < 2:
                continue
            self.constraints.append(
                Constraint(kind="diversity", scope=tuple(scope), label=f"diversity:{course_id}/{section}/{teacher_id}")
            )

        for teacher_id, scope in self._teacher_vars.items():
            self._workload_teachers[len(self.constraints)] = teacher_id
            self.constraints.append(
                Constraint(kind="workload", scope=tuple(scope), label=f"workload:{teacher_id}")
            )

        logger.debug(
            "CSP model built variables=%s constraints=%s units=%s",
            len(self.variables),
            len(self.constraints),
            len(problem.demand_units),
        )

    def _index_variable(self, variable: SelectionVariable, groups: dict[tuple[str, ...], list[int]]) -> None:
        unit = variable.unit
        slot = variable.slot
        self._unit_vars[unit.key].append(variable.id)
        self._unit_open[unit.key] += 1
        self._teacher_vars[variable.teacher_id].append(variable.id)

        keys: list[object] = [
            RoomDayKey(variable.room_id, slot.day),
            TeacherDayKey(variable.teacher_id, slot.day),
            SectionDayKey(unit.course_id, unit.section, slot.day),
        ]
        groups[("teacher_slot", variable.teacher_id, slot.id)].append(variable.id)
        groups[("room_slot", variable.room_id, slot.id)].append(variable.id)
        groups[("section_slot", unit.course_id, unit.section, slot.id)].append(variable.id)
        if unit.requires_distinct_days:
            keys.append(SubjectDayKey(unit.course_id, unit.section, unit.subject_id, slot.day))
            groups[("unit_day", unit.course_id, unit.section, unit.subject_id, slot.day)].append(variable.id)

        self._var_keys.append(tuple(keys))
        for key in keys:
            self._buckets[key].append(variable.id)

    # Trail bookkeeping

    def _assign(self, variable: SelectionVariable, value: bool) -> None:
        variable.value = value
        self._trail.append(variable.id)
        unit = variable.unit
        self._unit_open[unit.key] -= 1
        if value:
            self._unit_selected[unit.key] += 1
            self._teacher_day_minutes[(variable.teacher_id, variable.slot.day)] += variable.duration_minutes
            self._teacher_week_minutes[variable.teacher_id] += variable.duration_minutes
            self._section_teachers[(unit.course_id, unit.section)][(variable.teacher_id, unit.subject_id)] += 1

    def _undo_to(self, mark: int) -> None:
        while len(self._trail) > mark:
            variable = self.variables[self._trail.pop()]
            unit = variable.unit
            if variable.value:
                self._unit_selected[unit.key] -= 1
                self._teacher_day_minutes[(variable.teacher_id, variable.slot.day)] -= variable.duration_minutes
                self._teacher_week_minutes[variable.teacher_id] -= variable.duration_minutes
                self._section_teachers[(unit.course_id, unit.section)][(variable.teacher_id, unit.subject_id)] -= 1
            self._unit_open[unit.key] += 1
            variable.value = None

    # Consistency

    def _within_workload(self, variable: SelectionVariable) -> bool:
        teacher = self.problem.teacher_by_id[variable.teacher_id]
        day_minutes = self._teacher_day_minutes[(variable.teacher_id, variable.slot.day)] + variable.duration_minutes
        week_minutes = self._teacher_week_minutes[variable.teacher_id] + variable.duration_minutes
        return day_minutes <= teacher.max_hours_per_day * 60 and week_minutes <= teacher.max_hours_per_week * 60

    def _clashes(self, variable: SelectionVariable, other: SelectionVariable, key: object) -> bool:
        if isinstance(key, SubjectDayKey):
            return True
        return intervals_overlap(
            variable.slot.start_minutes,
            variable.slot.end_minutes,
            other.slot.start_minutes,
            other.slot.end_minutes,
        )

    def is_consistent(self, variable: SelectionVariable) -> bool:
        if not variable.is_candidate:
            return False
        unit = variable.unit
        if self._unit_selected[unit.key] >= unit.sessions_per_week:
            return False
        if not self._within_workload(variable):
            return False
        for key in self._var_keys[variable.id]:
            for other_id in self._buckets[key]:
                other = self.variables[other_id]
                if other.value and other_id != variable.id and self._clashes(variable, other, key):
                    return False
        return True

    def _select(self, variable: SelectionVariable) -> None:
        self._assign(variable, True)
        for key in self._var_keys[variable.id]:
            for other_id in self._buckets[key]:
                other = self.variables[other_id]
                if other.is_candidate and self._clashes(variable, other, key):
                    self._assign(other, False)

        unit = variable.unit
        if self._unit_selected[unit.key] >= unit.sessions_per_week:
            for other_id in self._unit_vars[unit.key]:
                other = self.variables[other_id]
                if other.is_candidate:
                    self._assign(other, False)

        # Forward check the teacher's remaining hours.
        for other_id in self._teacher_vars[variable.teacher_id]:
            other = self.variables[other_id]
            if other.is_candidate and not self._within_workload(other):
                self._assign(other, False)

    def _coverage(self) -> float:
        total = len(self.problem.demand_units)
        if total == 0:
            return 1.0
        return sum(1 for unit in self.problem.demand_units if self._unit_selected[unit.key] > 0) / total

    def coverage_upper_bound(self) -> float:
        total = len(self.problem.demand_units)
        if total == 0:
            return 1.0
        reachable = sum(
            1
            for unit in self.problem.demand_units
            if self._unit_selected[unit.key] > 0 or self._unit_open[unit.key] > 0
        )
        return reachable / total

    # Propagation

    def propagate(self) -> bool:
        """Run unit and group propagation to a fixpoint; False on a dead end."""
        for _ in range(self.settings.csp_propagation_max_passes):
            self._check_deadline()
            changed = False
            for unit in self.problem.demand_units:
                if self._unit_selected[unit.key] or self._unit_open[unit.key] != 1:
                    continue
                variable = next(
                    self.variables[item] for item in self._unit_vars[unit.key] if self.variables[item].is_candidate
                )
                if self.is_consistent(variable):
                    self._select(variable)
                    changed = True

            for group in self._resource_groups:
                if len(group.scope) < 2:
                    continue
                candidates = []
                taken = False
                for variable_id in group.scope:
                    value = self.variables[variable_id].value
                    if value:
                        taken = True
                        break
                    if value is None:
                        candidates.append(variable_id)
                if taken or len(candidates) != 1:
                    continue
                variable = self.variables[candidates[0]]
                if self.is_consistent(variable):
                    self._select(variable)
                    changed = True

            if not changed:
                break
        return self.coverage_upper_bound() >= self.settings.csp_coverage_threshold

    # Search

    def _check_deadline(self) -> None:
        if perf_counter() > self._deadline:
            logger.warning("CSP time budget of %.2fs exhausted", self.settings.csp_time_limit_seconds)
            raise InfeasibleAssignment("time budget exhausted")

    def _contested_groups(self, variable: SelectionVariable) -> int:
        contested = 0
        for index in self._var_groups[variable.id]:
            open_count = sum(1 for item in self.constraints[index].scope if self.variables[item].is_candidate)
            if open_count > 1:
                contested += 1
        return contested

    def _diversity_penalty(self, variable: SelectionVariable) -> int:
        unit = variable.unit
        taught = self._section_teachers[(unit.course_id, unit.section)]
        for (teacher_id, subject_id), count in taught.items():
            if count > 0 and teacher_id == variable.teacher_id and subject_id != unit.subject_id:
                return 1
        return 0

    def choose_variable(self) -> SelectionVariable | None:
        best_unit: DemandUnit | None = None
        for unit in self.problem.demand_units:
            if self._unit_open[unit.key] == 0 or self._unit_selected[unit.key] >= unit.sessions_per_week:
                continue
            if best_unit is None or self._unit_open[unit.key] < self._unit_open[best_unit.key]:
                best_unit = unit
        if best_unit is None:
            return None
        candidates = [
            self.variables[item] for item in self._unit_vars[best_unit.key] if self.variables[item].is_candidate
        ]
        return min(
            candidates,
            key=lambda item: (self._contested_groups(item) + self._diversity_penalty(item), item.id),
        )

    def _try(self, variable: SelectionVariable, value: bool) -> bool:
        self.nodes += 1
        if self.nodes > self.settings.csp_max_nodes:
            logger.warning("CSP node budget of %s exhausted", self.settings.csp_max_nodes)
            raise InfeasibleAssignment("node budget exhausted")
        if value:
            if not self.is_consistent(variable):
                return False
            self._select(variable)
        else:
            self._assign(variable, False)
        return self.propagate()

    def search(self) -> list[ClassAssignment]:
        if not self.propagate():
            raise InfeasibleAssignment("coverage threshold unreachable after propagation")

        stack: list[_Frame] = []
        while True:
            variable = self.choose_variable()
            if variable is None:
                if self._coverage() >= self.settings.csp_coverage_threshold:
                    return self._selected_schedule()
                advanced = False
            else:
                stack.append(_Frame(mark=len(self._trail), variable_id=variable.id))
                advanced = self._try(variable, True)

            while not advanced:
                if not stack:
                    raise InfeasibleAssignment("search space exhausted")
                frame = stack[-1]
                self._undo_to(frame.mark)
                if not frame.pending:
                    stack.pop()
                    continue
                advanced = self._try(self.variables[frame.variable_id], frame.pending.pop())

    def _selected_schedule(self) -> list[ClassAssignment]:
        ordinals: Counter = Counter()
        schedule: list[ClassAssignment] = []
        for variable in self.variables:
            if not variable.value:
                continue
            ordinals[variable.unit.key] += 1
            schedule.append(
                self.problem.make_assignment(
                    assignment_id=self.problem.assignment_id(variable.unit, ordinals[variable.unit.key]),
                    unit=variable.unit,
                    teacher_id=variable.teacher_id,
                    room_id=variable.room_id,
                    slot=variable.slot,
                )
            )
        return schedule

    def refresh_constraints(self) -> list[Constraint]:
        """Recompute every constraint's satisfied flag from the current selection."""
        for index, constraint in enumerate(self.constraints):
            selected = [self.variables[item] for item in constraint.scope if self.variables[item].value]
            if constraint.kind == "resource_conflict":
                constraint.satisfied = len(selected) <= 1
            elif constraint.kind == "coverage":
                unit = self._coverage_units[index]
                constraint.satisfied = 1 <= len(selected) <= unit.sessions_per_week
            elif constraint.kind == "diversity":
                constraint.satisfied = len({item.unit.subject_id for item in selected}) <= 1
            else:
                constraint.satisfied = self._within_selected_hours(self._workload_teachers[index])
        return self.constraints

    def _within_selected_hours(self, teacher_id: str) -> bool:
        teacher = self.problem.teacher_by_id[teacher_id]
        if self._teacher_week_minutes[teacher_id] > teacher.max_hours_per_week * 60:
            return False
        return all(
            minutes <= teacher.max_hours_per_day * 60
            for (owner, _day), minutes in self._teacher_day_minutes.items()
            if owner == teacher_id
        )

    # Greedy fallback

    def _select_schedule(self, schedule: list[ClassAssignment]) -> None:
        """Mark the variables matching a finished schedule as selected."""
        lookup = {
            (variable.unit.key, variable.teacher_id, variable.room_id, variable.slot.id): variable
            for variable in self.variables
        }
        for item in schedule:
            variable = lookup.get((item.demand_key, item.teacher_id, item.room_id, item.time_slot_id))
            if variable is not None and variable.is_candidate:
                self._assign(variable, True)

    @staticmethod
    def tightness(unit: DemandUnit) -> float:
        return 10 * len(unit.required_equipment) + 5 * math.log(unit.student_count) + 3 * unit.sessions_per_week

    def greedy_schedule(self) -> list[ClassAssignment]:
        problem = self.problem
        units = sorted(problem.demand_units, key=self.tightness, reverse=True)
        slots = sorted(problem.time_slots, key=lambda slot: not problem.is_preferred_time(slot.start_time))
        occupancy = OccupancyIndex(problem)
        day_minutes: Counter = Counter()
        week_minutes: Counter = Counter()
        section_subjects: dict[tuple[str, str], dict[str, set[str]]] = defaultdict(lambda: defaultdict(set))
        schedule: list[ClassAssignment] = []

        for unit in units:
            progress = DemandProgress.for_unit(unit)
            rooms = problem.compatible_rooms(unit)
            used_by_section = section_subjects[(unit.course_id, unit.section)]
            teachers = sorted(
                problem.qualified_teachers(unit.subject_id, unit.course_id),
                key=lambda teacher: bool(used_by_section[teacher.id] - {unit.subject_id}),
            )
            while progress.remaining > 0:
                placed = None
                for teacher in teachers:
                    for slot in slots:
                        if not progress.can_use_day(slot.day) or not problem.is_teacher_available(teacher.id, slot.id):
                            continue
                        duration = slot.end_minutes - slot.start_minutes
                        if day_minutes[(teacher.id, slot.day)] + duration > teacher.max_hours_per_day * 60:
                            continue
                        if week_minutes[teacher.id] + duration > teacher.max_hours_per_week * 60:
                            continue
                        for room in rooms:
                            candidate = problem.make_assignment(
                                assignment_id=problem.assignment_id(unit, unit.sessions_per_week - progress.remaining + 1),
                                unit=unit,
                                teacher_id=teacher.id,
                                room_id=room.id,
                                slot=slot,
                            )
                            if not occupancy.clashes(candidate):
                                placed = candidate
                                break
                        if placed is not None:
                            break
                    if placed is not None:
                        break
                if placed is None:
                    break
                occupancy.add(placed)
                duration = placed.end_minutes - placed.start_minutes
                day_minutes[(placed.teacher_id, placed.day)] += duration
                week_minutes[placed.teacher_id] += duration
                used_by_section[placed.teacher_id].add(unit.subject_id)
                progress.record(placed.day)
                schedule.append(placed)
        return schedule

    # Entry point

    def solve(self) -> SearchOutcome:
        started = perf_counter()
        self._deadline = started + self.settings.csp_time_limit_seconds
        self.nodes = 0
        self.build_model()

        used_fallback = False
        try:
            schedule = self.search()
        except InfeasibleAssignment as exc:
            logger.info("CSP search infeasible (%s); switching to greedy construction", exc)
            self._undo_to(0)
            schedule = self.greedy_schedule()
            self._select_schedule(schedule)
            used_fallback = True

        constraints = self.refresh_constraints()
        evaluation = self.evaluator.evaluate(schedule)
        logger.info(
            "CSP solve variables=%s nodes=%s fallback=%s assignments=%s fitness=%.2f runtime_ms=%s",
            len(self.variables),
            self.nodes,
            used_fallback,
            len(schedule),
            evaluation.fitness,
            int((perf_counter() - started) * 1000),
        )
        return SearchOutcome(
            best=Individual(schedule=schedule, evaluation=evaluation),
            used_fallback=used_fallback,
            constraints=constraints,
        )
