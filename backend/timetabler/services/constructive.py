from __future__ import annotations

import logging
from collections import defaultdict
from time import perf_counter

from timetabler.schemas.entities import TimeSlot, day_order
from timetabler.services.evaluator import FitnessEvaluator, Individual, OccupancyIndex, SearchOutcome
from timetabler.services.problem import ClassAssignment, DemandProgress, SchedulingProblem

logger = logging.getLogger(__name__)

EXTRA_PER_DAY = 3


class ConstructiveScheduler:
    """Section-by-section placement that spreads each section across the week.

    Each section starts on a rotated day, first places one class per day while
    demand remains, then fills up to ``EXTRA_PER_DAY`` further periods per day.
    """

    def __init__(self, problem: SchedulingProblem, evaluator: FitnessEvaluator | None = None) -> None:
        self.problem = problem
        self.evaluator = evaluator or FitnessEvaluator(problem)
        self.day_slots: dict[str, list[TimeSlot]] = defaultdict(list)
        for slot in problem.time_slots:
            self.day_slots[slot.day].append(slot)
        self.days = sorted(self.day_slots, key=day_order)

    def rotated_days(self, course_id: str, section: str) -> list[str]:
        if not self.days:
            return []
        rotation = (ord(section[0]) + len(course_id)) % len(self.days)
        return self.days[rotation:] + self.days[:rotation]

    def build(self) -> list[ClassAssignment]:
        problem = self.problem
        occupancy = OccupancyIndex(problem)
        schedule: list[ClassAssignment] = []

        sections: dict[tuple[str, str], list[DemandProgress]] = {}
        for unit in problem.demand_units:
            sections.setdefault((unit.course_id, unit.section), []).append(DemandProgress.for_unit(unit))

        for (course_id, section), demand in sections.items():
            section_teachers: set[str] = set()
            days = self.rotated_days(course_id, section)

            def place_one(day: str) -> bool:
                for slot in self.day_slots[day]:
                    pending = [item for item in demand if item.remaining > 0 and item.can_use_day(day)]
                    if not pending:
                        return False
                    for item in pending:
                        placed = self._place(item, slot, section_teachers, occupancy)
                        if placed is not None:
                            schedule.append(placed)
                            return True
                return False

            while any(item.remaining > 0 for item in demand):
                placed_any = False
                for day in days:
                    if not any(item.remaining > 0 for item in demand):
                        break
                    placed_any |= place_one(day)
                if not placed_any:
                    break

            for day in days:
                extra = EXTRA_PER_DAY
                while extra > 0 and any(item.remaining > 0 for item in demand):
                    if not place_one(day):
                        break
                    extra -= 1
        return schedule

    def _place(
        self,
        pending: DemandProgress,
        slot: TimeSlot,
        section_teachers: set[str],
        occupancy: OccupancyIndex,
    ) -> ClassAssignment | None:
        problem = self.problem
        unit = pending.unit
        teachers = [
            teacher
            for teacher in problem.qualified_teachers(unit.subject_id, unit.course_id)
            if problem.is_teacher_available(teacher.id, slot.id)
        ]
        teachers.sort(key=lambda teacher: teacher.id in section_teachers)
        ordinal = unit.sessions_per_week - pending.remaining + 1
        for teacher in teachers:
            for room in problem.compatible_rooms(unit):
                candidate = problem.make_assignment(
                    assignment_id=problem.assignment_id(unit, ordinal),
                    unit=unit,
                    teacher_id=teacher.id,
                    room_id=room.id,
                    slot=slot,
                )
                if occupancy.clashes(candidate):
                    continue
                occupancy.add(candidate)
                pending.record(slot.day)
                section_teachers.add(teacher.id)
                return candidate
        return None

    def solve(self) -> SearchOutcome:
        started = perf_counter()
        schedule = self.build()
        evaluation = self.evaluator.evaluate(schedule)
        logger.info(
            "Constructive schedule assignments=%s fitness=%.2f runtime_ms=%s",
            len(schedule),
            evaluation.fitness,
            int((perf_counter() - started) * 1000),
        )
        return SearchOutcome(best=Individual(schedule=schedule, evaluation=evaluation))
