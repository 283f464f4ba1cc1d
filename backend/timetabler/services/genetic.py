from __future__ import annotations

import logging
import random
from collections import Counter
from dataclasses import dataclass, replace
from typing import Callable, Sequence

from timetabler.core.config import Settings, get_settings
from timetabler.core.exceptions import SchedulerError
from timetabler.schemas.optimizer import GeneticAlgorithmParams
from timetabler.services.evaluator import (
    FitnessEvaluator,
    GenerationStats,
    Individual,
    OccupancyIndex,
    SearchOutcome,
)
from timetabler.services.problem import ClassAssignment, DemandProgress, SchedulingProblem

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, int, float], None]
StopCallback = Callable[[], bool]


@dataclass
class RepairReport:
    relocated: int = 0
    dropped: int = 0

    def absorb(self, other: "RepairReport") -> None:
        self.relocated += other.relocated
        self.dropped += other.dropped


def jaccard_distance(left: Individual, right: Individual) -> float:
    left_keys = left.signatures()
    right_keys = right.signatures()
    union = left_keys | right_keys
    if not union:
        return 0.0
    return 1 - len(left_keys & right_keys) / len(union)


class GeneticEngine:
    def __init__(
        self,
        problem: SchedulingProblem,
        evaluator: FitnessEvaluator | None = None,
        *,
        settings: Settings | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.problem = problem
        self.evaluator = evaluator or FitnessEvaluator(problem)
        self.settings = settings or get_settings()
        self.random = rng or random.Random(self.settings.random_seed)
        self.repair_totals = RepairReport()
        self.warnings: list[str] = []

    def score(self, schedule: list[ClassAssignment]) -> Individual:
        return Individual(schedule=schedule, evaluation=self.evaluator.evaluate(schedule))

    def _warn(self, message: str) -> None:
        if message in self.warnings:
            return
        logger.warning(message)
        self.warnings.append(message)

    # Construction

    def generate_random_individual(self) -> Individual:
        problem = self.problem
        occupancy = OccupancyIndex(problem)
        section_subjects: dict[tuple[str, str], dict[str, set[str]]] = {}
        schedule: list[ClassAssignment] = []

        for unit in problem.demand_units:
            teachers = [
                item
                for item in problem.qualified_teachers(unit.subject_id, unit.course_id)
                if problem.teacher_slot_ids.get(item.id)
            ]
            rooms = problem.compatible_rooms(unit)
            if not teachers or not rooms:
                continue

            used = section_subjects.setdefault((unit.course_id, unit.section), {})
            fresh = [item for item in teachers if not used.get(item.id, set()) - {unit.subject_id}]
            teacher = self.random.choice(fresh or teachers)

            slots = problem.teacher_slots(teacher.id)
            self.random.shuffle(slots)
            progress = DemandProgress.for_unit(unit)
            for slot in slots:
                if progress.remaining == 0:
                    break
                if not progress.can_use_day(slot.day):
                    continue
                for room in self.random.sample(rooms, len(rooms)):
                    candidate = problem.make_assignment(
                        assignment_id=problem.assignment_id(unit, unit.sessions_per_week - progress.remaining + 1),
                        unit=unit,
                        teacher_id=teacher.id,
                        room_id=room.id,
                        slot=slot,
                    )
                    if occupancy.clashes(candidate):
                        continue
                    occupancy.add(candidate)
                    progress.record(slot.day)
                    used.setdefault(teacher.id, set()).add(unit.subject_id)
                    schedule.append(candidate)
                    break
        return self.score(schedule)

    def populate(self, seeds: Sequence[Individual], size: int) -> list[Individual]:
        population = list(seeds[:size])
        while len(population) < size:
            population.append(self.generate_random_individual())
        return population

    def perturb(self, individual: Individual, fraction: float) -> Individual:
        """Move about ``fraction`` of the assignments (at least one) to random teacher slots."""
        schedule = [replace(item) for item in individual.schedule]
        if not schedule:
            return self.score(schedule)
        count = min(len(schedule), int(len(schedule) * fraction) + 1)
        for index in self.random.sample(range(len(schedule)), count):
            slots = self.problem.teacher_slots(schedule[index].teacher_id)
            if slots:
                schedule[index].move_to(self.random.choice(slots))
        return self._repaired(schedule)

    # Repair

    def repair(self, schedule: list[ClassAssignment]) -> tuple[list[ClassAssignment], RepairReport]:
        """Keep assignments in order, relocating or dropping any that clash with earlier ones.

        Returns copies; the input assignments are left untouched. The output is
        pairwise clash-free and within each unit's weekly session count, so a
        second pass returns it unchanged.
        """
        problem = self.problem
        occupancy = OccupancyIndex(problem)
        delivered: Counter = Counter()
        report = RepairReport()
        kept: list[ClassAssignment] = []

        for original in schedule:
            unit = problem.unit_for(original)
            if original.teacher_id not in problem.teacher_by_id:
                self._warn(f"Assignment {original.id} references unknown teacher {original.teacher_id}; dropped")
                report.dropped += 1
                continue
            if original.room_id not in problem.room_by_id:
                self._warn(f"Assignment {original.id} references unknown room {original.room_id}; dropped")
                report.dropped += 1
                continue
            if original.time_slot_id not in problem.slot_by_id:
                self._warn(f"Assignment {original.id} references unknown time slot {original.time_slot_id}; dropped")
                report.dropped += 1
                continue
            if unit is None:
                self._warn(f"Assignment {original.id} does not match any demand unit; dropped")
                report.dropped += 1
                continue
            if delivered[unit.key] >= unit.sessions_per_week:
                report.dropped += 1
                continue

            item = replace(original)
            if occupancy.clashes(item):
                for slot in problem.teacher_slots(item.teacher_id):
                    item.move_to(slot)
                    if not occupancy.clashes(item):
                        report.relocated += 1
                        break
                else:
                    report.dropped += 1
                    continue

            delivered[unit.key] += 1
            item.id = problem.assignment_id(unit, delivered[unit.key])
            occupancy.add(item)
            kept.append(item)
        return kept, report

    def _repaired(self, schedule: list[ClassAssignment]) -> Individual:
        repaired, report = self.repair(schedule)
        self.repair_totals.absorb(report)
        return self.score(repaired)

    # Variation operators

    def crossover(self, parent_a: Individual, parent_b: Individual) -> tuple[Individual, Individual]:
        left = [replace(item) for item in parent_a.schedule]
        right = [replace(item) for item in parent_b.schedule]
        roll = self.random.random()
        if roll < 0.4:
            first, second = self._uniform_crossover(left, right)
        elif roll < 0.7:
            first, second = self._two_point_crossover(left, right)
        else:
            first, second = self._single_point_crossover(left, right)
        return self._repaired(first), self._repaired(second)

    def _uniform_crossover(
        self, left: list[ClassAssignment], right: list[ClassAssignment]
    ) -> tuple[list[ClassAssignment], list[ClassAssignment]]:
        first: list[ClassAssignment] = []
        second: list[ClassAssignment] = []
        for index in range(max(len(left), len(right))):
            gene_a = left[index] if index < len(left) else None
            gene_b = right[index] if index < len(right) else None
            if self.random.random() < 0.5:
                gene_a, gene_b = gene_b, gene_a
            if gene_a is not None:
                first.append(gene_a)
            if gene_b is not None:
                second.append(gene_b)
        return first, second

    def _single_point_crossover(
        self, left: list[ClassAssignment], right: list[ClassAssignment]
    ) -> tuple[list[ClassAssignment], list[ClassAssignment]]:
        shortest = min(len(left), len(right))
        if shortest < 2:
            return left, right
        point = self.random.randint(1, shortest - 1)
        return left[:point] + right[point:], right[:point] + left[point:]

    def _two_point_crossover(
        self, left: list[ClassAssignment], right: list[ClassAssignment]
    ) -> tuple[list[ClassAssignment], list[ClassAssignment]]:
        shortest = min(len(left), len(right))
        if shortest < 3:
            return self._single_point_crossover(left, right)
        start, end = sorted(self.random.sample(range(1, shortest), 2))
        return (
            left[:start] + right[start:end] + left[end:],
            right[:start] + left[start:end] + right[end:],
        )

    def adaptive_rate(self, base_rate: float, fitness: float) -> float:
        normalized = min(max(fitness / 1000, 0.0), 1.0)
        return base_rate * (2 - normalized)

    def mutate(self, individual: Individual, base_rate: float) -> Individual:
        rate = self.adaptive_rate(base_rate, individual.fitness)
        schedule = [replace(item) for item in individual.schedule]
        changed = False
        for index, item in enumerate(schedule):
            if self.random.random() >= rate:
                continue
            roll = self.random.random()
            if roll < 0.4:
                changed |= self._mutate_time(item)
            elif roll < 0.7:
                changed |= self._mutate_room(item)
            elif roll < 0.9:
                changed |= self._mutate_teacher(item)
            else:
                changed |= self._swap_slots(schedule, index)
        if not changed:
            return individual
        return self._repaired(schedule)

    def _mutate_time(self, item: ClassAssignment) -> bool:
        slots = [slot for slot in self.problem.teacher_slots(item.teacher_id) if slot.id != item.time_slot_id]
        if not slots:
            return False
        item.move_to(self.random.choice(slots))
        return True

    def _mutate_room(self, item: ClassAssignment) -> bool:
        unit = self.problem.unit_for(item)
        if unit is None:
            return False
        rooms = [room for room in self.problem.compatible_rooms(unit) if room.id != item.room_id]
        if not rooms:
            return False
        item.room_id = self.random.choice(rooms).id
        return True

    def _mutate_teacher(self, item: ClassAssignment) -> bool:
        teachers = [
            teacher
            for teacher in self.problem.qualified_teachers(item.subject_id, item.course_id)
            if teacher.id != item.teacher_id
        ]
        if not teachers:
            return False
        item.teacher_id = self.random.choice(teachers).id
        return True

    def _swap_slots(self, schedule: list[ClassAssignment], index: int) -> bool:
        if len(schedule) < 2:
            return False
        other_index = self.random.choice([position for position in range(len(schedule)) if position != index])
        first, second = schedule[index], schedule[other_index]
        first_slot = (first.time_slot_id, first.day, first.start_time, first.end_time, first.room_id)
        (first.time_slot_id, first.day, first.start_time, first.end_time, first.room_id) = (
            second.time_slot_id,
            second.day,
            second.start_time,
            second.end_time,
            second.room_id,
        )
        (second.time_slot_id, second.day, second.start_time, second.end_time, second.room_id) = first_slot
        return True

    # Selection

    def tournament_select(self, population: Sequence[Individual], size: int | None = None) -> Individual:
        size = min(size or self.settings.tournament_size, len(population))
        contenders = self.random.sample(list(population), size)
        return max(contenders, key=lambda item: item.fitness)

    def select(self, population: Sequence[Individual], count: int, elite_size: int = 0) -> list[Individual]:
        """Elites first, then half of the remainder by tournament and the rest by roulette."""
        ranked = sorted(population, key=lambda item: item.fitness, reverse=True)
        chosen = ranked[: min(elite_size, count)]
        remaining = count - len(chosen)
        tournament_count = remaining // 2
        chosen.extend(self.tournament_select(ranked) for _ in range(tournament_count))

        roulette_count = remaining - tournament_count
        if roulette_count > 0:
            floor = min(item.fitness for item in ranked)
            weights = [item.fitness - floor + 1 for item in ranked]
            chosen.extend(self.random.choices(ranked, weights=weights, k=roulette_count))
        return chosen

    def diversity_preserving_selection(self, population: Sequence[Individual], count: int) -> list[Individual]:
        ranked = sorted(population, key=lambda item: item.fitness, reverse=True)
        if not ranked or count <= 0:
            return []
        chosen = [ranked[0]]
        remaining = ranked[1:]
        while len(chosen) < count and remaining:
            candidate = max(
                remaining,
                key=lambda item: sum(jaccard_distance(item, other) for other in chosen) / len(chosen),
            )
            chosen.append(candidate)
            remaining.remove(candidate)
        return chosen

    def next_generation(
        self,
        population: Sequence[Individual],
        params: GeneticAlgorithmParams,
        mutation_rate: float,
    ) -> list[Individual]:
        ranked = sorted(population, key=lambda item: item.fitness, reverse=True)
        next_population = ranked[: params.elite_size]
        while len(next_population) < params.population_size:
            parent_a = self.tournament_select(ranked)
            parent_b = self.tournament_select(ranked)
            if self.random.random() < params.crossover_rate:
                children: tuple[Individual, ...] = self.crossover(parent_a, parent_b)
            else:
                children = (parent_a,)
            for child in children:
                if len(next_population) >= params.population_size:
                    break
                next_population.append(self.mutate(child, mutation_rate))
        return next_population

    # Generation loop

    def evolve(
        self,
        initial_population: Sequence[Individual],
        params: GeneticAlgorithmParams,
        *,
        generations: int | None = None,
        generation_offset: int = 0,
        progress_window: tuple[float, float] = (0.0, 100.0),
        on_progress: ProgressCallback | None = None,
        should_stop: StopCallback | None = None,
    ) -> SearchOutcome:
        if not initial_population:
            raise SchedulerError("Initial population is empty")

        repairs_before = replace(self.repair_totals)
        population = list(initial_population)
        if len(population) > params.population_size:
            population = self.select(population, params.population_size, params.elite_size)

        total = params.generations if generations is None else generations
        window_start, window_end = progress_window
        best: Individual | None = None
        history: list[GenerationStats] = []
        stagnant = 0
        rate = params.mutation_rate

        for step in range(total):
            if should_stop is not None and should_stop():
                logger.info("Generation loop cancelled at generation=%s", generation_offset + step)
                break

            fitnesses = [item.fitness for item in population]
            generation_best = max(population, key=lambda item: item.fitness)
            if best is None or generation_best.fitness > best.fitness:
                best = generation_best
                stagnant = 0
                rate = params.mutation_rate
            else:
                stagnant += 1
                if stagnant > self.settings.stagnation_threshold:
                    rate = min(params.mutation_rate * 2, self.settings.max_mutation_rate)
                else:
                    rate = params.mutation_rate

            generation = generation_offset + step
            history.append(
                GenerationStats(
                    generation=generation,
                    best=max(fitnesses),
                    average=sum(fitnesses) / len(fitnesses),
                    worst=min(fitnesses),
                )
            )
            logger.debug(
                "generation=%s best=%.2f average=%.2f stagnant=%s rate=%.3f",
                generation,
                history[-1].best,
                history[-1].average,
                stagnant,
                rate,
            )
            if on_progress is not None:
                percent = window_start + (window_end - window_start) * (step + 1) / max(total, 1)
                on_progress(percent, generation, best.fitness)

            if best.fitness > self.settings.early_stop_fitness and best.conflict_count == 0:
                logger.info("Early stop at generation=%s fitness=%.2f", generation, best.fitness)
                break
            if step < total - 1:
                population = self.next_generation(population, params, rate)

        if best is None:
            best = max(population, key=lambda item: item.fitness)
        return SearchOutcome(
            best=best,
            history=history,
            population=population,
            relocated=self.repair_totals.relocated - repairs_before.relocated,
            dropped=self.repair_totals.dropped - repairs_before.dropped,
            warnings=list(self.warnings),
        )
