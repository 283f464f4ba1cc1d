import random
from dataclasses import replace

import pytest

from timetabler.core.config import Settings
from timetabler.core.exceptions import SchedulerError
from timetabler.schemas.entities import Course, Room, SchedulingConstraints, Subject, Teacher, TimeSlot
from timetabler.schemas.optimizer import GeneticAlgorithmParams
from timetabler.services.evaluator import FitnessEvaluator
from timetabler.services.genetic import GeneticEngine, jaccard_distance
from timetabler.services.problem import SchedulingProblem


def messy_schedule(engine):
    """Concatenate several random individuals so clashes and over-delivery are guaranteed."""
    schedule = []
    for _ in range(3):
        schedule.extend(replace(item) for item in engine.generate_random_individual().schedule)
    return schedule


def test_random_individual_is_clash_free(scenario_a_engine):
    individual = scenario_a_engine.generate_random_individual()
    assert len(individual.schedule) == 4
    assert individual.evaluation.conflicts == []
    assert individual.evaluation.coverage == 1.0


def test_repair_is_idempotent(scenario_a_engine):
    schedule = messy_schedule(scenario_a_engine)
    once, first_report = scenario_a_engine.repair(schedule)
    twice, second_report = scenario_a_engine.repair(once)

    assert first_report.dropped > 0
    assert [item.signature() for item in twice] == [item.signature() for item in once]
    assert [item.id for item in twice] == [item.id for item in once]
    assert second_report.dropped == 0
    assert second_report.relocated == 0


def test_repair_output_has_no_hard_conflicts(scenario_a_engine):
    repaired, _ = scenario_a_engine.repair(messy_schedule(scenario_a_engine))
    conflicts = scenario_a_engine.evaluator.detect_conflicts(repaired)
    assert [item for item in conflicts if item.severity in {"high", "medium"}] == []
    assert len(repaired) <= scenario_a_engine.problem.total_sessions


def test_repair_leaves_input_untouched(scenario_a_engine):
    schedule = messy_schedule(scenario_a_engine)
    before = [(item.id, item.signature()) for item in schedule]
    scenario_a_engine.repair(schedule)
    assert [(item.id, item.signature()) for item in schedule] == before


def test_repair_drops_unknown_teacher_with_warning(scenario_a_engine):
    schedule = [replace(item) for item in scenario_a_engine.generate_random_individual().schedule]
    schedule[0].teacher_id = "GHOST"

    repaired, report = scenario_a_engine.repair(schedule)

    assert report.dropped == 1
    assert all(item.teacher_id != "GHOST" for item in repaired)
    assert any("GHOST" in message for message in scenario_a_engine.warnings)


def test_repair_relocates_into_a_free_teacher_slot(scenario_a_engine):
    first = scenario_a_engine.generate_random_individual().schedule[0]
    clash = replace(first, section="B")

    repaired, report = scenario_a_engine.repair([first, clash])

    assert report.relocated == 1
    assert len(repaired) == 2
    assert repaired[1].time_slot_id != first.time_slot_id


def test_crossover_children_are_repaired_copies(scenario_a_engine):
    parent_a = scenario_a_engine.generate_random_individual()
    parent_b = scenario_a_engine.generate_random_individual()
    snapshot = [item.signature() for item in parent_a.schedule]

    for _ in range(10):
        for child in scenario_a_engine.crossover(parent_a, parent_b):
            assert all(gene is not original for gene in child.schedule for original in parent_a.schedule)
            assert [item for item in child.evaluation.conflicts if item.severity == "high"] == []
    assert [item.signature() for item in parent_a.schedule] == snapshot


def test_mutate_without_changes_returns_same_individual(scenario_a_engine):
    individual = scenario_a_engine.generate_random_individual()
    assert scenario_a_engine.mutate(individual, 0.0) is individual


def test_mutate_produces_new_repaired_individuals(scenario_a_engine):
    individual = scenario_a_engine.generate_random_individual()
    snapshot = [item.signature() for item in individual.schedule]

    mutants = [scenario_a_engine.mutate(individual, 1.0) for _ in range(10)]
    changed = [mutant for mutant in mutants if mutant is not individual]

    assert changed
    assert [item.signature() for item in individual.schedule] == snapshot
    for mutant in changed:
        assert [item for item in mutant.evaluation.conflicts if item.severity == "high"] == []


def test_adaptive_rate_scales_with_fitness(scenario_a_engine):
    assert scenario_a_engine.adaptive_rate(0.1, 0) == pytest.approx(0.2)
    assert scenario_a_engine.adaptive_rate(0.1, 500) == pytest.approx(0.15)
    assert scenario_a_engine.adaptive_rate(0.1, 2000) == pytest.approx(0.1)


def test_tournament_over_whole_population_returns_best(scenario_a_engine):
    population = [scenario_a_engine.generate_random_individual() for _ in range(5)]
    best = scenario_a_engine.tournament_select(population, size=5)
    assert best.fitness == max(item.fitness for item in population)


def test_select_keeps_elites_first(scenario_a_engine):
    population = [scenario_a_engine.generate_random_individual() for _ in range(8)]
    ranked = sorted(population, key=lambda item: item.fitness, reverse=True)

    chosen = scenario_a_engine.select(population, 6, elite_size=2)

    assert len(chosen) == 6
    assert chosen[0] is ranked[0]
    assert chosen[1] is ranked[1]
    assert all(any(item is member for member in population) for item in chosen)


def test_diversity_selection_prefers_distinct_schedules(scenario_a_engine):
    base = scenario_a_engine.generate_random_individual()
    duplicate = scenario_a_engine.score([replace(item) for item in base.schedule])
    distinct = scenario_a_engine.score(base.schedule[:1])

    chosen = scenario_a_engine.diversity_preserving_selection([base, duplicate, distinct], 2)

    assert jaccard_distance(base, duplicate) == 0.0
    assert chosen[1] is distinct


def test_elites_survive_one_generation_unchanged(scenario_a_problem, settings):
    engine = GeneticEngine(scenario_a_problem, FitnessEvaluator(scenario_a_problem), settings=settings, rng=random.Random(8))
    params = GeneticAlgorithmParams(population_size=10, elite_size=3, generations=1)
    population = [engine.generate_random_individual() for _ in range(10)]
    population[4] = engine.score(population[4].schedule[:2])
    population[7] = engine.score([])
    elites = sorted(population, key=lambda item: item.fitness, reverse=True)[:3]
    snapshots = [[item.signature() for item in elite.schedule] for elite in elites]

    next_population = engine.next_generation(population, params, mutation_rate=0.5)

    assert len(next_population) == 10
    for position, elite in enumerate(elites):
        assert next_population[position] is elite
        assert [item.signature() for item in elite.schedule] == snapshots[position]


def test_evolve_rejects_empty_population(scenario_a_engine):
    with pytest.raises(SchedulerError):
        scenario_a_engine.evolve([], GeneticAlgorithmParams())


def test_evolve_numbers_generations_from_offset(scenario_a_problem):
    settings = Settings(early_stop_fitness=10_000)
    engine = GeneticEngine(scenario_a_problem, settings=settings, rng=random.Random(4))
    params = GeneticAlgorithmParams(population_size=6, elite_size=1, generations=4)
    progress = []

    outcome = engine.evolve(
        engine.populate([], 6),
        params,
        generation_offset=7,
        progress_window=(20.0, 60.0),
        on_progress=lambda percent, generation, best: progress.append((percent, generation)),
    )

    assert [item.generation for item in outcome.history] == [7, 8, 9, 10]
    assert [generation for _, generation in progress] == [7, 8, 9, 10]
    assert progress[-1][0] == pytest.approx(60.0)
    assert [percent for percent, _ in progress] == sorted(percent for percent, _ in progress)
    assert outcome.best.fitness == max(item.best for item in outcome.history)


def test_evolve_stops_early_on_conflict_free_high_fitness(scenario_a_engine):
    params = GeneticAlgorithmParams(population_size=6, elite_size=1, generations=30)
    outcome = scenario_a_engine.evolve(scenario_a_engine.populate([], 6), params)
    assert len(outcome.history) == 1
    assert outcome.best.conflict_count == 0


def test_evolve_honours_cancellation(scenario_a_engine):
    params = GeneticAlgorithmParams(population_size=4, elite_size=1, generations=5)
    population = scenario_a_engine.populate([], 4)
    outcome = scenario_a_engine.evolve(population, params, should_stop=lambda: True)
    assert outcome.history == []
    assert outcome.best in population


def operator_problem():
    """One theory unit with two qualified teachers and rooms of mixed fit."""
    slot_ids = ["mon-1", "mon-2", "tue-1"]
    availability = [
        {"day": "Monday", "time_slot_ids": ["mon-1", "mon-2"]},
        {"day": "Tuesday", "time_slot_ids": ["tue-1"]},
    ]
    return SchedulingProblem(
        courses=[Course(id="CS", sections=["A"], students_count=40)],
        subjects=[Subject(id="ALG", course_id="CS")],
        teachers=[
            Teacher(id="T1", taught_subject_ids=["ALG"], availability=availability),
            Teacher(id="T2", taught_subject_ids=["ALG"], availability=availability),
            Teacher(id="T3", taught_subject_ids=["DB"], availability=availability),
        ],
        rooms=[
            Room(id="R1", type="theory", capacity=60),
            Room(id="R2", type="theory", capacity=50),
            Room(id="R3", type="theory", capacity=20),
            Room(id="L1", type="lab", capacity=60),
        ],
        time_slots=[
            TimeSlot(id=slot_ids[0], day="Monday", start_time="09:00", end_time="10:00"),
            TimeSlot(id=slot_ids[1], day="Monday", start_time="10:00", end_time="11:00"),
            TimeSlot(id=slot_ids[2], day="Tuesday", start_time="09:00", end_time="10:00"),
        ],
        constraints=SchedulingConstraints(),
    )


def place(problem, slot_id, *, teacher="T1", room="R1", ordinal=1):
    unit = problem.demand_units[0]
    return problem.make_assignment(
        assignment_id=problem.assignment_id(unit, ordinal),
        unit=unit,
        teacher_id=teacher,
        room_id=room,
        slot=problem.slot_by_id[slot_id],
    )


class FixedRoll(random.Random):
    def __init__(self, value):
        super().__init__(0)
        self.value = value

    def random(self):
        return self.value


def test_mutate_time_moves_within_teacher_slots():
    problem = operator_problem()
    engine = GeneticEngine(problem, settings=Settings(), rng=random.Random(2))

    for _ in range(10):
        item = place(problem, "mon-1")
        assert engine._mutate_time(item) is True
        slot = problem.slot_by_id[item.time_slot_id]
        assert item.time_slot_id != "mon-1"
        assert (item.day, item.start_time, item.end_time) == (slot.day, slot.start_time, slot.end_time)


def test_mutate_room_picks_same_type_rooms_with_capacity():
    problem = operator_problem()
    engine = GeneticEngine(problem, settings=Settings(), rng=random.Random(2))

    chosen = set()
    for _ in range(10):
        item = place(problem, "mon-1")
        assert engine._mutate_room(item) is True
        chosen.add(item.room_id)
    assert chosen == {"R2"}


def test_mutate_teacher_picks_qualified_teachers_only():
    problem = operator_problem()
    engine = GeneticEngine(problem, settings=Settings(), rng=random.Random(2))

    chosen = set()
    for _ in range(10):
        item = place(problem, "mon-1")
        assert engine._mutate_teacher(item) is True
        chosen.add(item.teacher_id)
    assert chosen == {"T2"}


def test_swap_slots_exchanges_time_and_room_together():
    problem = operator_problem()
    engine = GeneticEngine(problem, settings=Settings(), rng=random.Random(2))
    first = place(problem, "mon-1", room="R1")
    second = place(problem, "tue-1", teacher="T2", room="R2", ordinal=2)

    assert engine._swap_slots([first, second], 0) is True

    assert (first.time_slot_id, first.day, first.room_id, first.teacher_id) == ("tue-1", "Tuesday", "R2", "T1")
    assert (second.time_slot_id, second.day, second.room_id, second.teacher_id) == ("mon-1", "Monday", "R1", "T2")
    assert engine._swap_slots([first], 0) is False


def test_uniform_crossover_exchanges_genes_position_by_position(scenario_a_engine):
    left = ["a0", "a1", "a2", "a3"]
    right = ["b0", "b1", "b2"]

    first, second = scenario_a_engine._uniform_crossover(left, right)

    assert sorted(first + second) == sorted(left + right)
    for index in range(3):
        assert {first[index], second[index]} == {left[index], right[index]}


def test_single_point_crossover_swaps_tails(scenario_a_engine):
    left = ["a0", "a1", "a2", "a3"]
    right = ["b0", "b1", "b2", "b3"]

    first, second = scenario_a_engine._single_point_crossover(left, right)

    assert any(
        first == left[:point] + right[point:] and second == right[:point] + left[point:] for point in range(1, 4)
    )


def test_single_point_crossover_keeps_short_parents(scenario_a_engine):
    left, right = ["a0"], ["b0", "b1"]
    first, second = scenario_a_engine._single_point_crossover(left, right)
    assert first is left
    assert second is right


def test_two_point_crossover_swaps_the_middle_segment(scenario_a_engine):
    left = ["a0", "a1", "a2", "a3", "a4"]
    right = ["b0", "b1", "b2", "b3", "b4"]

    first, second = scenario_a_engine._two_point_crossover(left, right)

    assert any(
        first == left[:start] + right[start:end] + left[end:]
        and second == right[:start] + left[start:end] + right[end:]
        for start in range(1, 5)
        for end in range(start + 1, 5)
    )


def test_two_point_crossover_on_short_parents_uses_single_point(scenario_a_engine):
    first, second = scenario_a_engine._two_point_crossover(["a0", "a1"], ["b0", "b1"])
    assert first == ["a0", "b1"]
    assert second == ["b0", "a1"]


@pytest.mark.parametrize(
    ("roll", "expected"),
    [(0.1, "uniform"), (0.5, "two_point"), (0.9, "single_point")],
)
def test_crossover_picks_operator_by_roll(scenario_a_engine, monkeypatch, roll, expected):
    parent_a = scenario_a_engine.generate_random_individual()
    parent_b = scenario_a_engine.generate_random_individual()
    used = []
    for name in ("uniform", "two_point", "single_point"):
        monkeypatch.setattr(
            scenario_a_engine,
            f"_{name}_crossover",
            lambda left, right, name=name: used.append(name) or (left, right),
        )
    scenario_a_engine.random = FixedRoll(roll)

    scenario_a_engine.crossover(parent_a, parent_b)

    assert used == [expected]


@pytest.mark.parametrize(("max_rate", "boosted"), [(0.3, 0.3), (1.0, 0.4)])
def test_stagnation_doubles_mutation_rate_until_improvement(scenario_a_problem, monkeypatch, max_rate, boosted):
    settings = Settings(early_stop_fitness=10_000, stagnation_threshold=2, max_mutation_rate=max_rate)
    engine = GeneticEngine(scenario_a_problem, settings=settings, rng=random.Random(6))
    full = engine.generate_random_individual()
    partial = engine.score(full.schedule[:1])
    assert full.fitness > partial.fitness

    rates = []

    def fake_next_generation(population, params, mutation_rate):
        rates.append(mutation_rate)
        return [full, partial] if len(rates) == 5 else population

    monkeypatch.setattr(engine, "next_generation", fake_next_generation)
    params = GeneticAlgorithmParams(population_size=2, elite_size=1, generations=7, mutation_rate=0.2)

    outcome = engine.evolve([partial, engine.score(full.schedule[:1])], params)

    assert rates == pytest.approx([0.2, 0.2, 0.2, boosted, boosted, 0.2])
    assert outcome.best is full
