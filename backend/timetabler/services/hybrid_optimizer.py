from __future__ import annotations

import copy
import logging
import math
import random
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from time import perf_counter
from typing import Sequence

from timetabler.core.config import Settings, get_settings
from timetabler.core.exceptions import ConfigurationError, InputValidationError
from timetabler.schemas.entities import Course, Room, SchedulingConstraints, Subject, Teacher, TimeSlot
from timetabler.schemas.optimizer import (
    ClassAssignmentOut,
    ConflictOut,
    GenerationRecord,
    GeneticAlgorithmParams,
    OptimizationMetrics,
    OptimizationResult,
    RunDiagnostics,
)
from timetabler.services.constructive import ConstructiveScheduler
from timetabler.services.csp_solver import CSPSolver
from timetabler.services.evaluator import FitnessEvaluator, SearchOutcome
from timetabler.services.genetic import GeneticEngine, ProgressCallback, StopCallback
from timetabler.services.problem import SchedulingProblem, default_time_slots

logger = logging.getLogger(__name__)

STRATEGIES = ("auto", "csp_first", "adaptive", "parallel", "constructive")


class ProgressReporter:
    """Forwards progress to the caller, never letting the percentage go backwards."""

    def __init__(self, callback: ProgressCallback | None) -> None:
        self.callback = callback
        self.percent = 0.0
        self.generation = 0

    def __call__(self, percent: float, generation: int, best_fitness: float) -> None:
        self.percent = max(self.percent, min(percent, 100.0))
        self.generation = max(self.generation, generation)
        if self.callback is not None:
            self.callback(self.percent, generation, best_fitness)


@dataclass
class StrategyRun:
    outcome: SearchOutcome
    csp: SearchOutcome | None = None
    engine: GeneticEngine | None = None


class HybridOptimizer:
    def __init__(
        self,
        courses: Sequence[Course],
        subjects: Sequence[Subject],
        teachers: Sequence[Teacher],
        rooms: Sequence[Room],
        time_slots: Sequence[TimeSlot],
        constraints: SchedulingConstraints | None = None,
        *,
        settings: Settings | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.courses = copy.deepcopy(list(courses))
        self.subjects = copy.deepcopy(list(subjects))
        self.teachers = copy.deepcopy(list(teachers))
        self.rooms = copy.deepcopy(list(rooms))
        self.time_slots = copy.deepcopy(list(time_slots))
        self.constraints = copy.deepcopy(constraints) if constraints is not None else SchedulingConstraints()
        self.random = rng or random.Random(self.settings.random_seed)

    def _validate_inputs(self) -> None:
        missing = [
            name
            for name, items in (("courses", self.courses), ("teachers", self.teachers), ("rooms", self.rooms))
            if not items
        ]
        if missing:
            raise InputValidationError(
                "Missing required data: courses, teachers, or rooms",
                details={"missing": missing},
            )

    def build_problem(self) -> SchedulingProblem:
        time_slots = self.time_slots
        generated = not time_slots
        if generated:
            time_slots = default_time_slots(self.constraints)
        problem = SchedulingProblem(
            courses=self.courses,
            subjects=self.subjects,
            teachers=self.teachers,
            rooms=self.rooms,
            time_slots=time_slots,
            constraints=self.constraints,
        )
        if generated:
            problem.warn(f"No time slots supplied; generated {len(time_slots)} default weekday slots")
        return problem

    def select_strategy(self, problem: SchedulingProblem) -> str:
        variables = problem.variable_estimate()
        slot_count = len(problem.time_slots)
        if (
            variables < self.settings.small_problem_variable_limit
            and slot_count < self.settings.small_problem_slot_limit
        ):
            return "csp_first"
        if variables < self.settings.medium_problem_variable_limit:
            return "adaptive"
        return "parallel"

    def optimize(
        self,
        params: GeneticAlgorithmParams,
        on_progress: ProgressCallback | None = None,
        *,
        strategy: str | None = None,
        should_stop: StopCallback | None = None,
    ) -> OptimizationResult:
        started = perf_counter()
        self._validate_inputs()

        requested = strategy or "auto"
        if requested not in STRATEGIES:
            raise ConfigurationError(f"Unknown optimization strategy '{requested}'")

        rng = random.Random(params.random_seed) if params.random_seed is not None else self.random
        problem = self.build_problem()
        evaluator = FitnessEvaluator(problem)
        chosen = self.select_strategy(problem) if requested == "auto" else requested
        reporter = ProgressReporter(on_progress)

        logger.info(
            "Optimizer run strategy=%s requested=%s courses=%s subjects=%s teachers=%s rooms=%s slots=%s units=%s",
            chosen,
            requested,
            len(problem.courses),
            len(problem.subjects),
            len(problem.teachers),
            len(problem.rooms),
            len(problem.time_slots),
            len(problem.demand_units),
        )

        if chosen == "csp_first":
            run = self._run_csp_first(problem, evaluator, rng, params, reporter, should_stop)
        elif chosen == "adaptive":
            run = self._run_adaptive(problem, evaluator, rng, params, reporter, should_stop)
        elif chosen == "parallel":
            run = self._run_parallel(problem, rng, params, reporter, should_stop)
        else:
            run = self._run_constructive(problem, evaluator)

        if reporter.percent < 100.0:
            reporter(100.0, reporter.generation, run.outcome.fitness)

        runtime_ms = int((perf_counter() - started) * 1000)
        result = self._build_result(problem, evaluator, run, chosen, runtime_ms)
        logger.info(
            "Optimizer run finished strategy=%s fitness=%.2f assignments=%s conflicts=%s coverage=%.3f runtime_ms=%s",
            chosen,
            result.fitness,
            len(result.schedule),
            result.metrics.total_conflicts,
            result.metrics.coverage,
            runtime_ms,
        )
        return result

    # Strategies

    def _new_engine(
        self,
        problem: SchedulingProblem,
        evaluator: FitnessEvaluator | None,
        rng: random.Random,
    ) -> GeneticEngine:
        return GeneticEngine(problem, evaluator, settings=self.settings, rng=rng)

    def _run_csp_first(
        self,
        problem: SchedulingProblem,
        evaluator: FitnessEvaluator,
        rng: random.Random,
        params: GeneticAlgorithmParams,
        reporter: ProgressReporter,
        should_stop: StopCallback | None,
    ) -> StrategyRun:
        reporter(10.0, 0, 0.0)
        csp = CSPSolver(problem, evaluator, settings=self.settings).solve()
        engine = self._new_engine(problem, evaluator, rng)

        if (
            csp.fitness > self.settings.refine_min_fitness
            and csp.best.conflict_count < self.settings.refine_max_conflicts
        ):
            reporter(50.0, 0, csp.fitness)
            logger.info("Refining CSP schedule fitness=%.2f", csp.fitness)
            population = [csp.best] + [
                engine.perturb(csp.best, self.settings.variation_fraction)
                for _ in range(params.population_size - 1)
            ]
            outcome = engine.evolve(
                population,
                params,
                generations=math.ceil(params.generations * self.settings.refine_generation_fraction),
                progress_window=(50.0, 100.0),
                on_progress=reporter,
                should_stop=should_stop,
            )
        else:
            logger.info(
                "CSP schedule below refinement threshold fitness=%.2f conflicts=%s; seeding genetic search",
                csp.fitness,
                csp.best.conflict_count,
            )
            seeds = [csp.best] if csp.schedule else []
            outcome = engine.evolve(
                engine.populate(seeds, params.population_size),
                params,
                progress_window=(10.0, 100.0),
                on_progress=reporter,
                should_stop=should_stop,
            )
        return StrategyRun(outcome=outcome, csp=csp, engine=engine)

    def _run_adaptive(
        self,
        problem: SchedulingProblem,
        evaluator: FitnessEvaluator,
        rng: random.Random,
        params: GeneticAlgorithmParams,
        reporter: ProgressReporter,
        should_stop: StopCallback | None,
    ) -> StrategyRun:
        switch_point = max(1, math.floor(params.generations * self.settings.adaptive_switch_fraction))
        switch_percent = 10.0 + 90.0 * min(switch_point / params.generations, 1.0)

        reporter(10.0, 0, 0.0)
        csp = CSPSolver(problem, evaluator, settings=self.settings).solve()
        engine = self._new_engine(problem, evaluator, rng)
        seeds = [csp.best] if csp.schedule else []
        first = engine.evolve(
            engine.populate(seeds, params.population_size),
            params,
            generations=switch_point,
            progress_window=(10.0, switch_percent),
            on_progress=reporter,
            should_stop=should_stop,
        )

        remaining = params.generations - switch_point
        stopped = should_stop is not None and should_stop()
        if first.fitness >= self.settings.adaptive_second_phase_fitness or remaining <= 0 or stopped:
            return StrategyRun(outcome=first, csp=csp, engine=engine)

        size = min(params.population_size * 2, self.settings.max_second_phase_population)
        size = max(size, params.elite_size + 1)
        second_params = params.model_copy(update={"population_size": size, "generations": remaining})
        logger.info(
            "Adaptive second phase fitness=%.2f population=%s generations=%s",
            first.fitness,
            size,
            remaining,
        )

        half = size // 2
        variations = [engine.perturb(first.best, self.settings.variation_fraction) for _ in range(max(half - 1, 0))]
        seeds = [first.best] + engine.diversity_preserving_selection(variations + first.population, half - 1)
        second = engine.evolve(
            engine.populate(seeds, size),
            second_params,
            generation_offset=switch_point,
            progress_window=(switch_percent, 100.0),
            on_progress=reporter,
            should_stop=should_stop,
        )
        best = second if second.fitness >= first.fitness else first
        merged = SearchOutcome(
            best=best.best,
            history=first.history + second.history,
            population=second.population,
            relocated=first.relocated + second.relocated,
            dropped=first.dropped + second.dropped,
            warnings=list(engine.warnings),
        )
        return StrategyRun(outcome=merged, csp=csp, engine=engine)

    def _run_parallel(
        self,
        problem: SchedulingProblem,
        rng: random.Random,
        params: GeneticAlgorithmParams,
        reporter: ProgressReporter,
        should_stop: StopCallback | None,
    ) -> StrategyRun:
        csp_problem = copy.deepcopy(problem)
        ga_problem = copy.deepcopy(problem)
        engine = self._new_engine(ga_problem, None, random.Random(rng.getrandbits(64)))
        solver = CSPSolver(csp_problem, settings=self.settings)

        def run_genetic() -> SearchOutcome:
            population = engine.populate([], params.population_size)
            return engine.evolve(population, params, on_progress=reporter, should_stop=should_stop)

        with ThreadPoolExecutor(max_workers=2) as executor:
            csp_future = executor.submit(solver.solve)
            ga_future = executor.submit(run_genetic)
            csp = csp_future.result()
            genetic = ga_future.result()

        logger.info("Parallel run csp_fitness=%.2f ga_fitness=%.2f", csp.fitness, genetic.fitness)
        if genetic.fitness >= csp.fitness:
            return StrategyRun(outcome=genetic, csp=csp, engine=engine)
        outcome = SearchOutcome(
            best=csp.best,
            history=genetic.history,
            population=genetic.population,
            used_fallback=csp.used_fallback,
            relocated=genetic.relocated,
            dropped=genetic.dropped,
        )
        return StrategyRun(outcome=outcome, csp=csp, engine=engine)

    def _run_constructive(self, problem: SchedulingProblem, evaluator: FitnessEvaluator) -> StrategyRun:
        return StrategyRun(outcome=ConstructiveScheduler(problem, evaluator).solve())

    # Result assembly

    def _build_result(
        self,
        problem: SchedulingProblem,
        evaluator: FitnessEvaluator,
        run: StrategyRun,
        strategy: str,
        runtime_ms: int,
    ) -> OptimizationResult:
        best = run.outcome.best
        warnings = list(problem.warnings)
        if run.engine is not None:
            warnings.extend(item for item in run.engine.warnings if item not in warnings)
            relocated = run.engine.repair_totals.relocated
            dropped = run.engine.repair_totals.dropped
        else:
            relocated = dropped = 0

        return OptimizationResult(
            schedule=[ClassAssignmentOut.model_validate(item) for item in best.schedule],
            fitness=best.fitness,
            conflicts=[ConflictOut.model_validate(item) for item in best.evaluation.conflicts],
            metrics=OptimizationMetrics.model_validate(evaluator.metrics(best.schedule, best.evaluation)),
            generation_history=[GenerationRecord.model_validate(item) for item in run.outcome.history],
            strategy=strategy,
            runtime_ms=runtime_ms,
            diagnostics=RunDiagnostics(
                unscheduled_sessions=evaluator.unscheduled_sessions(best.schedule),
                dropped_by_repair=dropped,
                relocated_by_repair=relocated,
                csp_used_fallback=run.csp.used_fallback if run.csp is not None else None,
                warnings=warnings,
            ),
        )
