import random

import pytest
from fastapi.testclient import TestClient

from timetabler.core.config import Settings
from timetabler.main import app
from timetabler.schemas.optimizer import OptimizationRequest
from timetabler.services.evaluator import FitnessEvaluator
from timetabler.services.genetic import GeneticEngine
from timetabler.services.problem import SchedulingProblem

WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday"]


@pytest.fixture()
def client():
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def settings():
    return Settings(random_seed=11, csp_time_limit_seconds=5.0)


@pytest.fixture()
def scenario_a_payload():
    """One course, two sections, one theory subject, one teacher and room, two slots per weekday."""
    slots = []
    for day in WEEKDAYS:
        slots.append({"id": f"{day[:3].lower()}-1", "day": day, "startTime": "09:00", "endTime": "10:00"})
        slots.append({"id": f"{day[:3].lower()}-2", "day": day, "startTime": "10:00", "endTime": "11:00"})
    return {
        "courses": [{"id": "CS", "name": "Computer Science", "sections": ["A", "B"], "studentsCount": 40}],
        "subjects": [{"id": "ALG", "courseId": "CS", "name": "Algorithms", "semester": 3, "type": "theory"}],
        "teachers": [
            {
                "id": "T1",
                "name": "Ada",
                "email": "ada@example.com",
                "taughtSubjectIds": ["ALG"],
                "availability": [
                    {"day": day, "timeSlots": [f"{day[:3].lower()}-1", f"{day[:3].lower()}-2"]} for day in WEEKDAYS
                ],
            }
        ],
        "rooms": [{"id": "R1", "name": "Hall 1", "type": "theory", "capacity": 60}],
        "timeSlots": slots,
        "constraints": {"preferredStartTime": "08:00", "preferredEndTime": "17:00", "minBreakBetweenClasses": 10},
        "params": {"populationSize": 10, "generations": 6, "eliteSize": 2, "randomSeed": 5},
    }


@pytest.fixture()
def scenario_a(scenario_a_payload):
    return OptimizationRequest.model_validate(scenario_a_payload)


@pytest.fixture()
def make_problem():
    def build(request: OptimizationRequest) -> SchedulingProblem:
        return SchedulingProblem(
            courses=request.courses,
            subjects=request.subjects,
            teachers=request.teachers,
            rooms=request.rooms,
            time_slots=request.time_slots,
            constraints=request.constraints,
        )

    return build


@pytest.fixture()
def scenario_a_problem(scenario_a, make_problem):
    return make_problem(scenario_a)


@pytest.fixture()
def scenario_a_engine(scenario_a_problem, settings):
    return GeneticEngine(
        scenario_a_problem,
        FitnessEvaluator(scenario_a_problem),
        settings=settings,
        rng=random.Random(3),
    )
