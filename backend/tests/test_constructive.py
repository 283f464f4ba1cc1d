from timetabler.schemas.entities import Course, Room, SchedulingConstraints, Subject, Teacher, TimeSlot
from timetabler.services.constructive import ConstructiveScheduler
from timetabler.services.problem import SchedulingProblem

DAYS = ["Monday", "Tuesday", "Wednesday"]


def lab_without_room_problem():
    """A lab subject with no lab room listed ahead of a placeable theory subject."""
    return SchedulingProblem(
        courses=[Course(id="CS", sections=["A"], students_count=30)],
        subjects=[
            Subject(id="LAB", course_id="CS", type="lab"),
            Subject(id="ALG", course_id="CS", type="theory"),
        ],
        teachers=[
            Teacher(
                id="T1",
                taught_subject_ids=["LAB", "ALG"],
                availability=[{"day": day, "time_slot_ids": [f"{day[:3].lower()}-1"]} for day in DAYS],
            )
        ],
        rooms=[Room(id="R1", type="theory", capacity=60)],
        time_slots=[
            TimeSlot(id=f"{day[:3].lower()}-1", day=day, start_time="09:00", end_time="10:00") for day in DAYS
        ],
        constraints=SchedulingConstraints(),
    )


def test_unplaceable_subject_does_not_block_the_rest_of_the_section():
    built = ConstructiveScheduler(lab_without_room_problem()).build()

    assert [item.subject_id for item in built] == ["ALG", "ALG"]
    assert len({item.day for item in built}) == 2


def test_scenario_sections_are_fully_placed(scenario_a_problem):
    outcome = ConstructiveScheduler(scenario_a_problem).solve()

    assert len(outcome.schedule) == 4
    assert outcome.best.evaluation.conflicts == []
    for section in ("A", "B"):
        days = [item.day for item in outcome.schedule if item.section == section]
        assert len(set(days)) == 2


def test_sections_start_on_rotated_days(scenario_a_problem):
    scheduler = ConstructiveScheduler(scenario_a_problem)
    first = scheduler.rotated_days("CS", "A")
    second = scheduler.rotated_days("CS", "B")

    assert sorted(first) == sorted(second) == sorted(scheduler.days)
    assert first[0] != second[0]
