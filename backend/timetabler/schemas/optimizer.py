from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, model_validator

from timetabler.schemas.entities import Course, Room, SchedulingConstraints, Subject, Teacher, TimeSlot

OptimizationStrategy = Literal["auto", "csp_first", "adaptive", "parallel", "constructive"]
ConflictKind = Literal["room", "teacher", "section", "same_day", "workload"]
ConflictSeverity = Literal["high", "medium", "low"]


class GeneticAlgorithmParams(BaseModel):
    population_size: int = Field(default=50, alias="populationSize", ge=2, le=2000)
    generations: int = Field(default=100, ge=1, le=5000)
    mutation_rate: float = Field(default=0.1, alias="mutationRate", ge=0.0, le=1.0)
    crossover_rate: float = Field(default=0.8, alias="crossoverRate", ge=0.0, le=1.0)
    elite_size: int = Field(default=5, alias="eliteSize", ge=0, le=200)
    random_seed: int | None = Field(default=None, alias="randomSeed", ge=0, le=2_000_000_000)

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def validate_relationships(self) -> "GeneticAlgorithmParams":
        if self.elite_size >= self.population_size:
            raise ValueError("elite_size must be less than population_size")
        return self


class OptimizationRequest(BaseModel):
    courses: list[Course] = Field(default_factory=list)
    subjects: list[Subject] = Field(default_factory=list)
    teachers: list[Teacher] = Field(default_factory=list)
    rooms: list[Room] = Field(default_factory=list)
    time_slots: list[TimeSlot] = Field(default_factory=list, alias="timeSlots")
    constraints: SchedulingConstraints = Field(default_factory=SchedulingConstraints)
    params: GeneticAlgorithmParams = Field(default_factory=GeneticAlgorithmParams)
    strategy: OptimizationStrategy = "auto"

    model_config = {"populate_by_name": True}


class ResultModel(BaseModel):
    model_config = {
        "populate_by_name": True,
        "from_attributes": True,
    }


class ClassAssignmentOut(ResultModel):
    id: str
    course_id: str = Field(alias="courseId")
    subject_id: str = Field(alias="subjectId")
    section: str
    semester: int
    teacher_id: str = Field(alias="teacherId")
    room_id: str = Field(alias="roomId")
    time_slot_id: str = Field(alias="timeSlotId")
    day: str
    start_time: str = Field(alias="startTime")
    end_time: str = Field(alias="endTime")


class ConflictOut(ResultModel):
    kind: ConflictKind
    severity: ConflictSeverity
    description: str
    assignment_ids: list[str] = Field(alias="classes")


class OptimizationMetrics(ResultModel):
    total_conflicts: int = Field(alias="totalConflicts")
    room_utilization: float = Field(alias="roomUtilization")
    teacher_workload_balance: float = Field(alias="teacherWorkloadBalance")
    student_satisfaction: float = Field(alias="studentSatisfaction")
    constraint_satisfaction: float = Field(alias="constraintSatisfaction")
    coverage: float


class GenerationRecord(ResultModel):
    generation: int
    best: float = Field(alias="bestFitness")
    average: float = Field(alias="averageFitness")
    worst: float = Field(alias="worstFitness")


class RunDiagnostics(ResultModel):
    unscheduled_sessions: int = Field(default=0, alias="unscheduledSessions")
    dropped_by_repair: int = Field(default=0, alias="droppedByRepair")
    relocated_by_repair: int = Field(default=0, alias="relocatedByRepair")
    csp_used_fallback: bool | None = Field(default=None, alias="cspUsedFallback")
    warnings: list[str] = Field(default_factory=list)


class OptimizationResult(ResultModel):
    schedule: list[ClassAssignmentOut]
    fitness: float
    conflicts: list[ConflictOut]
    metrics: OptimizationMetrics
    generation_history: list[GenerationRecord] = Field(default_factory=list, alias="generationData")
    strategy: Literal["csp_first", "adaptive", "parallel", "constructive"]
    runtime_ms: int = Field(alias="runtimeMs")
    diagnostics: RunDiagnostics = Field(default_factory=RunDiagnostics)
