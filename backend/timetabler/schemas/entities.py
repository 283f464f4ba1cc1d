from __future__ import annotations

import re
from typing import Literal

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

DAY_VALUES = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)

DAY_SHORT_MAP = {
    "Mon": "Monday",
    "Tue": "Tuesday",
    "Wed": "Wednesday",
    "Thu": "Thursday",
    "Fri": "Friday",
    "Sat": "Saturday",
    "Sun": "Sunday",
}

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

SessionType = Literal["theory", "lab"]


def parse_time_to_minutes(value: str) -> int:
    if not TIME_PATTERN.match(value):
        raise ValueError("Time must be in HH:MM 24-hour format")
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def minutes_to_time(value: int) -> str:
    hours = value // 60
    minutes = value % 60
    return f"{hours:02d}:{minutes:02d}"


def normalize_day(value: str) -> str:
    day = value.strip()
    day = DAY_SHORT_MAP.get(day, day)
    if day not in DAY_VALUES:
        raise ValueError("Invalid day value")
    return day


def day_order(day: str) -> int:
    return DAY_VALUES.index(day) if day in DAY_VALUES else len(DAY_VALUES)


class EntityModel(BaseModel):
    model_config = {
        "populate_by_name": True,
        "from_attributes": True,
    }


class Course(EntityModel):
    id: str = Field(min_length=1, max_length=64)
    name: str = Field(default="", max_length=200)
    sections: list[str] = Field(default_factory=list)
    students_count: int = Field(default=60, alias="studentsCount", ge=1, le=2000)
    required_equipment: list[str] = Field(default_factory=list, alias="requiredEquipment")

    @field_validator("sections")
    @classmethod
    def dedupe_sections(cls, value: list[str]) -> list[str]:
        ordered: list[str] = []
        seen: set[str] = set()
        for label in value:
            cleaned = label.strip()
            if not cleaned or cleaned in seen:
                continue
            seen.add(cleaned)
            ordered.append(cleaned)
        return ordered


class Subject(EntityModel):
    id: str = Field(min_length=1, max_length=64)
    course_id: str = Field(alias="courseId", min_length=1, max_length=64)
    name: str = Field(default="", max_length=200)
    code: str = Field(default="", max_length=50)
    semester: int = Field(default=1, ge=1, le=12)
    type: SessionType = "theory"

    @property
    def sessions_per_week(self) -> int:
        return 1 if self.type == "lab" else 2


class TeacherAvailability(EntityModel):
    day: str
    time_slot_ids: list[str] = Field(default_factory=list, alias="timeSlots")

    @field_validator("day")
    @classmethod
    def validate_day(cls, value: str) -> str:
        return normalize_day(value)


class Teacher(EntityModel):
    id: str = Field(min_length=1, max_length=64)
    name: str = Field(default="", max_length=200)
    email: EmailStr | None = None
    taught_subject_ids: list[str] = Field(default_factory=list, alias="taughtSubjectIds")
    department_course_id: str | None = Field(default=None, alias="departmentCourseId")
    availability: list[TeacherAvailability] = Field(default_factory=list)
    max_hours_per_day: float = Field(default=6, alias="maxHoursPerDay", gt=0, le=24)
    max_hours_per_week: float = Field(default=30, alias="maxHoursPerWeek", gt=0, le=168)

    def is_qualified(self, subject_id: str, course_id: str) -> bool:
        return subject_id in self.taught_subject_ids or (
            self.department_course_id is not None and self.department_course_id == course_id
        )


class Room(EntityModel):
    id: str = Field(min_length=1, max_length=64)
    name: str = Field(default="", max_length=100)
    type: SessionType = "theory"
    capacity: int = Field(default=60, ge=1, le=5000)
    equipment: list[str] = Field(default_factory=list)


class TimeSlot(EntityModel):
    id: str = Field(min_length=1, max_length=64)
    day: str
    start_time: str = Field(alias="startTime")
    end_time: str = Field(alias="endTime")

    @field_validator("day")
    @classmethod
    def validate_day(cls, value: str) -> str:
        return normalize_day(value)

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time(cls, value: str) -> str:
        if not TIME_PATTERN.match(value):
            raise ValueError("Time must be in HH:MM 24-hour format")
        return value

    @model_validator(mode="after")
    def validate_time_order(self) -> "TimeSlot":
        if parse_time_to_minutes(self.end_time) <= parse_time_to_minutes(self.start_time):
            raise ValueError("End time must be after start time")
        return self

    @property
    def start_minutes(self) -> int:
        return parse_time_to_minutes(self.start_time)

    @property
    def end_minutes(self) -> int:
        return parse_time_to_minutes(self.end_time)


class SchedulingConstraints(EntityModel):
    preferred_start_time: str = Field(default="08:00", alias="preferredStartTime")
    preferred_end_time: str = Field(default="17:00", alias="preferredEndTime")
    min_break_minutes: int = Field(default=10, alias="minBreakBetweenClasses", ge=0, le=240)
    semester_parity: Literal["odd", "even"] | None = Field(default=None, alias="semesterParity")
    theory_interval_minutes: int = Field(default=60, alias="theoryIntervalMinutes", ge=1, le=480)
    lab_interval_minutes: int = Field(default=120, alias="labIntervalMinutes", ge=1, le=480)

    @field_validator("preferred_start_time", "preferred_end_time")
    @classmethod
    def validate_time(cls, value: str) -> str:
        if not TIME_PATTERN.match(value):
            raise ValueError("Time must be in HH:MM 24-hour format")
        return value

    @model_validator(mode="after")
    def validate_window(self) -> "SchedulingConstraints":
        if parse_time_to_minutes(self.preferred_end_time) < parse_time_to_minutes(self.preferred_start_time):
            raise ValueError("preferredEndTime must not be before preferredStartTime")
        return self

    def allows_semester(self, semester: int) -> bool:
        if self.semester_parity == "odd":
            return semester % 2 == 1
        if self.semester_parity == "even":
            return semester % 2 == 0
        return True
