from functools import lru_cache
import json
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


BACKEND_ENV_FILE = Path(__file__).resolve().parents[2] / ".env"


class Settings(BaseSettings):
    # Resolve to backend/.env so `uvicorn --app-dir backend` works from any cwd.
    model_config = SettingsConfigDict(
        env_file=str(BACKEND_ENV_FILE),
        env_file_encoding="utf-8",
        env_prefix="TIMETABLER_",
    )

    project_name: str = "Hybrid Timetable Optimizer API"
    api_prefix: str = "/api"

    max_request_size_bytes: int = 2_500_000

    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

    random_seed: int | None = Field(default=None, ge=0, le=2_000_000_000)

    # Strategy selection by problem size.
    small_problem_variable_limit: int = Field(default=500, ge=1)
    small_problem_slot_limit: int = Field(default=30, ge=1)
    medium_problem_variable_limit: int = Field(default=2000, ge=1)

    # CSP engine.
    csp_propagation_max_passes: int = Field(default=100, ge=1)
    csp_coverage_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    csp_max_nodes: int = Field(default=20_000, ge=1)
    csp_time_limit_seconds: float = Field(default=10.0, gt=0.0)

    # Orchestration thresholds.
    refine_min_fitness: float = 500.0
    refine_max_conflicts: int = Field(default=5, ge=0)
    refine_generation_fraction: float = Field(default=0.5, gt=0.0, le=1.0)
    adaptive_switch_fraction: float = Field(default=0.3, gt=0.0, lt=1.0)
    adaptive_second_phase_fitness: float = 700.0
    max_second_phase_population: int = Field(default=100, ge=2)
    variation_fraction: float = Field(default=0.1, ge=0.0, le=1.0)

    # Genetic algorithm.
    tournament_size: int = Field(default=3, ge=1)
    stagnation_threshold: int = Field(default=10, ge=1)
    max_mutation_rate: float = Field(default=0.3, gt=0.0, le=1.0)
    early_stop_fitness: float = 950.0

    @field_validator("cors_origins", mode="before")
    @classmethod
    def split_cors_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            stripped = value.strip()
            if stripped.startswith("["):
                try:
                    parsed = json.loads(stripped)
                    if isinstance(parsed, list):
                        return [str(item).strip() for item in parsed if str(item).strip()]
                except json.JSONDecodeError:
                    pass
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @model_validator(mode="after")
    def validate_size_limits(self) -> "Settings":
        if self.medium_problem_variable_limit < self.small_problem_variable_limit:
            raise ValueError("medium_problem_variable_limit must not be below small_problem_variable_limit")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
