import pytest
from pydantic import ValidationError

from timetabler.core.config import Settings, get_settings


def test_defaults_match_documented_thresholds():
    settings = Settings()
    assert settings.api_prefix == "/api"
    assert settings.small_problem_variable_limit == 500
    assert settings.small_problem_slot_limit == 30
    assert settings.medium_problem_variable_limit == 2000
    assert settings.csp_propagation_max_passes == 100
    assert settings.csp_coverage_threshold == 0.7
    assert settings.stagnation_threshold == 10
    assert settings.max_mutation_rate == 0.3
    assert settings.early_stop_fitness == 950


def test_get_settings_is_cached():
    assert get_settings() is get_settings()


def test_environment_overrides_use_prefix(monkeypatch):
    monkeypatch.setenv("TIMETABLER_CSP_MAX_NODES", "50")
    monkeypatch.setenv("TIMETABLER_RANDOM_SEED", "9")
    settings = Settings()
    assert settings.csp_max_nodes == 50
    assert settings.random_seed == 9


def test_cors_origins_accept_comma_separated_string():
    settings = Settings(cors_origins="http://a.test, http://b.test,")
    assert settings.cors_origins == ["http://a.test", "http://b.test"]


def test_cors_origins_accept_json_list_string():
    settings = Settings(cors_origins='["http://a.test"]')
    assert settings.cors_origins == ["http://a.test"]


def test_medium_limit_must_not_be_below_small_limit():
    with pytest.raises(ValidationError):
        Settings(small_problem_variable_limit=800, medium_problem_variable_limit=600)
