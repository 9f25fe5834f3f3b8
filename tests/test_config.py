import pytest

from intent_interview.agent.interview.schemas import to_system_category
from intent_interview.config import ElicitationConfig


def test_defaults() -> None:
    config = ElicitationConfig()

    assert config.max_rounds == 5
    assert config.max_questions_per_round == 3
    assert config.min_confidence == 60
    assert config.default_lens_type == "feature"
    assert config.infer_done_from_answers is True


def test_from_env_reads_interview_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("INTERVIEW_MAX_ROUNDS", "2")
    monkeypatch.setenv("INTERVIEW_MAX_QUESTIONS_PER_ROUND", "4")
    monkeypatch.setenv("INTERVIEW_MIN_CONFIDENCE", "75")
    monkeypatch.setenv("INTERVIEW_DEFAULT_LENS_TYPE", "journey")
    monkeypatch.setenv("INTERVIEW_INFER_DONE", "false")
    monkeypatch.setenv("INTERVIEW_EXTRACT_TEMPERATURE", "0.0")

    config = ElicitationConfig.from_env()

    assert config.max_rounds == 2
    assert config.max_questions_per_round == 4
    assert config.min_confidence == 75
    assert config.default_lens_type == "journey"
    assert config.infer_done_from_answers is False
    assert config.extract_temperature == 0.0


def test_from_env_ignores_garbage(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("INTERVIEW_MAX_ROUNDS", "lots")
    monkeypatch.setenv("INTERVIEW_INFER_DONE", "perhaps")

    config = ElicitationConfig.from_env()

    assert config.max_rounds == 5
    assert config.infer_done_from_answers is True


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_rounds": 0},
        {"max_questions_per_round": 0},
        {"min_confidence": 101},
        {"default_lens_type": "epic"},
    ],
)
def test_invalid_values_are_rejected(kwargs) -> None:
    with pytest.raises(ValueError):
        ElicitationConfig(**kwargs)


def test_config_is_immutable() -> None:
    config = ElicitationConfig()

    with pytest.raises(Exception):
        config.max_rounds = 9  # type: ignore[misc]

    assert config.with_overrides(max_rounds=9).max_rounds == 9
    assert config.max_rounds == 5


@pytest.mark.parametrize(
    "category, expected",
    [("ux", "usability"), ("operational", "reliability"), ("security", "security"), ("bogus", "functional")],
)
def test_system_category_mapping(category, expected) -> None:
    assert to_system_category(category) == expected
