"""Tests for runtime configuration loading and validation."""

import dataclasses
from pathlib import Path

import pytest

from ralph_loop.config import (
    ConfigError,
    RunConfig,
    load_config,
    model_value_invalid_reason,
)
from ralph_loop.constants import (
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MODEL,
    DEFAULT_ROTATE_THRESHOLD,
    DEFAULT_WARN_THRESHOLD,
)


class TestLoadConfig:
    """Environment -> frozen RunConfig."""

    def test_defaults(self):
        config = load_config(env={})
        assert config.model == DEFAULT_MODEL
        assert config.max_iterations == DEFAULT_MAX_ITERATIONS
        assert config.warn_threshold == DEFAULT_WARN_THRESHOLD
        assert config.rotate_threshold == DEFAULT_ROTATE_THRESHOLD
        assert config.api_key is None
        assert config.agent_url is None
        assert config.task_file == "RALPH_TASK.md"

    def test_ralph_model_wins_over_model(self):
        assert load_config(env={"RALPH_MODEL": "a", "MODEL": "b"}).model == "a"
        assert load_config(env={"MODEL": "b"}).model == "b"

    def test_frontmatter_max_iterations_is_a_fallback(self):
        assert load_config(env={}, task_max_iterations=7).max_iterations == 7
        env = {"MAX_ITERATIONS": "3"}
        assert load_config(env=env, task_max_iterations=7).max_iterations == 3

    def test_state_home(self, tmp_path):
        config = load_config(env={"RALPH_STATE_HOME": str(tmp_path)})
        assert config.state_home == Path(tmp_path)

    def test_numbers_parsed(self):
        config = load_config(env={
            "WARN_THRESHOLD": " 100 ",
            "ROTATE_THRESHOLD": "200",
            "RALPH_ITERATION_DELAY": "0.5",
            "RALPH_INVOKE_RETRIES": "0",
        })
        assert (config.warn_threshold, config.rotate_threshold) == (100, 200)
        assert config.iteration_delay == 0.5
        assert config.invoke_retries == 0

    def test_non_integer_rejected(self):
        with pytest.raises(ConfigError, match="MAX_ITERATIONS must be an integer"):
            load_config(env={"MAX_ITERATIONS": "lots"})

    def test_warn_must_be_below_rotate(self):
        with pytest.raises(ConfigError, match="must be below"):
            load_config(env={"WARN_THRESHOLD": "500", "ROTATE_THRESHOLD": "500"})

    def test_all_problems_reported_together(self):
        with pytest.raises(ConfigError) as excinfo:
            load_config(env={
                "MAX_ITERATIONS": "0",
                "RALPH_MODEL": "--force",
                "RALPH_AGENT_TIMEOUT": "soon",
            })
        message = str(excinfo.value)
        assert "MAX_ITERATIONS must be at least 1" in message
        assert "looks like a command-line flag" in message
        assert "RALPH_AGENT_TIMEOUT must be a number" in message

    def test_agent_url_requires_key(self):
        with pytest.raises(ConfigError, match="CURSOR_API_KEY"):
            load_config(env={"RALPH_AGENT_URL": "https://agent.example"})
        config = load_config(env={
            "RALPH_AGENT_URL": "https://agent.example",
            "CURSOR_API_KEY": "k",
        })
        assert config.agent_url == "https://agent.example"


class TestModelValue:

    @pytest.mark.parametrize("value", ["opus-4.5-thinking", "gpt-5.2-high", "x"])
    def test_valid(self, value):
        assert model_value_invalid_reason(value) is None

    @pytest.mark.parametrize("value,reason", [
        (None, "empty"),
        ("   ", "empty"),
        ("two words", "whitespace"),
        ("-p", "flag"),
        ("m" * 101, "too long"),
    ])
    def test_invalid(self, value, reason):
        assert reason in model_value_invalid_reason(value)


class TestRunConfig:
    """Frozen value with validated overrides."""

    def test_frozen(self):
        config = RunConfig()
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.model = "other"

    def test_overrides_skip_none(self):
        config = RunConfig()
        assert config.with_overrides(model=None, max_iterations=None) is config
        updated = config.with_overrides(model="composer-1", max_iterations=None)
        assert updated.model == "composer-1"
        assert updated.max_iterations == config.max_iterations
        assert config.model == DEFAULT_MODEL

    def test_overrides_are_validated(self):
        with pytest.raises(ConfigError, match="MAX_ITERATIONS"):
            RunConfig().with_overrides(max_iterations=0)
