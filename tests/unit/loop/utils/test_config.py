"""Tests for loop settings resolution."""

import pytest

from ralph_loop.loop.utils.config import LoopSettings, load_settings


def write_config(project_dir, text):
    config_dir = project_dir / ".ralph"
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "config.toml").write_text(text)


class TestLoopSettings:
    def test_defaults(self):
        settings = LoopSettings()

        assert settings.default_max_turns == 5
        assert settings.max_turns_limit == 100
        assert settings.default_worker_model == "opus"
        assert settings.default_reviewer_model == "sonnet"

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"default_max_turns": 0},
            {"default_max_turns": 101},
            {"max_concurrent_sessions": 0},
            {"retry_attempts": 0},
            {"retry_base_delay_seconds": 5.0, "retry_max_delay_seconds": 1.0},
            {"history_limit": -1},
            {"default_worker_model": "  "},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            LoopSettings(**kwargs)

    def test_from_mapping_coerces_strings(self):
        settings = LoopSettings.from_mapping({"default_max_turns": "8", "retry_base_delay_seconds": "0.5"})

        assert settings.default_max_turns == 8
        assert settings.retry_base_delay_seconds == 0.5

    @pytest.mark.parametrize(
        "values",
        [{"no_such_setting": 1}, {"default_max_turns": "many"}, {"default_max_turns": True}, {"history_limit": 2.5}],
    )
    def test_from_mapping_rejects_bad_input(self, values):
        with pytest.raises(ValueError):
            LoopSettings.from_mapping(values)


class TestLoadSettings:
    def test_no_sources_gives_defaults(self, tmp_path):
        assert load_settings(tmp_path, environ={}) == LoopSettings()

    def test_project_config_file(self, tmp_path):
        write_config(tmp_path, '[loop]\ndefault_max_turns = 3\ndefault_worker_model = "haiku"\n')

        settings = load_settings(tmp_path, environ={})

        assert settings.default_max_turns == 3
        assert settings.default_worker_model == "haiku"

    def test_environment_overrides_config_file(self, tmp_path):
        write_config(tmp_path, "[loop]\ndefault_max_turns = 3\nhistory_limit = 9\n")

        settings = load_settings(tmp_path, environ={"RALPH_DEFAULT_MAX_TURNS": "7", "UNRELATED": "x"})

        assert settings.default_max_turns == 7
        assert settings.history_limit == 9

    def test_invalid_toml(self, tmp_path):
        write_config(tmp_path, "[loop\n")

        with pytest.raises(ValueError, match="Invalid config file"):
            load_settings(tmp_path, environ={})

    def test_loop_must_be_a_table(self, tmp_path):
        write_config(tmp_path, 'loop = "fast"\n')

        with pytest.raises(ValueError, match="must be a table"):
            load_settings(tmp_path, environ={})
