import json
from pathlib import Path

import pytest

from convomem.config import (
    CONFIG_ENV_OVERRIDES,
    ConvomemConfig,
    get_config_path,
    get_env_overrides,
    load_config,
    read_config_file,
)


def test_read_config_file_rejects_invalid_json(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("{not-json}")
    with pytest.raises(ValueError, match="invalid config json"):
        read_config_file(config_path)


def test_read_config_file_rejects_non_object(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("[1, 2]")
    with pytest.raises(ValueError, match="config must be an object"):
        read_config_file(config_path)


def test_read_config_file_missing_or_blank_is_empty(tmp_path: Path) -> None:
    assert read_config_file(tmp_path / "missing.json") == {}
    blank = tmp_path / "blank.json"
    blank.write_text("   \n")
    assert read_config_file(blank) == {}


def test_get_config_path_honours_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    target = tmp_path / "custom.json"
    monkeypatch.setenv("CONVOMEM_CONFIG", str(target))

    assert get_config_path() == target


def test_load_config_defaults() -> None:
    cfg = load_config()

    assert cfg.flush_every == 10
    assert cfg.search_limit == 50
    assert cfg.context_radius == 2
    assert cfg.short_term_size == 50
    assert cfg.long_term_limit == 500
    assert cfg.linked_reference_limit == 10


def test_load_config_reads_file_and_ignores_unknown_keys(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps({"search_limit": "25", "completion_model": "local-model", "unknown": True})
    )

    cfg = load_config(config_path)

    assert cfg.search_limit == 25
    assert cfg.completion_model == "local-model"
    assert not hasattr(cfg, "unknown")


def test_load_config_env_overrides_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"flush_every": 3, "user_id": "from-file"}))
    monkeypatch.setenv("CONVOMEM_FLUSH_EVERY", "7")
    monkeypatch.setenv("CONVOMEM_USER_ID", "from-env")

    cfg = load_config(config_path)

    assert cfg.flush_every == 7
    assert cfg.user_id == "from-env"
    assert get_env_overrides()["flush_every"] == "7"


def test_load_config_warns_on_bad_int(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CONVOMEM_SEARCH_LIMIT", "lots")

    with pytest.warns(RuntimeWarning, match="search_limit"):
        cfg = load_config(tmp_path / "missing.json")

    assert cfg.search_limit == ConvomemConfig().search_limit


def test_load_config_tolerates_broken_file(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("{oops")

    with pytest.warns(RuntimeWarning, match="invalid config json"):
        cfg = load_config(config_path)

    assert cfg.search_limit == 50


def test_every_config_field_has_an_env_override() -> None:
    assert set(CONFIG_ENV_OVERRIDES) == set(vars(ConvomemConfig()))


def test_load_config_reads_completion_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CONVOMEM_COMPLETION_API_KEY", "sk-test")
    monkeypatch.setenv("CONVOMEM_COMPLETION_TIMEOUT_S", "5")
    monkeypatch.setenv("CONVOMEM_LINKED_REFERENCE_LIMIT", "3")

    cfg = load_config()

    assert cfg.completion_api_key == "sk-test"
    assert cfg.completion_timeout_s == 5
    assert cfg.linked_reference_limit == 3
