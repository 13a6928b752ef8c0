from __future__ import annotations

import json

import pytest

from market_episode_engine.config.loader import load_config
from market_episode_engine.config.resolver import (
    impute_strategy,
    indicator_settings,
    resolve_config,
    resolve_threshold,
)
from market_episode_engine.contract.errors import ConfigurationError
from market_episode_engine.contract.schemas.features import ImputeStrategy


def test_defaults(config) -> None:
    assert resolve_threshold(config) == 0.05
    assert resolve_threshold(config, "5m") == 0.01
    assert indicator_settings(config).rsi_period == 14
    assert impute_strategy(config) is ImputeStrategy.SENTINEL
    assert config["cache"] == {"capacity": 128, "ttl_seconds": 60.0}


def test_user_config_is_deep_merged() -> None:
    config = resolve_config(
        {
            "indicators": {"ema_period": 5},
            "episodes": {"thresholds": {"2h": 0.03}, "default_interval": "2h"},
            "features": {"impute_strategy": " Median "},
        }
    )

    assert config["indicators"]["ema_period"] == 5
    assert config["indicators"]["rsi_period"] == 14
    assert resolve_threshold(config) == 0.03
    assert resolve_threshold(config, "1d") == 0.05
    assert impute_strategy(config) is ImputeStrategy.MEDIAN


@pytest.mark.parametrize(
    "user_config",
    [
        {"indicators": {"ema_period": 0}},
        {"indicators": {"rsi_period": "14"}},
        {"episodes": {"thresholds": {"1d": 0.0}}},
        {"episodes": {"default_interval": "7d"}},
        {"features": {"impute_strategy": "knn"}},
        {"cache": {"ttl_seconds": -1}},
        {"report": {"tablefmt": ""}},
        {"indicators": []},
    ],
)
def test_invalid_values_are_rejected(user_config) -> None:
    with pytest.raises(ConfigurationError):
        resolve_config(user_config)


def test_unknown_interval(config) -> None:
    with pytest.raises(ConfigurationError):
        resolve_threshold(config, "3d")


def test_load_json_and_yaml(tmp_path) -> None:
    json_path = tmp_path / "config.json"
    json_path.write_text(json.dumps({"report": {"last_n": 5}}), encoding="utf-8")
    yaml_path = tmp_path / "config.yaml"
    yaml_path.write_text("episodes:\n  default_interval: 1h\n", encoding="utf-8")
    empty_yaml = tmp_path / "empty.yml"
    empty_yaml.write_text("", encoding="utf-8")

    assert load_config(json_path) == {"report": {"last_n": 5}}
    assert load_config(yaml_path) == {"episodes": {"default_interval": "1h"}}
    assert load_config(empty_yaml) == {}


@pytest.mark.parametrize(
    "name, text",
    [
        ("bad.json", "{oops"),
        ("list.json", "[1, 2]"),
        ("bad.yaml", "a: [1, 2"),
        ("config.toml", "a = 1"),
        ("typo.yaml", "indicator:\n  ema_period: 5\n"),
        ("scalar.json", "{\"report\": 5}"),
        ("list.yaml", "cache:\n  - 1\n"),
    ],
)
def test_load_errors(tmp_path, name, text) -> None:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_config(path)


def test_missing_config_file(tmp_path) -> None:
    with pytest.raises(ConfigurationError):
        load_config(tmp_path / "nope.yaml")


def test_unknown_section_is_named_in_the_error(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("episodes:\n  default_interval: 1h\nepisode:\n  default_interval: 5m\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match=r"\['episode'\]"):
        load_config(path)


def test_empty_yaml_section_keeps_defaults(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("indicators:\nreport:\n  last_n: 3\n", encoding="utf-8")

    loaded = load_config(path)

    assert loaded == {"report": {"last_n": 3}}
    assert resolve_config(loaded)["indicators"]["ema_period"] == 14
