"""設定ファイルローダ（I/O 境界）。

設計意図:
- JSON / YAML の読み込みと「文書の形」の検査だけを持つ。
- 受け付けるトップレベルは engine のセクション（indicators / episodes / features / cache / report）のみ。
  綴り違いのセクションを黙って無視すると既定値で走ってしまうため、ここで止める。
- 各セクション内の値の型・範囲は resolver が検証する。
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

import yaml

from market_episode_engine.contract.errors import ConfigurationError

SECTIONS: frozenset[str] = frozenset({"indicators", "episodes", "features", "cache", "report"})


def _parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON: {e}") from e


def _parse_yaml(text: str) -> Any:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML: {e}") from e
    # 空の YAML は「上書き無し」
    return {} if data is None else data


_PARSERS: dict[str, Callable[[str], Any]] = {
    ".json": _parse_json,
    ".yml": _parse_yaml,
    ".yaml": _parse_yaml,
}


def load_config(path: str | Path) -> dict[str, Any]:
    """engine 設定ファイル（JSON / YAML）を読み込み、セクション構成を検査する。

    Args:
        path: 設定ファイルパス。拡張子（.json / .yml / .yaml）で形式を決める。

    Returns:
        セクション名 → セクション dict。resolver.resolve_config にそのまま渡せる。

    Raises:
        ConfigurationError: ファイルが無い、未対応の拡張子、構文エラー、
            ルートが mapping でない、未知のセクション、セクションが mapping でない。
    """
    p = Path(path)
    if not p.is_file():
        raise ConfigurationError(f"Config file not found: {p}")

    parse = _PARSERS.get(p.suffix.lower())
    if parse is None:
        raise ConfigurationError(f"Unsupported config format: {p.suffix.lower()}")

    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Failed to load config: {p}") from e

    return _check_sections(parse(text), source=p)


def _check_sections(data: Any, *, source: Path) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config root must be a mapping: {source}")

    unknown = sorted(str(k) for k in data if k not in SECTIONS)
    if unknown:
        raise ConfigurationError(
            f"Unknown config sections {unknown} in {source} (expected: {sorted(SECTIONS)})"
        )

    sections: dict[str, Any] = {}
    for name, section in data.items():
        # YAML の空セクション（`indicators:`）は上書き無し
        if section is None:
            continue
        if not isinstance(section, dict):
            raise ConfigurationError(f"Config section '{name}' must be a mapping: {source}")
        sections[name] = section
    return sections
