"""Auto-detect the format of a test file."""

import tomllib
from pathlib import Path

import yaml


def detect_format(file_path: Path, text: str | None = None) -> str:
    """Detect whether a test file is TOML or YAML.

    Returns: 'toml' or 'yaml'.
    """
    suffix = file_path.suffix.lower()
    if suffix == ".toml":
        return "toml"
    if suffix in (".yaml", ".yml", ".json"):
        return "yaml"

    if text is None:
        text = file_path.read_text(encoding="utf-8")

    # Try TOML first, it is the documented format
    try:
        tomllib.loads(text)
        return "toml"
    except tomllib.TOMLDecodeError:
        pass

    try:
        data = yaml.safe_load(text)
        if isinstance(data, dict):
            return "yaml"
    except yaml.YAMLError:
        pass

    return "toml"
