"""Shared fixtures for the mockd test suite."""

from pathlib import Path
from typing import Callable

import pytest
import yaml


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    return tmp_path / "mock.yml"


@pytest.fixture
def write_config(config_path: Path) -> Callable[[object], str]:
    """Write a config (dict or raw YAML text) and return its path."""

    def write(config: object) -> str:
        text = config if isinstance(config, str) else yaml.safe_dump(config)
        config_path.write_text(text, encoding="utf8")
        return str(config_path)

    return write
