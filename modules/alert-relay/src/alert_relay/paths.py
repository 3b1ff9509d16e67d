from __future__ import annotations

from pathlib import Path

DATA_DIRS = ("logs", "failures", "alerts")
CONFIG_FILENAME = "relay.json"


def module_root() -> Path:
    return Path(__file__).resolve().parents[2]


def data_root(root_override: Path | None = None) -> Path:
    return root_override if root_override is not None else module_root() / "data"


def default_config_path(root: Path) -> Path:
    return root / CONFIG_FILENAME


def ensure_data_dirs(root: Path) -> None:
    for name in DATA_DIRS:
        (root / name).mkdir(parents=True, exist_ok=True)
