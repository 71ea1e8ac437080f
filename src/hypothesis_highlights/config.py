"""Configuration helpers for the highlight synchroniser."""
from __future__ import annotations

import json
import os
import tempfile
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional

from .renderer import DEFAULT_DATE_FORMAT, DEFAULT_TEMPLATE

CONFIG_DIR = Path.home() / ".obsidian_hypothesis"
SETTINGS_FILE = CONFIG_DIR / "settings.json"
HISTORY_FILE = CONFIG_DIR / "history.json"

TOKEN_ENV_VAR = "HYPOTHESIS_API_TOKEN"


@dataclass(frozen=True)
class Settings:
    """User settings; the sync engine only ever reads them."""

    token: Optional[str] = None
    user: Optional[str] = None
    vault_root: Path = Path("./vault")
    highlights_folder: str = "Hypothesis"
    template: str = DEFAULT_TEMPLATE
    date_format: str = DEFAULT_DATE_FORMAT
    sync_on_boot: bool = False

    @property
    def is_connected(self) -> bool:
        return bool(self.token)

    def evolve(self, **changes: Any) -> "Settings":
        return replace(self, **changes)

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "Settings":
        kwargs: Dict[str, Any] = {}
        if data.get("token"):
            kwargs["token"] = str(data["token"])
        if data.get("user"):
            kwargs["user"] = str(data["user"])
        if data.get("vault_root"):
            kwargs["vault_root"] = Path(data["vault_root"])
        if "highlights_folder" in data and data["highlights_folder"] is not None:
            kwargs["highlights_folder"] = str(data["highlights_folder"])
        if data.get("template"):
            kwargs["template"] = str(data["template"])
        if data.get("date_format"):
            kwargs["date_format"] = str(data["date_format"])
        if "sync_on_boot" in data:
            kwargs["sync_on_boot"] = bool(data["sync_on_boot"])
        return cls(**kwargs)

    def to_mapping(self) -> Dict[str, Any]:
        data = asdict(self)
        data["vault_root"] = str(self.vault_root)
        return data


def load_config(path: Optional[Path]) -> Dict[str, Any]:
    """Load a JSON configuration file if provided."""

    if path is None:
        return {}
    with path.expanduser().resolve().open("r", encoding="utf-8") as handle:
        return json.load(handle)


def write_json_atomic(path: Path, data: Dict[str, Any]) -> None:
    """Replace ``path`` with ``data`` so readers never see a half-written file."""

    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class SettingsStore:
    """JSON-file persistence for :class:`Settings`.

    ``overrides`` (e.g. from the command line) and a token taken from
    ``HYPOTHESIS_API_TOKEN`` apply to :meth:`load` only; :meth:`save` keeps
    the file's own values for them unless they were changed explicitly.
    """

    def __init__(self, path: Path = SETTINGS_FILE, overrides: Optional[Dict[str, Any]] = None) -> None:
        self.path = path
        self.overrides = {key: value for key, value in (overrides or {}).items() if value is not None}

    def _read(self) -> Dict[str, Any]:
        path = self.path.expanduser()
        return load_config(path) if path.exists() else {}

    def load(self) -> Settings:
        settings = Settings.from_mapping({**self._read(), **self.overrides})
        env_token = os.environ.get(TOKEN_ENV_VAR)
        if env_token:
            settings = settings.evolve(token=env_token)
        return settings

    def save(self, settings: Settings) -> None:
        stored = self._read()
        data = settings.to_mapping()
        transient = {key: str(value) for key, value in self.overrides.items()}
        env_token = os.environ.get(TOKEN_ENV_VAR)
        if env_token:
            transient["token"] = env_token
        for key, value in transient.items():
            if str(data.get(key)) != value:
                continue
            if key in stored:
                data[key] = stored[key]
            else:
                data.pop(key, None)
        write_json_atomic(self.path, data)
