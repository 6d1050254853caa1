"""Where OrderSync keeps its settings and logs on disk."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional

HOME_ENV_VAR = "ORDERSYNC_HOME"


def resolve_home(environ: Optional[Mapping[str, str]] = None) -> Path:
    """Pick the data directory.

    ``ORDERSYNC_HOME`` wins; Windows profiles use ``%LOCALAPPDATA%`` (or
    ``%APPDATA%``) with an ``OrderSync`` folder; everything else falls back to
    ``~/.ordersync``.
    """

    env = os.environ if environ is None else environ
    override = env.get(HOME_ENV_VAR)
    if override:
        return Path(override).expanduser().resolve()
    for name in ("LOCALAPPDATA", "APPDATA"):
        if env.get(name):
            return Path(env[name]).expanduser().resolve() / "OrderSync"
    return Path.home().resolve() / ".ordersync"


APP_DIR: Path = resolve_home()
LOG_DIR: Path = APP_DIR / "logs"


def data_path(*parts: str) -> Path:
    """Path below :data:`APP_DIR`; missing parent folders are created."""

    target = APP_DIR.joinpath(*parts)
    target.parent.mkdir(parents=True, exist_ok=True)
    return target


def logs_path(name: str) -> Path:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    return LOG_DIR / name


__all__ = ["APP_DIR", "HOME_ENV_VAR", "LOG_DIR", "data_path", "logs_path", "resolve_home"]
