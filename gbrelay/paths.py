from __future__ import annotations

import os
from pathlib import Path


def default_gbrelay_dir() -> Path:
    override = os.environ.get("GBRELAY_HOME")
    if override:
        return Path(override)
    return Path.home() / ".gbrelay"


def default_config_path() -> Path:
    return default_gbrelay_dir() / "gbrelay.toml"


def default_identity_path() -> Path:
    return default_gbrelay_dir() / "relay_identity"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        # Best-effort tightening; may fail on some filesystems.
        os.chmod(path, 0o700)
    except Exception:
        pass
