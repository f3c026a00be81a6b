from __future__ import annotations

from dataclasses import asdict, dataclass, replace


@dataclass(frozen=True)
class RelayRuntimeConfig:
    config_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    dest_name: str = "gamebloc.relay"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    relay_name: str = "gamebloc"
    max_room_key_len: int = 128
    strict_sender_identity: bool = False
    typing_timeout_s: float = 0.0
    ping_interval_s: float = 25.0
    ping_timeout_s: float = 60.0
    max_resource_bytes: int = 256 * 1024  # 256 KiB default
    stats_log_interval_s: float = 0.0
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: RelayRuntimeConfig, data: dict) -> RelayRuntimeConfig:
    """Overlay a parsed config file ([relay] and [logging] tables) onto base."""
    relay = data.get("relay") if isinstance(data, dict) else None
    if isinstance(relay, dict):
        data = {**data, **relay}

    log_table = data.get("logging") if isinstance(data, dict) else None
    if isinstance(log_table, dict):
        mapped: dict[str, object] = {}
        if "level" in log_table:
            mapped["log_level"] = log_table.get("level")
        if "rns_level" in log_table:
            mapped["log_rns_level"] = log_table.get("rns_level")
        if "console" in log_table:
            mapped["log_console"] = log_table.get("console")
        if "file" in log_table:
            mapped["log_file"] = log_table.get("file")
        if "format" in log_table:
            mapped["log_format"] = log_table.get("format")
        if "datefmt" in log_table:
            mapped["log_datefmt"] = log_table.get("datefmt")
        data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where the file was read from; do not let the file override it.
    allowed.discard("config_path")

    updates = {k: v for k, v in data.items() if k in allowed}

    if "announce" in data and "announce_on_start" not in updates:
        try:
            updates["announce_on_start"] = bool(data["announce"])
        except Exception:
            pass
    if "configdir" in updates and updates["configdir"] == "":
        updates["configdir"] = None
    if "log_file" in updates and updates["log_file"] == "":
        updates["log_file"] = None
    if "log_datefmt" in updates and updates["log_datefmt"] == "":
        updates["log_datefmt"] = None

    return replace(base, **updates) if updates else base
