from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

import RNS

from .config import RelayRuntimeConfig, apply_config_data, load_toml
from .logging_config import configure_logging
from .paths import default_config_path, default_identity_path, ensure_private_dir
from .service import RelayService


def _write_default_config(config_path: str, identity_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    storage_dir = os.path.dirname(identity_path)
    if storage_dir:
        ensure_private_dir(Path(storage_dir))

    content = f"""# gbrelay configuration (TOML)
#
# This file was created on first run.
# Edit it, then start gbrelay again.

[relay]

# Optional: Reticulum configuration directory.
# If left unset, Reticulum will choose its default (usually ~/.reticulum).
configdir = ""

# Where gbrelay stores its persistent identity (Reticulum Identity file).
identity_path = {identity_path!r}

# Destination name clients open links to.
dest_name = "gamebloc.relay"

# Announcing (Reticulum destination announces)
#
# announce_on_start: send a single announce right after startup.
# announce_period_s: if >0, periodically re-announce.
announce_on_start = true
announce_period_s = 0.0

# Relay name reported in the welcome event and in announces.
relay_name = "gamebloc"

# Maximum accepted gameId / conversationId length.
max_room_key_len = 128

# Sender identity policy.
#
# When true, send_message is only relayed if the connection registered a
# userId with register_user (or join_dm_room), and the relayed message carries
# that registered id instead of the client-supplied one.
strict_sender_identity = false

# Typing indicators.
# If >0, a typing indicator that is not stopped within this many seconds is
# cleared with a synthetic isTyping=false broadcast. 0 disables.
typing_timeout_s = 0.0

# Relay-initiated liveness checks (0 disables).
ping_interval_s = 25.0
ping_timeout_s = 60.0

# Envelopes larger than the link MTU (e.g. a room_users list for a busy game)
# are sent via RNS.Resource. Inbound resources larger than this are refused.
max_resource_bytes = 262144

# If >0, log a stats summary at this interval.
stats_log_interval_s = 0.0

[logging]

# Log level for gbrelay itself.
level = "INFO"

# Log level for Reticulum/RNS Python logging (if used by your install).
rns_level = "WARNING"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

# Log format and optional date format.
format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)


def _ensure_first_run_files(config_path: str, identity_path: str) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        _write_default_config(config_path, identity_path)
        created_any = True

    if not os.path.exists(identity_path):
        storage_dir = os.path.dirname(identity_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        ident = RNS.Identity()
        ident.to_file(identity_path)
        try:
            os.chmod(identity_path, 0o600)
        except Exception:
            pass
        created_any = True

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="gbrelay", description="Run the live-sports chat relay daemon"
    )

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")

    p.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Path to relay identity file (created on first run)",
    )
    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: gamebloc.relay)"
    )

    p.add_argument(
        "--no-announce",
        action="store_true",
        help="Disable announce on start (does not affect periodic announce)",
    )
    p.add_argument(
        "--announce-period",
        type=float,
        default=None,
        help="Periodic announce interval seconds (0 disables)",
    )

    p.add_argument("--relay-name", default=None, help="Relay name in the welcome event")

    p.add_argument(
        "--strict-sender-identity",
        action="store_true",
        help="Only relay chat messages from connections with a registered userId",
    )
    p.add_argument(
        "--typing-timeout",
        type=float,
        default=None,
        help="Clear typing indicators after this many seconds (0 disables)",
    )

    p.add_argument(
        "--ping-interval",
        type=float,
        default=None,
        help="Relay-initiated ping interval seconds (0 disables)",
    )
    p.add_argument(
        "--ping-timeout",
        type=float,
        default=None,
        help="Close link if pong not received within this many seconds (0 disables)",
    )

    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    return p


def build_config(args: argparse.Namespace) -> RelayRuntimeConfig:
    """Defaults, then the config file, then command-line overrides."""
    cfg = RelayRuntimeConfig(
        configdir=args.configdir,
        identity_path=str(args.identity),
        config_path=str(args.config),
    )

    if cfg.config_path and os.path.exists(cfg.config_path):
        cfg = apply_config_data(cfg, load_toml(cfg.config_path))

    if args.configdir is not None:
        cfg = replace(cfg, configdir=args.configdir)
    if args.dest_name is not None:
        cfg = replace(cfg, dest_name=args.dest_name)

    if args.no_announce:
        cfg = replace(cfg, announce_on_start=False)
    if args.announce_period is not None:
        cfg = replace(cfg, announce_period_s=float(args.announce_period))

    if args.relay_name is not None:
        cfg = replace(cfg, relay_name=args.relay_name)

    if args.strict_sender_identity:
        cfg = replace(cfg, strict_sender_identity=True)
    if args.typing_timeout is not None:
        cfg = replace(cfg, typing_timeout_s=float(args.typing_timeout))

    if args.ping_interval is not None:
        cfg = replace(cfg, ping_interval_s=float(args.ping_interval))
    if args.ping_timeout is not None:
        cfg = replace(cfg, ping_timeout_s=float(args.ping_timeout))

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    return cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    identity_path = str(args.identity)

    if _ensure_first_run_files(config_path, identity_path):
        print(
            "Created default gbrelay files. Edit the configuration before starting:\n"
            f"- Config:   {config_path}\n"
            f"- Identity: {identity_path}\n"
            "\nThen re-run gbrelay.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = build_config(args)

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = RelayService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()
