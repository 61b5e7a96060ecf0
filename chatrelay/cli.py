from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

import RNS

from .config import (
    DEFAULT_DEST_NAME,
    HubRuntimeConfig,
    apply_config_data,
    apply_environment,
    default_config_path,
    default_identity_path,
    ensure_private_dir,
    load_toml,
)
from .logging_config import configure_logging
from .service import HubService

DEFAULT_CONFIG_TEMPLATE = """\
# chatrelay configuration (TOML)
#
# Created on first run. Edit it, then start chatrelayd again.
# All users, channels and history live in memory and are cleared on start.

[hub]

# Reticulum configuration directory ("" lets Reticulum pick ~/.reticulum).
configdir = ""

# Reticulum identity of this hub.
identity_path = {identity_path!r}

# Destination the hub listens on. CHATRELAY_DEST_NAME overrides it.
dest_name = {dest_name!r}

announce_on_start = true
# Re-announce every N seconds (0 disables).
announce_period_s = 0.0

# Sent to every client in WELCOME.
hub_name = "chatrelay"
greeting = ""

# Reticulum identity hashes (hex) allowed to run /status, /users, /purge, ...
trusted_identities = []

# When true, join and send are refused until the link registers or logs in.
require_auth = false

name_max_chars = 64
max_channel_id_len = 128
rate_limit_msgs_per_minute = 240

# Hub-initiated PING and PONG deadline, in seconds (0 disables).
ping_interval_s = 0.0
ping_timeout_s = 0.0

# Replies larger than the link MTU (usually channel history) are sent as an
# RNS.Resource, announced by a RESOURCE_ENVELOPE packet. When disabled,
# history is paged instead.
enable_resource_transfer = true
max_resource_bytes = 262144

[logging]
level = "INFO"
rns_level = "WARNING"
console = true
# Log file path ("" disables).
file = ""
format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""
# Show phone numbers as +15****00 in logs.
mask_phones = true
"""

# (flag, config field, type, help) for flags that override one config value.
_VALUE_FLAGS: list[tuple[str, str, type, str]] = [
    ("--dest-name", "dest_name", str, f"Destination app name (default: {DEFAULT_DEST_NAME})"),
    ("--announce-period", "announce_period_s", float, "Periodic announce interval seconds (0 disables)"),
    ("--hub-name", "hub_name", str, "Hub name in WELCOME"),
    ("--greeting", "greeting", str, "Greeting carried in WELCOME"),
    ("--max-channel-id-len", "max_channel_id_len", int, "Max channel id length"),
    ("--rate-limit-msgs-per-minute", "rate_limit_msgs_per_minute", int, "Per-link message rate limit"),
    ("--ping-interval", "ping_interval_s", float, "Hub-initiated PING interval seconds (0 disables)"),
    ("--ping-timeout", "ping_timeout_s", float, "Close link if PONG not received in time (0 disables)"),
    ("--log-level", "log_level", str, "Logging level (DEBUG, INFO, WARNING, ERROR)"),
    ("--log-file", "log_file", str, "Log file path (empty disables file logging)"),
]


def _ensure_first_run_files(config_path: str, identity_path: str) -> list[str]:
    """Create a commented config and a hub identity if missing. Returns what was created."""
    created: list[str] = []

    if not os.path.exists(config_path):
        cfg_dir = os.path.dirname(config_path)
        if cfg_dir:
            ensure_private_dir(Path(cfg_dir))
        with open(config_path, "w", encoding="utf-8") as f:
            f.write(
                DEFAULT_CONFIG_TEMPLATE.format(
                    identity_path=identity_path, dest_name=DEFAULT_DEST_NAME
                )
            )
        created.append(config_path)

    if not os.path.exists(identity_path):
        id_dir = os.path.dirname(identity_path)
        if id_dir:
            ensure_private_dir(Path(id_dir))
        RNS.Identity().to_file(identity_path)
        try:
            os.chmod(identity_path, 0o600)
        except OSError:
            pass
        created.append(identity_path)

    return created


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="chatrelayd", description="Run a chatrelay hub over Reticulum"
    )
    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="TOML config file (created on first run)",
    )
    p.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Hub identity file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")
    p.add_argument(
        "--no-announce", action="store_true", help="Do not announce on start"
    )
    p.add_argument(
        "--require-auth",
        action="store_true",
        help="Refuse join/send until the link registers or logs in",
    )
    for flag, field, kind, text in _VALUE_FLAGS:
        p.add_argument(flag, dest=field, type=kind, default=None, help=text)
    return p


def build_config(args: argparse.Namespace) -> HubRuntimeConfig:
    """Layer defaults, config file, environment and flags, in that order."""
    cfg = HubRuntimeConfig(
        config_path=str(args.config), identity_path=str(args.identity)
    )
    if os.path.exists(cfg.config_path):
        cfg = apply_config_data(cfg, load_toml(cfg.config_path))
    cfg = apply_environment(cfg)

    updates: dict[str, object] = {
        field: getattr(args, field)
        for _, field, _, _ in _VALUE_FLAGS
        if getattr(args, field) is not None
    }
    for optional in ("greeting", "log_file"):
        if updates.get(optional) == "":
            updates[optional] = None
    if args.configdir is not None:
        updates["configdir"] = args.configdir
    if args.no_announce:
        updates["announce_on_start"] = False
    if args.require_auth:
        updates["require_auth"] = True

    return replace(cfg, **updates) if updates else cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    created = _ensure_first_run_files(str(args.config), str(args.identity))
    if created:
        print(
            "Created default chatrelay files:\n"
            + "".join(f"- {path}\n" for path in created)
            + "\nReview the configuration, then re-run chatrelayd.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = build_config(args)
    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = HubService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()
