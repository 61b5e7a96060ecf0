from __future__ import annotations

import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path

DEFAULT_DEST_NAME = "chatrelay.hub"


@dataclass(frozen=True)
class HubRuntimeConfig:
    config_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    dest_name: str = DEFAULT_DEST_NAME
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "chatrelay"
    greeting: str | None = None
    trusted_identities: tuple[str, ...] = ()
    require_auth: bool = False
    name_max_chars: int = 64
    max_channel_id_len: int = 128
    rate_limit_msgs_per_minute: int = 240
    ping_interval_s: float = 0.0
    ping_timeout_s: float = 0.0
    max_resource_bytes: int = 256 * 1024  # 256 KiB default
    enable_resource_transfer: bool = True
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None
    log_mask_phones: bool = True


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: HubRuntimeConfig, data: dict) -> HubRuntimeConfig:
    hub = data.get("hub") if isinstance(data, dict) else None
    if isinstance(hub, dict):
        data = {**data, **hub}

    log_table = data.get("logging") if isinstance(data, dict) else None
    if isinstance(log_table, dict):
        mapped: dict[str, object] = {}
        for src_key in (
            "level",
            "rns_level",
            "console",
            "file",
            "format",
            "datefmt",
            "mask_phones",
        ):
            if src_key in log_table:
                mapped[f"log_{src_key}"] = log_table.get(src_key)
        data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where the file came from; do not let the file override it.
    allowed.discard("config_path")

    updates = {k: v for k, v in data.items() if k in allowed}

    if "trusted_identities" in updates and isinstance(
        updates["trusted_identities"], list
    ):
        updates["trusted_identities"] = tuple(
            str(x) for x in updates["trusted_identities"]
        )

    if "announce" in data and "announce_on_start" not in updates:
        updates["announce_on_start"] = bool(data["announce"])
    for optional_key in ("configdir", "greeting", "log_file", "log_datefmt"):
        if optional_key in updates and updates[optional_key] == "":
            updates[optional_key] = None

    return replace(base, **updates) if updates else base


def apply_environment(
    cfg: HubRuntimeConfig, environ: dict[str, str] | None = None
) -> HubRuntimeConfig:
    """Apply process environment overrides (currently only the listen destination)."""
    env = os.environ if environ is None else environ
    dest = env.get("CHATRELAY_DEST_NAME", "").strip()
    if dest:
        return replace(cfg, dest_name=dest)
    return cfg


def default_home() -> Path:
    """Directory for the config file and hub identity (CHATRELAY_HOME overrides)."""
    override = os.environ.get("CHATRELAY_HOME")
    return Path(override) if override else Path.home() / ".chatrelay"


def default_config_path() -> Path:
    return default_home() / "chatrelay.toml"


def default_identity_path() -> Path:
    return default_home() / "hub_identity"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        os.chmod(path, 0o700)
    except OSError:
        pass
