from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any

from .config import HubRuntimeConfig

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_LEVELS: dict[str, int] = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "NOTSET": logging.NOTSET,
}

_PHONE_RE = re.compile(r"\+(\d{3,})(\d{2})\b")


def parse_level(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip().upper()
    if not text:
        return default
    if text in _LEVELS:
        return _LEVELS[text]
    try:
        return int(text)
    except ValueError:
        return default


def mask_phone_numbers(text: str) -> str:
    """Replace the middle digits of every `+<digits>` number with '*'."""
    return _PHONE_RE.sub(
        lambda m: "+" + m.group(1)[:2] + "*" * (len(m.group(1)) - 2) + m.group(2),
        text,
    )


class PhoneMaskFilter(logging.Filter):
    """Keeps full phone numbers out of log output."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = mask_phone_numbers(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def _optional(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value)
    return s if s.strip() else None


def _file_handler(path: str) -> logging.Handler:
    p = Path(os.path.expanduser(path))
    p.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(p, encoding="utf-8")
    try:
        os.chmod(p, 0o600)
    except OSError:
        pass
    return handler


def _build_handlers(
    cfg: HubRuntimeConfig, override_file: str | None
) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []
    if cfg.log_console:
        handlers.append(logging.StreamHandler())

    # An explicit empty override disables file logging.
    log_file = _optional(override_file) if override_file is not None else _optional(cfg.log_file)
    if log_file:
        handlers.append(_file_handler(log_file))
    return handlers


def configure_logging(
    cfg: HubRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Install chatrelay's log handlers on the root logger.

    Calling it again replaces the handlers installed by the previous call.
    The `RNS` logger gets its own level so Reticulum chatter can be kept
    quieter than the hub.
    """
    handlers = _build_handlers(cfg, override_file)

    formatter = logging.Formatter(
        fmt=str(cfg.log_format).strip() or DEFAULT_FORMAT,
        datefmt=_optional(cfg.log_datefmt),
    )
    mask = PhoneMaskFilter() if cfg.log_mask_phones else None
    for h in handlers:
        h.setFormatter(formatter)
        if mask is not None:
            h.addFilter(mask)

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        root.addHandler(h)
    root.setLevel(parse_level(override_level or cfg.log_level, logging.INFO))

    logging.getLogger("RNS").setLevel(parse_level(cfg.log_rns_level, logging.WARNING))
    logging.captureWarnings(True)
