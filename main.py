#!/usr/bin/env python3
"""main.py

Development entrypoint: ``python main.py [--config PATH] [--memory]``.

Secrets are best supplied through the environment (``DATABASE_URL``,
``SECRET_KEY``, ``JWT_SECRET_KEY``) together with ``CRTALK_PERSIST_SECRETS=0``
so nothing sensitive lands in the settings file.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from config import apply_env_overrides, load_settings, save_settings
from constants import CONFIG_FILE
from server_init import run_web_server

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(settings: dict) -> None:
    """Root logger to ``log_file_path`` (append) and stdout, once per process."""
    level_name = str(settings.get("log_level") or "INFO").upper()
    fmt = logging.Formatter(settings.get("log_format") or DEFAULT_LOG_FORMAT)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_file = settings.get("log_file_path")
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, mode="a", encoding="utf-8"))
    for h in handlers:
        h.setFormatter(fmt)

    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), handlers=handlers, force=True)
    logging.info("Logging configured (level=%s, file=%s)", level_name, log_file or "-")


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="CRTalk server")
    p.add_argument(
        "--config",
        default=os.environ.get("CRTALK_CONFIG") or CONFIG_FILE,
        help="settings file (.json, .yml or .yaml)",
    )
    p.add_argument("--write-config", action="store_true", help="write the effective settings and exit")
    p.add_argument("--memory", action="store_true", help="in-memory storage; nothing survives a restart")
    return p.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    config_path = Path(args.config)

    settings = load_settings(config_path)
    apply_env_overrides(settings)
    if args.memory:
        settings["storage_backend"] = "memory"

    if args.write_config:
        save_settings(config_path, settings)
        print(f"Wrote {config_path}")
        return

    configure_logging(settings)
    run_web_server(settings, limiter=None, settings_file=config_path)


if __name__ == "__main__":
    main()
