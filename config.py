#! /usr/bin/python
"""
CONFIG.PY

This file loads all Telegram session information and config settings from the environment.
A .env file in the working directory is read first (see sample.env).
"""
import os
import logging
import re
from collections import namedtuple
from datetime import timedelta

from dotenv import load_dotenv


""" DEFAULTS """
# How often the eviction scanner wakes up to look for lurkers.
DEFAULT_SCAN_INTERVAL = "1h"

DEFAULT_LOG_LEVEL = "INFO"


""" COMMAND TEXTS """
WHEN_COMMAND = "when"
WHEN_DESCRIPTION = "Show the list of users and time since their last message"
EMPTY_REPORT_MESSAGE = "Nobody has been seen yet."


Config = namedtuple(
    "Config",
    ["token", "chat_id", "duration", "database_path", "scan_interval", "log_level"],
)


class ConfigError(Exception):
    pass


# Go-style durations: "720h", "1h30m", "1.5h". Days and weeks are accepted too.
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d|w)")

_UNIT_SECONDS = {
    "ms": 0.001,
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 604800,
}


def parse_duration(value):
    """Convert a duration string such as '720h' or '1h30m' to a timedelta.

    Raises ValueError for anything that is not a sequence of number+unit pairs
    or that adds up to zero.
    """
    value = value.strip()
    if not value:
        raise ValueError("empty duration")

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(value):
        if match.start() != position:
            break
        amount, unit = match.groups()
        total += float(amount) * _UNIT_SECONDS[unit]
        position = match.end()

    if position != len(value):
        raise ValueError(f"invalid duration {value!r}")
    if total <= 0:
        raise ValueError(f"duration must be positive: {value!r}")

    try:
        return timedelta(seconds=total)
    except OverflowError:
        raise ValueError(f"duration too large: {value!r}")


def _string_env(key, default=None):
    value = os.getenv(key, "").strip()
    if value:
        return value
    if default is not None:
        return default
    raise ConfigError(f"no env {key!r} specified")


def _int_env(key):
    value = _string_env(key)
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {value!r}")


def _duration_env(key, default=None):
    value = _string_env(key, default)
    try:
        return parse_duration(value)
    except ValueError as e:
        raise ConfigError(f"parse duration {value!r} for {key}: {e}")


def _log_level_env(key, default):
    value = _string_env(key, default).upper()
    if not isinstance(logging.getLevelName(value), int):
        raise ConfigError(f"{key} must be a logging level name, got {value!r}")
    return value


def load_config(env_file=".env"):
    """Read all settings; any missing or malformed required value raises ConfigError."""
    load_dotenv(env_file)

    return Config(
        token=_string_env("TELEGRAM_TOKEN"),
        chat_id=_int_env("TELEGRAM_CHAT"),
        duration=_duration_env("DURATION"),
        database_path=_string_env("DATABASE_PATH"),
        scan_interval=_duration_env("SCAN_INTERVAL", DEFAULT_SCAN_INTERVAL),
        log_level=_log_level_env("LOG_LEVEL", DEFAULT_LOG_LEVEL),
    )
