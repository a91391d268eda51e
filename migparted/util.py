"""Shared helpers: boolean tallies, message formatting and driver checks."""

from __future__ import annotations

import re
from collections.abc import Iterable
from pathlib import Path

MIN_SUPPORTED_NVML = 11
PROC_MODULES = "/proc/modules"

_MAJOR_VERSION = re.compile(r"[+-]?\d+")


class MigPartedError(Exception):
    """Base class for every error the package reports."""


def count_true(values: Iterable[bool]) -> int:
    """Return how many of the given values are true."""
    return sum(1 for value in values if value)


def capitalize(text: str) -> str:
    """Upper-case the first character of a message, leaving the rest alone."""
    return text[:1].upper() + text[1:]


def is_nvidia_module_loaded(modules_path: str | Path = PROC_MODULES) -> bool:
    """Report whether the ``nvidia`` kernel module appears in the modules list."""
    try:
        content = Path(modules_path).read_text()
    except OSError as err:
        raise MigPartedError(f"unable to read {modules_path}: {err}") from err
    for line in content.strip().splitlines():
        fields = line.split()
        if fields and fields[0] == "nvidia":
            return True
    return False


def is_supported_nvml_version(version: str) -> bool:
    """Report whether an NVML version string is new enough for MIG operations."""
    major = version.split(".")[0]
    if not _MAJOR_VERSION.fullmatch(major):
        raise MigPartedError(f"malformed version string '{version}'")
    return int(major) >= MIN_SUPPORTED_NVML