"""MIG configuration files: parsing, validation and selection."""

from __future__ import annotations

import re
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TextIO, Union

import yaml

from migparted.util import MigPartedError

VERSION = "v1"
ALL_DEVICES = "all"

_PROFILE = re.compile(r"^(?:\d+c\.)?\d+g\.\d+gb(?:[+-][a-z][a-z0-9.]*)*$")

Devices = Union[str, list]
DeviceFilter = Union[str, list, None]


class SpecError(MigPartedError):
    """A configuration file is malformed or a selection is invalid."""


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _parse_device_filter(value: Any) -> DeviceFilter:
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return list(value)
    raise SpecError(f"invalid value for 'device-filter': {value!r}")


def _parse_devices(value: Any) -> Devices:
    if isinstance(value, str):
        if value != ALL_DEVICES:
            raise SpecError(f"invalid string input for 'devices': {value}")
        return value
    if isinstance(value, list) and all(_is_int(item) for item in value):
        return list(value)
    raise SpecError(f"invalid value for 'devices': {value!r}")


def _parse_mig_devices(value: Any) -> dict[str, int] | None:
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise SpecError(f"invalid value for 'mig-devices': {value!r}")
    devices: dict[str, int] = {}
    for name, count in value.items():
        if not isinstance(name, str) or not _PROFILE.match(name):
            raise SpecError(
                f"error validating values in 'mig-devices' field: invalid profile name {name!r}"
            )
        if not _is_int(count) or count < 0:
            raise SpecError(
                f"error validating values in 'mig-devices' field: invalid count {count!r} for {name!r}"
            )
        devices[name] = count
    return devices


@dataclass
class MigConfigSpec:
    """Desired MIG settings for a set of GPUs."""

    devices: Devices = field(default_factory=list)
    mig_enabled: bool = False
    mig_devices: dict[str, int] | None = None
    device_filter: DeviceFilter = None

    @classmethod
    def from_dict(cls, data: Any) -> MigConfigSpec:
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise SpecError(f"MIG config entry must be a mapping, got {data!r}")
        for required in ("devices", "mig-enabled"):
            if required not in data:
                raise SpecError(f"missing required field: {required}")

        result = cls()
        for key, value in data.items():
            if key == "device-filter":
                result.device_filter = _parse_device_filter(value)
            elif key == "devices":
                result.devices = _parse_devices(value)
            elif key == "mig-enabled":
                if value is not None and not isinstance(value, bool):
                    raise SpecError(f"invalid value for 'mig-enabled': {value!r}")
                result.mig_enabled = bool(value)
            elif key == "mig-devices":
                result.mig_devices = _parse_mig_devices(value)
            else:
                raise SpecError(f"unexpected field: {key}")

        if result.mig_enabled and result.mig_devices is None:
            raise SpecError("missing required field 'mig-devices' when 'mig-enabled' is true")
        if not result.mig_enabled and result.mig_devices:
            raise SpecError("MIG devices included when 'mig-enabled' is false")
        return result

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.device_filter is not None:
            out["device-filter"] = (
                self.device_filter if isinstance(self.device_filter, str) else list(self.device_filter)
            )
        out["devices"] = self.devices if isinstance(self.devices, str) else list(self.devices)
        out["mig-enabled"] = self.mig_enabled
        out["mig-devices"] = None if self.mig_devices is None else dict(self.mig_devices)
        return out

    def matches_all_devices(self) -> bool:
        """True when the spec applies to every device."""
        return self.devices == ALL_DEVICES

    def matches_devices(self, index: int) -> bool:
        """True when the spec applies to the device at ``index``."""
        if isinstance(self.devices, list) and index in self.devices:
            return True
        return self.matches_all_devices()


@dataclass
class Spec:
    """A versioned set of named MIG configurations."""

    version: str = VERSION
    mig_configs: dict[str, list[MigConfigSpec]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> Spec:
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise SpecError(f"configuration must be a mapping, got {data!r}")
        if "version" not in data and data:
            raise SpecError("unable to parse with missing 'version' field")
        version = data.get("version", "")
        if version != VERSION:
            raise SpecError(f"unknown version: {version}")

        result = cls(version=version)
        for key, value in data.items():
            if key == "version":
                continue
            if key != "mig-configs":
                raise SpecError(f"unexpected field: {key}")
            if not isinstance(value, Mapping) or not value:
                raise SpecError(f"at least one entry in '{key}' is required")
            configs: dict[str, list[MigConfigSpec]] = {}
            for name, entries in value.items():
                if not entries:
                    raise SpecError(f"at least one entry in '{name}' is required")
                if not isinstance(entries, list):
                    raise SpecError(f"invalid value for '{name}': {entries!r}")
                configs[str(name)] = [MigConfigSpec.from_dict(entry) for entry in entries]
            result.mig_configs = configs
        return result

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"version": self.version}
        if self.mig_configs:
            out["mig-configs"] = {
                name: [entry.to_dict() for entry in entries]
                for name, entries in self.mig_configs.items()
            }
        return out


def load_spec(text: str) -> Spec:
    """Parse YAML or JSON text into a validated ``Spec``."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as err:
        raise SpecError(str(err)) from err
    return Spec.from_dict(data)


def check_config_flags(config_file: str | None) -> None:
    """Ensure a configuration file was given."""
    missing = [] if config_file else ["config-file"]
    if missing:
        raise SpecError(f"missing required flags '{', '.join(missing)}'")


def parse_config_file(path: str | Path, stdin: TextIO | None = None) -> Spec:
    """Read a configuration file, or standard input when ``path`` is ``-``."""
    if str(path) == "-":
        text = (stdin if stdin is not None else sys.stdin).read()
    else:
        try:
            text = Path(path).read_text()
        except OSError as err:
            raise SpecError(f"read error: {err}") from err
    try:
        return load_spec(text)
    except SpecError as err:
        raise SpecError(f"unmarshal error: {err}") from err


def select_mig_config(spec: Spec, selected_config: str | None) -> list[MigConfigSpec]:
    """Pick the named configuration, or the only one when none is named."""
    if len(spec.mig_configs) > 1 and not selected_config:
        raise SpecError(
            "missing required flag 'selected-config' when more than one config available"
        )
    if len(spec.mig_configs) == 1 and not selected_config:
        selected_config = next(iter(spec.mig_configs))
    if selected_config not in spec.mig_configs:
        raise SpecError(f"selected mig-config not present: {selected_config or ''}")
    return spec.mig_configs[selected_config]