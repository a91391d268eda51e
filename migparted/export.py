"""Exporting the current MIG layout as a configuration file."""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import replace
from typing import Any, TextIO

import yaml

from migparted.config import ALL_DEVICES, MigConfigSpec, Spec
from migparted.util import MigPartedError

JSON_FORMAT = "json"
YAML_FORMAT = "yaml"
DEFAULT_CONFIG_LABEL = "current"

OUTPUT_FORMATS = (JSON_FORMAT, YAML_FORMAT)


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def _same_mig_devices(a: dict[str, int] | None, b: dict[str, int] | None) -> bool:
    return (a or {}) == (b or {})


def _merge_sorted(*groups: Iterable) -> list:
    return sorted({item for group in groups for item in group})


def merge_mig_config_specs(specs: list[MigConfigSpec]) -> list[MigConfigSpec]:
    """Fold per-device specs into a compact list for display.

    The input is expected to hold one spec per device, each with a single
    device index and a single device filter. Specs with the same MIG mode
    and devices are merged; filters and device lists are then simplified
    to a plain string, ``all`` or dropped altogether where possible.
    """
    merged: list[MigConfigSpec] = []
    for spec in specs:
        for index, existing in enumerate(merged):
            if spec.mig_enabled != existing.mig_enabled:
                continue
            if not _same_mig_devices(spec.mig_devices, existing.mig_devices):
                continue
            merged[index] = replace(
                existing,
                devices=_merge_sorted(_as_list(existing.devices), _as_list(spec.devices)),
                device_filter=_merge_sorted(
                    _as_list(existing.device_filter), _as_list(spec.device_filter)
                ),
            )
            break
        else:
            merged.append(
                replace(
                    spec,
                    devices=_as_list(spec.devices),
                    device_filter=_as_list(spec.device_filter),
                )
            )

    filter_devices: dict[str, list[int]] = {}
    for spec in specs:
        filters = _as_list(spec.device_filter)
        key = filters[0] if filters else ""
        filter_devices[key] = _merge_sorted(filter_devices.get(key, []), _as_list(spec.devices))

    result: list[MigConfigSpec] = []
    for spec in merged:
        filters = _as_list(spec.device_filter)
        device_filter: Any = spec.device_filter
        if len(filter_devices) == 1:
            device_filter = None
        elif len(filters) == 1:
            device_filter = filters[0]

        covered = _merge_sorted(*(filter_devices.get(name, []) for name in filters))
        devices: Any = ALL_DEVICES if spec.devices == covered else spec.devices
        result.append(replace(spec, device_filter=device_filter, devices=devices))

    if len(result) == 1:
        result[0].device_filter = None

    return result


def check_output_format(output_format: str) -> None:
    """Ensure the output format is one that can be written."""
    if output_format not in OUTPUT_FORMATS:
        raise MigPartedError(f"unrecognized 'output-format': {output_format}")


class _FlowList(list):
    """A list written in YAML flow style."""


class _Dumper(yaml.SafeDumper):
    pass


def _represent_flow_list(dumper: yaml.SafeDumper, data: _FlowList) -> yaml.Node:
    return dumper.represent_sequence("tag:yaml.org,2002:seq", list(data), flow_style=True)


_Dumper.add_representer(_FlowList, _represent_flow_list)


def _output_data(spec: Spec, for_yaml: bool) -> dict[str, Any]:
    out = spec.to_dict()
    configs = out.get("mig-configs")
    if configs is None:
        return out
    ordered: dict[str, Any] = {}
    for name in sorted(configs):
        entries = []
        for entry in configs[name]:
            mig_devices = entry.get("mig-devices")
            if mig_devices is not None:
                entry["mig-devices"] = {key: mig_devices[key] for key in sorted(mig_devices)}
            elif for_yaml:
                entry["mig-devices"] = {}
            if for_yaml:
                for key in ("device-filter", "devices"):
                    if isinstance(entry.get(key), list):
                        entry[key] = _FlowList(entry[key])
            entries.append(entry)
        ordered[name] = entries
    out["mig-configs"] = ordered
    return out


def write_output(stream: TextIO, spec: Spec, output_format: str) -> None:
    """Write ``spec`` to ``stream`` as YAML or indented JSON."""
    if output_format == YAML_FORMAT:
        text = yaml.dump(
            _output_data(spec, for_yaml=True),
            Dumper=_Dumper,
            sort_keys=False,
            default_flow_style=False,
            allow_unicode=True,
        )
        kind = "YAML"
    elif output_format == JSON_FORMAT:
        text = json.dumps(_output_data(spec, for_yaml=False), indent=2, ensure_ascii=False)
        kind = "JSON"
    else:
        return
    try:
        stream.write(text)
    except OSError as err:
        raise MigPartedError(f"error writing {kind} output: {err}") from err