"""Named hooks: commands run at fixed points of an apply or restore."""

from __future__ import annotations

import subprocess
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from migparted.util import MigPartedError

VERSION = "v1"


class HookError(MigPartedError):
    """A hook could not be parsed or did not run successfully."""


def _as_str(value: Any, what: str) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    raise HookError(f"invalid value for {what}: {value!r}")


def combine_envs(base: Mapping[str, str], overrides: Mapping[str, str]) -> dict[str, str]:
    """Merge two environment maps; entries in ``overrides`` win."""
    return {**base, **overrides}


def format_envs(envs: Mapping[str, str]) -> list[str]:
    """Render an environment map as ``key=value`` strings."""
    return [f"{key}={value}" for key, value in envs.items()]


def _exit_message(returncode: int) -> str:
    if returncode < 0:
        return f"signal: {-returncode}"
    return f"exit status {returncode}"


@dataclass
class HookSpec:
    """A single runnable hook."""

    command: str = ""
    args: list[str] = field(default_factory=list)
    envs: dict[str, str] = field(default_factory=dict)
    workdir: str = ""

    def run(self, envs: Mapping[str, str] | None = None, output: bool = False) -> None:
        """Run the hook with its own and the given environment variables.

        Without any variables the current environment is inherited. Output
        goes to the terminal only when ``output`` is true.
        """
        combined = combine_envs(self.envs, envs or {})
        stream = None if output else subprocess.DEVNULL
        try:
            completed = subprocess.run(
                [self.command, *self.args],
                env=combined or None,
                cwd=self.workdir or None,
                stdout=stream,
                stderr=stream,
                check=False,
            )
        except (OSError, ValueError) as err:
            raise HookError(f"error running {self.command!r}: {err}") from err
        if completed.returncode != 0:
            raise HookError(_exit_message(completed.returncode))

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "args": list(self.args),
            "envs": dict(self.envs),
            "workdir": self.workdir,
        }

    @classmethod
    def from_dict(cls, data: Any) -> HookSpec:
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise HookError(f"hook must be a mapping, got {data!r}")
        args = data.get("args") or []
        if not isinstance(args, list):
            raise HookError(f"invalid value for 'args': {args!r}")
        envs = data.get("envs") or {}
        if not isinstance(envs, Mapping):
            raise HookError(f"invalid value for 'envs': {envs!r}")
        return cls(
            command=_as_str(data.get("command") or "", "'command'"),
            args=[_as_str(arg, "'args'") for arg in args],
            envs={str(key): _as_str(value, f"env {key!r}") for key, value in envs.items()},
            workdir=_as_str(data.get("workdir") or "", "'workdir'"),
        )


class HooksMap(dict):
    """Maps a hook name to the list of hooks run under that name."""

    def run(self, name: str, envs: Mapping[str, str] | None = None, output: bool = False) -> None:
        """Run every hook registered under ``name``, stopping at the first failure."""
        for hook in self.get(name, []):
            hook.run(envs, output)


@dataclass
class HooksSpec:
    """A versioned collection of named hooks."""

    version: str = VERSION
    hooks: HooksMap = field(default_factory=HooksMap)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "hooks": {name: [hook.to_dict() for hook in specs] for name, specs in self.hooks.items()},
        }

    @classmethod
    def from_dict(cls, data: Any) -> HooksSpec:
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise HookError(f"hooks file must hold a mapping, got {data!r}")
        raw_hooks = data.get("hooks") or {}
        if not isinstance(raw_hooks, Mapping):
            raise HookError(f"invalid value for 'hooks': {raw_hooks!r}")
        hooks = HooksMap()
        for name, specs in raw_hooks.items():
            specs = specs or []
            if not isinstance(specs, list):
                raise HookError(f"hook {name!r} must hold a list of hooks")
            hooks[str(name)] = [HookSpec.from_dict(spec) for spec in specs]
        return cls(version=_as_str(data.get("version") or "", "'version'"), hooks=hooks)


def parse_hooks_file(path: str | Path) -> HooksSpec:
    """Read and parse a YAML (or JSON) hooks file."""
    try:
        text = Path(path).read_text()
    except OSError as err:
        raise HookError(f"read error: {err}") from err
    try:
        return HooksSpec.from_dict(yaml.safe_load(text))
    except (yaml.YAMLError, HookError) as err:
        raise HookError(f"unmarshal error: {err}") from err