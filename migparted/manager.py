"""Node agent pieces: waiting for MIG config changes and running the reconfigure script."""

from __future__ import annotations

import os
import posixpath
import subprocess
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from migparted.util import MigPartedError

RESOURCE_NODES = "nodes"
MIG_CONFIG_LABEL = "nvidia.com/mig.config"

DEFAULT_RECONFIGURE_SCRIPT = "/usr/bin/reconfigure-mig.sh"
DEFAULT_HOST_ROOT_MOUNT = "/host"
DEFAULT_HOST_NVIDIA_DIR = "/usr/local/nvidia"
DEFAULT_HOST_MIG_MANAGER_STATE_FILE = "/etc/systemd/system/nvidia-mig-manager.service.d/override.conf"
DEFAULT_HOST_KUBELET_SYSTEMD_SERVICE = "kubelet.service"
DEFAULT_GPU_CLIENTS_NAMESPACE = "default"
DEFAULT_NVIDIA_DRIVER_ROOT = "/run/nvidia/driver"
DEFAULT_DRIVER_ROOT_CTR_PATH = "/run/nvidia/driver"
DEFAULT_NVIDIA_CDI_HOOK_PATH = "/usr/local/nvidia/toolkit/nvidia-cdi-hook"

LIBRARY_SEARCH_PATHS = (
    "/usr/lib64",
    "/usr/lib/x86_64-linux-gnu",
    "/usr/lib/aarch64-linux-gnu",
    "/lib64",
    "/lib/x86_64-linux-gnu",
    "/lib/aarch64-linux-gnu",
)

BINARY_SEARCH_PATHS = (
    "/usr/bin",
    "/usr/sbin",
    "/bin",
    "/sbin",
)


def _clean(path: str) -> str:
    """Lexically normalise a path the way a slash-separated path cleaner would."""
    if not path:
        return "."
    cleaned = posixpath.normpath(path)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def _join(*parts: str) -> str:
    """Join path parts without letting an absolute part discard the earlier ones."""
    return _clean("/".join(part for part in parts if part))


class SyncableMigConfig:
    """Holds the latest MIG config label value and hands out each new value once."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._current = ""
        self._last_read = ""

    def set(self, value: str) -> None:
        """Record a new value, waking readers when it is not empty."""
        with self._cond:
            self._current = value
            if self._current:
                self._cond.notify_all()

    def get(self) -> str:
        """Return the current value, first waiting for a change if it was already read."""
        with self._cond:
            if self._last_read == self._current:
                self._cond.wait()
            self._last_read = self._current
            return self._last_read


def resolve_link(path: str | Path) -> str:
    """Return the fully resolved target of ``path``, which must exist."""
    try:
        return os.path.realpath(path, strict=True)
    except OSError as err:
        raise MigPartedError(f"error resolving link '{path}': {err}") from err


@dataclass(frozen=True)
class DriverRoot:
    """A directory tree that holds a driver installation."""

    path: str

    def find_file(self, name: str, search_in: Iterable[str] = ()) -> str:
        """Find ``name`` at the root or in one of the given folders, resolving links."""
        for folder in ("/", *search_in):
            candidate = _join(str(self.path), folder, name)
            try:
                return resolve_link(candidate)
            except MigPartedError:
                continue
        raise MigPartedError(f'error locating "{name}"')

    def driver_library_path(self) -> str:
        """Return the path of ``libnvidia-ml.so.1`` below the root."""
        return self.find_file("libnvidia-ml.so.1", LIBRARY_SEARCH_PATHS)

    def nvidia_smi_path(self) -> str:
        """Return the path of the ``nvidia-smi`` executable below the root."""
        return self.find_file("nvidia-smi", BINARY_SEARCH_PATHS)


@dataclass
class GPUClients:
    """Host services that use the GPUs and must be stopped across a reconfiguration."""

    version: str = ""
    systemd_services: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> GPUClients:
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise MigPartedError(f"GPU clients file must hold a mapping, got {data!r}")
        version = data.get("version") or ""
        services = data.get("systemd-services") or []
        if not isinstance(version, str):
            raise MigPartedError(f"invalid value for 'version': {version!r}")
        if not isinstance(services, list) or not all(isinstance(s, str) for s in services):
            raise MigPartedError(f"invalid value for 'systemd-services': {services!r}")
        return cls(version=version, systemd_services=list(services))


def parse_gpu_clients_file(path: str | Path | None) -> GPUClients:
    """Read a GPU clients file; an empty path yields no clients."""
    if not path:
        return GPUClients()
    try:
        text = Path(path).read_text()
    except OSError as err:
        raise MigPartedError(f"read error: {err}") from err
    try:
        return GPUClients.from_dict(yaml.safe_load(text))
    except (yaml.YAMLError, MigPartedError) as err:
        raise MigPartedError(f"unmarshal error: {err}") from err


@dataclass
class ManagerOptions:
    """Settings of the node agent."""

    node_name: str = ""
    config_file: str = ""
    kubeconfig: str = ""
    reconfigure_script: str = DEFAULT_RECONFIGURE_SCRIPT
    with_reboot: bool = False
    with_shutdown_host_gpu_clients: bool = False
    gpu_clients_file: str = ""
    host_root_mount: str = DEFAULT_HOST_ROOT_MOUNT
    host_nvidia_dir: str = DEFAULT_HOST_NVIDIA_DIR
    host_mig_manager_state_file: str = DEFAULT_HOST_MIG_MANAGER_STATE_FILE
    host_kubelet_systemd_service: str = DEFAULT_HOST_KUBELET_SYSTEMD_SERVICE
    default_gpu_clients_namespace: str = DEFAULT_GPU_CLIENTS_NAMESPACE
    cdi_enabled: bool = False
    driver_root: str = DEFAULT_NVIDIA_DRIVER_ROOT
    driver_root_ctr_path: str = DEFAULT_DRIVER_ROOT_CTR_PATH
    dev_root: str = ""
    dev_root_ctr_path: str = ""
    nvidia_cdi_hook_path: str = DEFAULT_NVIDIA_CDI_HOOK_PATH


def validate_options(options: ManagerOptions) -> None:
    """Ensure the options that have no default were given."""
    if not options.node_name:
        raise MigPartedError("invalid -n <node-name> flag: must not be empty string")
    if not options.config_file:
        raise MigPartedError("invalid -f <config-file> flag: must not be empty string")


def _strip_host_root(path: str, host_root_mount: str) -> str:
    if host_root_mount and path.startswith(host_root_mount):
        path = path[len(host_root_mount):]
    return _clean(path)


def get_paths_for_cdi(options: ManagerOptions) -> tuple[str, str]:
    """Find the NVML library and ``nvidia-smi`` relative to the host root, when needed.

    They are only needed with CDI enabled and a device root that differs
    from the driver root; otherwise both paths are empty.
    """
    if not options.cdi_enabled or options.driver_root == options.dev_root:
        return "", ""

    root = DriverRoot(_join(options.host_root_mount, options.driver_root))
    try:
        library_path = root.driver_library_path()
    except MigPartedError as err:
        raise MigPartedError(f"failed to locate driver libraries: {err}") from err
    library_path = _strip_host_root(library_path, options.host_root_mount)

    try:
        smi_path = root.nvidia_smi_path()
    except MigPartedError as err:
        raise MigPartedError(f"failed to locate nvidia-smi: {err}") from err
    smi_path = _strip_host_root(smi_path, options.host_root_mount)

    return library_path, smi_path


def build_script_args(
    options: ManagerOptions,
    mig_config_value: str,
    driver_library_path: str,
    nvidia_smi_path: str,
) -> list[str]:
    """Build the argument list passed to the reconfigure script."""
    try:
        clients = parse_gpu_clients_file(options.gpu_clients_file)
    except MigPartedError as err:
        raise MigPartedError(f"error parsing host's GPU clients file: {err}") from err

    args = [
        "-n", options.node_name,
        "-f", options.config_file,
        "-c", mig_config_value,
        "-m", options.host_root_mount,
        "-i", options.host_nvidia_dir,
        "-o", options.host_mig_manager_state_file,
        "-g", ",".join(clients.systemd_services),
        "-k", options.host_kubelet_systemd_service,
        "-p", options.default_gpu_clients_namespace,
    ]
    if options.cdi_enabled:
        args += [
            "-e",
            "-t", options.driver_root,
            "-a", options.driver_root_ctr_path,
            "-b", options.dev_root,
            "-j", options.dev_root_ctr_path,
            "-l", driver_library_path,
            "-q", nvidia_smi_path,
            "-s", options.nvidia_cdi_hook_path,
        ]
    if options.with_reboot:
        args.append("-r")
    if options.with_shutdown_host_gpu_clients:
        args.append("-d")
    return args


def run_script(
    options: ManagerOptions,
    mig_config_value: str,
    driver_library_path: str,
    nvidia_smi_path: str,
) -> None:
    """Run the reconfigure script for ``mig_config_value``; raise if it fails."""
    args = build_script_args(options, mig_config_value, driver_library_path, nvidia_smi_path)
    try:
        completed = subprocess.run([options.reconfigure_script, *args], check=False)
    except OSError as err:
        raise MigPartedError(f"error running {options.reconfigure_script!r}: {err}") from err
    if completed.returncode != 0:
        if completed.returncode < 0:
            raise MigPartedError(f"signal: {-completed.returncode}")
        raise MigPartedError(f"exit status {completed.returncode}")