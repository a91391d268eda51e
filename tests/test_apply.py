import logging
import sys

import pytest

from migparted.apply import (
    ApplyHooks,
    apply_mig_config_with_hooks,
    hooks_envs,
)
from migparted.hooks import HookError, HookSpec, HooksMap
from migparted.util import MigPartedError

LOGGER = logging.getLogger("test-apply")

_WRITER = "import sys; open(sys.argv[1], 'a').write(sys.argv[2] + '\\n')"
_ENV_WRITER = "import os, sys; open(sys.argv[1], 'a').write(os.environ['MIG_TEST'] + '\\n')"


class RecordingHooks:
    def __init__(self, calls, failing=()):
        self.calls = calls
        self.failing = set(failing)
        self.seen = []

    def _run(self, name, envs, output):
        self.calls.append(name)
        self.seen.append((name, dict(envs), output))
        if name in self.failing:
            raise HookError(f"{name} broke")

    def apply_start(self, envs, output):
        self._run("apply-start", envs, output)

    def pre_apply_mode(self, envs, output):
        self._run("pre-apply-mode", envs, output)

    def pre_apply_config(self, envs, output):
        self._run("pre-apply-config", envs, output)

    def apply_exit(self, envs, output):
        self._run("apply-exit", envs, output)


class RecordingApplier:
    def __init__(self, calls, mode_ok=True, config_ok=True, apply_mode_error=None):
        self.calls = calls
        self.mode_ok = mode_ok
        self.config_ok = config_ok
        self.apply_mode_error = apply_mode_error

    def assert_mig_mode(self):
        self.calls.append("assert-mode")
        if not self.mode_ok:
            raise MigPartedError("mode differs")

    def apply_mig_mode(self):
        self.calls.append("apply-mode")
        if self.apply_mode_error is not None:
            raise self.apply_mode_error

    def assert_mig_config(self):
        self.calls.append("assert-config")
        if not self.config_ok:
            raise MigPartedError("config differs")

    def apply_mig_config(self):
        self.calls.append("apply-config")


def test_nothing_applied_when_already_matching():
    calls = []
    apply_mig_config_with_hooks(LOGGER, {}, False, False, RecordingHooks(calls), RecordingApplier(calls))
    assert calls == ["apply-start", "assert-mode", "assert-config", "apply-exit"]


def test_mode_and_config_applied_when_different():
    calls = []
    apply_mig_config_with_hooks(
        LOGGER, {}, False, False, RecordingHooks(calls), RecordingApplier(calls, mode_ok=False, config_ok=False)
    )
    assert calls == [
        "apply-start",
        "assert-mode",
        "pre-apply-mode",
        "apply-mode",
        "assert-config",
        "pre-apply-config",
        "apply-config",
        "apply-exit",
    ]


def test_mode_only_skips_config():
    calls = []
    apply_mig_config_with_hooks(
        LOGGER, {}, False, True, RecordingHooks(calls), RecordingApplier(calls, mode_ok=False, config_ok=False)
    )
    assert calls == ["apply-start", "assert-mode", "pre-apply-mode", "apply-mode", "apply-exit"]


def test_envs_and_debug_reach_every_hook():
    calls = []
    hooks = RecordingHooks(calls)
    envs = {"MIG_PARTED_CONFIG_FILE": "config.yaml"}
    apply_mig_config_with_hooks(LOGGER, envs, True, False, hooks, RecordingApplier(calls, config_ok=False))
    assert [name for name, _, _ in hooks.seen] == ["apply-start", "pre-apply-config", "apply-exit"]
    assert all(seen_envs == envs and output is True for _, seen_envs, output in hooks.seen)


def test_apply_start_failure_stops_everything():
    calls = []
    with pytest.raises(MigPartedError, match="^error running apply-start hook"):
        apply_mig_config_with_hooks(
            LOGGER, {}, False, False, RecordingHooks(calls, failing={"apply-start"}), RecordingApplier(calls)
        )
    assert calls == ["apply-start"]


def test_pre_apply_mode_failure_skips_apply_but_runs_exit():
    calls = []
    with pytest.raises(MigPartedError, match="^error running pre-apply-mode hook"):
        apply_mig_config_with_hooks(
            LOGGER,
            {},
            False,
            False,
            RecordingHooks(calls, failing={"pre-apply-mode"}),
            RecordingApplier(calls, mode_ok=False),
        )
    assert calls == ["apply-start", "assert-mode", "pre-apply-mode", "apply-exit"]


def test_pre_apply_config_failure_is_reported():
    calls = []
    with pytest.raises(MigPartedError, match="^error running pre-apply-config hook"):
        apply_mig_config_with_hooks(
            LOGGER,
            {},
            False,
            False,
            RecordingHooks(calls, failing={"pre-apply-config"}),
            RecordingApplier(calls, config_ok=False),
        )
    assert "apply-config" not in calls
    assert calls[-1] == "apply-exit"


def test_apply_error_propagates_and_exit_still_runs():
    calls = []
    error = RuntimeError("boom")
    with pytest.raises(RuntimeError) as info:
        apply_mig_config_with_hooks(
            LOGGER,
            {},
            False,
            False,
            RecordingHooks(calls),
            RecordingApplier(calls, mode_ok=False, apply_mode_error=error),
        )
    assert info.value is error
    assert calls[-1] == "apply-exit"
    assert "assert-config" not in calls


def test_exit_failure_after_success_is_raised():
    calls = []
    with pytest.raises(MigPartedError, match="^error running apply-exit hook"):
        apply_mig_config_with_hooks(
            LOGGER, {}, False, False, RecordingHooks(calls, failing={"apply-exit"}), RecordingApplier(calls)
        )
    assert calls == ["apply-start", "assert-mode", "assert-config", "apply-exit"]


def test_exit_failure_after_error_is_only_logged(caplog):
    calls = []
    error = RuntimeError("boom")
    with caplog.at_level(logging.ERROR, logger="test-apply"):
        with pytest.raises(RuntimeError) as info:
            apply_mig_config_with_hooks(
                LOGGER,
                {},
                False,
                False,
                RecordingHooks(calls, failing={"apply-exit"}),
                RecordingApplier(calls, mode_ok=False, apply_mode_error=error),
            )
    assert info.value is error
    assert any("apply-exit" in record.getMessage() for record in caplog.records)


def test_hooks_envs_formats_values():
    envs = hooks_envs(
        {
            ("MIG_PARTED_CONFIG_FILE",): "config.yaml",
            "MIG_PARTED_SKIP_RESET": True,
            "MIG_PARTED_MODE_CHANGE_ONLY": False,
            ("NVIDIA_DRIVER_ROOT", "DRIVER_ROOT"): "/run/nvidia/driver",
        }
    )
    assert envs == {
        "MIG_PARTED_CONFIG_FILE": "config.yaml",
        "MIG_PARTED_SKIP_RESET": "true",
        "MIG_PARTED_MODE_CHANGE_ONLY": "false",
        "NVIDIA_DRIVER_ROOT": "/run/nvidia/driver",
        "DRIVER_ROOT": "/run/nvidia/driver",
    }


def test_hooks_envs_empty_value():
    assert hooks_envs({"MIG_PARTED_HOOKS_FILE": ""}) == {"MIG_PARTED_HOOKS_FILE": ""}


def _writer_hook(path, text):
    return HookSpec(command=sys.executable, args=["-c", _WRITER, str(path), text])


def test_apply_hooks_run_only_their_stage(tmp_path):
    marker = tmp_path / "marker.txt"
    hooks = ApplyHooks(
        HooksMap(
            {
                "apply-start": [_writer_hook(marker, "start")],
                "apply-exit": [_writer_hook(marker, "exit")],
            }
        )
    )
    hooks.pre_apply_mode({}, False)
    hooks.pre_apply_config({}, False)
    assert not marker.exists()
    hooks.apply_start({}, False)
    hooks.apply_exit({}, False)
    assert marker.read_text().splitlines() == ["start", "exit"]


def test_apply_hooks_accept_plain_mapping(tmp_path):
    marker = tmp_path / "marker.txt"
    hooks = ApplyHooks({"pre-apply-mode": [_writer_hook(marker, "first"), _writer_hook(marker, "second")]})
    hooks.pre_apply_mode({}, False)
    assert marker.read_text().splitlines() == ["first", "second"]


def test_apply_hooks_pass_environment(tmp_path):
    marker = tmp_path / "env.txt"
    hook = HookSpec(command=sys.executable, args=["-c", _ENV_WRITER, str(marker)])
    ApplyHooks({"pre-apply-config": [hook]}).pre_apply_config({"MIG_TEST": "from-apply"}, False)
    assert marker.read_text().strip() == "from-apply"


def test_apply_hooks_failure_raises(tmp_path):
    hooks = ApplyHooks({"apply-exit": [HookSpec(command=str(tmp_path / "doesnotexist"))]})
    with pytest.raises(HookError):
        hooks.apply_exit({}, False)


def test_real_hooks_in_full_apply(tmp_path):
    marker = tmp_path / "marker.txt"
    hooks = ApplyHooks(
        {
            "apply-start": [_writer_hook(marker, "apply-start")],
            "pre-apply-mode": [_writer_hook(marker, "pre-apply-mode")],
            "pre-apply-config": [_writer_hook(marker, "pre-apply-config")],
            "apply-exit": [_writer_hook(marker, "apply-exit")],
        }
    )
    calls = []
    apply_mig_config_with_hooks(LOGGER, {}, False, False, hooks, RecordingApplier(calls, mode_ok=False))
    assert marker.read_text().splitlines() == ["apply-start", "pre-apply-mode", "apply-exit"]
    assert calls == ["assert-mode", "apply-mode", "assert-config"]