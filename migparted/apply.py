"""Applying a MIG configuration between a fixed set of named hooks."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any, Protocol, runtime_checkable

from migparted.hooks import HooksMap
from migparted.util import MigPartedError

APPLY_START_HOOK = "apply-start"
PRE_APPLY_MODE_HOOK = "pre-apply-mode"
PRE_APPLY_CONFIG_HOOK = "pre-apply-config"
APPLY_EXIT_HOOK = "apply-exit"


class ApplyHooks:
    """Runs the hooks registered for each stage of an apply."""

    def __init__(self, hooks: Mapping[str, list] | None = None) -> None:
        if isinstance(hooks, HooksMap):
            self.hooks = hooks
        else:
            self.hooks = HooksMap(hooks or {})

    def apply_start(self, envs: Mapping[str, str] | None = None, output: bool = False) -> None:
        """Run the hooks registered under ``apply-start``."""
        self.hooks.run(APPLY_START_HOOK, envs, output)

    def pre_apply_mode(self, envs: Mapping[str, str] | None = None, output: bool = False) -> None:
        """Run the hooks registered under ``pre-apply-mode``."""
        self.hooks.run(PRE_APPLY_MODE_HOOK, envs, output)

    def pre_apply_config(self, envs: Mapping[str, str] | None = None, output: bool = False) -> None:
        """Run the hooks registered under ``pre-apply-config``."""
        self.hooks.run(PRE_APPLY_CONFIG_HOOK, envs, output)

    def apply_exit(self, envs: Mapping[str, str] | None = None, output: bool = False) -> None:
        """Run the hooks registered under ``apply-exit``."""
        self.hooks.run(APPLY_EXIT_HOOK, envs, output)


@runtime_checkable
class MigConfigApplier(Protocol):
    """What is needed to check and apply a MIG configuration on a node.

    The ``assert_*`` methods raise when the node does not match; the
    ``apply_*`` methods raise when the change cannot be made.
    """

    def assert_mig_mode(self) -> None:
        """Raise unless the desired MIG mode is already in place."""

    def apply_mig_mode(self) -> None:
        """Put the desired MIG mode in place."""

    def assert_mig_config(self) -> None:
        """Raise unless the desired MIG devices are already in place."""

    def apply_mig_config(self) -> None:
        """Put the desired MIG devices in place."""


def _format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def hooks_envs(flag_values: Mapping[Any, Any]) -> dict[str, str]:
    """Build the environment handed to hooks from the command's flag values.

    Keys are an environment variable name, or a tuple of names that all
    receive the same value.
    """
    envs: dict[str, str] = {}
    for names, value in flag_values.items():
        name_list: Iterable[str] = (names,) if isinstance(names, str) else names
        for name in name_list:
            envs[name] = _format_value(value)
    return envs


def _apply_stages(
    logger: logging.Logger,
    envs: Mapping[str, str],
    debug: bool,
    mode_only: bool,
    hooks: ApplyHooks,
    applier: MigConfigApplier,
) -> None:
    logger.debug("Checking current MIG mode...")
    try:
        applier.assert_mig_mode()
    except Exception:
        logger.debug("Running pre-apply-mode hook")
        try:
            hooks.pre_apply_mode(envs, debug)
        except Exception as err:
            raise MigPartedError(f"error running pre-apply-mode hook: {err}") from err
        logger.debug("Applying MIG mode change...")
        applier.apply_mig_mode()

    if mode_only:
        return

    logger.debug("Checking current MIG device configuration...")
    try:
        applier.assert_mig_config()
    except Exception:
        logger.debug("Running pre-apply-config hook")
        try:
            hooks.pre_apply_config(envs, debug)
        except Exception as err:
            raise MigPartedError(f"error running pre-apply-config hook: {err}") from err
        logger.debug("Applying MIG device configuration...")
        applier.apply_mig_config()


def apply_mig_config_with_hooks(
    logger: logging.Logger,
    envs: Mapping[str, str],
    debug: bool,
    mode_only: bool,
    hooks: ApplyHooks,
    applier: MigConfigApplier,
) -> None:
    """Bring the node to the applier's configuration, running hooks around each step.

    The ``apply-exit`` hooks run whenever ``apply-start`` succeeded. If the
    apply itself failed, a failing exit hook is only logged; otherwise its
    failure is raised. With ``mode_only`` only the MIG mode is applied.
    """
    logger.debug("Running apply-start hook")
    try:
        hooks.apply_start(envs, debug)
    except Exception as err:
        raise MigPartedError(f"error running apply-start hook: {err}") from err

    try:
        _apply_stages(logger, envs, debug, mode_only, hooks, applier)
    except BaseException:
        logger.debug("Running apply-exit hook")
        try:
            hooks.apply_exit(envs, debug)
        except Exception as exit_err:
            logger.error("Error running apply-exit hook: %s", exit_err)
        raise

    logger.debug("Running apply-exit hook")
    try:
        hooks.apply_exit(envs, debug)
    except Exception as err:
        raise MigPartedError(f"error running apply-exit hook: {err}") from err