# migparted

A library for describing MIG (Multi-Instance GPU) partition layouts, checking
them, writing them back out, and ordering the steps and hooks of applying
them to the GPUs of a node.

A layout lives in a YAML (or JSON) configuration file that holds one or more
named configurations. Each named configuration is a list of entries saying
which GPUs it covers (by index, or `all`, optionally narrowed by a device
filter), whether MIG mode is enabled on them, and how many MIG devices of
each profile they should carry.

```yaml
version: v1
mig-configs:
  all-disabled:
    - devices: all
      mig-enabled: false
  all-1g.5gb:
    - devices: all
      mig-enabled: true
      mig-devices:
        "1g.5gb": 7
  half-and-half:
    - devices: [0, 1, 2, 3]
      mig-enabled: false
    - devices: [4, 5, 6, 7]
      mig-enabled: true
      mig-devices:
        "3g.20gb": 2
```

## Modules

- `migparted.config` parses and validates configuration files
  (`load_spec`, `parse_config_file`, `Spec`, `MigConfigSpec`) and picks out
  one named configuration (`select_mig_config`). Malformed input raises
  `SpecError`: unknown fields, a wrong or missing `version`, an empty
  `mig-configs`, `devices` given as anything other than `all` or a list of
  indices, a badly formed profile name or count in `mig-devices`,
  `mig-devices` missing while MIG is enabled, or present while it is
  disabled. `parse_config_file("-")` reads standard input.
- `migparted.export` folds a per-GPU list of `MigConfigSpec` entries into a
  compact one (`merge_mig_config_specs`): entries with the same MIG mode and
  devices are merged, and device lists and filters are shortened to `all`, a
  single string, or dropped where that says the same thing. `write_output`
  writes a `Spec` as YAML or as JSON indented by two spaces;
  `check_output_format` rejects any other format name.
- `migparted.hooks` describes commands run at named points of an apply
  (`HooksSpec`, `HooksMap`, `HookSpec`, `parse_hooks_file`). A hook runs with
  its own environment variables combined with those it is given, the given
  ones winning; when both are empty it inherits the current environment.
  Its output is shown only when asked for; a non-zero exit raises
  `HookError`. `combine_envs` and `format_envs` are the helpers behind this.
- `migparted.apply` orders the work of an apply
  (`apply_mig_config_with_hooks`): the `apply-start` hooks, a mode check and,
  if it fails, the `pre-apply-mode` hooks and a mode change, then a device
  check and, if it fails, the `pre-apply-config` hooks and a device change,
  and finally the `apply-exit` hooks, which run whenever `apply-start`
  succeeded. With `mode_only` the device step is skipped. `ApplyHooks` runs
  the hooks for each stage, `MigConfigApplier` is the protocol the caller
  implements, and `hooks_envs` builds the hook environment from flag values.
- `migparted.manager` holds the pieces of a node agent: `SyncableMigConfig`
  hands each new configuration name to a waiting reader exactly once;
  `ManagerOptions` and `validate_options` hold and check its settings;
  `get_paths_for_cdi` and `DriverRoot` locate `libnvidia-ml.so.1` and
  `nvidia-smi` under a driver root; `parse_gpu_clients_file` reads the list
  of host services to stop; `build_script_args` and `run_script` invoke the
  reconfiguration script.
- `migparted.util` has small helpers: `count_true`, `capitalize`,
  `is_nvidia_module_loaded` (reads `/proc/modules`) and
  `is_supported_nvml_version` (major version 11 or later). Every error the
  package raises derives from `MigPartedError`.

## Reading a configuration

```python
from migparted.config import load_spec, select_mig_config

with open("config.yaml") as fh:
    spec = load_spec(fh.read())

for entry in select_mig_config(spec, "half-and-half"):
    print(entry.matches_all_devices(), entry.matches_devices(4))
```

When a file holds exactly one named configuration, the name may be left
empty and that one is chosen; with more than one, a name is required.

## Writing a configuration

```python
import sys

from migparted.export import write_output

write_output(sys.stdout, spec, "yaml")
```

`"json"` is the other accepted output format.

## Applying with hooks

Supply an object implementing `MigConfigApplier` (the four methods
`assert_mig_mode`, `apply_mig_mode`, `assert_mig_config` and
`apply_mig_config`, where an assert raises when the node does not match)
and pass it to `apply_mig_config_with_hooks` together with an `ApplyHooks`
built from the hooks of a hooks file:

```python
import logging

from migparted.apply import ApplyHooks, apply_mig_config_with_hooks
from migparted.hooks import parse_hooks_file

hooks = ApplyHooks(parse_hooks_file("hooks.yaml").hooks)
apply_mig_config_with_hooks(
    logging.getLogger("migparted"), {}, False, False, hooks, my_applier
)
```

## What this package does not do

- It does not talk to GPUs. There is no code that reads or changes MIG mode
  or MIG devices, enumerates GPUs, or resets them; the applier passed to
  `apply_mig_config_with_hooks` must provide that.
- It has no command-line program. Everything is reached by importing the
  modules.
- It does not watch a cluster for node label changes. `SyncableMigConfig`
  is the hand-off point, but something else has to call `set` with each new
  value.
- It does not write or read checkpoints of the MIG state.