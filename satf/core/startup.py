"""
Startup Resolution
==================

Turns a command line into one normalized StartupPlan.

Modes:
------
- ``--train <options>``: fresh options (optionally from ``--preset``),
  new experiment directory derived from the options
- ``--continue <dir> <options>``: options of the latest ``model_last`` in
  ``dir`` with mutable overrides, same directory, next run index
- ``--fork <model> <options>``: options of ``model`` with mutable
  overrides, weights of ``model``, new experiment directory

Everything downstream (the session) consumes the plan without knowing
which mode produced it.

Author: Speech Alignment Training Framework Team
License: MIT
"""

from __future__ import annotations
import shlex
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .config import TrainingConfig, get_preset
from .errors import ConfigError, UsageError
from .monitor import CheckpointStore, new_path
from .options import parse_overrides, usage

MODES = ('--train', '--continue', '--fork')


@dataclass(frozen=True)
class StartupPlan:
    """
    Normalized startup state.

    Attributes:
        command: '--train', '--continue' or '--fork'
        options: validated TrainingConfig
        path: experiment directory
        reload: checkpoint file the weights come from (None for --train)
        checkpoint: loaded checkpoint payload (None for --train)
        is_new_identity: False only for --continue
        cmdline: the command line, shell-quoted
    """
    command: str
    options: TrainingConfig
    path: str
    reload: Optional[str] = None
    checkpoint: Optional[Dict[str, Any]] = None
    is_new_identity: bool = True
    cmdline: str = ''


def restored_options(checkpoint: Dict[str, Any], reload: str) -> TrainingConfig:
    """Options embedded in a checkpoint; kw/dw must be present."""
    if checkpoint.get('kw') is None or checkpoint.get('dw') is None:
        raise ConfigError(f"kw and dw could not be found in model archive {reload}")
    try:
        options = checkpoint['config']['options']
    except (KeyError, TypeError) as exc:
        raise ConfigError(f"no configuration found in model archive {reload}") from exc
    return TrainingConfig.from_dict(options)


class StartupResolver:
    """
    Resolve ``argv`` (without the program name) into a StartupPlan.

    Example:
        >>> plan = StartupResolver(['--train', '--train', 'clean', '--lr', '0.1']).resolve()
        >>> plan.options.lr
        0.1
    """

    def __init__(self, argv: Sequence[str], prog: str = 'satf-train'):
        self.argv = list(argv)
        self.prog = prog

    def resolve(self) -> StartupPlan:
        argv = self.argv
        if not argv or argv[0] not in MODES:
            raise UsageError(usage(self.prog))
        command = argv[0]
        cmdline = ' '.join(shlex.quote(a) for a in [self.prog] + argv)

        if command == '--train':
            overrides = parse_overrides(argv[1:], mutable_only=False, prog=self.prog)
            preset = overrides.pop('preset', None)
            base = get_preset(preset) if preset else TrainingConfig()
            options = base.replace(**overrides).validate()
            return StartupPlan(
                command=command,
                options=options,
                path=new_path(options.run_dir, options),
                cmdline=cmdline,
            )

        if len(argv) < 2 or argv[1].startswith('--'):
            raise UsageError(usage(self.prog))
        target = argv[1]
        overrides = parse_overrides(argv[2:], mutable_only=True, prog=self.prog)

        if command == '--continue':
            reload, checkpoint = CheckpointStore.resume(target)
            options = restored_options(checkpoint, reload).replace(**overrides).validate()
            return StartupPlan(
                command=command,
                options=options,
                path=target,
                reload=reload,
                checkpoint=checkpoint,
                is_new_identity=False,
                cmdline=cmdline,
            )

        reload, checkpoint = CheckpointStore.fork(target)
        options = restored_options(checkpoint, reload).replace(**overrides).validate()
        return StartupPlan(
            command=command,
            options=options,
            path=new_path(options.run_dir, options, origin=reload),
            reload=reload,
            checkpoint=checkpoint,
            is_new_identity=True,
            cmdline=cmdline,
        )


__all__ = ['MODES', 'StartupPlan', 'StartupResolver', 'restored_options']
