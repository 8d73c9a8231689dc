#!/usr/bin/env python3
"""
Speech Alignment Training Framework - Command Line Interface
============================================================

Train acoustic models with alignment criteria.

Usage:
------
    # New experiment (directory derived from the options)
    python -m cli.run --train --train train-clean --valid dev-clean \\
        --batch-size 4 --linseg 1 --lr 1e-4 --lr-crit 1e-4

    # Start from a preset
    python -m cli.run --train --preset letters_ctc --train train-clean

    # Continue the latest run of an experiment (mutable options only)
    python -m cli.run --continue ~/local/experiments/speech/<experiment> --lr 1e-5

    # Fork a model into a new experiment
    python -m cli.run --fork <experiment>/001_model_dev-clean.bin --iter 20

    # Several workers (torch.distributed, env:// rendezvous)
    torchrun --nproc_per_node 4 -m cli.run --train --distributed --train train-clean

Exit status is 2 for usage and configuration errors.

Author: Speech Alignment Training Framework Team
License: MIT
"""

import os
import sys
from pathlib import Path
from typing import Optional, Sequence

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from satf.core import (
    ConfigError,
    ResourceError,
    StartupResolver,
    TrainingSession,
    UsageError,
    format_help,
    usage,
)


def _env_int(name: str) -> Optional[int]:
    value = os.environ.get(name)
    return int(value) if value is not None else None


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    argv = sys.argv[1:] if argv is None else list(argv)
    prog = 'satf-train'

    if argv and argv[0] in ('-h', '--help'):
        print(format_help(prog))
        return 0

    try:
        plan = StartupResolver(argv, prog=prog).resolve()
        session = TrainingSession(
            plan,
            rank=_env_int('RANK'),
            world_size=_env_int('WORLD_SIZE'),
        )
        session.setup()
    except UsageError as exc:
        message = str(exc)
        if message != usage(prog):
            print(f"{prog}: {message}", file=sys.stderr)
        print(format_help(prog), file=sys.stderr)
        return 2
    except (ConfigError, ResourceError) as exc:
        print(usage(prog), file=sys.stderr)
        print(f"{prog}: {exc}", file=sys.stderr)
        return 2

    session.run()
    return 0


if __name__ == '__main__':
    sys.exit(main())
