"""
Training Logging
================

Console and file logging for training runs.

This module provides:
- TrainingLogger: timestamped messages to stdout and ``NNN_log``, epoch
  status lines to ``NNN_log`` (verbose) and ``NNN_perf`` (columns), and
  optional TensorBoard scalars
- Formatting utilities for console output

Only the main worker writes; other workers get a silent logger.

Author: Speech Alignment Training Framework Team
License: MIT
"""

from __future__ import annotations
import math
import os
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

try:
    from torch.utils.tensorboard import SummaryWriter
    TENSORBOARD_AVAILABLE = True
except ImportError:
    TENSORBOARD_AVAILABLE = False
    SummaryWriter = None  # type: ignore


def run_filename(path: str, name: str, run_index: int) -> str:
    """``<path>/<NNN>_<name>``."""
    return os.path.join(path, "%03d_%s" % (run_index, name))


class TrainingLogger:
    """
    Structured logging for a training run.

    Parameters:
        path: experiment directory (None: console only)
        run_index: run index used to prefix the log files
        is_main: only the main worker prints and writes files
        verbose: print to console (default: True)
        tensorboard: also write scalars under ``<path>/tensorboard``

    Example:
        >>> logger = TrainingLogger('/tmp/exp', run_index=1)
        >>> logger.info("starting")
        >>> logger.log_status(epoch=1, phase='main', lr=0.1, lr_criterion=0.0,
        ...                   values={'loss': 12.5, 'train': 40.2})
        >>> logger.finalize()
    """

    def __init__(
        self,
        path: Optional[str] = None,
        run_index: int = 1,
        is_main: bool = True,
        verbose: bool = True,
        tensorboard: bool = False
    ):
        self.path = path
        self.run_index = run_index
        self.is_main = is_main
        self.verbose = verbose and is_main
        self._history: List[Dict[str, Any]] = []
        self._perf_header_written = False
        self._step = 0

        self._file = None
        self._perf = None
        self.log_filename = None
        self.perf_filename = None
        if is_main and path:
            os.makedirs(path, exist_ok=True)
            self.log_filename = run_filename(path, 'log', run_index)
            self.perf_filename = run_filename(path, 'perf', run_index)
            self._file = open(self.log_filename, 'a')
            self._perf = open(self.perf_filename, 'a')

        self._writer = None
        if tensorboard and is_main and path:
            if TENSORBOARD_AVAILABLE:
                self._writer = SummaryWriter(os.path.join(path, 'tensorboard'))
            else:
                self.warning("TensorBoard requested but not installed")

    def _write(self, message: str) -> None:
        """Write message to outputs."""
        if self.verbose:
            print(message)
        if self._file:
            self._file.write(message + "\n")
            self._file.flush()

    def info(self, message: str) -> None:
        """Log informational message."""
        timestamp = datetime.now().strftime("%H:%M:%S")
        self._write(f"[{timestamp}] INFO: {message}")

    def warning(self, message: str) -> None:
        """Log warning message."""
        timestamp = datetime.now().strftime("%H:%M:%S")
        self._write(f"[{timestamp}] WARNING: {message}")

    def error(self, message: str) -> None:
        """Log error message."""
        timestamp = datetime.now().strftime("%H:%M:%S")
        self._write(f"[{timestamp}] ERROR: {message}")

    def log_config(self, config: Dict[str, Any]) -> None:
        """Log configuration dictionary."""
        self._write("=" * 60)
        self._write("CONFIGURATION")
        self._write("=" * 60)
        for key, value in config.items():
            self._write(f"  {key}: {value}")
        self._write("=" * 60)

    # ========================
    # Epoch Status
    # ========================

    @staticmethod
    def _format(value: Any) -> str:
        if isinstance(value, float):
            if math.isnan(value):
                return 'nan'
            if value != 0 and abs(value) < 1e-3:
                return f"{value:.2e}"
            return f"{value:.4f}" if abs(value) < 100 else f"{value:.2f}"
        return str(value)

    def format_status(
        self,
        epoch: int,
        phase: str,
        lr: float,
        lr_criterion: float,
        values: Dict[str, Any]
    ) -> Dict[str, str]:
        """
        Render one status record twice.

        Returns a dict with ``verbose`` (``name value`` pairs joined by
        " | "), ``perf`` (whitespace-separated values, dated) and
        ``header`` (perf column names).
        """
        fields = [('phase', phase), ('epoch', epoch), ('lr', lr), ('lrcrit', lr_criterion)]
        fields += list(values.items())
        verbose = " | ".join(f"{name} {self._format(value)}" for name, value in fields)
        now = datetime.now()
        perf = " ".join([now.strftime("%Y-%m-%d"), now.strftime("%H:%M:%S")] +
                        [self._format(value) for _, value in fields])
        header = " ".join(['date', 'time'] + [name for name, _ in fields])
        return {'verbose': verbose, 'perf': perf, 'header': header}

    def log_status(
        self,
        epoch: int,
        phase: str,
        lr: float,
        lr_criterion: float,
        values: Dict[str, Any]
    ) -> str:
        """
        Write the epoch status to stdout, ``NNN_log`` and ``NNN_perf``.

        The first perf line written is the ``# header``.
        """
        lines = self.format_status(epoch, phase, lr, lr_criterion, values)
        self._history.append({'epoch': epoch, 'phase': phase, **values})
        self._write(lines['verbose'])
        if self._perf:
            if not self._perf_header_written:
                self._perf.write('# ' + lines['header'] + "\n")
                self._perf_header_written = True
            self._perf.write(lines['perf'] + "\n")
            self._perf.flush()
        if self._writer is not None:
            self._step += 1
            for name, value in values.items():
                if isinstance(value, (int, float)) and not math.isnan(value):
                    self._writer.add_scalar(f"{phase}/{name}", value, self._step)
            self._writer.add_scalar(f"{phase}/lr", lr, self._step)
            self._writer.flush()
        return lines['verbose']

    def get_history(self) -> List[Dict[str, Any]]:
        """Return copy of status history."""
        return self._history.copy()

    def finalize(self) -> None:
        """Close files."""
        if self._file:
            self._file.close()
            self._file = None
        if self._perf:
            self._perf.close()
            self._perf = None
        if self._writer is not None:
            self._writer.close()
            self._writer = None

    def __del__(self):
        if getattr(self, '_file', None):
            self._file.close()
        if getattr(self, '_perf', None):
            self._perf.close()


def format_time(seconds: float) -> str:
    """Format seconds as human-readable string."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        mins = seconds / 60
        return f"{mins:.1f}min"
    else:
        hours = seconds / 3600
        return f"{hours:.1f}h"


def format_number(n: Union[int, float]) -> str:
    """Format large numbers with K/M/B suffixes."""
    if n < 1000:
        return str(int(n))
    elif n < 1_000_000:
        return f"{n/1000:.1f}K"
    elif n < 1_000_000_000:
        return f"{n/1_000_000:.1f}M"
    else:
        return f"{n/1_000_000_000:.1f}B"


__all__ = [
    'TENSORBOARD_AVAILABLE',
    'run_filename',
    'TrainingLogger',
    'format_time',
    'format_number',
]
