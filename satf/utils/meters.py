"""
Training Meters
===============

Timers, averages and error-rate meters read by the status line.

This module provides:
- TimeMeter: wall-clock timer (optionally per unit of work)
- TimerSet: named, pausable stopwatches of one measurement window
- AverageValueMeter: running mean / std of a scalar
- EditDistanceMeter: Levenshtein error rate (percent) over many sequences
- FrameErrorMeter: frame-level error rate (percent) of aligned paths
- SpeechStatMeter: input / target size statistics
- TrainingMeters: every meter of a run, with cluster-wide snapshots

Author: Speech Alignment Training Framework Team
License: MIT
"""

from __future__ import annotations
import math
import time
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence, Tuple

import torch
from edit_distance import SequenceMatcher


def _as_list(x) -> list:
    if isinstance(x, torch.Tensor):
        return [int(v) for v in x.tolist()]
    return list(x)


class TimeMeter:
    """
    Accumulating timer.

    With ``unit=True`` :meth:`value` is the time per unit counted with
    :meth:`inc_unit` (seconds per sample, per batch, ...).
    """

    def __init__(self, unit: bool = False):
        self.unit = unit
        self.reset()

    def reset(self) -> None:
        self._elapsed = 0.0
        self._units = 0
        self._start: Optional[float] = time.perf_counter()

    def stop(self) -> None:
        if self._start is not None:
            self._elapsed += time.perf_counter() - self._start
            self._start = None

    def resume(self) -> None:
        if self._start is None:
            self._start = time.perf_counter()

    def inc_unit(self, n: int = 1) -> None:
        self._units += n

    @property
    def running(self) -> bool:
        return self._start is not None

    def elapsed(self) -> float:
        total = self._elapsed
        if self._start is not None:
            total += time.perf_counter() - self._start
        return total

    def value(self) -> float:
        if self.unit:
            return self.elapsed() / self._units if self._units else 0.0
        return self.elapsed()


class TimerSet:
    """
    Named, pausable stopwatches sharing one measurement window.

    Example:
        >>> timers = TimerSet(['network', 'criterion'], unit=True)
        >>> timers.stop('criterion')
        >>> timers['criterion'].running
        False
    """

    def __init__(self, names: Sequence[str], unit: bool = False):
        self.meters: Dict[str, TimeMeter] = OrderedDict((n, TimeMeter(unit=unit)) for n in names)

    def __getitem__(self, name: str) -> TimeMeter:
        return self.meters[name]

    def _select(self, names) -> List[TimeMeter]:
        return [self.meters[n] for n in (names or self.meters)]

    def reset(self, *names: str) -> None:
        for m in self._select(names):
            m.reset()

    def stop(self, *names: str) -> None:
        for m in self._select(names):
            m.stop()

    def resume(self, *names: str) -> None:
        for m in self._select(names):
            m.resume()

    def inc_unit(self, n: int = 1) -> None:
        for m in self.meters.values():
            m.inc_unit(n)

    def values(self) -> Dict[str, float]:
        return OrderedDict((name, m.value()) for name, m in self.meters.items())


class AverageValueMeter:
    """Running mean and standard deviation."""

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self.n = 0
        self.sum = 0.0
        self.sum_sq = 0.0

    def add(self, value: float, n: int = 1) -> None:
        self.n += n
        self.sum += value * n
        self.sum_sq += value * value * n

    def value(self) -> Tuple[float, float]:
        if self.n == 0:
            return math.nan, math.nan
        mean = self.sum / self.n
        var = max(self.sum_sq / self.n - mean * mean, 0.0)
        return mean, math.sqrt(var)


class EditDistanceMeter:
    """
    Error rate in percent: total edits / total reference length * 100.

    Example:
        >>> meter = EditDistanceMeter()
        >>> meter.add([1, 2, 4], [1, 2, 3])
        >>> round(meter.value(), 2)
        33.33
    """

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self.edits = 0
        self.n = 0

    def add(self, output, target) -> None:
        ref = _as_list(target)
        hyp = _as_list(output)
        self.edits += SequenceMatcher(a=ref, b=hyp).distance()
        self.n += len(ref)

    def value(self) -> float:
        return 100.0 * self.edits / self.n if self.n else 0.0


class FrameErrorMeter:
    """Percentage of frames whose label differs from the reference."""

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self.errors = 0
        self.n = 0

    def add(self, output, target) -> None:
        hyp = _as_list(output)
        ref = _as_list(target)
        length = min(len(hyp), len(ref))
        self.errors += sum(1 for h, r in zip(hyp[:length], ref[:length]) if h != r)
        self.errors += len(ref) - length
        self.n += len(ref)

    def value(self) -> float:
        return 100.0 * self.errors / self.n if self.n else 0.0


class SpeechStatMeter:
    """Input (frames) and target (labels) size statistics."""

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self.n = 0
        self.isz = 0
        self.tsz = 0
        self.max_isz = 0
        self.max_tsz = 0

    def add(self, input_size: int, target_size: int) -> None:
        self.n += 1
        self.isz += int(input_size)
        self.tsz += int(target_size)
        self.max_isz = max(self.max_isz, int(input_size))
        self.max_tsz = max(self.max_tsz, int(target_size))

    def value(self) -> Dict[str, float]:
        n = max(self.n, 1)
        return {
            'n': self.n,
            'isz': self.isz / n,
            'tsz': self.tsz / n,
            'maxisz': self.max_isz,
            'maxtsz': self.max_tsz,
        }


class EvalMeters:
    """Letter, word and decoder-word error meters of one evaluation set."""

    def __init__(self):
        self.edit = EditDistanceMeter()
        self.word_edit = EditDistanceMeter()
        self.decoder_word_edit = EditDistanceMeter()

    def reset(self) -> None:
        self.edit.reset()
        self.word_edit.reset()
        self.decoder_word_edit.reset()


class TrainingMeters:
    """
    All meters of a training run.

    Train meters are reset at the start of each phase and after each
    epoch's status line; timers and statistics at the start of each epoch.
    """

    def __init__(
        self,
        valid_names: Sequence[str] = (),
        test_names: Sequence[str] = (),
        frame_error: bool = False
    ):
        self.runtime = TimeMeter()
        self.timers = TimerSet(['batch', 'sample', 'network', 'criterion'], unit=True)
        self.loss = AverageValueMeter()
        self.train_edit = EditDistanceMeter()
        self.train_frame_error = FrameErrorMeter() if frame_error else None
        self.word_edit = EditDistanceMeter()
        self.decoder_word_edit = EditDistanceMeter()
        self.stats = SpeechStatMeter()
        self.valid: Dict[str, EvalMeters] = OrderedDict((n, EvalMeters()) for n in valid_names)
        self.test: Dict[str, EvalMeters] = OrderedDict((n, EvalMeters()) for n in test_names)

    @property
    def timer(self) -> TimeMeter:
        return self.timers['batch']

    @property
    def sample_timer(self) -> TimeMeter:
        return self.timers['sample']

    @property
    def network_timer(self) -> TimeMeter:
        return self.timers['network']

    @property
    def criterion_timer(self) -> TimeMeter:
        return self.timers['criterion']

    def reset_train(self) -> None:
        self.loss.reset()
        self.train_edit.reset()
        self.word_edit.reset()
        self.decoder_word_edit.reset()

    def reset_epoch(self) -> None:
        self.runtime.reset()
        if self.train_frame_error is not None:
            self.train_frame_error.reset()
        self.stats.reset()
        self.timers.reset()
        self.timers.stop('network', 'criterion')

    def stop_timers(self) -> None:
        self.runtime.stop()
        self.timers.stop('batch', 'sample', 'network')

    def inc_unit(self) -> None:
        self.timers.inc_unit()

    def snapshot(self, aggregator, words: bool = False, decoder_words: bool = False) -> 'OrderedDict[str, float]':
        """
        Cluster-wide values of every meter, in status-line order.

        Must be called by every worker (it issues collective reductions).
        """
        values: 'OrderedDict[str, float]' = OrderedDict()
        values['runtime'] = aggregator.average(self.runtime.value() / 3600.0)
        values['bch'] = aggregator.average(self.timer.value() * 1000.0)
        values['smp'] = aggregator.average(self.sample_timer.value() * 1000.0)
        values['net'] = aggregator.average(self.network_timer.value() * 1000.0)
        values['crt'] = aggregator.average(self.criterion_timer.value() * 1000.0)
        loss_sum, loss_n = aggregator.values([self.loss.sum, self.loss.n], average=False)
        values['loss'] = loss_sum / loss_n if loss_n else math.nan
        values['train'] = aggregator.edit_distance(self.train_edit)
        if self.train_frame_error is not None:
            errors, n = aggregator.values(
                [self.train_frame_error.errors, self.train_frame_error.n], average=False)
            values['trainframe'] = 100.0 * errors / n if n else 0.0
        if words:
            values['trainwer'] = aggregator.edit_distance(self.word_edit)
        for prefix, group in (('valid', self.valid), ('test', self.test)):
            for name, m in group.items():
                values[f'{prefix}:{name}'] = aggregator.edit_distance(m.edit)
                if words:
                    values[f'{prefix}wer:{name}'] = aggregator.edit_distance(m.word_edit)
                if decoder_words:
                    values[f'{prefix}bmr:{name}'] = aggregator.edit_distance(m.decoder_word_edit)
        n, isz, tsz = aggregator.values([self.stats.n, self.stats.isz, self.stats.tsz], average=False)
        values['nsmp'] = n
        values['isz'] = isz / n if n else 0.0
        values['tsz'] = tsz / n if n else 0.0
        max_isz, max_tsz = aggregator.maximum([self.stats.max_isz, self.stats.max_tsz])
        values['maxisz'] = int(max_isz)
        values['maxtsz'] = int(max_tsz)
        return values


__all__ = [
    'TimeMeter',
    'TimerSet',
    'AverageValueMeter',
    'EditDistanceMeter',
    'FrameErrorMeter',
    'SpeechStatMeter',
    'EvalMeters',
    'TrainingMeters',
]
