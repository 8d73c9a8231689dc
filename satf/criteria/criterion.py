"""
Sequence Criteria
=================

Uniform interface over the alignment criteria used by the curriculum.

Every criterion maps per-frame network scores (T, N) and a target label
sequence to a scalar loss, and decodes scores to a label path. All
criteria that score label transitions are built as *views* over one
TransitionMatrix: they hold a reference to the same parameter, so an
update applied while training one criterion is seen by all others.

Variants:
---------
- ConnectionistTemporalCriterion: CTC, blank is the last class, no transitions
- AutoSegCriterion (ASG): all-paths normalizer minus target-constrained score
- FullConnectCriterion: normalizer minus the score of a given segmentation
- LinearSegCriterion: normalizer minus the score of a linear segmentation
- CrossEntropyForceAlignCriterion: frame cross-entropy on the best alignment
- MultiStateFullConnectCriterion: labels split into ``nstate`` states
- Viterbi: decode only

Adapters:
---------
Criteria work on one example. Adapters present the same
``score``/``decode`` contract for a (B, T, N) network output:

- ExampleCriterionAdapter: batch_size == 0 (one example per update)
- BatchCriterionAdapter: batch_size > 0
- ThreadedBatchCriterionAdapter: batch_size > 0 with a thread pool

Author: Speech Alignment Training Framework Team
License: MIT
"""

from __future__ import annotations
import math
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from . import functional as AF
from ..core.errors import ConfigError

ScaleFn = Callable[[int, int], float]


def unit_scale(input_size: int, target_size: int) -> float:
    return 1.0


def make_scale(onorm: str, sqnorm: bool = False) -> ScaleFn:
    """
    Per-example loss scale.

    Args:
        onorm: 'none', 'input' (1/T) or 'target' (1/L)
        sqnorm: take the square root of the scale

    Raises:
        ConfigError: unknown onorm mode
    """
    if onorm == 'none':
        return unit_scale
    if onorm == 'input':
        def scale(input_size: int, target_size: int) -> float:
            s = 1.0 / max(input_size, 1)
            return math.sqrt(s) if sqnorm else s
        return scale
    if onorm == 'target':
        def scale(input_size: int, target_size: int) -> float:
            s = 1.0 / max(target_size, 1)
            return math.sqrt(s) if sqnorm else s
        return scale
    raise ConfigError(f"invalid onorm '{onorm}' (expected none, input or target)")


class TransitionMatrix(nn.Module):
    """
    Learned label-to-label scores shared by all alignment criteria.

    ``weight[j, i]`` scores the move from class ``i`` to class ``j``.
    """

    def __init__(self, num_classes: int):
        super().__init__()
        self.num_classes = num_classes
        self.weight = nn.Parameter(torch.zeros(num_classes, num_classes))

    @torch.no_grad()
    def load(self, values: torch.Tensor) -> None:
        """Copy values in place (sharing criteria keep seeing the same tensor)."""
        if tuple(values.shape) != tuple(self.weight.shape):
            raise ConfigError(
                f"transition matrix shape {tuple(values.shape)} does not match "
                f"{tuple(self.weight.shape)} (number of classes changed?)"
            )
        self.weight.copy_(values.to(self.weight.device, self.weight.dtype))

    def extra_repr(self) -> str:
        return f"num_classes={self.num_classes}"


class SequenceCriterion(nn.Module):
    """
    Base class for per-example criteria.

    Subclasses implement ``forward(emissions, target) -> loss`` on
    emissions of shape (T, N) and a LongTensor target.
    """

    uses_transitions = True

    def __init__(
        self,
        num_classes: int,
        scale: Optional[ScaleFn] = None,
        transitions: Optional[TransitionMatrix] = None,
        nstate: int = 1
    ):
        super().__init__()
        self.num_classes = num_classes
        self.scale = scale or unit_scale
        self.nstate = nstate
        if self.uses_transitions:
            self.transitions = transitions if transitions is not None else TransitionMatrix(num_classes)

    def share(self, other: 'SequenceCriterion') -> 'SequenceCriterion':
        """Use ``other``'s transition matrix (by reference)."""
        if self.uses_transitions:
            self.transitions = other.transitions
        return self

    @property
    def trans(self) -> torch.Tensor:
        return self.transitions.weight

    def expand(self, target: torch.Tensor) -> torch.Tensor:
        """Label ids -> state ids when each label has ``nstate`` states."""
        if self.nstate == 1:
            return target
        states = torch.arange(self.nstate, device=target.device)
        return (target.unsqueeze(1) * self.nstate + states).reshape(-1)

    def viterbi(self, emissions: torch.Tensor) -> torch.Tensor:
        return AF.viterbi_path(emissions, self.trans)

    def decode(self, emissions: torch.Tensor) -> torch.Tensor:
        path = self.viterbi(emissions)
        if self.nstate > 1:
            path = torch.div(path, self.nstate, rounding_mode='floor')
        return path


class ConnectionistTemporalCriterion(SequenceCriterion):
    """CTC with the blank as the last class."""

    uses_transitions = False

    @property
    def blank(self) -> int:
        return self.num_classes - 1

    def forward(self, emissions: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
        T, L = emissions.size(0), target.numel()
        log_probs = F.log_softmax(emissions, dim=-1).unsqueeze(1)
        loss = F.ctc_loss(
            log_probs,
            target.unsqueeze(0),
            input_lengths=torch.tensor([T]),
            target_lengths=torch.tensor([L]),
            blank=self.blank,
            reduction='sum',
            zero_infinity=True,
        )
        return loss * self.scale(T, L)

    def viterbi(self, emissions: torch.Tensor) -> torch.Tensor:
        """Greedy best path, repeats merged and blanks removed."""
        with torch.no_grad():
            path = emissions.argmax(dim=-1)
            path = torch.unique_consecutive(path)
            return path[path != self.blank]


class AutoSegCriterion(SequenceCriterion):
    """
    Auto-segmentation criterion (ASG).

    loss = logadd(all paths) - logadd(paths spelling the target)

    With ``garbage=True`` the last class is an optional garbage label that
    may absorb frames between any two target labels.
    """

    def __init__(
        self,
        num_classes: int,
        posmax: bool = False,
        negmax: bool = False,
        scale: Optional[ScaleFn] = None,
        garbage: bool = False,
        nstate: int = 1,
        transitions: Optional[TransitionMatrix] = None
    ):
        super().__init__(num_classes, scale, transitions, nstate)
        self.posmax = posmax
        self.negmax = negmax
        self.garbage = num_classes - 1 if garbage else None

    def _interleave(self, target: torch.Tensor) -> torch.Tensor:
        if self.garbage is None or target.numel() < 2:
            return target
        out = target.new_full((2 * target.numel() - 1,), self.garbage)
        out[0::2] = target
        return out

    def forward(self, emissions: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
        T, L = emissions.size(0), target.numel()
        aligned = self._interleave(self.expand(target))
        fcc = AF.full_connect_score(emissions, self.trans, self.negmax)
        fal = AF.force_align_score(emissions, self.trans, aligned, self.posmax, self.garbage)
        return (fcc - fal) * self.scale(T, L)


class FullConnectCriterion(SequenceCriterion):
    """
    Normalizer minus the score of a given frame-level segmentation.

    The target holds one label per output frame; it is truncated, or padded
    with its last label, to the number of frames. A garbage class in the
    segmentation is scored like any other label.
    """

    def __init__(
        self,
        num_classes: int,
        posmax: bool = False,
        scale: Optional[ScaleFn] = None,
        transitions: Optional[TransitionMatrix] = None
    ):
        super().__init__(num_classes, scale, transitions)
        self.posmax = posmax

    def forward(self, emissions: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
        T = emissions.size(0)
        path = target[:T]
        if path.numel() < T:
            path = torch.cat([path, path[-1:].expand(T - path.numel())])
        fcc = AF.full_connect_score(emissions, self.trans, self.posmax)
        return (fcc - AF.path_score(emissions, self.trans, path)) * self.scale(T, target.numel())


class LinearSegCriterion(SequenceCriterion):
    """
    Warmup criterion: normalizer minus the score of a linear segmentation.

    With ``freeze_transitions`` the transition matrix receives no gradient.
    """

    def __init__(
        self,
        num_classes: int,
        negmax: bool = False,
        scale: Optional[ScaleFn] = None,
        freeze_transitions: bool = False,
        nstate: int = 1,
        transitions: Optional[TransitionMatrix] = None
    ):
        super().__init__(num_classes, scale, transitions, nstate)
        self.negmax = negmax
        self.freeze_transitions = freeze_transitions

    def forward(self, emissions: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
        T, L = emissions.size(0), target.numel()
        trans = self.trans.detach() if self.freeze_transitions else self.trans
        path = AF.linear_segmentation(self.expand(target), T)
        fcc = AF.full_connect_score(emissions, trans, self.negmax)
        return (fcc - AF.path_score(emissions, trans, path)) * self.scale(T, L)


class CrossEntropyForceAlignCriterion(SequenceCriterion):
    """Frame-level cross-entropy against the best forced alignment of the target."""

    def forward(self, emissions: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
        T, L = emissions.size(0), target.numel()
        path = AF.force_align_path(emissions.detach(), self.trans.detach(), self.expand(target))
        log_probs = F.log_softmax(emissions, dim=-1)
        frames = torch.arange(T, device=emissions.device)
        return -log_probs[frames, path].sum() * self.scale(T, L)


class MultiStateFullConnectCriterion(SequenceCriterion):
    """
    Each label owns ``nstate`` consecutive classes, visited in order.

    The network emits ``num_labels * nstate`` classes; decoding folds states
    back to labels.
    """

    def __init__(
        self,
        num_labels: int,
        nstate: int = 1,
        posmax: bool = False,
        scale: Optional[ScaleFn] = None,
        transitions: Optional[TransitionMatrix] = None
    ):
        super().__init__(num_labels * nstate, scale, transitions, nstate)
        self.num_labels = num_labels
        self.posmax = posmax

    def forward(self, emissions: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
        T, L = emissions.size(0), target.numel()
        states = self.expand(target)
        fcc = AF.full_connect_score(emissions, self.trans, self.posmax)
        fal = AF.force_align_score(emissions, self.trans, states, self.posmax)
        return (fcc - fal) * self.scale(T, L)


class Viterbi(SequenceCriterion):
    """Decode-only criterion."""

    def forward(self, emissions: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
        raise RuntimeError("Viterbi is decode-only and cannot be trained")


# ========================
# Adapters
# ========================

class CriterionAdapter:
    """
    ``score``/``decode`` over a (B, T, N) network output.

    ``score`` returns the per-example losses and the gradient with respect
    to the network output; gradients for the transition matrix are
    accumulated into its ``.grad`` as a side effect.
    """

    def __init__(self, criterion: SequenceCriterion):
        self.criterion = criterion

    @property
    def transitions(self) -> Optional[TransitionMatrix]:
        return getattr(self.criterion, 'transitions', None)

    def parameters(self) -> List[nn.Parameter]:
        t = self.transitions
        return [t.weight] if t is not None else []

    def _losses(
        self,
        output: torch.Tensor,
        output_sizes: Sequence[int],
        targets: Sequence[torch.Tensor]
    ) -> List[torch.Tensor]:
        raise NotImplementedError

    def score(
        self,
        output: torch.Tensor,
        output_sizes: Sequence[int],
        targets: Sequence[torch.Tensor]
    ) -> Tuple[List[float], torch.Tensor]:
        leaf = output.detach().requires_grad_(True)
        losses = self._losses(leaf, output_sizes, targets)
        torch.stack(losses).sum().backward()
        return [float(l) for l in losses], leaf.grad

    def decode(self, output: torch.Tensor, output_sizes: Sequence[int]) -> List[torch.Tensor]:
        with torch.no_grad():
            return [
                self.criterion.decode(output[b, :int(output_sizes[b])])
                for b in range(output.size(0))
            ]

    def __repr__(self) -> str:
        return f"{type(self).__name__}({type(self.criterion).__name__})"


class ExampleCriterionAdapter(CriterionAdapter):
    """One example per update."""

    def _losses(self, output, output_sizes, targets):
        if output.size(0) != 1:
            raise ValueError(f"per-example criterion got a batch of {output.size(0)}")
        return [self.criterion(output[0, :int(output_sizes[0])], targets[0])]


class BatchCriterionAdapter(CriterionAdapter):
    """Sequential loop over the examples of a batch."""

    def __init__(self, criterion: SequenceCriterion, batch_size: int):
        super().__init__(criterion)
        self.batch_size = batch_size

    def _losses(self, output, output_sizes, targets):
        return [
            self.criterion(output[b, :int(output_sizes[b])], targets[b])
            for b in range(output.size(0))
        ]


class ThreadedBatchCriterionAdapter(BatchCriterionAdapter):
    """Examples of a batch scored concurrently; backward runs on the caller."""

    def __init__(self, criterion: SequenceCriterion, batch_size: int):
        super().__init__(criterion, batch_size)
        self._pool = ThreadPoolExecutor(max_workers=max(batch_size, 1))

    def _losses(self, output, output_sizes, targets):
        futures = [
            self._pool.submit(self.criterion, output[b, :int(output_sizes[b])], targets[b])
            for b in range(output.size(0))
        ]
        return [f.result() for f in futures]

    def close(self) -> None:
        self._pool.shutdown(wait=True)


def make_adapter(
    criterion: SequenceCriterion,
    batch_size: int = 0,
    multithreaded: bool = False
) -> CriterionAdapter:
    """
    Select the adapter for a batching mode.

    batch_size > 0 selects a batched adapter (thread-parallel with
    ``multithreaded``); batch_size == 0 selects the per-example adapter.
    """
    if batch_size > 0 and multithreaded:
        return ThreadedBatchCriterionAdapter(criterion, batch_size)
    if batch_size > 0:
        return BatchCriterionAdapter(criterion, batch_size)
    return ExampleCriterionAdapter(criterion)


class CriterionSet:
    """
    All criteria of a run, built once over a single TransitionMatrix.

    Attributes:
        transitions: the shared TransitionMatrix
        criteria: name -> per-example criterion
        linseg / force_align / main / evaluation: adapters used by the
            curriculum phases and the evaluator
    """

    def __init__(
        self,
        transitions: TransitionMatrix,
        criteria: Dict[str, SequenceCriterion],
        main: str,
        evaluation: str,
        batch_size: int = 0,
        multithreaded: bool = False
    ):
        self.transitions = transitions
        self.criteria = criteria
        self.main_name = main
        self.evaluation_name = evaluation
        self._adapters = {
            name: make_adapter(c, batch_size, multithreaded)
            for name, c in criteria.items()
        }

    @classmethod
    def build(
        cls,
        options,
        num_classes: int,
        scale: Optional[ScaleFn] = None,
        freeze_linseg_transitions: bool = False
    ) -> 'CriterionSet':
        """
        Build every criterion variant as a view over one transition matrix.

        Args:
            options: TrainingConfig
            num_classes: number of network output classes
            scale: per-example loss scale
            freeze_linseg_transitions: warmup does not train transitions
        """
        opt = options
        nstate = opt.nstate if opt.msc else 1
        if num_classes % nstate != 0:
            raise ConfigError(
                f"number of classes {num_classes} is not divisible by nstate={nstate}"
            )
        transitions = TransitionMatrix(num_classes)
        criteria: Dict[str, SequenceCriterion] = {
            'ctc': ConnectionistTemporalCriterion(num_classes, scale),
            'asg': AutoSegCriterion(
                num_classes, opt.posmax, opt.negmax, scale,
                garbage=opt.garbage, nstate=nstate, transitions=transitions),
            'fcc': FullConnectCriterion(
                num_classes, opt.posmax, scale, transitions=transitions),
            'msc': MultiStateFullConnectCriterion(
                num_classes // nstate, nstate, opt.posmax, scale, transitions=transitions),
            'linseg': LinearSegCriterion(
                num_classes, opt.negmax, scale, freeze_linseg_transitions,
                nstate=nstate, transitions=transitions),
            'force_align': CrossEntropyForceAlignCriterion(
                num_classes, scale, transitions=transitions, nstate=nstate),
            'viterbi': Viterbi(num_classes, scale, transitions=transitions, nstate=nstate),
        }
        if opt.ctc:
            main = 'ctc'
        elif opt.seg:
            main = 'fcc'
        else:
            main = 'asg'
        if opt.ctc:
            evaluation = 'ctc'
        elif opt.msc:
            evaluation = 'msc'
        else:
            evaluation = 'viterbi'
        return cls(transitions, criteria, main, evaluation, opt.batch_size, opt.mt_criterion)

    def adapter(self, name: str) -> CriterionAdapter:
        return self._adapters[name]

    @property
    def linseg(self) -> CriterionAdapter:
        return self._adapters['linseg']

    @property
    def force_align(self) -> CriterionAdapter:
        return self._adapters['force_align']

    @property
    def main(self) -> CriterionAdapter:
        return self._adapters[self.main_name]

    @property
    def evaluation(self) -> CriterionAdapter:
        return self._adapters[self.evaluation_name]

    def to(self, device) -> 'CriterionSet':
        self.transitions.to(device)
        return self

    def close(self) -> None:
        for adapter in self._adapters.values():
            if isinstance(adapter, ThreadedBatchCriterionAdapter):
                adapter.close()


__all__ = [
    'ScaleFn',
    'make_scale',
    'unit_scale',
    'TransitionMatrix',
    'SequenceCriterion',
    'ConnectionistTemporalCriterion',
    'AutoSegCriterion',
    'FullConnectCriterion',
    'LinearSegCriterion',
    'CrossEntropyForceAlignCriterion',
    'MultiStateFullConnectCriterion',
    'Viterbi',
    'CriterionAdapter',
    'ExampleCriterionAdapter',
    'BatchCriterionAdapter',
    'ThreadedBatchCriterionAdapter',
    'make_adapter',
    'CriterionSet',
]
