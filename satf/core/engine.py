"""
Epoch Engine
============

Generic epoch loop with named hook points.

The engine owns no policy: evaluation, logging, synchronization and
checkpointing are attached through an EngineHooks object. Stages of one
phase, in order:

    on_start                         once, before the first epoch
    on_start_epoch                   every epoch
      for each batch:
        on_sample                    batch loaded (state.sample)
        network forward
        on_forward                   state.output / state.output_sizes set
        criterion score
        on_backward_criterion        state.losses / state.grad_output set
        network backward
        on_backward                  gradients complete, before the step
        optimizer step
        on_update                    parameters updated, state.t incremented
    on_end_epoch                     state.epoch incremented
    on_end                           once, after the last epoch

Author: Speech Alignment Training Framework Team
License: MIT
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import torch
import torch.nn as nn

from .config import PhaseParams, RunConfig
from ..criteria.criterion import CriterionAdapter, CriterionSet
from ..modules.gradient_clamp import set_learning_rates


@dataclass
class EngineState:
    """
    Mutable state of one phase, shared between the engine and the hooks.

    Hooks may read everything; they may mutate only gradients (in
    on_backward) and their own meters. ``epoch`` and ``t`` are advanced by
    the engine.
    """
    network: nn.Module
    criterion: CriterionAdapter
    iterator: Any
    optimizer: torch.optim.Optimizer
    params: PhaseParams
    epoch: int = 0
    t: int = 0
    sample: Any = None
    output: Optional[torch.Tensor] = None
    output_sizes: List[int] = field(default_factory=list)
    losses: List[float] = field(default_factory=list)
    grad_output: Optional[torch.Tensor] = None

    @property
    def max_epoch(self) -> int:
        return self.params.max_epoch


class EngineHooks:
    """No-op hooks; subclasses override the stages they need."""

    def on_start(self, state: EngineState) -> None:
        pass

    def on_start_epoch(self, state: EngineState) -> None:
        pass

    def on_sample(self, state: EngineState) -> None:
        pass

    def on_forward(self, state: EngineState) -> None:
        pass

    def on_backward_criterion(self, state: EngineState) -> None:
        pass

    def on_backward(self, state: EngineState) -> None:
        pass

    def on_update(self, state: EngineState) -> None:
        pass

    def on_end_epoch(self, state: EngineState) -> None:
        pass

    def on_end(self, state: EngineState) -> None:
        pass


def output_sizes(network: nn.Module, input_sizes, max_length: int) -> List[int]:
    """Valid output frames of every example of a padded batch."""
    return [min(network.output_length(int(s)), max_length) for s in input_sizes]


class EpochEngine:
    """
    Runs ``params.max_epoch`` epochs of SGD over ``state.iterator``.

    Parameters:
        device: device the batches are moved to
    """

    def __init__(self, device: Optional[torch.device] = None):
        self.device = device or torch.device('cpu')

    def train(self, state: EngineState, hooks: Optional[EngineHooks] = None) -> EngineState:
        hooks = hooks or EngineHooks()
        set_learning_rates(state.optimizer, state.params.lr, state.params.lr_criterion)
        state.network.train()

        hooks.on_start(state)
        while state.epoch < state.max_epoch:
            hooks.on_start_epoch(state)
            for batch in state.iterator:
                state.sample = batch.to(self.device)
                hooks.on_sample(state)

                state.optimizer.zero_grad(set_to_none=True)
                state.output = state.network(state.sample.inputs)
                state.output_sizes = output_sizes(
                    state.network, state.sample.input_sizes, state.output.size(1))
                hooks.on_forward(state)

                state.losses, state.grad_output = state.criterion.score(
                    state.output, state.output_sizes, state.sample.targets)
                hooks.on_backward_criterion(state)

                if state.output.requires_grad:
                    state.output.backward(state.grad_output)
                hooks.on_backward(state)

                state.optimizer.step()
                state.t += 1
                hooks.on_update(state)
            state.epoch += 1
            hooks.on_end_epoch(state)
        hooks.on_end(state)
        return state


@dataclass
class TrainingContext:
    """
    Everything the curriculum and the training hooks share.

    Built once by the session; the run configuration inside is immutable.
    """
    run: RunConfig
    network: nn.Module
    criteria: CriterionSet
    optimizer: torch.optim.Optimizer
    meters: Any
    tracker: Any
    logger: Any
    store: Any
    coordinator: Any
    aggregator: Any
    evaluator: Any
    train_iterator: Any
    valid_iterators: Dict[str, Any] = field(default_factory=dict)
    test_iterators: Dict[str, Any] = field(default_factory=dict)
    heartbeat: Optional[Callable[[], None]] = None
    clamp: Optional[Callable[[List[nn.Parameter]], None]] = None
    zero_network: Optional[nn.Module] = None
    pristine_network: Optional[nn.Module] = None

    @property
    def options(self):
        return self.run.options

    def checkpoint_network(self) -> nn.Module:
        """Network saved in checkpoints (never a wrapper or the zero network)."""
        return self.pristine_network if self.pristine_network is not None else self.network


__all__ = [
    'EngineState',
    'EngineHooks',
    'EpochEngine',
    'TrainingContext',
    'output_sizes',
]
