"""
Curriculum Orchestrator
=======================

Sequences the training phases and attaches the training hooks.

Phases, in order (each one run of the epoch engine):

1. linseg  - warmup against the linear segmentation criterion
             (skipped when the segmentation is given; optionally trains
             the transition matrix alone through the zero network)
2. falseg  - frame cross-entropy against the forced alignment
             (the transition matrix is not trained)
3. main    - CTC, full-connect (given segmentation) or ASG

Learning rates are scaled by the run's ``lr_norm`` (1 / batch size for
batched criteria, square-rooted with ``sqnorm``).

Lifecycle of one epoch (TrainingHooks):
---------------------------------------
- start of phase: reset train meters, broadcast parameters from rank 0
- every sample: timers, progress bar, heartbeat, periodic gc, sampled
  train error, gradient average and clamp, loss and size statistics
- end of epoch: evaluate every valid/test set, log the status line, save
  the last model and every strictly improved best model, reset meters

Example:
--------
    controller = CurriculumController(context)
    for phase in controller.phases():
        print(phase.name, phase.max_epoch, phase.lr)
    controller.run()

Author: Speech Alignment Training Framework Team
License: MIT
"""

from __future__ import annotations
import gc
from typing import Dict, List, Optional

import torch
from tqdm import tqdm

from .config import PhaseParams
from .engine import EngineHooks, EngineState, EpochEngine, TrainingContext


class TrainingHooks(EngineHooks):
    """
    Hooks of one training phase.

    Parameters:
        context: shared TrainingContext
        phase: the phase being run
    """

    def __init__(self, context: TrainingContext, phase: PhaseParams):
        self.context = context
        self.phase = phase
        self.progress: Optional[tqdm] = None
        self.improved: Dict[str, float] = {}

    def _parameters(self, state: EngineState) -> List[torch.nn.Parameter]:
        params = list(state.network.parameters())
        params.append(self.context.criteria.transitions.weight)
        return params

    # ========================
    # Hook Points
    # ========================

    def on_start(self, state):
        self.context.meters.reset_train()
        self.context.coordinator.broadcast_parameters(self._parameters(state))

    def on_start_epoch(self, state):
        ctx = self.context
        ctx.meters.reset_epoch()
        if not ctx.options.noresample:
            state.iterator.resample()
        if ctx.options.progress and ctx.coordinator.is_main:
            self.progress = tqdm(total=len(state.iterator),
                                 desc=f"{self.phase.name} epoch {state.epoch + 1}")

    def on_sample(self, state):
        ctx = self.context
        if self.progress is not None:
            self.progress.update(1)
        ctx.meters.sample_timer.stop()
        ctx.meters.network_timer.resume()
        if ctx.heartbeat is not None:
            ctx.heartbeat()

    def on_forward(self, state):
        ctx = self.context
        opt = ctx.options
        if state.t % opt.gc == 0:
            gc.collect()
        ctx.meters.network_timer.stop()
        ctx.meters.criterion_timer.resume()
        sample = state.sample
        if opt.terrsr > 0 and state.t % opt.terrsr == 0:
            ctx.evaluator.add_output(
                state.output, state.output_sizes, sample.targets, sample.words,
                ctx.meters.train_edit, ctx.meters.word_edit if opt.wer else None)
        if ctx.meters.train_frame_error is not None:
            ctx.evaluator.add_frame_errors(
                state.output, state.output_sizes, sample.targets, ctx.meters.train_frame_error)

    def on_backward_criterion(self, state):
        self.context.meters.criterion_timer.stop()
        self.context.meters.network_timer.resume()

    def on_backward(self, state):
        ctx = self.context
        params = self._parameters(state)
        ctx.coordinator.all_reduce_gradients(params)
        if ctx.clamp is not None:
            ctx.clamp(params)
        ctx.meters.network_timer.stop()

    def on_update(self, state):
        meters = self.context.meters
        for loss in state.losses:
            meters.loss.add(loss)
        for size, target in zip(state.sample.input_sizes, state.sample.targets):
            meters.stats.add(int(size), target.numel())
        meters.inc_unit()
        meters.sample_timer.resume()

    def on_end_epoch(self, state):
        ctx = self.context
        opt = ctx.options
        ctx.meters.stop_timers()
        if self.progress is not None:
            self.progress.close()
            self.progress = None

        network = state.network
        for name, iterator in ctx.valid_iterators.items():
            ctx.evaluator.run(network, iterator, ctx.meters.valid[name], desc=f"valid {name}")
        for name, iterator in ctx.test_iterators.items():
            ctx.evaluator.run(network, iterator, ctx.meters.test[name], desc=f"test {name}")

        values = ctx.meters.snapshot(ctx.aggregator, words=opt.wer, decoder_words=opt.bmr_wer)
        ctx.logger.log_status(
            epoch=state.epoch,
            phase=self.phase.name,
            lr=self.phase.lr,
            lr_criterion=self.phase.lr_criterion,
            values=values,
        )
        self.improved = self.save_models(values)
        ctx.meters.reset_train()

    def on_end(self, state):
        if self.progress is not None:
            self.progress.close()
            self.progress = None

    # ========================
    # Checkpoints
    # ========================

    def save_models(self, values: Dict[str, float]) -> Dict[str, float]:
        """
        Save the last model, then a best model for every validation set
        whose error strictly improved. Returns the improved errors.
        """
        ctx = self.context
        network = ctx.checkpoint_network()
        transitions = ctx.criteria.transitions.weight
        if ctx.coordinator.is_main:
            ctx.store.save('last', ctx.store.payload(ctx.run, network, transitions))
        improved = {}
        for name in ctx.valid_iterators:
            value = values[f'valid:{name}']
            if ctx.tracker.update(name, value):
                improved[name] = value
                if ctx.coordinator.is_main:
                    ctx.store.save(name, ctx.store.payload(ctx.run, network, transitions, perf=value))
        return improved


class CurriculumController:
    """
    Runs the linseg -> falseg -> main curriculum on one epoch engine.

    Parameters:
        context: shared TrainingContext
        engine: EpochEngine (default: one on the network's device)
    """

    def __init__(self, context: TrainingContext, engine: Optional[EpochEngine] = None):
        self.context = context
        self.engine = engine or EpochEngine()

    def phases(self) -> List[PhaseParams]:
        run = self.context.run
        opt = run.options
        norm = run.lr_norm
        phases = []
        if not opt.seg and opt.linseg > 0:
            phases.append(PhaseParams(
                name='linseg',
                index=1,
                criterion='linseg',
                max_epoch=opt.linseg,
                lr=run.lin_lr * norm,
                lr_criterion=run.lin_lr_crit * norm,
                zero_network=opt.linseg_znet,
            ))
        if opt.falseg > 0:
            phases.append(PhaseParams(
                name='falseg',
                index=2,
                criterion='force_align',
                max_epoch=opt.falseg,
                lr=run.fal_lr * norm,
                lr_criterion=0.0,
            ))
        phases.append(PhaseParams(
            name='main',
            index=3,
            criterion='main',
            max_epoch=opt.iter,
            lr=opt.lr * norm,
            lr_criterion=opt.lr_crit * norm,
        ))
        return phases

    def criterion_for(self, phase: PhaseParams):
        criteria = self.context.criteria
        if phase.criterion == 'linseg':
            return criteria.linseg
        if phase.criterion == 'force_align':
            return criteria.force_align
        return criteria.main

    def network_for(self, phase: PhaseParams):
        if phase.zero_network and self.context.zero_network is not None:
            return self.context.zero_network
        return self.context.network

    def run(self) -> List[EngineState]:
        ctx = self.context
        states = []
        for phase in self.phases():
            ctx.logger.info(
                f"phase {phase.index} ({phase.name}): {phase.max_epoch} epoch(s), "
                f"lr={phase.lr:.3g}, lr_criterion={phase.lr_criterion:.3g}"
            )
            state = EngineState(
                network=self.network_for(phase),
                criterion=self.criterion_for(phase),
                iterator=ctx.train_iterator,
                optimizer=ctx.optimizer,
                params=phase,
            )
            states.append(self.engine.train(state, TrainingHooks(ctx, phase)))
        return states


__all__ = ['TrainingHooks', 'CurriculumController']
