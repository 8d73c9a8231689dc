"""
Training Session
================

Builds every component of a run from a StartupPlan and runs the
curriculum.

Setup order:
    seeds -> device -> coordinator -> experiment directory and run index
    -> dictionary -> network (new or reloaded) -> RunConfig -> criteria
    -> optimizer -> label transforms -> datasets -> meters, logger,
    checkpoint store, evaluator -> curriculum controller

Only the main worker creates directories and writes files; the run index
it allocates is broadcast to the other workers.

Author: Speech Alignment Training Framework Team
License: MIT
"""

from __future__ import annotations
import os
import random
import time
from typing import Optional

import numpy as np
import torch

from .config import RunConfig
from .engine import EpochEngine, TrainingContext
from .errors import ConfigError
from .evaluator import Evaluator, load_decoder
from .monitor import BestModelTracker, CheckpointStore, Heartbeat
from .orchestrator import CurriculumController
from .startup import StartupPlan
from ..criteria import CriterionSet, make_scale
from ..data import (
    DictionaryBuilder,
    LabelRemapper,
    TargetEncoder,
    WordMapper,
    build_iterator,
    fold_table,
    load_word_dictionary,
)
from ..models import (
    ConvAcousticModel,
    ShiftNet,
    ZeroNet,
    count_parameters,
    get_model,
    layer_lr_groups,
)
from ..modules import MetricAggregator, build_optimizer, make_coordinator, make_gradient_clamp
from ..utils import TrainingLogger, TrainingMeters, format_number, format_time


def seed_everything(seed: int) -> None:
    """Seed torch, numpy and random (0: nondeterministic)."""
    if seed > 0:
        torch.manual_seed(seed)
        np.random.seed(seed)
        random.seed(seed)
    else:
        torch.seed()


def select_device(options, rank: int = 0) -> torch.device:
    if options.gpu <= 0:
        return torch.device('cpu')
    if not torch.cuda.is_available():
        raise ConfigError(f"gpu={options.gpu} requested but CUDA is not available")
    if options.distributed:
        index = rank % torch.cuda.device_count()
    else:
        index = options.gpu - 1
    torch.cuda.set_device(index)
    return torch.device('cuda', index)


class TrainingSession:
    """
    One training process.

    Parameters:
        plan: resolved StartupPlan
        rank / world_size / init_method: distributed rendezvous (default:
            environment)

    Example:
        >>> plan = StartupResolver(sys.argv[1:]).resolve()
        >>> session = TrainingSession(plan)
        >>> session.setup()
        >>> session.run()
    """

    def __init__(
        self,
        plan: StartupPlan,
        rank: Optional[int] = None,
        world_size: Optional[int] = None,
        init_method: Optional[str] = None
    ):
        self.plan = plan
        self.rank = rank
        self.world_size = world_size
        self.init_method = init_method
        self.context: Optional[TrainingContext] = None
        self.controller: Optional[CurriculumController] = None

    def setup(self) -> TrainingContext:
        plan = self.plan
        opt = plan.options
        seed_everything(opt.seed)

        device = select_device(opt, self.rank or 0)
        coordinator = make_coordinator(opt, device, self.rank, self.world_size, self.init_method)
        is_main = coordinator.is_main

        run_index = None
        if is_main:
            os.makedirs(plan.path, exist_ok=True)
            run_index = CheckpointStore.allocate_run_index(plan.path)
        run_index = coordinator.broadcast_object(run_index)

        bundle = DictionaryBuilder.from_config(opt).build()
        dictionary = bundle.dictionary
        nstate = opt.nstate if opt.msc else 1
        num_classes = len(dictionary) * nstate

        checkpoint = plan.checkpoint
        if checkpoint is not None:
            network = ConvAcousticModel.from_arch_config(checkpoint['arch'])
            network.load_state_dict(checkpoint['network'])
            kw, dw = int(checkpoint['kw']), int(checkpoint['dw'])
        else:
            network = get_model(opt.arch, opt.channels, num_classes, opt.arch_dir,
                                lsm=opt.lsm, wnorm=opt.wnorm)
            kw, dw = network.kw, network.dw
        if network.num_classes != num_classes:
            raise ConfigError(
                f"network has {network.num_classes} classes but the dictionary "
                f"{opt.dict} defines {num_classes}"
            )
        network.to(device)

        run = RunConfig.create(
            opt,
            num_classes=num_classes,
            kw=kw,
            dw=dw,
            world_size=coordinator.world_size,
            path=plan.path,
            run_index=run_index,
            reload=plan.reload,
            command=plan.command,
            cmdline=plan.cmdline,
        )

        criteria = CriterionSet.build(
            opt, num_classes, make_scale(opt.onorm, opt.sqnorm),
            freeze_linseg_transitions=run.lin_lr_crit == 0)
        if checkpoint is not None:
            criteria.transitions.load(checkpoint['transitions'])
        criteria.to(device)

        if opt.layer_lr:
            groups = layer_lr_groups(network, 1.0)
        else:
            groups = [{'params': list(network.parameters())}]
        optimizer = build_optimizer(groups, criteria.transitions.weight,
                                    opt.momentum, opt.weight_decay)

        trained = ShiftNet(network, opt.shift, opt.dshift) if opt.shift > 0 else network

        encoder = TargetEncoder(dictionary, opt.replabel, opt.surround,
                                skip_unknown=opt.target == 'phn')
        fold = None
        if opt.target == 'phn' and not opt.dict39:
            fold = fold_table(bundle.dict61, bundle.dict39)
        remap = LabelRemapper(uniq=True, blank=bundle.blank, replabel=opt.replabel,
                              dictionary=dictionary, fold=fold)
        word_mapper = None
        if opt.needs_words:
            word_mapper = WordMapper(load_word_dictionary(opt.bmr_words), dictionary)
        decoder = load_decoder(opt) if opt.bmr_wer else None

        rank, world_size = coordinator.rank, coordinator.world_size
        if not opt.train_names:
            raise ConfigError("train: no training dataset given")
        train_iterator = build_iterator(opt, opt.train, encoder, train=True, rank=rank,
                                        world_size=world_size, maxload=opt.maxload,
                                        output_length=trained.output_length)
        if len(train_iterator.dataset) == 0:
            raise ConfigError(f"train: no training sample left in '{opt.train}' after filtering")
        valid_iterators = {
            name: build_iterator(opt, name, encoder, rank=rank, world_size=world_size,
                                 maxload=opt.maxload_valid)
            for name in opt.valid_names
        }
        test_iterators = {
            name: build_iterator(opt, name, encoder, rank=rank, world_size=world_size,
                                 maxload=opt.maxload_test)
            for name in opt.test_names
        }

        initial = None
        if opt.restore_best_scores and not plan.is_new_identity:
            if is_main:
                initial = CheckpointStore.best_scores(plan.path, opt.valid_names)
            initial = coordinator.broadcast_object(initial)

        logger = TrainingLogger(plan.path, run_index, is_main=is_main,
                                tensorboard=opt.tensorboard)
        store = CheckpointStore(plan.path, run_index, is_main=is_main)
        store.write_config(run)

        logger.info(f"experiment path: {plan.path}")
        logger.info(f"experiment run index: {run_index}")
        if plan.reload:
            logger.info(f"reloading model <{plan.reload}>")
        logger.info(f"number of classes (network) = {num_classes}")
        total, _ = count_parameters(network)
        logger.info(f"neural network number of parameters: {format_number(total)}")
        logger.info(f"workers: {world_size}, device: {device}")
        train_set = train_iterator.dataset
        logger.info(f"train: {len(train_set)} samples per worker, {train_set.filtered} filtered by size, "
                    f"{train_set.too_short} too short to align")
        logger.log_config(opt.to_dict())

        self.context = TrainingContext(
            run=run,
            network=trained,
            criteria=criteria,
            optimizer=optimizer,
            meters=TrainingMeters(opt.valid_names, opt.test_names, frame_error=opt.seg),
            tracker=BestModelTracker(opt.valid_names, initial),
            logger=logger,
            store=store,
            coordinator=coordinator,
            aggregator=MetricAggregator(coordinator),
            evaluator=Evaluator(
                criteria.evaluation,
                remap,
                word_mapper=word_mapper,
                decoder=decoder,
                transitions=criteria.transitions.weight,
                device=device,
                gc_every=opt.gc,
                progress=opt.progress and is_main,
            ),
            train_iterator=train_iterator,
            valid_iterators=valid_iterators,
            test_iterators=test_iterators,
            heartbeat=Heartbeat(os.path.join(plan.path, 'heartbeat'), enabled=is_main),
            clamp=make_gradient_clamp(opt),
            zero_network=ZeroNet(kw, dw, num_classes),
            pristine_network=network,
        )
        self.controller = CurriculumController(self.context, EpochEngine(device))
        return self.context

    def run(self):
        if self.controller is None:
            self.setup()
        ctx = self.context
        start = time.time()
        try:
            states = self.controller.run()
            ctx.logger.info(f"training done in {format_time(time.time() - start)}")
            return states
        except Exception as exc:
            ctx.logger.error(f"training failed: {exc}")
            raise
        finally:
            ctx.criteria.close()
            ctx.logger.finalize()
            ctx.coordinator.shutdown()


__all__ = ['TrainingSession', 'seed_everything', 'select_device']
