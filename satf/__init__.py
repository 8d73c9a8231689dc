"""
Speech Alignment Training Framework (SATF)
==========================================

Trains convolutional acoustic models for speech recognition with
sequence alignment criteria (ASG, CTC, full-connect, multi-state) that
share one learned transition matrix, through a linear segmentation ->
forced alignment -> main curriculum.

Quick Start:
------------
    from satf import StartupResolver, TrainingSession

    plan = StartupResolver(['--train', '--preset', 'letters_asg',
                            '--train', 'train-clean', '--valid', 'dev-clean']).resolve()
    session = TrainingSession(plan)
    session.run()

    # or, from the shell
    satf-train --train --train train-clean --valid dev-clean --batch-size 4
    satf-train --continue <experiment directory> --lr 0.1
    satf-train --fork <experiment directory>/001_model_last.bin --iter 10

Components:
-----------
- TrainingConfig / RunConfig: options and the immutable run snapshot
- StartupResolver: --train / --continue / --fork resolution
- CriterionSet: alignment criteria over a shared TransitionMatrix
- EpochEngine / CurriculumController: training loop and phases
- Evaluator: letter and word error rates
- CheckpointStore / BestModelTracker: run files and best models
- ClusterCoordinator: single process or torch.distributed workers

Author: Speech Alignment Training Framework Team
License: MIT
Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "Speech Alignment Training Framework Team"

# Core API (imported first, the other packages depend on core.errors)
from .core import (
    ConfigError,
    UsageError,
    ResourceError,
    TrainingConfig,
    RunConfig,
    PhaseParams,
    get_preset,
    PRESETS,
    EpochEngine,
    CheckpointStore,
    BestModelTracker,
    StartupPlan,
    StartupResolver,
    Evaluator,
    CurriculumController,
    TrainingSession,
)

# Criteria
from .criteria import TransitionMatrix, CriterionSet, make_scale

# Data
from .data import Dictionary, DictionaryBuilder, TargetEncoder, LabelRemapper, SpeechDataset

# Models
from .models import ConvAcousticModel, ZeroNet, ShiftNet, get_model, count_parameters

# Training infrastructure
from .modules import LocalCoordinator, DistributedCoordinator, make_coordinator

# Utilities
from .utils import TrainingLogger, TrainingMeters, format_time, format_number

__all__ = [
    # Version
    '__version__',

    # Core API
    'ConfigError',
    'UsageError',
    'ResourceError',
    'TrainingConfig',
    'RunConfig',
    'PhaseParams',
    'get_preset',
    'PRESETS',
    'EpochEngine',
    'CheckpointStore',
    'BestModelTracker',
    'StartupPlan',
    'StartupResolver',
    'Evaluator',
    'CurriculumController',
    'TrainingSession',

    # Criteria
    'TransitionMatrix',
    'CriterionSet',
    'make_scale',

    # Data
    'Dictionary',
    'DictionaryBuilder',
    'TargetEncoder',
    'LabelRemapper',
    'SpeechDataset',

    # Models
    'ConvAcousticModel',
    'ZeroNet',
    'ShiftNet',
    'get_model',
    'count_parameters',

    # Infrastructure
    'LocalCoordinator',
    'DistributedCoordinator',
    'make_coordinator',

    # Utilities
    'TrainingLogger',
    'TrainingMeters',
    'format_time',
    'format_number',
]
