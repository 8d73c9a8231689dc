"""
Speech Alignment Training Framework - Core
==========================================

Configuration, startup, the epoch engine, the curriculum and the
checkpoint monitor.
"""

from .errors import ConfigError, UsageError, ResourceError
from .config import (
    TrainingConfig,
    RunConfig,
    PhaseParams,
    PRESETS,
    get_preset,
    compute_lr_norm,
)
from .engine import EngineState, EngineHooks, EpochEngine, TrainingContext, output_sizes
from .monitor import (
    LAST_MODEL,
    new_path,
    options_hash,
    CheckpointStore,
    BestModelTracker,
    Heartbeat,
)
from .options import create_parser, parse_overrides, usage, format_help
from .startup import StartupPlan, StartupResolver
from .evaluator import Evaluator, load_decoder
from .orchestrator import TrainingHooks, CurriculumController
from .session import TrainingSession

__all__ = [
    # Errors
    'ConfigError',
    'UsageError',
    'ResourceError',

    # Configuration
    'TrainingConfig',
    'RunConfig',
    'PhaseParams',
    'PRESETS',
    'get_preset',
    'compute_lr_norm',

    # Engine
    'EngineState',
    'EngineHooks',
    'EpochEngine',
    'TrainingContext',
    'output_sizes',

    # Checkpoints
    'LAST_MODEL',
    'new_path',
    'options_hash',
    'CheckpointStore',
    'BestModelTracker',
    'Heartbeat',

    # Startup
    'create_parser',
    'parse_overrides',
    'usage',
    'format_help',
    'StartupPlan',
    'StartupResolver',

    # Training
    'Evaluator',
    'load_decoder',
    'TrainingHooks',
    'CurriculumController',
    'TrainingSession',
]
