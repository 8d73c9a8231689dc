"""
Speech Alignment Training Framework - Utilities
===============================================

- meters: timers and timer sets, averages, edit-distance and frame-error meters
- logging: TrainingLogger (log, perf and TensorBoard outputs)
"""

from .meters import (
    TimeMeter,
    TimerSet,
    AverageValueMeter,
    EditDistanceMeter,
    FrameErrorMeter,
    SpeechStatMeter,
    EvalMeters,
    TrainingMeters,
)
from .logging import (
    TENSORBOARD_AVAILABLE,
    run_filename,
    TrainingLogger,
    format_time,
    format_number,
)

__all__ = [
    'TimeMeter',
    'TimerSet',
    'AverageValueMeter',
    'EditDistanceMeter',
    'FrameErrorMeter',
    'SpeechStatMeter',
    'EvalMeters',
    'TrainingMeters',
    'TENSORBOARD_AVAILABLE',
    'run_filename',
    'TrainingLogger',
    'format_time',
    'format_number',
]
