"""
Speech Alignment Training Framework - Models
============================================

Acoustic network definitions.

- ConvAcousticModel: temporal convolution stack
- ZeroNet: zero-output network for transition-only warmup
- ShiftNet: shifted-input wrapper
"""

from .acoustic import (
    ARCHITECTURES,
    load_arch,
    receptive_field,
    ConvAcousticModel,
    ZeroNet,
    ShiftNet,
    unwrap,
    get_model,
    layer_lr_groups,
    count_parameters,
)

__all__ = [
    'ARCHITECTURES',
    'load_arch',
    'receptive_field',
    'ConvAcousticModel',
    'ZeroNet',
    'ShiftNet',
    'unwrap',
    'get_model',
    'layer_lr_groups',
    'count_parameters',
]
