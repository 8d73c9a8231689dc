"""
Speech Alignment Training Framework - Modules
=============================================

Training infrastructure shared by the engine and the evaluator.

- cluster: worker coordination (local / torch.distributed)
- gradient_clamp: gradient clamps and the SGD optimizer
"""

from .cluster import (
    ClusterCoordinator,
    LocalCoordinator,
    DistributedCoordinator,
    make_coordinator,
    MetricAggregator,
)
from .gradient_clamp import (
    abs_gradient_clamp,
    scale_gradient_clamp,
    norm_gradient_clamp,
    make_gradient_clamp,
    build_optimizer,
    set_learning_rates,
)

__all__ = [
    'ClusterCoordinator',
    'LocalCoordinator',
    'DistributedCoordinator',
    'make_coordinator',
    'MetricAggregator',
    'abs_gradient_clamp',
    'scale_gradient_clamp',
    'norm_gradient_clamp',
    'make_gradient_clamp',
    'build_optimizer',
    'set_learning_rates',
]
