"""
Gradient Clamping and Optimizer
===============================

Gradient clamps applied after the cross-worker gradient average and
before the parameter update, plus the SGD optimizer over the network and
the shared transition matrix.

Clamps:
- abs:   every gradient element limited to [-abs_clamp, abs_clamp]
- scale: element bound scale_clamp * |w| + abs_clamp (relative to the weight)
- norm:  total gradient norm limited to norm_clamp

Author: Speech Alignment Training Framework Team
License: MIT
"""

from __future__ import annotations
from typing import Any, Callable, Dict, Iterable, List, Optional

import torch
import torch.nn as nn


@torch.no_grad()
def abs_gradient_clamp(params: Iterable[nn.Parameter], abs_clamp: float) -> None:
    for p in params:
        if p.grad is not None:
            p.grad.clamp_(-abs_clamp, abs_clamp)


@torch.no_grad()
def scale_gradient_clamp(
    params: Iterable[nn.Parameter],
    scale_clamp: float,
    abs_clamp: float = 0.0
) -> None:
    for p in params:
        if p.grad is not None:
            bound = p.detach().abs() * scale_clamp + abs_clamp
            p.grad.copy_(torch.maximum(torch.minimum(p.grad, bound), -bound))


def norm_gradient_clamp(params: Iterable[nn.Parameter], norm_clamp: float) -> float:
    """Returns the total norm before clipping."""
    params = [p for p in params if p.grad is not None]
    if not params:
        return 0.0
    return float(torch.nn.utils.clip_grad_norm_(params, norm_clamp))


def make_gradient_clamp(options) -> Optional[Callable[[List[nn.Parameter]], None]]:
    """
    Clamp selected by the options (scale > abs > norm), or None.
    """
    opt = options
    if opt.scale_clamp > 0:
        return lambda params: scale_gradient_clamp(params, opt.scale_clamp, opt.abs_clamp)
    if opt.abs_clamp > 0:
        return lambda params: abs_gradient_clamp(params, opt.abs_clamp)
    if opt.norm_clamp > 0:
        return lambda params: norm_gradient_clamp(params, opt.norm_clamp)
    return None


# ========================
# Optimizer
# ========================

def build_optimizer(
    network_groups: List[Dict[str, Any]],
    transitions: Optional[nn.Parameter],
    momentum: float = -1.0,
    weight_decay: float = -1.0
) -> torch.optim.SGD:
    """
    SGD over the network parameter groups and the transition matrix.

    Network groups may carry an ``lr_scale`` (per-layer learning rates);
    the transition group is tagged ``role='transitions'``. Learning rates
    are set per phase with :func:`set_learning_rates`. Momentum and weight
    decay apply to the network only; negative values disable them.
    """
    groups: List[Dict[str, Any]] = []
    for group in network_groups:
        params = [p for p in group['params'] if p.requires_grad]
        if params:
            groups.append({
                'params': params,
                'lr': 0.0,
                'lr_scale': group.get('lr_scale', 1.0),
                'role': 'network',
            })
    if transitions is not None:
        groups.append({
            'params': [transitions],
            'lr': 0.0,
            'lr_scale': 1.0,
            'role': 'transitions',
            'momentum': 0.0,
            'weight_decay': 0.0,
        })
    return torch.optim.SGD(
        groups,
        lr=0.0,
        momentum=max(momentum, 0.0),
        weight_decay=max(weight_decay, 0.0),
    )


def set_learning_rates(optimizer: torch.optim.Optimizer, lr: float, lr_criterion: float) -> None:
    for group in optimizer.param_groups:
        if group.get('role') == 'transitions':
            group['lr'] = lr_criterion
        else:
            group['lr'] = lr * group.get('lr_scale', 1.0)


__all__ = [
    'abs_gradient_clamp',
    'scale_gradient_clamp',
    'norm_gradient_clamp',
    'make_gradient_clamp',
    'build_optimizer',
    'set_learning_rates',
]
