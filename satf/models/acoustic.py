"""
Acoustic Models
===============

Frame-level acoustic networks for sequence-criterion training.

Networks map features of shape (B, T, C) to per-frame class scores of
shape (B, T', N). The receptive field ``kw`` and the total stride ``dw``
are properties of the architecture and are stored in every checkpoint.

Models:
-------
- ConvAcousticModel: temporal convolution stack described by an
  architecture definition (built-in name or a YAML file in ``arch_dir``)
- ZeroNet: parameter-free network emitting zeros (warmup of the
  transition matrix alone)
- ShiftNet: runs a network on shifted copies of the input and
  interleaves the outputs

Author: Speech Alignment Training Framework Team
License: MIT
"""

from __future__ import annotations
import os
from typing import Any, Dict, List, Optional, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F
import yaml

from ..core.errors import ConfigError, ResourceError


# ========================
# Architecture Specs
# ========================

ARCHITECTURES: Dict[str, Dict[str, Any]] = {
    'default': {
        'activation': 'relu',
        'dropout': 0.0,
        'layers': [
            {'channels': 250, 'kw': 48, 'dw': 2},
            {'channels': 250, 'kw': 7, 'dw': 1},
            {'channels': 250, 'kw': 7, 'dw': 1},
            {'channels': 2000, 'kw': 32, 'dw': 1},
            {'channels': 2000, 'kw': 1, 'dw': 1},
        ],
    },
    'small': {
        'activation': 'relu',
        'dropout': 0.0,
        'layers': [
            {'channels': 64, 'kw': 5, 'dw': 2},
            {'channels': 64, 'kw': 3, 'dw': 1},
        ],
    },
    'tiny': {
        'activation': 'relu',
        'dropout': 0.0,
        'layers': [
            {'channels': 8, 'kw': 3, 'dw': 1},
        ],
    },
}

ACTIVATIONS = {
    'relu': nn.ReLU,
    'hardtanh': nn.Hardtanh,
    'tanh': nn.Tanh,
}


def load_arch(arch: str, arch_dir: str = '') -> Dict[str, Any]:
    """
    Resolve an architecture definition.

    A built-in name is returned as is; anything else is read from
    ``<arch_dir>/<arch>`` (or ``<arch>.yaml``) with PyYAML.

    Raises:
        ResourceError: the architecture file does not exist
        ConfigError: the architecture has no layers
    """
    if arch in ARCHITECTURES:
        arch_def = ARCHITECTURES[arch]
    else:
        path = os.path.join(arch_dir, arch)
        if not os.path.isfile(path) and os.path.isfile(path + '.yaml'):
            path = path + '.yaml'
        if not os.path.isfile(path):
            raise ResourceError(f"architecture file not found: {path}", path)
        with open(path, encoding='utf-8') as f:
            arch_def = yaml.safe_load(f) or {}
    if not arch_def.get('layers'):
        raise ConfigError(f"architecture '{arch}' defines no layers")
    return {
        'activation': arch_def.get('activation', 'relu'),
        'dropout': float(arch_def.get('dropout', 0.0)),
        'layers': [dict(layer) for layer in arch_def['layers']],
    }


def receptive_field(layers: List[Dict[str, int]]) -> Tuple[int, int]:
    """(kw, dw) of a stack of temporal convolutions."""
    kw, dw = 1, 1
    for layer in layers:
        kw += (int(layer['kw']) - 1) * dw
        dw *= int(layer.get('dw', 1))
    return kw, dw


class ConvAcousticModel(nn.Module):
    """
    Temporal convolution stack followed by a 1x1 projection to the classes.

    Parameters:
        in_channels: feature channels C
        num_classes: output classes N
        layers: list of {'channels', 'kw', 'dw'}
        activation: 'relu', 'hardtanh' or 'tanh'
        dropout: dropout after each hidden layer
        lsm: apply log-softmax to the output
        wnorm: weight normalization on every convolution

    Example:
        >>> model = ConvAcousticModel(40, 30, ARCHITECTURES['small']['layers'])
        >>> model(torch.randn(2, 100, 40)).shape
        torch.Size([2, 46, 30])
    """

    def __init__(
        self,
        in_channels: int,
        num_classes: int,
        layers: List[Dict[str, int]],
        activation: str = 'relu',
        dropout: float = 0.0,
        lsm: bool = False,
        wnorm: bool = False
    ):
        super().__init__()
        if activation not in ACTIVATIONS:
            raise ConfigError(
                f"unknown activation '{activation}'. Available: {', '.join(ACTIVATIONS)}"
            )
        self.in_channels = in_channels
        self.num_classes = num_classes
        self.layer_defs = [dict(layer) for layer in layers]
        self.activation = activation
        self.dropout = dropout
        self.lsm = lsm
        self.wnorm = wnorm

        blocks: List[nn.Module] = []
        channels = in_channels
        for layer in self.layer_defs:
            conv = nn.Conv1d(channels, int(layer['channels']),
                             kernel_size=int(layer['kw']), stride=int(layer.get('dw', 1)))
            blocks.append(self._norm(conv))
            blocks.append(ACTIVATIONS[activation]())
            if dropout > 0:
                blocks.append(nn.Dropout(dropout))
            channels = int(layer['channels'])
        blocks.append(self._norm(nn.Conv1d(channels, num_classes, kernel_size=1)))
        self.net = nn.Sequential(*blocks)
        self._kw, self._dw = receptive_field(self.layer_defs)

    def _norm(self, conv: nn.Conv1d) -> nn.Module:
        if self.wnorm:
            return nn.utils.parametrizations.weight_norm(conv)
        return conv

    @property
    def kw(self) -> int:
        return self._kw

    @property
    def dw(self) -> int:
        return self._dw

    def output_length(self, input_length: int) -> int:
        length = max(int(input_length), self._kw)
        for layer in self.layer_defs:
            length = (length - int(layer['kw'])) // int(layer.get('dw', 1)) + 1
        return length

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        # (B, T, C) -> (B, C, T); inputs shorter than kw are zero-padded
        x = x.transpose(1, 2)
        if x.size(2) < self._kw:
            x = F.pad(x, (0, self._kw - x.size(2)))
        x = self.net(x).transpose(1, 2)
        if self.lsm:
            x = F.log_softmax(x, dim=-1)
        return x

    def arch_config(self) -> Dict[str, Any]:
        """Constructor arguments, stored in checkpoints."""
        return {
            'in_channels': self.in_channels,
            'num_classes': self.num_classes,
            'layers': self.layer_defs,
            'activation': self.activation,
            'dropout': self.dropout,
            'lsm': self.lsm,
            'wnorm': self.wnorm,
        }

    @classmethod
    def from_arch_config(cls, arch: Dict[str, Any]) -> 'ConvAcousticModel':
        return cls(**arch)


class ZeroNet(nn.Module):
    """Emits zeros with the output geometry of a (kw, dw) network."""

    def __init__(self, kw: int, dw: int, num_classes: int):
        super().__init__()
        self.kw = kw
        self.dw = dw
        self.num_classes = num_classes

    def output_length(self, input_length: int) -> int:
        return (max(int(input_length), self.kw) - self.kw) // self.dw + 1

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return x.new_zeros(x.size(0), self.output_length(x.size(1)), self.num_classes)


class ShiftNet(nn.Module):
    """
    Runs ``network`` on the input shifted by 0, dshift, 2*dshift, ... frames
    (``shift`` copies) and interleaves the outputs frame by frame, which
    raises the output frame rate by a factor ``shift``.
    """

    def __init__(self, network: nn.Module, shift: int, dshift: int):
        super().__init__()
        if shift < 1 or dshift < 1:
            raise ConfigError(f"invalid shift={shift} / dshift={dshift}")
        self.network = network
        self.shift = shift
        self.dshift = dshift

    @property
    def kw(self) -> int:
        return self.network.kw

    @property
    def dw(self) -> int:
        return self.network.dw

    def _offsets(self) -> List[int]:
        return [k * self.dshift for k in range(self.shift)]

    def output_length(self, input_length: int) -> int:
        lengths = [self.network.output_length(max(input_length - s, 1)) for s in self._offsets()]
        return min(lengths) * self.shift

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        outputs = [self.network(x[:, s:]) for s in self._offsets()]
        length = min(o.size(1) for o in outputs)
        stacked = torch.stack([o[:, :length] for o in outputs], dim=2)
        return stacked.reshape(x.size(0), length * self.shift, -1)


def unwrap(network: nn.Module) -> nn.Module:
    """The pristine network behind a ShiftNet wrapper."""
    return network.network if isinstance(network, ShiftNet) else network


# ========================
# Factory
# ========================

def get_model(
    arch: str,
    in_channels: int,
    num_classes: int,
    arch_dir: str = '',
    lsm: bool = False,
    wnorm: bool = False
) -> ConvAcousticModel:
    """
    Factory function for acoustic models.

    Args:
        arch: built-in architecture name or architecture file name in ``arch_dir``
        in_channels: feature channels
        num_classes: network output classes

    Example:
        >>> model = get_model('small', in_channels=40, num_classes=30)
    """
    arch_def = load_arch(arch, arch_dir)
    return ConvAcousticModel(
        in_channels=in_channels,
        num_classes=num_classes,
        layers=arch_def['layers'],
        activation=arch_def['activation'],
        dropout=arch_def['dropout'],
        lsm=lsm,
        wnorm=wnorm,
    )


def layer_lr_groups(network: nn.Module, lr: float) -> List[Dict[str, Any]]:
    """
    One optimizer parameter group per layer with ``lr / fan_in``.

    Parameters of modules without a weight (or with a 1-d weight) keep
    ``lr``.
    """
    groups: List[Dict[str, Any]] = []
    seen = set()
    for module in network.modules():
        params = [p for p in module.parameters(recurse=False) if id(p) not in seen]
        if not params:
            continue
        weight = getattr(module, 'weight', None)
        fan_in = 1
        if isinstance(weight, torch.Tensor) and weight.dim() > 1:
            fan_in = weight[0].numel()
        for p in params:
            seen.add(id(p))
        groups.append({'params': params, 'lr': lr / fan_in, 'lr_scale': 1.0 / fan_in})
    return groups


def count_parameters(model: nn.Module) -> Tuple[int, int]:
    """
    Count model parameters.

    Returns:
        Tuple of (total_params, trainable_params)
    """
    total = sum(p.numel() for p in model.parameters())
    trainable = sum(p.numel() for p in model.parameters() if p.requires_grad)
    return total, trainable


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
