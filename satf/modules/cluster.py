"""
Cluster Coordination
====================

Data-parallel coordination of training workers.

Every worker holds a full replica of the network and the transition
matrix. Workers agree on the initial parameters (broadcast from rank 0),
average gradients before every update and reduce evaluation metrics so
that every worker reports the same numbers.

This module provides:
- ClusterCoordinator: interface used by the engine, evaluator and store
- LocalCoordinator: single process, every operation is a no-op
- DistributedCoordinator: torch.distributed (gloo on CPU, nccl on GPU)
- make_coordinator: selects the implementation once at startup
- MetricAggregator: cluster-wide meter values and edit-distance sums

All collective calls must be issued by every worker in the same order.

Author: Speech Alignment Training Framework Team
License: MIT
"""

from __future__ import annotations
import os
from typing import Any, Iterable, List, Optional, Sequence

import torch
import torch.distributed as dist


class ClusterCoordinator:
    """Interface for cross-worker synchronization."""

    rank: int = 0
    world_size: int = 1

    @property
    def is_main(self) -> bool:
        return self.rank == 0

    def all_reduce_gradients(self, params: Iterable[torch.nn.Parameter]) -> None:
        """Replace every gradient by its average over the workers."""
        raise NotImplementedError

    def broadcast_parameters(self, params: Iterable[torch.nn.Parameter]) -> None:
        """Copy rank 0's parameter values to every worker."""
        raise NotImplementedError

    def reduce(self, value: float, average: bool = True) -> float:
        """Sum (or average) a scalar over the workers."""
        raise NotImplementedError

    def reduce_tensor(self, tensor: torch.Tensor, average: bool = False) -> torch.Tensor:
        raise NotImplementedError

    def max_tensor(self, tensor: torch.Tensor) -> torch.Tensor:
        """Elementwise maximum over the workers."""
        raise NotImplementedError

    def broadcast_object(self, obj: Any) -> Any:
        """Rank 0's ``obj`` on every worker."""
        raise NotImplementedError

    def barrier(self) -> None:
        raise NotImplementedError

    def shutdown(self) -> None:
        raise NotImplementedError


class LocalCoordinator(ClusterCoordinator):
    """Single-worker coordinator."""

    def all_reduce_gradients(self, params):
        pass

    def broadcast_parameters(self, params):
        pass

    def reduce(self, value, average=True):
        return float(value)

    def reduce_tensor(self, tensor, average=False):
        return tensor

    def max_tensor(self, tensor):
        return tensor

    def broadcast_object(self, obj):
        return obj

    def barrier(self):
        pass

    def shutdown(self):
        pass

    def __repr__(self) -> str:
        return "LocalCoordinator()"


class DistributedCoordinator(ClusterCoordinator):
    """
    torch.distributed coordinator.

    Parameters:
        rank / world_size: taken from RANK / WORLD_SIZE when omitted
        backend: 'gloo' or 'nccl' (default: nccl when CUDA is used)
        init_method: rendezvous URL ('env://', 'file://...', 'tcp://...')
        device: device of the parameters (collectives run there)
    """

    def __init__(
        self,
        rank: Optional[int] = None,
        world_size: Optional[int] = None,
        backend: Optional[str] = None,
        init_method: str = 'env://',
        device: Optional[torch.device] = None
    ):
        self.device = device or torch.device('cpu')
        if backend is None:
            if self.device.type == 'cuda' and dist.is_nccl_available():
                backend = 'nccl'
            else:
                backend = 'gloo'
        self.backend = backend
        self._owns_group = False
        if not dist.is_initialized():
            if rank is None:
                rank = int(os.environ.get('RANK', 0))
            if world_size is None:
                world_size = int(os.environ.get('WORLD_SIZE', 1))
            dist.init_process_group(
                backend=backend,
                init_method=init_method,
                rank=rank,
                world_size=world_size,
            )
            self._owns_group = True
        self.rank = dist.get_rank()
        self.world_size = dist.get_world_size()

    def all_reduce_gradients(self, params):
        for p in params:
            if p.grad is None:
                p.grad = torch.zeros_like(p)
            dist.all_reduce(p.grad, op=dist.ReduceOp.SUM)
            p.grad.div_(self.world_size)

    @torch.no_grad()
    def broadcast_parameters(self, params):
        for p in params:
            dist.broadcast(p.data, src=0)

    def reduce(self, value, average=True):
        t = torch.tensor([float(value)], dtype=torch.float64, device=self._collective_device())
        dist.all_reduce(t, op=dist.ReduceOp.SUM)
        if average:
            t /= self.world_size
        return float(t.item())

    def reduce_tensor(self, tensor, average=False):
        t = tensor.detach().clone().to(self._collective_device())
        dist.all_reduce(t, op=dist.ReduceOp.SUM)
        if average:
            t = t / self.world_size
        return t.to(tensor.device)

    def max_tensor(self, tensor):
        t = tensor.detach().clone().to(self._collective_device())
        dist.all_reduce(t, op=dist.ReduceOp.MAX)
        return t.to(tensor.device)

    def broadcast_object(self, obj):
        box: List[Any] = [obj]
        dist.broadcast_object_list(box, src=0)
        return box[0]

    def barrier(self):
        dist.barrier()

    def shutdown(self):
        if self._owns_group and dist.is_initialized():
            dist.destroy_process_group()
            self._owns_group = False

    def _collective_device(self) -> torch.device:
        return self.device if self.backend == 'nccl' else torch.device('cpu')

    def __repr__(self) -> str:
        return (f"DistributedCoordinator(rank={self.rank}, world_size={self.world_size}, "
                f"backend={self.backend})")


def make_coordinator(
    options,
    device: Optional[torch.device] = None,
    rank: Optional[int] = None,
    world_size: Optional[int] = None,
    init_method: Optional[str] = None
) -> ClusterCoordinator:
    """
    Select the coordinator once at startup.

    ``options.distributed`` off -> LocalCoordinator. Otherwise a
    DistributedCoordinator; the rendezvous defaults to ``env://`` (or
    SATF_INIT_METHOD when set).
    """
    if not options.distributed:
        return LocalCoordinator()
    if not dist.is_available():
        raise RuntimeError("torch.distributed is not available in this build")
    init_method = init_method or os.environ.get('SATF_INIT_METHOD', 'env://')
    return DistributedCoordinator(
        rank=rank,
        world_size=world_size,
        init_method=init_method,
        device=device,
    )


class MetricAggregator:
    """
    Cluster-wide metric reduction.

    Meter values are averaged; edit distances are reduced as sums of edits
    and reference lengths so the error rate is exact over all workers.
    """

    def __init__(self, coordinator: ClusterCoordinator):
        self.coordinator = coordinator

    def average(self, value: float) -> float:
        return self.coordinator.reduce(value, average=True)

    def total(self, value: float) -> float:
        return self.coordinator.reduce(value, average=False)

    def edit_distance(self, meter) -> float:
        """Error rate (percent) of an EditDistanceMeter over all workers."""
        sums = torch.tensor([float(meter.edits), float(meter.n)], dtype=torch.float64)
        sums = self.coordinator.reduce_tensor(sums)
        edits, n = float(sums[0]), float(sums[1])
        return 100.0 * edits / n if n > 0 else 0.0

    def values(self, values: Sequence[float], average: bool = True) -> List[float]:
        t = torch.tensor([float(v) for v in values], dtype=torch.float64)
        return [float(v) for v in self.coordinator.reduce_tensor(t, average=average)]

    def maximum(self, values: Sequence[float]) -> List[float]:
        t = torch.tensor([float(v) for v in values], dtype=torch.float64)
        return [float(v) for v in self.coordinator.max_tensor(t)]


__all__ = [
    'ClusterCoordinator',
    'LocalCoordinator',
    'DistributedCoordinator',
    'make_coordinator',
    'MetricAggregator',
]
