"""
Alignment Kernels
=================

Log-space dynamic programs used by the sequence criteria.

All kernels take per-frame class scores ``emissions`` of shape (T, N) and,
where relevant, a transition matrix ``transitions`` of shape (N, N) where
``transitions[j, i]`` scores moving from class ``i`` to class ``j``.
They are written with differentiable torch operations, so gradients with
respect to both emissions and transitions come from autograd.

Kernels:
--------
- full_connect_score: score over every label path (normalizer)
- force_align_score: score over paths that spell the target
- path_score: score of one fixed frame-level path
- viterbi_path: best unconstrained path
- force_align_path: best path that spells the target
- linear_segmentation: frames split evenly between target labels

Author: Speech Alignment Training Framework Team
License: MIT
"""

from __future__ import annotations
import torch
from typing import Optional

# Finite stand-in for log(0); keeps logaddexp gradients free of NaNs.
NEG_INF = -1e30


def _combine(a: torch.Tensor, b: torch.Tensor, use_max: bool) -> torch.Tensor:
    if use_max:
        return torch.maximum(a, b)
    return torch.logaddexp(a, b)


def _reduce(x: torch.Tensor, dim: int, use_max: bool) -> torch.Tensor:
    if use_max:
        return x.max(dim=dim).values
    return torch.logsumexp(x, dim=dim)


def full_connect_score(
    emissions: torch.Tensor,
    transitions: torch.Tensor,
    use_max: bool = False
) -> torch.Tensor:
    """
    Score of all label paths through the (T, N) lattice.

    alpha_t(j) = e_t(j) + logadd_i(alpha_{t-1}(i) + trans(j, i))
    """
    alpha = emissions[0]
    for t in range(1, emissions.size(0)):
        alpha = emissions[t] + _reduce(alpha.unsqueeze(0) + transitions, 1, use_max)
    return _reduce(alpha, 0, use_max)


def _skip_mask(target: torch.Tensor, garbage: Optional[int]) -> torch.Tensor:
    """Positions that may be entered from two steps back (skipping a garbage)."""
    L = target.numel()
    mask = torch.zeros(L, dtype=torch.bool, device=target.device)
    if garbage is None or L < 3:
        return mask
    prev = target[1:-1]
    cur = target[2:]
    back = target[:-2]
    mask[2:] = (prev == garbage) & (cur != garbage) & (cur != back)
    return mask


def force_align_score(
    emissions: torch.Tensor,
    transitions: torch.Tensor,
    target: torch.Tensor,
    use_max: bool = False,
    garbage: Optional[int] = None
) -> torch.Tensor:
    """
    Score of paths that spell ``target`` (each label held >= 1 frame).

    With ``garbage`` set, target positions equal to the garbage class are
    optional: a path may jump directly between the labels around them.
    """
    T = emissions.size(0)
    L = target.numel()
    if L == 0:
        raise ValueError("cannot align an empty target")
    em = emissions[:, target]                       # (T, L)
    stay = transitions[target, target]              # (L,)
    move = transitions[target[1:], target[:-1]]     # (L-1,)
    skip_ok = _skip_mask(target, garbage)
    skip = None
    if L >= 3 and bool(skip_ok.any()):
        skip = transitions[target[2:], target[:-2]]
    neg = emissions.new_full((1,), NEG_INF)
    neg2 = emissions.new_full((2,), NEG_INF)

    alpha = torch.cat([em[0, :1], emissions.new_full((L - 1,), NEG_INF)])
    if garbage is not None and L >= 2 and int(target[0]) == garbage:
        alpha = torch.cat([em[0, :2], emissions.new_full((L - 2,), NEG_INF)])
    for t in range(1, T):
        from_prev = torch.cat([neg, alpha[:-1] + move])
        acc = _combine(alpha + stay, from_prev, use_max)
        if skip is not None:
            from_skip = torch.cat([neg2, alpha[:-2] + skip])
            from_skip = torch.where(skip_ok, from_skip, torch.full_like(from_skip, NEG_INF))
            acc = _combine(acc, from_skip, use_max)
        alpha = em[t] + acc
    final = alpha[L - 1]
    if garbage is not None and L >= 2 and int(target[L - 1]) == garbage:
        final = _combine(final, alpha[L - 2], use_max)
    return final


def path_score(
    emissions: torch.Tensor,
    transitions: torch.Tensor,
    path: torch.Tensor
) -> torch.Tensor:
    """Score of a fixed frame-level path of length T."""
    T = emissions.size(0)
    frames = torch.arange(T, device=emissions.device)
    score = emissions[frames, path].sum()
    if T > 1:
        score = score + transitions[path[1:], path[:-1]].sum()
    return score


def viterbi_path(emissions: torch.Tensor, transitions: torch.Tensor) -> torch.Tensor:
    """Best unconstrained frame-level path (no gradient)."""
    with torch.no_grad():
        T, N = emissions.shape
        alpha = emissions[0].clone()
        backptr = torch.zeros(T, N, dtype=torch.long, device=emissions.device)
        for t in range(1, T):
            scores = alpha.unsqueeze(0) + transitions
            best, idx = scores.max(dim=1)
            backptr[t] = idx
            alpha = emissions[t] + best
        path = torch.empty(T, dtype=torch.long, device=emissions.device)
        path[T - 1] = alpha.argmax()
        for t in range(T - 1, 0, -1):
            path[t - 1] = backptr[t, path[t]]
    return path


def force_align_path(
    emissions: torch.Tensor,
    transitions: torch.Tensor,
    target: torch.Tensor
) -> torch.Tensor:
    """Best frame-level path spelling ``target`` (no gradient)."""
    with torch.no_grad():
        T = emissions.size(0)
        L = target.numel()
        if L == 0:
            raise ValueError("cannot align an empty target")
        if L > T:
            raise ValueError(f"target length {L} exceeds number of frames {T}")
        em = emissions[:, target]
        stay = transitions[target, target]
        move = transitions[target[1:], target[:-1]]
        alpha = torch.full((L,), NEG_INF, device=emissions.device, dtype=emissions.dtype)
        alpha[0] = em[0, 0]
        moved = torch.zeros(T, L, dtype=torch.bool, device=emissions.device)
        for t in range(1, T):
            s = alpha + stay
            m = torch.cat([alpha.new_full((1,), NEG_INF), alpha[:-1] + move])
            moved[t] = m > s
            alpha = em[t] + torch.maximum(s, m)
        positions = torch.empty(T, dtype=torch.long, device=emissions.device)
        pos = L - 1
        for t in range(T - 1, -1, -1):
            positions[t] = pos
            if t > 0 and moved[t, pos]:
                pos -= 1
    return target[positions]


def linear_segmentation(target: torch.Tensor, num_frames: int) -> torch.Tensor:
    """Frame-level path giving every label an (almost) equal share of frames."""
    L = target.numel()
    if L > num_frames:
        raise ValueError(f"target length {L} exceeds number of frames {num_frames}")
    frames = torch.arange(num_frames, device=target.device)
    positions = torch.div(frames * L, num_frames, rounding_mode='floor')
    return target[positions]


__all__ = [
    'NEG_INF',
    'full_connect_score',
    'force_align_score',
    'path_score',
    'viterbi_path',
    'force_align_path',
    'linear_segmentation',
]
