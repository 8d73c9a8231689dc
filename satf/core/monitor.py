"""
Checkpoint Monitor
==================

Experiment directories, run indices, model checkpoints and best-model
tracking.

Layout of an experiment directory:

    <run_dir>/<name>/
        001_run                 run index reservation
        001_config.yaml         run configuration (human readable)
        001_log / 001_perf      logs (see utils.logging)
        001_model_last.bin      checkpoint after every epoch
        001_model_<valid>.bin   checkpoint on strict improvement on <valid>
        heartbeat               touched on every training sample

``name`` is the user supplied run name, or a hash of the options so that
identical configurations land in the same directory.

Integration Pattern:
--------------------
    store = CheckpointStore(path, CheckpointStore.allocate_run_index(path))
    tracker = BestModelTracker(['dev'])

    for epoch in range(max_epochs):
        ...
        payload = store.payload(run_config, network, transitions)
        store.save('last', payload)
        if tracker.update('dev', valid_error):
            store.save('dev', store.payload(run_config, network, transitions, perf=valid_error))

Author: Speech Alignment Training Framework Team
License: MIT
"""

from __future__ import annotations
import hashlib
import json
import os
import re
import tempfile
import time
from typing import Any, Dict, Iterable, Optional, Tuple

import torch
import torch.nn as nn
import yaml

from .errors import ResourceError

_RUN_FILE = re.compile(r'^(\d{3,})_')
LAST_MODEL = 'model_last.bin'


def clean_filename(name: str) -> str:
    """Restrict a dataset name to [A-Za-z0-9_.-]."""
    return re.sub(r'[^A-Za-z0-9_.-]', '_', name)


def options_hash(options, origin: Optional[str] = None) -> str:
    """
    First 16 hex digits of the SHA-1 of the canonical options JSON.

    A fork also hashes the model file it starts from, so it never shares
    the directory of the experiment it branches from.
    """
    identity = options.identity_dict()
    if origin:
        identity['fork_origin'] = os.path.abspath(origin)
    canonical = json.dumps(identity, sort_keys=True, default=str)
    return hashlib.sha1(canonical.encode('utf-8')).hexdigest()[:16]


def new_path(root: str, options, origin: Optional[str] = None) -> str:
    """
    Experiment directory for ``options``.

    ``<root>/<run_name>`` when a run name is given, otherwise
    ``<root>/[<tag>-]<options hash>``. ``origin`` is the model file a fork
    starts from; a fork never resolves to the directory holding it.
    """
    if options.run_name:
        name = options.run_name
    else:
        name = options_hash(options, origin)
        if options.tag:
            name = f"{options.tag}-{name}"
    path = os.path.join(root, name)
    if origin and os.path.abspath(path) == os.path.dirname(os.path.abspath(origin)):
        digest = hashlib.sha1(os.path.abspath(origin).encode('utf-8')).hexdigest()[:8]
        path = f"{path}-fork-{digest}"
    return path


class CheckpointStore:
    """
    Checkpoint files of one run (``path``, ``run_index``).

    Parameters:
        path: experiment directory
        run_index: index prefixing every file of this run
        is_main: only the main worker writes
    """

    def __init__(self, path: str, run_index: int, is_main: bool = True):
        self.path = path
        self.run_index = run_index
        self.is_main = is_main

    # ========================
    # Run Indices
    # ========================

    @staticmethod
    def run_indices(path: str) -> Iterable[int]:
        if not os.path.isdir(path):
            return []
        indices = []
        for filename in os.listdir(path):
            m = _RUN_FILE.match(filename)
            if m:
                indices.append(int(m.group(1)))
        return indices

    @staticmethod
    def allocate_run_index(path: str) -> int:
        """
        Reserve the next run index by creating ``NNN_run`` exclusively.

        Indices are strictly increasing, also across concurrent callers.
        """
        os.makedirs(path, exist_ok=True)
        idx = max(CheckpointStore.run_indices(path), default=0) + 1
        while True:
            try:
                fd = os.open(CheckpointStore.run_file(path, 'run', idx),
                             os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                idx += 1
                continue
            with os.fdopen(fd, 'w') as f:
                f.write(f"{os.getpid()} {time.time()}\n")
            return idx

    @staticmethod
    def latest_run_index(path: str, filename: str) -> Optional[int]:
        """Largest index whose ``NNN_<filename>`` exists."""
        found = [
            idx for idx in CheckpointStore.run_indices(path)
            if os.path.isfile(CheckpointStore.run_file(path, filename, idx))
        ]
        return max(found) if found else None

    @staticmethod
    def run_file(path: str, name: str, run_index: int) -> str:
        return os.path.join(path, "%03d_%s" % (run_index, name))

    def filename(self, name: str) -> str:
        return self.run_file(self.path, name, self.run_index)

    def model_filename(self, kind: str) -> str:
        """``kind`` is 'last' or an evaluation set name."""
        if kind == 'last':
            return self.filename(LAST_MODEL)
        return self.filename(clean_filename(f"model_{kind}.bin"))

    # ========================
    # Save / Load
    # ========================

    @staticmethod
    def payload(
        run_config,
        network: nn.Module,
        transitions: torch.Tensor,
        perf: Optional[float] = None
    ) -> Dict[str, Any]:
        """Checkpoint content for the pristine (unwrapped) network."""
        payload = {
            'config': run_config.to_dict(),
            'kw': run_config.kw,
            'dw': run_config.dw,
            'arch': network.arch_config(),
            'network': {k: v.detach().cpu() for k, v in network.state_dict().items()},
            'transitions': transitions.detach().cpu().clone(),
            'run_index': run_config.run_index,
            'timestamp': time.time(),
        }
        if perf is not None:
            payload['perf'] = float(perf)
        return payload

    def save(self, kind: str, payload: Dict[str, Any]) -> Optional[str]:
        """
        Write a checkpoint atomically (temporary file + rename).

        Returns the file name, or None on non-main workers.
        """
        if not self.is_main:
            return None
        filename = self.model_filename(kind)
        fd, tmp = tempfile.mkstemp(dir=self.path, prefix='.tmp_', suffix='.bin')
        try:
            with os.fdopen(fd, 'wb') as f:
                torch.save(payload, f)
            os.replace(tmp, filename)
        except BaseException:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise
        return filename

    @staticmethod
    def load(filename: str) -> Dict[str, Any]:
        if not os.path.isfile(filename):
            raise ResourceError(f"model file not found: {filename}", filename)
        return torch.load(filename, map_location='cpu', weights_only=True)

    @staticmethod
    def resume(path: str) -> Tuple[str, Dict[str, Any]]:
        """Latest ``NNN_model_last.bin`` of an experiment directory."""
        idx = CheckpointStore.latest_run_index(path, LAST_MODEL)
        if idx is None:
            raise ResourceError(f"no {LAST_MODEL} found in {path}", path)
        filename = CheckpointStore.run_file(path, LAST_MODEL, idx)
        return filename, CheckpointStore.load(filename)

    @staticmethod
    def fork(model_file: str) -> Tuple[str, Dict[str, Any]]:
        return model_file, CheckpointStore.load(model_file)

    @staticmethod
    def best_scores(path: str, names: Iterable[str]) -> Dict[str, float]:
        """Best ``perf`` recorded in existing best-model checkpoints, per name."""
        scores: Dict[str, float] = {}
        for name in names:
            target = clean_filename(f"model_{name}.bin")
            for idx in CheckpointStore.run_indices(path):
                filename = CheckpointStore.run_file(path, target, idx)
                if not os.path.isfile(filename):
                    continue
                perf = CheckpointStore.load(filename).get('perf')
                if perf is not None and perf < scores.get(name, float('inf')):
                    scores[name] = float(perf)
        return scores

    def write_config(self, run_config) -> Optional[str]:
        if not self.is_main:
            return None
        filename = self.filename('config.yaml')
        with open(filename, 'w', encoding='utf-8') as f:
            yaml.safe_dump(run_config.to_dict(), f, default_flow_style=False, sort_keys=True)
        return filename


class BestModelTracker:
    """
    Best evaluation error per validation set.

    ``update`` returns True only on strict improvement.
    """

    def __init__(self, names: Iterable[str], initial: Optional[Dict[str, float]] = None):
        self.best: Dict[str, float] = {name: float('inf') for name in names}
        for name, value in (initial or {}).items():
            if name in self.best:
                self.best[name] = float(value)

    def update(self, name: str, value: float) -> bool:
        if value < self.best[name]:
            self.best[name] = value
            return True
        return False


class Heartbeat:
    """Touches a file to show the run is alive."""

    def __init__(self, filename: str, enabled: bool = True):
        self.filename = filename
        self.enabled = enabled

    def __call__(self) -> None:
        if not self.enabled:
            return
        with open(self.filename, 'w') as f:
            f.write(f"{time.time()}\n")


__all__ = [
    'LAST_MODEL',
    'clean_filename',
    'options_hash',
    'new_path',
    'CheckpointStore',
    'BestModelTracker',
    'Heartbeat',
]
