"""
Speech Datasets
===============

Feature/transcription datasets and the iterators used by the engine.

A dataset ``<name>`` is a directory ``<data_dir>/<name>`` holding, per
utterance ``<id>``:

    <id>.<input>    features, numpy array (T, C) (input='npy')
    <id>.<target>   transcription tokens, whitespace separated
                    (with seg: one label per output frame)
    <id>.wrd        word transcription (optional; derived from letters)

Several names separated by spaces are concatenated.

This module provides:
- SpeechDataset: filtering, sub-selection and worker sharding
- EpochSampler: per-epoch sample order (itersz, resampling)
- Batch / collate_samples: padded batches
- DatasetIterator: DataLoader wrapper with size/resample

Author: Speech Alignment Training Framework Team
License: MIT
"""

from __future__ import annotations
import math
import os
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Sequence

import numpy as np
import torch
from torch.utils.data import DataLoader, Dataset, Sampler

from .dictionary import SEPARATOR_TOKEN
from ..core.errors import ConfigError, ResourceError


@dataclass
class Batch:
    """Padded batch of utterances."""
    inputs: torch.Tensor                 # (B, T, C)
    input_sizes: torch.Tensor            # (B,)
    targets: List[torch.Tensor]
    words: List[str] = field(default_factory=list)
    names: List[str] = field(default_factory=list)

    def __len__(self) -> int:
        return self.inputs.size(0)

    def to(self, device) -> 'Batch':
        return Batch(
            inputs=self.inputs.to(device),
            input_sizes=self.input_sizes,
            targets=[t.to(device) for t in self.targets],
            words=self.words,
            names=self.names,
        )


def collate_samples(samples: Sequence[Dict]) -> Batch:
    sizes = [s['input'].size(0) for s in samples]
    channels = samples[0]['input'].size(1)
    inputs = torch.zeros(len(samples), max(sizes), channels)
    for i, s in enumerate(samples):
        inputs[i, :sizes[i]] = s['input']
    return Batch(
        inputs=inputs,
        input_sizes=torch.tensor(sizes, dtype=torch.long),
        targets=[s['target'] for s in samples],
        words=[s['words'] for s in samples],
        names=[s['name'] for s in samples],
    )


def read_tokens(filename: str) -> List[str]:
    with open(filename, encoding='utf-8') as f:
        return f.read().split()


class SpeechDataset(Dataset):
    """
    Utterances of one or several dataset directories.

    Parameters:
        data_dir: root of the dataset directories
        names: dataset names (space-separated string or list)
        encoder: tokens -> LongTensor of class ids
        input_ext / target_ext: file extensions
        channels: expected feature channels
        max_isz / max_tsz / min_tsz: size filters (train only)
        output_length: network input frames -> output frames; utterances
            whose encoded target needs more output frames are dropped
        target_scale: output frames needed per target label (states per label)
        ctc: a repeated label also needs a blank frame in between
        maxload: keep at most this many utterances (< 0: all)
        random_load: pick the ``maxload`` utterances at random (train)
        rank / world_size: keep the ``rank``-th shard
        equal_shards: drop the remainder so every shard has the same size
        seed: seed of the random sub-selection
    """

    def __init__(
        self,
        data_dir: str,
        names,
        encoder: Callable[[Sequence[str]], torch.Tensor],
        input_ext: str = 'npy',
        target_ext: str = 'ltr',
        channels: int = 1,
        max_isz: float = math.inf,
        max_tsz: float = math.inf,
        min_tsz: int = 0,
        output_length: Optional[Callable[[int], int]] = None,
        target_scale: int = 1,
        ctc: bool = False,
        maxload: int = -1,
        random_load: bool = False,
        rank: int = 0,
        world_size: int = 1,
        equal_shards: bool = False,
        seed: int = 1111
    ):
        self.data_dir = data_dir
        self.names = names.split() if isinstance(names, str) else list(names)
        self.encoder = encoder
        self.input_ext = input_ext
        self.target_ext = target_ext
        self.channels = channels

        items = []
        for name in self.names:
            items.extend(self._scan(os.path.join(data_dir, name)))

        filtered = [
            item for item in items
            if item['isz'] <= max_isz and min_tsz <= item['tsz'] <= max_tsz
        ]
        self.filtered = len(items) - len(filtered)
        if output_length is not None:
            aligned = [
                item for item in filtered
                if output_length(item['isz']) >= self.required_frames(item, target_scale, ctc)
            ]
            self.too_short = len(filtered) - len(aligned)
            filtered = aligned
        else:
            self.too_short = 0

        if 0 <= maxload < len(filtered):
            if random_load:
                g = torch.Generator().manual_seed(seed)
                keep = sorted(torch.randperm(len(filtered), generator=g)[:maxload].tolist())
                filtered = [filtered[i] for i in keep]
            else:
                filtered = filtered[:maxload]

        if equal_shards and world_size > 1:
            filtered = filtered[:(len(filtered) // world_size) * world_size]
        self.items = filtered[rank::world_size]

    @staticmethod
    def required_frames(item: Dict, target_scale: int = 1, ctc: bool = False) -> float:
        """
        Fewest output frames that can align the encoded target of ``item``.

        An empty target has no alignment at all and never fits.
        """
        if item['lsz'] == 0:
            return math.inf
        return item['lsz'] * target_scale + (item['reps'] if ctc else 0)

    def _scan(self, directory: str) -> List[Dict]:
        if not os.path.isdir(directory):
            raise ResourceError(f"dataset directory not found: {directory}", directory)
        suffix = '.' + self.input_ext
        items = []
        for filename in sorted(os.listdir(directory)):
            if not filename.endswith(suffix):
                continue
            uid = filename[:-len(suffix)]
            base = os.path.join(directory, uid)
            target_file = f"{base}.{self.target_ext}"
            if not os.path.isfile(target_file):
                raise ResourceError(f"missing transcription: {target_file}", target_file)
            features = np.load(base + suffix, mmap_mode='r')
            tokens = read_tokens(target_file)
            labels = self.encoder(tokens).tolist()
            items.append({
                'name': uid,
                'base': base,
                'isz': int(features.shape[0]),
                'tsz': len(tokens),
                'lsz': len(labels),
                'reps': sum(1 for x, y in zip(labels, labels[1:]) if x == y),
            })
        return items

    def __len__(self) -> int:
        return len(self.items)

    def load_input(self, item: Dict) -> torch.Tensor:
        features = np.load(item['base'] + '.' + self.input_ext).astype(np.float32)
        if features.ndim == 1:
            features = features[:, None]
        if features.shape[1] != self.channels:
            raise ConfigError(
                f"{item['base']}: expected {self.channels} feature channels, "
                f"got {features.shape[1]}"
            )
        return torch.from_numpy(np.ascontiguousarray(features))

    def load_words(self, item: Dict, tokens: List[str]) -> str:
        filename = item['base'] + '.wrd'
        if os.path.isfile(filename):
            return ' '.join(read_tokens(filename))
        if self.target_ext == 'wrd':
            return ' '.join(tokens)
        return ''.join(tokens).replace(SEPARATOR_TOKEN, ' ').strip()

    def __getitem__(self, index: int) -> Dict:
        item = self.items[index]
        tokens = read_tokens(f"{item['base']}.{self.target_ext}")
        return {
            'name': item['name'],
            'input': self.load_input(item),
            'target': self.encoder(tokens),
            'words': self.load_words(item, tokens),
        }


class EpochSampler(Sampler):
    """
    Sample order of one epoch.

    ``itersz > 0`` draws that many indices per epoch (cycling through
    random permutations); otherwise an epoch is a permutation of the whole
    set. ``shuffle=False`` keeps file order. :meth:`resample` draws the
    next epoch's order.
    """

    def __init__(self, size: int, itersz: int = -1, shuffle: bool = True, seed: int = 1111):
        self.size = size
        self.itersz = itersz
        self.shuffle = shuffle
        self.generator = torch.Generator().manual_seed(seed)
        self.indices: List[int] = []
        self.resample()

    def resample(self) -> None:
        count = self.itersz if self.itersz > 0 else self.size
        indices: List[int] = []
        while len(indices) < count and self.size > 0:
            if self.shuffle:
                indices.extend(torch.randperm(self.size, generator=self.generator).tolist())
            else:
                indices.extend(range(self.size))
        self.indices = indices[:count]

    def __iter__(self) -> Iterator[int]:
        return iter(list(self.indices))

    def __len__(self) -> int:
        return len(self.indices)


class DatasetIterator:
    """
    Batches of a SpeechDataset in sampler order.

    ``batch_size == 0`` yields single-utterance batches.
    """

    def __init__(
        self,
        dataset: SpeechDataset,
        batch_size: int = 0,
        sampler: Optional[EpochSampler] = None,
        nthread: int = 1
    ):
        self.dataset = dataset
        self.sampler = sampler or EpochSampler(len(dataset), shuffle=False)
        self.loader = DataLoader(
            dataset,
            batch_size=max(batch_size, 1),
            sampler=self.sampler,
            collate_fn=collate_samples,
            num_workers=nthread if nthread > 1 else 0,
        )

    def size(self) -> int:
        """Number of batches per epoch."""
        return len(self.loader)

    def resample(self) -> None:
        self.sampler.resample()

    def __iter__(self) -> Iterator[Batch]:
        return iter(self.loader)

    def __len__(self) -> int:
        return self.size()


def build_iterator(
    options,
    names: str,
    encoder,
    train: bool = False,
    rank: int = 0,
    world_size: int = 1,
    maxload: int = -1,
    output_length: Optional[Callable[[int], int]] = None
) -> DatasetIterator:
    """
    Dataset iterator for training (filtered, shuffled) or evaluation.

    With ``output_length`` training utterances too short to align their
    target are dropped.
    """
    opt = options
    dataset = SpeechDataset(
        data_dir=opt.data_dir,
        names=names,
        encoder=encoder,
        input_ext=opt.input,
        target_ext=opt.target,
        channels=opt.channels,
        max_isz=opt.max_isz if train else math.inf,
        max_tsz=opt.max_tsz if train else math.inf,
        min_tsz=opt.min_tsz if train else 0,
        output_length=output_length if train else None,
        target_scale=opt.nstate if opt.msc else 1,
        ctc=opt.ctc,
        maxload=maxload,
        random_load=train,
        rank=rank,
        world_size=world_size,
        equal_shards=train,
        seed=opt.seed,
    )
    if train:
        sampler = EpochSampler(len(dataset), opt.itersz, shuffle=True, seed=opt.seed + rank)
        return DatasetIterator(dataset, opt.batch_size, sampler, opt.nthread)
    return DatasetIterator(dataset, opt.batch_size, nthread=opt.nthread)


__all__ = [
    'Batch',
    'collate_samples',
    'read_tokens',
    'SpeechDataset',
    'EpochSampler',
    'DatasetIterator',
    'build_iterator',
]
