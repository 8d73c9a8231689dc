"""
Label Transforms
================

Target encoding for training and label remapping for scoring.

- TargetEncoder: tokens -> class ids (surround label, repetition packing)
- LabelRemapper: decoded/reference ids -> ids compared by the edit
  distance (merge repeats, drop blank, unpack repetitions, fold phonemes)
- WordMapper: label ids / transcriptions -> word ids

Author: Speech Alignment Training Framework Team
License: MIT
"""

from __future__ import annotations
import os
from typing import Dict, Iterable, List, Optional, Sequence

import torch

from .dictionary import Dictionary, SEPARATOR_TOKEN
from ..core.errors import ResourceError

UNK_WORD = '<unk>'


def pack_replabel(ids: Sequence[int], replabel: int, dictionary: Dictionary) -> List[int]:
    """
    Replace runs of a repeated label by the label followed by repetition
    classes. A run longer than ``replabel + 1`` restarts with the label, so
    the packed sequence never holds two equal neighbours: with replabel=2,
    ``a a a`` -> ``a 2`` and ``a a a a a`` -> ``a 2 a 1``.
    """
    if replabel <= 0:
        return list(ids)
    out: List[int] = []
    i = 0
    n = len(ids)
    while i < n:
        label = ids[i]
        j = i + 1
        while j < n and ids[j] == label:
            j += 1
        remaining = j - i
        while remaining > 0:
            out.append(label)
            count = min(remaining - 1, replabel)
            if count > 0:
                out.append(dictionary[str(count)])
            remaining -= count + 1
        i = j
    return out


def unpack_replabel(ids: Sequence[int], replabel: int, dictionary: Dictionary) -> List[int]:
    """Inverse of :func:`pack_replabel`; leading repetition classes are dropped."""
    if replabel <= 0:
        return list(ids)
    counts = {dictionary[str(c)]: c for c in range(1, replabel + 1)}
    out: List[int] = []
    prev: Optional[int] = None
    for idx in ids:
        if idx in counts:
            if prev is not None:
                out.extend([prev] * counts[idx])
        else:
            out.append(idx)
            prev = idx
    return out


class TargetEncoder:
    """
    Transcription tokens -> LongTensor of class ids.

    Parameters:
        dictionary: working dictionary
        replabel: repetition packing (0 disables)
        surround: label added at both ends when not already present
        skip_unknown: drop tokens without a class (folded-away phonemes)
    """

    def __init__(
        self,
        dictionary: Dictionary,
        replabel: int = 0,
        surround: str = '',
        skip_unknown: bool = False
    ):
        self.dictionary = dictionary
        self.replabel = replabel
        self.surround = surround
        self.skip_unknown = skip_unknown

    def __call__(self, tokens: Sequence[str]) -> torch.Tensor:
        tokens = list(tokens)
        if self.surround:
            if not tokens or tokens[0] != self.surround:
                tokens.insert(0, self.surround)
            if tokens[-1] != self.surround:
                tokens.append(self.surround)
        ids = self.dictionary.encode(tokens, skip_unknown=self.skip_unknown)
        ids = pack_replabel(ids, self.replabel, self.dictionary)
        return torch.tensor(ids, dtype=torch.long)


class LabelRemapper:
    """
    Normalize a label sequence before computing edit distances.

    Steps (each optional): merge consecutive repeats, drop the blank/garbage
    class, unpack repetition classes, fold 61 -> 39 phonemes.
    """

    def __init__(
        self,
        uniq: bool = True,
        blank: Optional[int] = None,
        replabel: int = 0,
        dictionary: Optional[Dictionary] = None,
        fold: Optional[Dict[int, Optional[int]]] = None
    ):
        self.uniq = uniq
        self.blank = blank
        self.replabel = replabel
        self.dictionary = dictionary
        self.fold = fold

    def __call__(self, labels: torch.Tensor) -> torch.Tensor:
        if labels.numel() > 0 and self.uniq:
            labels = torch.unique_consecutive(labels)
        ids = [int(i) for i in labels.tolist()]
        if self.blank is not None:
            ids = [i for i in ids if i != self.blank]
        if self.replabel > 0 and self.dictionary is not None:
            ids = unpack_replabel(ids, self.replabel, self.dictionary)
        if self.fold is not None:
            ids = [self.fold[i] for i in ids if self.fold.get(i) is not None]
        return torch.tensor(ids, dtype=torch.long)


def load_word_dictionary(path: str) -> Dict[str, int]:
    """Word list (first field per line) -> id; ``<unk>`` gets the last id."""
    if not os.path.isfile(path):
        raise ResourceError(f"word list not found: {path}", path)
    words: Dict[str, int] = {}
    with open(path, encoding='utf-8') as f:
        for line in f:
            fields = line.split()
            if fields and fields[0] not in words:
                words[fields[0]] = len(words)
    words[UNK_WORD] = len(words)
    return words


class WordMapper:
    """
    Map label sequences and transcriptions to word ids.

    Unknown words either map to ``<unk>`` or, with a per-sample ``unk_ids``
    table, to fresh ids beyond the vocabulary so that distinct unknown words
    stay distinct.
    """

    def __init__(self, words: Dict[str, int], dictionary: Dictionary):
        self.words = words
        self.dictionary = dictionary
        self.unk = words[UNK_WORD]

    def labels_to_text(self, labels: torch.Tensor) -> str:
        tokens = self.dictionary.decode(labels.tolist())
        if SEPARATOR_TOKEN in self.dictionary:
            return ''.join(tokens).replace(SEPARATOR_TOKEN, ' ')
        return ' '.join(tokens)

    def words_to_ids(
        self,
        text: str,
        unk_ids: Optional[Dict[str, int]] = None
    ) -> torch.Tensor:
        ids = []
        for word in text.split():
            idx = self.words.get(word)
            if idx is None:
                if unk_ids is None:
                    idx = self.unk
                else:
                    idx = unk_ids.setdefault(word, len(self.words) + len(unk_ids))
            ids.append(idx)
        return torch.tensor(ids, dtype=torch.long)

    def labels_to_ids(
        self,
        labels: torch.Tensor,
        unk_ids: Optional[Dict[str, int]] = None
    ) -> torch.Tensor:
        return self.words_to_ids(self.labels_to_text(labels), unk_ids)

    def remove_unk(self, ids: Iterable[int]) -> torch.Tensor:
        return torch.tensor([int(i) for i in ids if int(i) != self.unk], dtype=torch.long)


__all__ = [
    'UNK_WORD',
    'pack_replabel',
    'unpack_replabel',
    'TargetEncoder',
    'LabelRemapper',
    'load_word_dictionary',
    'WordMapper',
]
