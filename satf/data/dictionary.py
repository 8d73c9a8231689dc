"""
Label Dictionary
================

Ordered bijection between label tokens and class ids, and the builder that
applies the optional augmentations in a fixed order.

Class ids are positional, so the augmentation order is part of the model:

    (a) dict_sil   alias noise <N> and laughter <L> to the separator '|'
    (b) target=phn derive the folded 39-phoneme dictionary; use it with dict39
    (c) replabel   append one class per repetition count "1".."n"
    (d) ctc/garbage append the blank/garbage class "#" (always last)

Author: Speech Alignment Training Framework Team
License: MIT
"""

from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from .phonemes import TIMIT_61_TO_39
from ..core.errors import ConfigError, ResourceError

BLANK_TOKEN = '#'
SEPARATOR_TOKEN = '|'
NOISE_TOKENS = ('N', 'L')


class Dictionary:
    """
    Token <-> class id mapping.

    Each class has one canonical token; extra tokens may be registered as
    aliases of an existing class without changing the class count.

    Example:
        >>> d = Dictionary(['a', 'b', '|'])
        >>> d.add('N', idx=d['|'])
        2
        >>> len(d), d['N']
        (3, 2)
    """

    def __init__(self, tokens: Optional[Iterable[str]] = None):
        self._tokens: List[str] = []
        self._index: Dict[str, int] = {}
        for token in tokens or []:
            self.add(token)

    @classmethod
    def load(cls, path: str) -> 'Dictionary':
        """Read one token per line (first whitespace-separated field)."""
        if not os.path.isfile(path):
            raise ResourceError(f"dictionary file not found: {path}", path)
        d = cls()
        with open(path, encoding='utf-8') as f:
            for line in f:
                fields = line.split()
                if fields:
                    d.add(fields[0])
        return d

    def add(self, token: str, idx: Optional[int] = None) -> int:
        """
        Register ``token``.

        Without ``idx`` a new class is appended; with ``idx`` the token
        becomes an alias of an existing class.
        """
        if token in self._index:
            raise ConfigError(f"duplicate dictionary token '{token}'")
        if idx is None:
            idx = len(self._tokens)
            self._tokens.append(token)
        elif not 0 <= idx < len(self._tokens):
            raise ConfigError(f"cannot alias '{token}' to unknown class id {idx}")
        self._index[token] = idx
        return idx

    def __len__(self) -> int:
        return len(self._tokens)

    def __contains__(self, token: str) -> bool:
        return token in self._index

    def __getitem__(self, token: str) -> int:
        return self._index[token]

    def get(self, token: str, default: Optional[int] = None) -> Optional[int]:
        return self._index.get(token, default)

    def token(self, idx: int) -> str:
        return self._tokens[idx]

    @property
    def tokens(self) -> List[str]:
        return list(self._tokens)

    def items(self) -> List[Tuple[str, int]]:
        return list(self._index.items())

    def encode(self, tokens: Iterable[str], skip_unknown: bool = False) -> List[int]:
        ids = []
        for token in tokens:
            idx = self._index.get(token)
            if idx is None:
                if skip_unknown:
                    continue
                raise KeyError(f"token '{token}' is not in the dictionary")
            ids.append(idx)
        return ids

    def decode(self, ids: Iterable[int]) -> List[str]:
        return [self._tokens[int(i)] for i in ids]

    def copy(self) -> 'Dictionary':
        d = Dictionary()
        d._tokens = list(self._tokens)
        d._index = dict(self._index)
        return d

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Dictionary):
            return NotImplemented
        return self._tokens == other._tokens and self._index == other._index

    def __repr__(self) -> str:
        return f"Dictionary(classes={len(self)}, tokens={len(self._index)})"


def load_phone_map(path: str) -> Dict[str, Optional[str]]:
    """
    Two-column folding table ``<phone61> <phone39>``; a single column
    marks a phoneme removed before scoring.
    """
    if not os.path.isfile(path):
        raise ResourceError(f"phoneme map file not found: {path}", path)
    mapping: Dict[str, Optional[str]] = {}
    with open(path, encoding='utf-8') as f:
        for line in f:
            fields = line.split()
            if fields:
                mapping[fields[0]] = fields[1] if len(fields) > 1 else None
    return mapping


def collapse_phones(
    dict61: Dictionary,
    mapping: Optional[Dict[str, Optional[str]]] = None
) -> Dictionary:
    """
    Folded dictionary: one class per distinct folded phoneme (in order of
    first appearance), every 61-phoneme token registered as an alias.
    Removed phonemes get no entry.
    """
    mapping = TIMIT_61_TO_39 if mapping is None else mapping
    dict39 = Dictionary()
    for phone in dict61.tokens:
        folded = mapping.get(phone, phone)
        if folded is None:
            continue
        if folded not in dict39:
            dict39.add(folded)
        if phone not in dict39:
            dict39.add(phone, idx=dict39[folded])
    return dict39


def fold_table(dict61: Dictionary, dict39: Dictionary) -> Dict[int, Optional[int]]:
    """61-class id -> 39-class id (None when the phoneme is removed)."""
    return {i: dict39.get(token) for i, token in enumerate(dict61.tokens)}


@dataclass
class DictionaryBundle:
    """Result of a dictionary build."""
    dictionary: Dictionary
    dict61: Optional[Dictionary] = None
    dict39: Optional[Dictionary] = None

    @property
    def blank(self) -> Optional[int]:
        return self.dictionary.get(BLANK_TOKEN)


class DictionaryBuilder:
    """
    Deterministic dictionary construction.

    Parameters:
        path: base token list
        target: 'ltr', 'phn' or 'wrd'
        dict_sil: alias noise/laughter markers to the separator
        dict39: train on the folded 39-phoneme dictionary
        replabel: number of repetition classes to append
        ctc: append the CTC blank
        garbage: append the garbage class
        phone_map: optional folding table file (built-in TIMIT table otherwise)
    """

    def __init__(
        self,
        path: str,
        target: str = 'ltr',
        dict_sil: bool = False,
        dict39: bool = False,
        replabel: int = 0,
        ctc: bool = False,
        garbage: bool = False,
        phone_map: str = ''
    ):
        self.path = path
        self.target = target
        self.dict_sil = dict_sil
        self.dict39 = dict39
        self.replabel = replabel
        self.ctc = ctc
        self.garbage = garbage
        self.phone_map = phone_map

    @classmethod
    def from_config(cls, options) -> 'DictionaryBuilder':
        opt = options
        return cls(
            path=os.path.join(opt.dict_dir, opt.dict),
            target=opt.target,
            dict_sil=opt.dict_sil,
            dict39=opt.dict39,
            replabel=opt.replabel,
            ctc=opt.ctc,
            garbage=opt.garbage,
            phone_map=opt.phone_map,
        )

    def build(self) -> DictionaryBundle:
        d = Dictionary.load(self.path)

        if self.dict_sil:
            if SEPARATOR_TOKEN not in d:
                raise ConfigError(
                    f"dict_sil requires the separator '{SEPARATOR_TOKEN}' in {self.path}"
                )
            for token in NOISE_TOKENS:
                d.add(token, idx=d[SEPARATOR_TOKEN])

        dict61 = dict39 = None
        if self.target == 'phn':
            mapping = load_phone_map(self.phone_map) if self.phone_map else None
            dict61 = d
            dict39 = collapse_phones(dict61, mapping)
            if self.dict39:
                d = dict39

        for i in range(1, self.replabel + 1):
            d.add(str(i))

        # blank/garbage must stay the last class
        if self.ctc or self.garbage:
            d.add(BLANK_TOKEN)

        return DictionaryBundle(dictionary=d, dict61=dict61, dict39=dict39)


__all__ = [
    'BLANK_TOKEN',
    'SEPARATOR_TOKEN',
    'Dictionary',
    'DictionaryBundle',
    'DictionaryBuilder',
    'collapse_phones',
    'fold_table',
    'load_phone_map',
]
