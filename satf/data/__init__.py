"""
Speech Alignment Training Framework - Data
==========================================

Dictionaries, label transforms and speech datasets.
"""

from .dictionary import (
    BLANK_TOKEN,
    SEPARATOR_TOKEN,
    Dictionary,
    DictionaryBundle,
    DictionaryBuilder,
    collapse_phones,
    fold_table,
    load_phone_map,
)
from .phonemes import TIMIT_61_TO_39, fold_phone
from .transforms import (
    UNK_WORD,
    pack_replabel,
    unpack_replabel,
    TargetEncoder,
    LabelRemapper,
    load_word_dictionary,
    WordMapper,
)
from .dataset import (
    Batch,
    collate_samples,
    SpeechDataset,
    EpochSampler,
    DatasetIterator,
    build_iterator,
)

__all__ = [
    'BLANK_TOKEN',
    'SEPARATOR_TOKEN',
    'Dictionary',
    'DictionaryBundle',
    'DictionaryBuilder',
    'collapse_phones',
    'fold_table',
    'load_phone_map',
    'TIMIT_61_TO_39',
    'fold_phone',
    'UNK_WORD',
    'pack_replabel',
    'unpack_replabel',
    'TargetEncoder',
    'LabelRemapper',
    'load_word_dictionary',
    'WordMapper',
    'Batch',
    'collate_samples',
    'SpeechDataset',
    'EpochSampler',
    'DatasetIterator',
    'build_iterator',
]
