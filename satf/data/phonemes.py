"""
TIMIT Phoneme Folding
=====================

Standard 61 -> 39 phoneme folding (Lee & Hon, 1989). Phonemes missing from
the table map to themselves; ``None`` marks phonemes removed before scoring.
"""

from __future__ import annotations
from typing import Dict, Optional

TIMIT_61_TO_39: Dict[str, Optional[str]] = {
    'ao': 'aa',
    'ax': 'ah',
    'ax-h': 'ah',
    'axr': 'er',
    'hv': 'hh',
    'ix': 'ih',
    'el': 'l',
    'em': 'm',
    'en': 'n',
    'nx': 'n',
    'eng': 'ng',
    'zh': 'sh',
    'ux': 'uw',
    'pcl': 'sil',
    'tcl': 'sil',
    'kcl': 'sil',
    'bcl': 'sil',
    'dcl': 'sil',
    'gcl': 'sil',
    'h#': 'sil',
    'pau': 'sil',
    'epi': 'sil',
    'q': None,
}


def fold_phone(phone: str, mapping: Optional[Dict[str, Optional[str]]] = None) -> Optional[str]:
    mapping = TIMIT_61_TO_39 if mapping is None else mapping
    return mapping.get(phone, phone)


__all__ = ['TIMIT_61_TO_39', 'fold_phone']
