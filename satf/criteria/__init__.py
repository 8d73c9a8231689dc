"""
Speech Alignment Training Framework - Criteria
==============================================

Alignment criteria sharing one transition matrix, and the adapters that
present them to the epoch engine.
"""

from .criterion import (
    make_scale,
    TransitionMatrix,
    SequenceCriterion,
    ConnectionistTemporalCriterion,
    AutoSegCriterion,
    FullConnectCriterion,
    LinearSegCriterion,
    CrossEntropyForceAlignCriterion,
    MultiStateFullConnectCriterion,
    Viterbi,
    CriterionAdapter,
    ExampleCriterionAdapter,
    BatchCriterionAdapter,
    ThreadedBatchCriterionAdapter,
    make_adapter,
    CriterionSet,
)

__all__ = [
    'make_scale',
    'TransitionMatrix',
    'SequenceCriterion',
    'ConnectionistTemporalCriterion',
    'AutoSegCriterion',
    'FullConnectCriterion',
    'LinearSegCriterion',
    'CrossEntropyForceAlignCriterion',
    'MultiStateFullConnectCriterion',
    'Viterbi',
    'CriterionAdapter',
    'ExampleCriterionAdapter',
    'BatchCriterionAdapter',
    'ThreadedBatchCriterionAdapter',
    'make_adapter',
    'CriterionSet',
]
