"""
Command Line Options
====================

argparse declarations for every TrainingConfig field.

Options are declared in two groups. Mutable options may be given in every
mode; immutable options only with ``--train`` (with ``--continue`` and
``--fork`` they are restored from the model archive). Only options given
explicitly on the command line are returned, so that they can be applied
on top of a preset or a restored configuration.

Author: Speech Alignment Training Framework Team
License: MIT
"""

from __future__ import annotations
import argparse
from dataclasses import fields
from typing import Any, Dict, List, Optional, Sequence

from .config import TrainingConfig, PRESETS, ONORM_MODES, TARGETS
from .errors import UsageError

USAGE = """usage:
   {prog} --train <options...>
or {prog} --continue <directory> <options...>
or {prog} --fork <directory/model> <options...>"""

HELP: Dict[str, str] = {
    # Run
    'data_dir': 'speech data directory',
    'dict_dir': 'dictionary directory',
    'run_dir': 'experiment root directory',
    'arch_dir': 'architecture directory',
    'run_name': 'name of current run',
    'distributed': 'use torch.distributed data parallelism',
    'seed': 'random seed (0: nondeterministic)',
    'progress': 'display training progress per epoch',
    'batch_size': 'batch size (0: per-example criteria)',
    'gpu': 'use gpu instead of cpu (device index + 1)',
    'nthread': 'number of data loading workers',
    'mt_criterion': 'multi-threaded batched criterion',
    'terrsr': 'train error sample rate (1: every update, 0: skip)',
    'tag': 'tag this experiment with a particular name',
    'gc': 'garbage collect every N samples',
    'tensorboard': 'also write TensorBoard scalars',
    # Learning
    'linseg': 'number of linear segmentation epochs (without --seg)',
    'linseg_znet': 'use the zero network during linear segmentation',
    'lin_lr': 'linear segmentation learning rate (< 0: use lr)',
    'lin_lr_crit': 'linear segmentation criterion learning rate (< 0: use lr-crit)',
    'iter': 'number of epochs of the main phase',
    'itersz': 'samples per epoch (< 0: full dataset)',
    'lr': 'learning rate',
    'falseg': 'number of forced alignment epochs',
    'fal_lr': 'forced alignment learning rate (< 0: use lr)',
    'sqnorm': 'square-root the learning rate and output normalizations',
    'layer_lr': 'per-layer learning rate (divided by fan-in)',
    'lr_crit': 'criterion (transition) learning rate',
    'momentum': 'momentum (< 0: none)',
    'weight_decay': 'weight decay (< 0: none)',
    # Filtering
    'abs_clamp': 'if > 0, clamp gradients to [-value, value]',
    'scale_clamp': 'if > 0, clamp gradients to scale*|w| + abs-clamp',
    'norm_clamp': 'if > 0, clamp the gradient norm',
    'max_isz': 'max input size allowed during training',
    'max_tsz': 'max target size allowed during training',
    'min_tsz': 'min target size allowed during training',
    'noresample': 'do not resample training data every epoch',
    # Data
    'train': 'space-separated list of training datasets',
    'valid': 'space-separated list of validation datasets',
    'test': 'space-separated list of test datasets',
    'maxload': 'max number of training examples (random sub-selection)',
    'maxload_valid': 'max number of validation examples (linear sub-selection)',
    'maxload_test': 'max number of test examples (linear sub-selection)',
    'dict_sil': 'collapse noise <N> and laughter <L> to the separator',
    # Words
    'wer': 'compute word error rate (viterbi)',
    'bmr_wer': 'compute decoder word error rate',
    'bmr_decoder': 'word decoder factory (module:factory)',
    'bmr_letters': 'path to LM letters',
    'bmr_words': 'path to LM words',
    'bmr_lm': 'path to LM model',
    'bmr_smearing': 'LM smearing',
    'bmr_max_word': 'limit LM word dictionary',
    'bmr_lm_weight': 'language model weight',
    'bmr_word_score': 'word insertion score',
    'bmr_unk_score': 'unknown word insertion score',
    'bmr_beam_size': 'beam size',
    'bmr_beam_score': 'beam threshold',
    'bmr_force_end_sil': 'force end silence',
    'bmr_logadd': 'use logadd instead of max in the decoder',
    # Criterion
    'posmax': 'use max instead of logadd (target side)',
    'negmax': 'use max instead of logadd (normalizer)',
    'restore_best_scores': 'on --continue, start from the best scores already saved',
    # Immutable
    'arch': 'network architecture (built-in name or file in arch-dir)',
    'nstate': 'number of states per label (with --msc)',
    'msc': 'use the multi-state criterion',
    'ctc': 'use the CTC criterion',
    'garbage': 'add a garbage class between target labels',
    'lsm': 'add a log-softmax output layer',
    'wnorm': 'weight normalization',
    'onorm': 'output normalization',
    'input': 'input feature file extension',
    'target': 'target type',
    'channels': 'number of input feature channels',
    'dict': 'dictionary file in dict-dir',
    'phone_map': '61 -> 39 phoneme folding table (default: built-in TIMIT table)',
    'replabel': 'replace up to N repetitions by additional classes',
    'dict39': 'train on the folded 39-phoneme dictionary (target=phn)',
    'surround': 'surround targets with this label',
    'seg': 'the segmentation is given',
    'shift': 'number of input shifts',
    'dshift': 'frames per input shift',
}

CHOICES = {
    'onorm': ONORM_MODES,
    'target': TARGETS,
}


class OptionParser(argparse.ArgumentParser):
    """ArgumentParser raising UsageError instead of exiting."""

    def error(self, message: str):
        raise UsageError(message)


def option_flag(name: str) -> str:
    return '--' + name.replace('_', '-')


def _add_field(group, f) -> None:
    default = f.default
    kwargs: Dict[str, Any] = {
        'dest': f.name,
        'default': argparse.SUPPRESS,
        'help': f"{HELP.get(f.name, '')} (default: {default})",
    }
    if isinstance(default, bool):
        kwargs['action'] = argparse.BooleanOptionalAction
    else:
        kwargs['type'] = type(default)
        if f.name in CHOICES:
            kwargs['choices'] = CHOICES[f.name]
    group.add_argument(option_flag(f.name), **kwargs)


def create_parser(mutable_only: bool = False, prog: str = 'satf-train') -> OptionParser:
    """Create argument parser."""
    parser = OptionParser(prog=prog, add_help=False, allow_abbrev=False)
    mutable = TrainingConfig.mutable_fields()
    group = parser.add_argument_group('mutable options')
    for f in fields(TrainingConfig):
        if f.name in mutable:
            _add_field(group, f)
    if not mutable_only:
        group = parser.add_argument_group('immutable options')
        for f in fields(TrainingConfig):
            if f.name not in mutable:
                _add_field(group, f)
        parser.add_argument('--preset', choices=sorted(PRESETS), default=argparse.SUPPRESS,
                            help='start from a preset configuration')
    return parser


def parse_overrides(
    argv: Sequence[str],
    mutable_only: bool = False,
    prog: str = 'satf-train'
) -> Dict[str, Any]:
    """
    Options given explicitly in ``argv``.

    Raises:
        UsageError: unknown option or invalid value (an immutable option
            given with ``mutable_only`` is unknown)
    """
    parser = create_parser(mutable_only, prog)
    return vars(parser.parse_args(list(argv)))


def usage(prog: str = 'satf-train') -> str:
    return USAGE.format(prog=prog)


def format_help(prog: str = 'satf-train') -> str:
    return usage(prog) + "\n\n" + create_parser(False, prog).format_help()


__all__ = [
    'HELP',
    'OptionParser',
    'option_flag',
    'create_parser',
    'parse_overrides',
    'usage',
    'format_help',
]
