"""
Speech Alignment Training Framework - Configuration
===================================================

Central configuration dataclasses for a training run.

This module provides:
- TrainingConfig: every user-facing option, split into *mutable* options
  (may be overridden when a run is continued or forked) and *immutable*
  options (baked into the experiment identity and the model archive)
- RunConfig: immutable snapshot of the options plus derived fields
  (class count, receptive field, effective learning rates, provenance)
- PhaseParams: per-phase overrides computed by the curriculum controller

Options are never written back into a TrainingConfig once a run has
started; anything phase-specific lives in a PhaseParams record.

Author: Speech Alignment Training Framework Team
License: MIT
"""

from __future__ import annotations
import math
import os
import getpass
import socket
from dataclasses import dataclass, field, fields, replace, asdict
from datetime import datetime
from typing import Optional, Dict, Any, List

from .errors import ConfigError


def _mutable(default: Any) -> Any:
    return field(default=default, metadata={'mutable': True})


def _immutable(default: Any) -> Any:
    return field(default=default, metadata={'mutable': False})


_HOME = os.path.expanduser('~')

ONORM_MODES = ('none', 'input', 'target')
TARGETS = ('ltr', 'phn', 'wrd')


@dataclass(frozen=True)
class TrainingConfig:
    """
    Unified options for the speech alignment trainer.

    Mutable options control how a run is executed (paths, learning rates,
    epoch budgets, evaluation). Immutable options define what is being
    trained (architecture, criterion family, dictionary, targets) and are
    restored verbatim from the model archive on ``--continue``/``--fork``.

    Curriculum:
        linseg: Warmup epochs against the linear segmentation criterion
        falseg: Epochs against the forced-alignment criterion
        iter: Epochs of the main phase (CTC, full-connect or ASG)

    Example:
        >>> config = TrainingConfig(train='train-clean', valid='dev-clean')
        >>> config = TrainingConfig.letters_ctc().replace(lr=0.1)
    """

    # ========================
    # Run Options
    # ========================
    data_dir: str = _mutable(os.path.join(_HOME, 'local', 'datasets', 'speech'))
    dict_dir: str = _mutable(os.path.join(_HOME, 'local', 'datasets', 'speech', 'dict'))
    run_dir: str = _mutable(os.path.join(_HOME, 'local', 'experiments', 'speech'))
    arch_dir: str = _mutable(os.path.join(_HOME, 'local', 'arch', 'speech'))
    run_name: str = _mutable('')
    distributed: bool = _mutable(False)
    seed: int = _mutable(1111)            # 0 = nondeterministic
    progress: bool = _mutable(False)
    batch_size: int = _mutable(0)         # 0 = per-example criteria
    gpu: int = _mutable(0)                # device index + 1, 0 = cpu
    nthread: int = _mutable(1)            # data loading workers
    mt_criterion: bool = _mutable(False)  # thread-parallel batched criterion
    terrsr: int = _mutable(1)             # train error sample rate, 0 = skip
    tag: str = _mutable('')
    gc: int = _mutable(100)               # gc.collect() every N samples
    tensorboard: bool = _mutable(False)

    # ========================
    # Learning Hyper-parameters
    # ========================
    linseg: int = _mutable(0)
    linseg_znet: bool = _mutable(False)
    lin_lr: float = _mutable(-1.0)        # < 0: use lr
    lin_lr_crit: float = _mutable(-1.0)   # < 0: use lr_crit
    iter: int = _mutable(1000000)
    itersz: int = _mutable(-1)            # samples per epoch, < 0: full set
    lr: float = _mutable(1.0)
    falseg: int = _mutable(0)
    fal_lr: float = _mutable(-1.0)        # < 0: use lr
    sqnorm: bool = _mutable(False)
    layer_lr: bool = _mutable(False)
    lr_crit: float = _mutable(0.0)
    momentum: float = _mutable(-1.0)
    weight_decay: float = _mutable(-1.0)

    # ========================
    # Filtering and Clamping
    # ========================
    abs_clamp: float = _mutable(0.0)
    scale_clamp: float = _mutable(0.0)    # uses abs_clamp as offset
    norm_clamp: float = _mutable(0.0)
    max_isz: float = _mutable(math.inf)
    max_tsz: float = _mutable(math.inf)
    min_tsz: int = _mutable(0)
    noresample: bool = _mutable(False)

    # ========================
    # Data
    # ========================
    train: str = _mutable('')             # space-separated dataset names
    valid: str = _mutable('')
    test: str = _mutable('')
    maxload: int = _mutable(-1)           # random sub-selection
    maxload_valid: int = _mutable(-1)     # linear sub-selection
    maxload_test: int = _mutable(-1)
    dict_sil: bool = _mutable(False)

    # ========================
    # Word Error Evaluation
    # ========================
    wer: bool = _mutable(False)
    bmr_wer: bool = _mutable(False)
    bmr_decoder: str = _mutable('')       # "module:factory" of the LM decoder
    bmr_letters: str = _mutable('')
    bmr_words: str = _mutable('')
    bmr_lm: str = _mutable('')
    bmr_smearing: str = _mutable('max')
    bmr_max_word: int = _mutable(-1)
    bmr_lm_weight: float = _mutable(1.0)
    bmr_word_score: float = _mutable(0.0)
    bmr_unk_score: float = _mutable(-math.inf)
    bmr_beam_size: int = _mutable(25)
    bmr_beam_score: float = _mutable(25.0)
    bmr_force_end_sil: bool = _mutable(False)
    bmr_logadd: bool = _mutable(False)

    # ========================
    # Criterion Behaviour
    # ========================
    posmax: bool = _mutable(False)        # max instead of logadd (target side)
    negmax: bool = _mutable(False)        # max instead of logadd (normalizer)
    restore_best_scores: bool = _mutable(False)

    # ========================
    # Architecture (immutable)
    # ========================
    arch: str = _immutable('default')
    nstate: int = _immutable(1)
    msc: bool = _immutable(False)
    ctc: bool = _immutable(False)
    garbage: bool = _immutable(False)
    lsm: bool = _immutable(False)
    wnorm: bool = _immutable(False)
    onorm: str = _immutable('none')

    # ========================
    # Data (immutable)
    # ========================
    input: str = _immutable('npy')
    target: str = _immutable('ltr')
    channels: int = _immutable(1)
    dict: str = _immutable('letters.lst')
    phone_map: str = _immutable('')
    replabel: int = _immutable(0)
    dict39: bool = _immutable(False)
    surround: str = _immutable('')
    seg: bool = _immutable(False)
    shift: int = _immutable(0)
    dshift: int = _immutable(0)

    def replace(self, **changes: Any) -> 'TrainingConfig':
        """Return a copy with the given options changed."""
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'TrainingConfig':
        """Create configuration from dictionary (unknown keys are ignored)."""
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in d.items() if k in names})

    @classmethod
    def mutable_fields(cls) -> List[str]:
        return [f.name for f in fields(cls) if f.metadata.get('mutable', True)]

    @classmethod
    def immutable_fields(cls) -> List[str]:
        return [f.name for f in fields(cls) if not f.metadata.get('mutable', True)]

    def identity_dict(self) -> Dict[str, Any]:
        """Options that define the experiment identity (paths excluded)."""
        d = self.to_dict()
        d.pop('run_dir', None)
        d.pop('run_name', None)
        return d

    @property
    def train_names(self) -> List[str]:
        return self.train.split()

    @property
    def valid_names(self) -> List[str]:
        return self.valid.split()

    @property
    def test_names(self) -> List[str]:
        return self.test.split()

    @property
    def needs_words(self) -> bool:
        return self.wer or self.bmr_wer

    def validate(self) -> 'TrainingConfig':
        """
        Check for invalid or contradictory options.

        Raises:
            ConfigError: naming the offending option(s)
        """
        if self.batch_size < 0:
            raise ConfigError(f"batch_size must be >= 0 (got {self.batch_size})")
        if self.batch_size > 0 and self.shift > 0:
            raise ConfigError("batch_size and shift cannot be used together")
        if self.seg and self.falseg > 0:
            raise ConfigError("falseg cannot be used when the segmentation is given (seg)")
        if self.onorm not in ONORM_MODES:
            raise ConfigError(
                f"invalid onorm '{self.onorm}'. Available: {', '.join(ONORM_MODES)}"
            )
        if self.target not in TARGETS:
            raise ConfigError(
                f"invalid target '{self.target}'. Available: {', '.join(TARGETS)}"
            )
        if self.dict39 and self.target != 'phn':
            raise ConfigError("dict39 requires target=phn")
        if self.norm_clamp > 0 and (self.abs_clamp > 0 or self.scale_clamp > 0):
            raise ConfigError("norm_clamp cannot be combined with abs_clamp/scale_clamp")
        if self.nstate < 1:
            raise ConfigError(f"nstate must be >= 1 (got {self.nstate})")
        if self.nstate > 1 and not self.msc:
            raise ConfigError("nstate > 1 requires msc")
        if self.msc and self.garbage:
            raise ConfigError("msc and garbage cannot be set together")
        if self.ctc and self.msc:
            raise ConfigError("ctc and msc cannot be set together")
        if self.ctc and self.seg:
            raise ConfigError("ctc and seg cannot be set together")
        if self.shift > 0 and self.dshift <= 0:
            raise ConfigError("shift requires dshift > 0")
        for name in ('iter', 'linseg', 'falseg', 'replabel'):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be >= 0 (got {getattr(self, name)})")
        if self.needs_words and not self.bmr_words:
            raise ConfigError("wer/bmr_wer require bmr_words (word list)")
        if self.bmr_wer and not self.bmr_decoder:
            raise ConfigError("bmr_wer requires bmr_decoder (module:factory)")
        if self.gc < 1:
            raise ConfigError(f"gc must be >= 1 (got {self.gc})")
        return self

    # ========================
    # Presets
    # ========================

    @classmethod
    def letters_asg(cls) -> 'TrainingConfig':
        """Letter targets, ASG main criterion, short linear-segmentation warmup."""
        return cls(target='ltr', dict='letters.lst', replabel=2, surround='|',
                   linseg=1, lr=1e-4, lr_crit=1e-4)

    @classmethod
    def letters_ctc(cls) -> 'TrainingConfig':
        """Letter targets trained with CTC (blank appended to the dictionary)."""
        return cls(target='ltr', dict='letters.lst', ctc=True, lsm=True, lr=1e-4)

    @classmethod
    def phonemes_asg(cls) -> 'TrainingConfig':
        """61 TIMIT phonemes, scored on the folded 39-phoneme set."""
        return cls(target='phn', dict='phones.lst', linseg=1, lr=1e-4, lr_crit=1e-4)


# ========================
# Preset Configurations
# ========================

PRESETS = {
    'letters_asg': TrainingConfig.letters_asg,
    'letters_ctc': TrainingConfig.letters_ctc,
    'phonemes_asg': TrainingConfig.phonemes_asg,
}


def get_preset(name: str) -> TrainingConfig:
    """
    Get a preset configuration by name.

    Raises:
        ValueError: If preset name is not recognized
    """
    if name not in PRESETS:
        available = ', '.join(PRESETS.keys())
        raise ValueError(f"Unknown preset '{name}'. Available: {available}")
    return PRESETS[name]()


def compute_lr_norm(batch_size: int, sqnorm: bool) -> float:
    """Learning rate normalization for batched criteria (sum over the batch)."""
    norm = 1.0 / batch_size if batch_size > 0 else 1.0
    return math.sqrt(norm) if sqnorm else norm


@dataclass(frozen=True)
class RunConfig:
    """
    Immutable snapshot of a run: options plus derived fields.

    Created once per process after the dictionary and network are known.
    """
    options: TrainingConfig
    num_classes: int
    feature_channels: int
    kw: int
    dw: int
    world_size: int = 1
    lr_norm: float = 1.0
    lin_lr: float = 1.0
    lin_lr_crit: float = 0.0
    fal_lr: float = 1.0
    path: str = ''
    run_index: int = 1
    reload: Optional[str] = None
    command: str = '--train'
    cmdline: str = ''
    username: str = ''
    hostname: str = ''
    timestamp: str = ''

    @classmethod
    def create(
        cls,
        options: TrainingConfig,
        num_classes: int,
        kw: int,
        dw: int,
        world_size: int = 1,
        path: str = '',
        run_index: int = 1,
        reload: Optional[str] = None,
        command: str = '--train',
        cmdline: str = '',
    ) -> 'RunConfig':
        opt = options
        try:
            username = getpass.getuser()
        except (KeyError, OSError):
            username = ''
        return cls(
            options=opt,
            num_classes=num_classes,
            feature_channels=opt.channels,
            kw=kw,
            dw=dw,
            world_size=world_size,
            lr_norm=compute_lr_norm(opt.batch_size, opt.sqnorm),
            lin_lr=opt.lr if opt.lin_lr < 0 else opt.lin_lr,
            lin_lr_crit=opt.lr_crit if opt.lin_lr_crit < 0 else opt.lin_lr_crit,
            fal_lr=opt.lr if opt.fal_lr < 0 else opt.fal_lr,
            path=path,
            run_index=run_index,
            reload=reload,
            command=command,
            cmdline=cmdline,
            username=username,
            hostname=socket.gethostname(),
            timestamp=datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        )

    def to_dict(self) -> Dict[str, Any]:
        d = {f.name: getattr(self, f.name) for f in fields(self) if f.name != 'options'}
        d['options'] = self.options.to_dict()
        return d


@dataclass(frozen=True)
class PhaseParams:
    """Parameters of one curriculum phase (one epoch-engine run)."""
    name: str
    index: int
    criterion: str             # 'linseg' | 'force_align' | 'main'
    max_epoch: int
    lr: float
    lr_criterion: float
    zero_network: bool = False


__all__ = [
    'TrainingConfig',
    'RunConfig',
    'PhaseParams',
    'PRESETS',
    'get_preset',
    'compute_lr_norm',
    'ONORM_MODES',
    'TARGETS',
]
