"""
Evaluator
=========

Decodes network outputs with the evaluation criterion and accumulates
letter (or phoneme) and word error rates.

Scoring pipeline per example:

    decoded path  --remap-->  hypothesis labels  \
                                                  edit distance
    target labels --remap-->  reference labels  /

Remapping merges repeats, drops the blank/garbage class, undoes the
repetition encoding and folds 61 phonemes to 39. Word error rates map
label sequences to words; an external language-model decoder gives a
third, decoder-based word error rate.

Author: Speech Alignment Training Framework Team
License: MIT
"""

from __future__ import annotations
import gc
import importlib
from typing import Any, Callable, Dict, List, Optional, Sequence

import torch
import torch.nn as nn
from tqdm import tqdm

from .errors import ConfigError
from .engine import output_sizes as compute_output_sizes
from ..utils.meters import EditDistanceMeter, EvalMeters, FrameErrorMeter


def load_decoder(options) -> Callable:
    """
    Instantiate the external word decoder named by ``bmr_decoder``.

    ``"package.module:factory"``; ``factory(options)`` returns a callable
    ``decoder(transitions, emissions) -> word ids``.
    """
    target = options.bmr_decoder
    if ':' not in target:
        raise ConfigError(f"bmr_decoder must be 'module:factory' (got '{target}')")
    module_name, factory_name = target.split(':', 1)
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"cannot import bmr_decoder module '{module_name}': {exc}") from exc
    factory = getattr(module, factory_name, None)
    if factory is None:
        raise ConfigError(f"bmr_decoder factory '{factory_name}' not found in '{module_name}'")
    return factory(options)


class Evaluator:
    """
    Error-rate evaluation.

    Parameters:
        criterion: evaluation criterion adapter (decode)
        remap: LabelRemapper applied to paths and targets
        word_mapper: WordMapper, enables word error rates
        decoder: external word decoder, enables decoder word error rates
        transitions: shared transition matrix handed to the decoder
        device: evaluation device
        gc_every: gc.collect() period in samples
        progress: show a tqdm bar
    """

    def __init__(
        self,
        criterion,
        remap: Callable[[torch.Tensor], torch.Tensor],
        word_mapper=None,
        decoder: Optional[Callable] = None,
        transitions: Optional[torch.Tensor] = None,
        device: Optional[torch.device] = None,
        gc_every: int = 100,
        progress: bool = False
    ):
        self.criterion = criterion
        self.remap = remap
        self.word_mapper = word_mapper
        self.decoder = decoder
        self.transitions = transitions
        self.device = device or torch.device('cpu')
        self.gc_every = gc_every
        self.progress = progress

    def add_output(
        self,
        output: torch.Tensor,
        sizes: Sequence[int],
        targets: Sequence[torch.Tensor],
        words: Sequence[str],
        edit: EditDistanceMeter,
        word_edit: Optional[EditDistanceMeter] = None
    ) -> List[torch.Tensor]:
        """Decode a batch and add it to the letter (and word) meters."""
        paths = self.criterion.decode(output.detach(), sizes)
        for path, target, ref_words in zip(paths, targets, words):
            hyp = self.remap(path.cpu())
            edit.add(hyp, self.remap(target.cpu()))
            if word_edit is not None and self.word_mapper is not None:
                unk_ids: Dict[str, int] = {}
                hyp_words = self.word_mapper.labels_to_ids(hyp, unk_ids)
                ref_ids = self.word_mapper.words_to_ids(ref_words, unk_ids)
                word_edit.add(hyp_words, ref_ids)
        return paths

    def add_frame_errors(
        self,
        output: torch.Tensor,
        sizes: Sequence[int],
        targets: Sequence[torch.Tensor],
        meter: FrameErrorMeter
    ) -> None:
        """Frame error of the best path against a given segmentation."""
        with torch.no_grad():
            for b, target in enumerate(targets):
                emissions = output[b, :int(sizes[b])].detach()
                meter.add(self.criterion.criterion.viterbi(emissions).cpu(), target.cpu())

    def add_decoder_words(
        self,
        output: torch.Tensor,
        sizes: Sequence[int],
        words: Sequence[str],
        meter: EditDistanceMeter
    ) -> None:
        transitions = self.transitions.detach() if self.transitions is not None else None
        for b, ref_words in enumerate(words):
            emissions = output[b, :int(sizes[b])].detach()
            predicted = self.word_mapper.remove_unk(self.decoder(transitions, emissions))
            meter.add(predicted, self.word_mapper.words_to_ids(ref_words))

    def run(self, network: nn.Module, iterator, meters: EvalMeters, desc: str = '') -> EvalMeters:
        """
        Evaluate ``network`` on ``iterator`` into ``meters``.

        Meters are reset first; the network is put back in train mode.
        """
        meters.reset()
        network.eval()
        batches = iterator
        if self.progress:
            batches = tqdm(iterator, total=len(iterator), desc=desc, leave=False)
        try:
            with torch.no_grad():
                for t, batch in enumerate(batches, 1):
                    batch = batch.to(self.device)
                    output = network(batch.inputs)
                    sizes = compute_output_sizes(network, batch.input_sizes, output.size(1))
                    if t % self.gc_every == 0:
                        gc.collect()
                    word_edit = meters.word_edit if self.word_mapper is not None else None
                    self.add_output(output, sizes, batch.targets, batch.words,
                                    meters.edit, word_edit)
                    if self.decoder is not None and self.word_mapper is not None:
                        self.add_decoder_words(output, sizes, batch.words,
                                               meters.decoder_word_edit)
        finally:
            network.train()
        return meters


__all__ = ['Evaluator', 'load_decoder']
