"""
Tests for speech datasets, samplers and batching.

Run with: pytest tests/test_dataset.py -v
"""

import numpy as np
import pytest
import torch


def make_dataset_dir(root, name, sizes, channels=2, tokens=("a", "b", "|", "b")):
    directory = root / name
    directory.mkdir(parents=True, exist_ok=True)
    for i, size in enumerate(sizes):
        np.save(directory / f"utt{i:02d}.npy", np.random.randn(size, channels).astype(np.float32))
        (directory / f"utt{i:02d}.ltr").write_text(" ".join(tokens[:1 + i % len(tokens)]))
    return directory


def encoder():
    from satf.data import Dictionary, TargetEncoder
    return TargetEncoder(Dictionary(["a", "b", "|"]))


class TestSpeechDataset:

    def test_scan_and_item(self, tmp_path):
        from satf.data import SpeechDataset

        make_dataset_dir(tmp_path, "train", [10, 12, 14])
        dataset = SpeechDataset(str(tmp_path), "train", encoder(), channels=2)

        assert len(dataset) == 3
        item = dataset[1]
        assert item['name'] == 'utt01'
        assert item['input'].shape == (12, 2)
        assert item['input'].dtype == torch.float32
        assert item['target'].tolist() == [0, 1]
        assert item['words'] == 'ab'

    def test_word_file_wins(self, tmp_path):
        from satf.data import SpeechDataset

        directory = make_dataset_dir(tmp_path, "train", [10])
        (directory / "utt00.wrd").write_text("hello world\n")
        dataset = SpeechDataset(str(tmp_path), "train", encoder(), channels=2)

        assert dataset[0]['words'] == 'hello world'

    def test_several_names(self, tmp_path):
        from satf.data import SpeechDataset

        make_dataset_dir(tmp_path, "a", [10, 10])
        make_dataset_dir(tmp_path, "b", [10])
        assert len(SpeechDataset(str(tmp_path), "a b", encoder(), channels=2)) == 3

    def test_size_filters(self, tmp_path):
        from satf.data import SpeechDataset

        make_dataset_dir(tmp_path, "train", [10, 20, 30, 40])
        dataset = SpeechDataset(str(tmp_path), "train", encoder(), channels=2,
                                max_isz=30, min_tsz=2)

        assert [item['name'] for item in dataset.items] == ['utt01', 'utt02']
        assert dataset.filtered == 2

    def test_drops_utterances_too_short_to_align(self, tmp_path):
        from satf.data import SpeechDataset
        from satf import get_model

        # targets: a, a b, a b | ; the tiny network emits isz - 2 frames
        make_dataset_dir(tmp_path, "train", [3, 3, 5])
        network = get_model('tiny', in_channels=2, num_classes=3)
        dataset = SpeechDataset(str(tmp_path), "train", encoder(), channels=2,
                                output_length=network.output_length)

        assert [item['name'] for item in dataset.items] == ['utt00', 'utt02']
        assert dataset.too_short == 1
        assert dataset.filtered == 0

    def test_states_and_ctc_repeats_need_frames(self, tmp_path):
        from satf.data import SpeechDataset

        directory = tmp_path / "train"
        directory.mkdir()
        np.save(directory / "x.npy", np.zeros((4, 2), dtype=np.float32))
        (directory / "x.ltr").write_text("a a b")

        def load(**kwargs):
            return SpeechDataset(str(tmp_path), "train", encoder(), channels=2,
                                 output_length=lambda isz: isz, **kwargs)

        assert len(load()) == 1
        assert len(load(ctc=True)) == 1
        assert len(load(target_scale=2)) == 0
        (directory / "x.ltr").write_text("a a b b")
        assert len(load()) == 1
        assert len(load(ctc=True)) == 0

    def test_empty_transcription_never_trains(self, tmp_path):
        from satf.data import SpeechDataset

        directory = make_dataset_dir(tmp_path, "train", [10])
        np.save(directory / "silence.npy", np.zeros((10, 2), dtype=np.float32))
        (directory / "silence.ltr").write_text("\n")

        dataset = SpeechDataset(str(tmp_path), "train", encoder(), channels=2,
                                output_length=lambda isz: isz)
        assert [item['name'] for item in dataset.items] == ['utt00']
        assert dataset.too_short == 1
        # evaluation keeps it, it only needs decoding
        assert len(SpeechDataset(str(tmp_path), "train", encoder(), channels=2)) == 2

    def test_maxload_linear(self, tmp_path):
        from satf.data import SpeechDataset

        make_dataset_dir(tmp_path, "valid", [10] * 5)
        dataset = SpeechDataset(str(tmp_path), "valid", encoder(), channels=2, maxload=2)

        assert [item['name'] for item in dataset.items] == ['utt00', 'utt01']

    def test_equal_shards(self, tmp_path):
        from satf.data import SpeechDataset

        make_dataset_dir(tmp_path, "train", [10] * 5)
        shards = [
            SpeechDataset(str(tmp_path), "train", encoder(), channels=2,
                          rank=rank, world_size=2, equal_shards=True)
            for rank in range(2)
        ]

        assert [len(s) for s in shards] == [2, 2]
        names = {item['name'] for s in shards for item in s.items}
        assert len(names) == 4

    def test_missing_directory(self, tmp_path):
        from satf.data import SpeechDataset
        from satf import ResourceError

        with pytest.raises(ResourceError):
            SpeechDataset(str(tmp_path), "nope", encoder())

    def test_missing_transcription(self, tmp_path):
        from satf.data import SpeechDataset
        from satf import ResourceError

        directory = tmp_path / "train"
        directory.mkdir()
        np.save(directory / "x.npy", np.zeros((4, 1), dtype=np.float32))
        with pytest.raises(ResourceError, match="x.ltr"):
            SpeechDataset(str(tmp_path), "train", encoder())

    def test_channel_mismatch(self, tmp_path):
        from satf.data import SpeechDataset
        from satf import ConfigError

        make_dataset_dir(tmp_path, "train", [10], channels=3)
        dataset = SpeechDataset(str(tmp_path), "train", encoder(), channels=2)
        with pytest.raises(ConfigError, match="channels"):
            dataset[0]


class TestSampling:

    def test_epoch_sampler_permutation(self):
        from satf.data import EpochSampler

        sampler = EpochSampler(5, seed=3)
        assert sorted(sampler) == [0, 1, 2, 3, 4]

    def test_itersz_cycles(self):
        from satf.data import EpochSampler

        sampler = EpochSampler(3, itersz=7, seed=1)
        indices = list(sampler)

        assert len(indices) == 7
        assert len(sampler) == 7
        assert sorted(indices[:3]) == [0, 1, 2]

    def test_no_shuffle(self):
        from satf.data import EpochSampler

        sampler = EpochSampler(4, shuffle=False)
        sampler.resample()
        assert list(sampler) == [0, 1, 2, 3]

    def test_seeded(self):
        from satf.data import EpochSampler

        assert list(EpochSampler(10, seed=5)) == list(EpochSampler(10, seed=5))

    def test_batches_are_padded(self, tmp_path):
        from satf.data import SpeechDataset, DatasetIterator

        make_dataset_dir(tmp_path, "train", [10, 14, 12])
        dataset = SpeechDataset(str(tmp_path), "train", encoder(), channels=2)
        iterator = DatasetIterator(dataset, batch_size=2)
        batches = list(iterator)

        assert iterator.size() == 2
        assert len(batches[0]) == 2
        assert batches[0].inputs.shape == (2, 14, 2)
        assert batches[0].input_sizes.tolist() == [10, 14]
        assert float(batches[0].inputs[0, 10:].abs().sum()) == 0.0
        assert len(batches[1]) == 1

    def test_batch_size_zero_is_single(self, tmp_path):
        from satf.data import SpeechDataset, DatasetIterator

        make_dataset_dir(tmp_path, "train", [10, 11])
        dataset = SpeechDataset(str(tmp_path), "train", encoder(), channels=2)

        assert len(DatasetIterator(dataset, batch_size=0)) == 2

    def test_build_iterator(self, tmp_path):
        from satf import TrainingConfig
        from satf.data import build_iterator

        make_dataset_dir(tmp_path, "train", [10, 20, 30])
        options = TrainingConfig(data_dir=str(tmp_path), channels=2, max_isz=25, itersz=4)

        train = build_iterator(options, "train", encoder(), train=True)
        valid = build_iterator(options, "train", encoder())

        assert len(train.dataset) == 2
        assert len(train) == 4
        assert len(valid.dataset) == 3


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
