"""
Tests for experiment directories, run indices and checkpoints.

Run with: pytest tests/test_monitor.py -v
"""

import os

import pytest
import torch


def make_run(tmp_path, run_index=1, **options):
    from satf import TrainingConfig, RunConfig
    config = TrainingConfig(**options)
    return RunConfig.create(config, num_classes=5, kw=3, dw=1,
                            path=str(tmp_path), run_index=run_index)


class TestRunIndex:

    def test_strictly_increasing(self, tmp_path):
        from satf import CheckpointStore

        indices = [CheckpointStore.allocate_run_index(str(tmp_path)) for _ in range(3)]

        assert indices == [1, 2, 3]
        assert os.path.isfile(tmp_path / "001_run")

    def test_never_reused(self, tmp_path):
        from satf import CheckpointStore

        (tmp_path / "007_log").write_text("")
        assert CheckpointStore.allocate_run_index(str(tmp_path)) == 8

    def test_creates_directory(self, tmp_path):
        from satf import CheckpointStore

        path = tmp_path / "a" / "b"
        assert CheckpointStore.allocate_run_index(str(path)) == 1
        assert path.is_dir()


class TestPaths:

    def test_new_path_is_deterministic(self, tmp_path):
        from satf import TrainingConfig
        from satf.core import new_path

        a = TrainingConfig(lr=0.1)
        b = TrainingConfig(lr=0.1, run_dir='/elsewhere')
        c = TrainingConfig(lr=0.2)

        assert new_path(str(tmp_path), a) == new_path(str(tmp_path), b)
        assert new_path(str(tmp_path), a) != new_path(str(tmp_path), c)

    def test_run_name_and_tag(self, tmp_path):
        from satf import TrainingConfig
        from satf.core import new_path, options_hash

        assert new_path('/root', TrainingConfig(run_name='exp')) == os.path.join('/root', 'exp')
        config = TrainingConfig(tag='big')
        assert new_path('/root', config) == os.path.join('/root', 'big-' + options_hash(config))
        assert len(options_hash(config)) == 16


class TestCheckpoints:

    def test_save_load_round_trip(self, tmp_path):
        from satf import CheckpointStore, get_model
        from satf.criteria import TransitionMatrix

        run = make_run(tmp_path, lr=0.5)
        network = get_model('tiny', in_channels=2, num_classes=5)
        transitions = TransitionMatrix(5)
        with torch.no_grad():
            transitions.weight.fill_(0.25)

        store = CheckpointStore(str(tmp_path), 1)
        filename = store.save('last', store.payload(run, network, transitions.weight))

        assert filename == str(tmp_path / "001_model_last.bin")
        assert not [f for f in os.listdir(tmp_path) if f.startswith('.tmp_')]

        payload = CheckpointStore.load(filename)
        assert payload['kw'] == 3
        assert payload['dw'] == 1
        assert payload['config']['options']['lr'] == 0.5
        assert torch.equal(payload['transitions'], transitions.weight.detach())
        for key, value in network.state_dict().items():
            assert torch.equal(payload['network'][key], value)

    def test_best_model_name(self, tmp_path):
        from satf import CheckpointStore

        store = CheckpointStore(str(tmp_path), 12)
        assert store.model_filename('dev clean') == str(tmp_path / "012_model_dev_clean.bin")

    def test_non_main_does_not_write(self, tmp_path):
        from satf import CheckpointStore, get_model
        from satf.criteria import TransitionMatrix

        run = make_run(tmp_path)
        store = CheckpointStore(str(tmp_path), 1, is_main=False)
        payload = store.payload(run, get_model('tiny', 2, 5), TransitionMatrix(5).weight)

        assert store.save('last', payload) is None
        assert store.write_config(run) is None
        assert os.listdir(tmp_path) == []

    def test_resume_picks_latest_run(self, tmp_path):
        from satf import CheckpointStore, get_model
        from satf.criteria import TransitionMatrix

        network = get_model('tiny', 2, 5)
        for idx in (1, 2):
            store = CheckpointStore(str(tmp_path), idx)
            store.save('last', store.payload(make_run(tmp_path, idx), network,
                                             TransitionMatrix(5).weight))
        (tmp_path / "003_run").write_text("")

        filename, payload = CheckpointStore.resume(str(tmp_path))
        assert filename.endswith("002_model_last.bin")
        assert payload['run_index'] == 2

    def test_resume_without_model(self, tmp_path):
        from satf import CheckpointStore, ResourceError

        with pytest.raises(ResourceError):
            CheckpointStore.resume(str(tmp_path))

    def test_load_missing(self, tmp_path):
        from satf import CheckpointStore, ResourceError

        with pytest.raises(ResourceError):
            CheckpointStore.load(str(tmp_path / "nope.bin"))

    def test_best_scores(self, tmp_path):
        from satf import CheckpointStore, get_model
        from satf.criteria import TransitionMatrix

        network = get_model('tiny', 2, 5)
        transitions = TransitionMatrix(5).weight
        for idx, perf in ((1, 30.0), (2, 25.0)):
            store = CheckpointStore(str(tmp_path), idx)
            store.save('dev', store.payload(make_run(tmp_path, idx), network, transitions, perf=perf))

        assert CheckpointStore.best_scores(str(tmp_path), ['dev', 'test']) == {'dev': 25.0}

    def test_write_config(self, tmp_path):
        import yaml
        from satf import CheckpointStore

        run = make_run(tmp_path, lr=0.3)
        filename = CheckpointStore(str(tmp_path), 1).write_config(run)

        with open(filename) as f:
            config = yaml.safe_load(f)
        assert config['options']['lr'] == 0.3
        assert config['kw'] == 3


class TestBestModelTracker:

    def test_strict_improvement(self):
        from satf import BestModelTracker

        tracker = BestModelTracker(['dev'])
        results = [tracker.update('dev', v) for v in (10.0, 8.0, 8.0, 6.0)]

        assert results == [True, True, False, True]
        assert tracker.best['dev'] == 6.0

    def test_initial_scores(self):
        from satf import BestModelTracker

        tracker = BestModelTracker(['dev'], initial={'dev': 5.0, 'other': 1.0})

        assert tracker.update('dev', 6.0) is False
        assert tracker.update('dev', 4.0) is True
        assert 'other' not in tracker.best


class TestHeartbeat:

    def test_touch(self, tmp_path):
        from satf.core import Heartbeat

        Heartbeat(str(tmp_path / "heartbeat"))()
        Heartbeat(str(tmp_path / "disabled"), enabled=False)()

        assert (tmp_path / "heartbeat").exists()
        assert not (tmp_path / "disabled").exists()


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
