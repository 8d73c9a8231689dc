"""
Tests for command line parsing and startup resolution.

Run with: pytest tests/test_startup.py -v
"""

import os

import pytest


def save_model(path, run_index=1, **options):
    from satf import TrainingConfig, RunConfig, CheckpointStore, get_model
    from satf.criteria import TransitionMatrix

    os.makedirs(str(path), exist_ok=True)
    config = TrainingConfig(arch='tiny', channels=2, **options)
    run = RunConfig.create(config, num_classes=3, kw=3, dw=1, path=str(path),
                           run_index=run_index)
    store = CheckpointStore(str(path), run_index)
    network = get_model('tiny', in_channels=2, num_classes=3)
    return store.save('last', store.payload(run, network, TransitionMatrix(3).weight))


class TestOptionParser:

    def test_only_explicit_options(self):
        from satf.core import parse_overrides

        overrides = parse_overrides(['--lr', '0.5', '--batch-size', '4', '--no-progress'])
        assert overrides == {'lr': 0.5, 'batch_size': 4, 'progress': False}

    def test_boolean_flags(self):
        from satf.core import parse_overrides

        assert parse_overrides(['--ctc', '--wer']) == {'ctc': True, 'wer': True}

    def test_choices(self):
        from satf.core import parse_overrides
        from satf import UsageError

        assert parse_overrides(['--onorm', 'target']) == {'onorm': 'target'}
        with pytest.raises(UsageError):
            parse_overrides(['--onorm', 'frames'])

    def test_unknown_option(self):
        from satf.core import parse_overrides
        from satf import UsageError

        with pytest.raises(UsageError):
            parse_overrides(['--no-such-option', '1'])

    def test_immutable_rejected_in_mutable_mode(self):
        from satf.core import parse_overrides
        from satf import UsageError

        assert parse_overrides(['--arch', 'small']) == {'arch': 'small'}
        with pytest.raises(UsageError):
            parse_overrides(['--arch', 'small'], mutable_only=True)

    def test_help_lists_every_option(self):
        from dataclasses import fields
        from satf import TrainingConfig
        from satf.core import format_help
        from satf.core.options import option_flag

        text = format_help()
        for f in fields(TrainingConfig):
            assert option_flag(f.name) in text


class TestStartupResolver:

    def test_no_mode(self):
        from satf import StartupResolver, UsageError

        with pytest.raises(UsageError):
            StartupResolver([]).resolve()
        with pytest.raises(UsageError):
            StartupResolver(['--lr', '0.1']).resolve()

    def test_train(self, tmp_path):
        from satf import StartupResolver

        plan = StartupResolver(['--train', '--run-dir', str(tmp_path),
                                '--train', 'clean', '--lr', '0.1']).resolve()

        assert plan.command == '--train'
        assert plan.options.lr == 0.1
        assert plan.options.train == 'clean'
        assert plan.checkpoint is None
        assert plan.is_new_identity
        assert os.path.dirname(plan.path) == str(tmp_path)
        assert plan.cmdline.startswith('satf-train --train')

    def test_train_from_preset(self, tmp_path):
        from satf import StartupResolver

        plan = StartupResolver(['--train', '--preset', 'letters_ctc',
                                '--run-dir', str(tmp_path)]).resolve()
        assert plan.options.ctc is True

    def test_train_validates(self, tmp_path):
        from satf import StartupResolver, ConfigError

        with pytest.raises(ConfigError, match="msc"):
            StartupResolver(['--train', '--run-dir', str(tmp_path), '--ctc', '--msc']).resolve()

    def test_same_options_same_path(self, tmp_path):
        from satf import StartupResolver

        argv = ['--train', '--run-dir', str(tmp_path), '--lr', '0.3']
        assert StartupResolver(argv).resolve().path == StartupResolver(argv).resolve().path

    def test_continue(self, tmp_path):
        from satf import StartupResolver

        save_model(tmp_path, lr=0.5, replabel=2)
        plan = StartupResolver(['--continue', str(tmp_path), '--lr', '0.05']).resolve()

        assert plan.command == '--continue'
        assert plan.path == str(tmp_path)
        assert plan.options.lr == 0.05
        assert plan.options.replabel == 2
        assert plan.reload.endswith('001_model_last.bin')
        assert plan.checkpoint['kw'] == 3
        assert not plan.is_new_identity

    def test_continue_rejects_immutable(self, tmp_path):
        from satf import StartupResolver, UsageError

        save_model(tmp_path)
        with pytest.raises(UsageError):
            StartupResolver(['--continue', str(tmp_path), '--replabel', '3']).resolve()

    def test_continue_requires_target(self):
        from satf import StartupResolver, UsageError

        with pytest.raises(UsageError):
            StartupResolver(['--continue', '--lr', '0.1']).resolve()

    def test_continue_without_model(self, tmp_path):
        from satf import StartupResolver, ResourceError

        with pytest.raises(ResourceError):
            StartupResolver(['--continue', str(tmp_path)]).resolve()

    def test_fork(self, tmp_path):
        from satf import StartupResolver

        model = save_model(tmp_path / "source", run_dir=str(tmp_path / "runs"), lr=0.5)
        plan = StartupResolver(['--fork', model, '--iter', '3']).resolve()

        assert plan.command == '--fork'
        assert plan.reload == model
        assert plan.options.iter == 3
        assert plan.options.arch == 'tiny'
        assert plan.is_new_identity
        assert os.path.dirname(plan.path) == str(tmp_path / "runs")

    def test_fork_without_overrides_is_new_experiment(self, tmp_path):
        from satf import StartupResolver, TrainingConfig
        from satf.core import new_path

        runs = str(tmp_path / "runs")
        source = new_path(runs, TrainingConfig(arch='tiny', channels=2, run_dir=runs))
        model = save_model(source, run_dir=runs)
        plan = StartupResolver(['--fork', model]).resolve()

        assert plan.path != source
        assert os.path.dirname(plan.path) == runs
        assert StartupResolver(['--fork', model]).resolve().path == plan.path

    def test_fork_with_source_run_name(self, tmp_path):
        from satf import StartupResolver

        runs = str(tmp_path / "runs")
        source = os.path.join(runs, "base")
        model = save_model(source, run_dir=runs, run_name="base")
        plan = StartupResolver(['--fork', model]).resolve()

        assert plan.path.startswith(source + "-fork-")

    def test_fork_missing_model(self, tmp_path):
        from satf import StartupResolver, ResourceError

        with pytest.raises(ResourceError):
            StartupResolver(['--fork', str(tmp_path / "missing.bin")]).resolve()

    def test_archive_without_receptive_field(self, tmp_path):
        import torch
        from satf import StartupResolver, ConfigError

        filename = str(tmp_path / "broken.bin")
        torch.save({'config': {'options': {}}}, filename)
        with pytest.raises(ConfigError, match="kw and dw"):
            StartupResolver(['--fork', filename]).resolve()


class TestCommandLine:

    def test_usage_exit_status(self, capsys):
        from cli.run import main

        assert main([]) == 2
        err = capsys.readouterr().err
        assert '--continue <directory>' in err

    def test_help(self, capsys):
        from cli.run import main

        assert main(['--help']) == 0
        assert '--lr' in capsys.readouterr().out

    def test_config_error_exit_status(self, tmp_path, capsys):
        from cli.run import main

        assert main(['--continue', str(tmp_path)]) == 2
        assert 'model_last.bin' in capsys.readouterr().err


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
