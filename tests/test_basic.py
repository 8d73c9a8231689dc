"""
Basic tests for Speech Alignment Training Framework.

Run with: pytest tests/test_basic.py -v
"""

import math

import pytest
import torch


class TestImports:
    """Test that all modules import correctly."""

    def test_core_imports(self):
        """Test core module imports."""
        from satf import (
            TrainingConfig,
            StartupResolver,
            TrainingSession,
            CurriculumController,
        )
        assert TrainingConfig is not None
        assert StartupResolver is not None
        assert TrainingSession is not None
        assert CurriculumController is not None

    def test_criteria_imports(self):
        """Test criteria imports."""
        from satf import TransitionMatrix, CriterionSet, make_scale
        assert TransitionMatrix is not None
        assert CriterionSet is not None
        assert make_scale is not None

    def test_data_imports(self):
        """Test data utility imports."""
        from satf import Dictionary, DictionaryBuilder, SpeechDataset
        assert Dictionary is not None
        assert DictionaryBuilder is not None
        assert SpeechDataset is not None

    def test_model_imports(self):
        """Test model imports."""
        from satf import ConvAcousticModel, ZeroNet, ShiftNet
        assert ConvAcousticModel is not None
        assert ZeroNet is not None
        assert ShiftNet is not None

    def test_error_hierarchy(self):
        from satf import ConfigError, UsageError, ResourceError
        assert issubclass(UsageError, ConfigError)
        assert issubclass(ConfigError, ValueError)
        assert issubclass(ResourceError, FileNotFoundError)


class TestConfigs:
    """Test configuration presets and validation."""

    def test_default_config(self):
        from satf import TrainingConfig
        config = TrainingConfig()

        assert config.batch_size == 0
        assert config.iter == 1000000
        assert config.max_isz == math.inf
        assert config.onorm == 'none'

    def test_letters_ctc_preset(self):
        from satf import get_preset
        config = get_preset('letters_ctc')

        assert config.ctc is True
        assert config.target == 'ltr'

    def test_phonemes_preset(self):
        from satf import get_preset
        config = get_preset('phonemes_asg')

        assert config.target == 'phn'
        assert config.linseg == 1

    def test_unknown_preset(self):
        from satf import get_preset
        with pytest.raises(ValueError, match="Unknown preset"):
            get_preset('nope')

    def test_config_is_frozen(self):
        from dataclasses import FrozenInstanceError
        from satf import TrainingConfig
        config = TrainingConfig()
        with pytest.raises(FrozenInstanceError):
            config.lr = 0.5

    def test_replace_and_round_trip(self):
        from satf import TrainingConfig
        config = TrainingConfig().replace(lr=0.25, train='a b')
        restored = TrainingConfig.from_dict(dict(config.to_dict(), unknown_key=1))

        assert restored == config
        assert restored.train_names == ['a', 'b']

    def test_mutable_split(self):
        from satf import TrainingConfig
        mutable = TrainingConfig.mutable_fields()
        immutable = TrainingConfig.immutable_fields()

        assert 'lr' in mutable
        assert 'arch' in immutable
        assert 'replabel' in immutable
        assert not set(mutable) & set(immutable)

    @pytest.mark.parametrize("changes,message", [
        ({'batch_size': 2, 'shift': 2, 'dshift': 1}, "shift"),
        ({'seg': True, 'falseg': 1}, "falseg"),
        ({'ctc': True, 'msc': True}, "msc"),
        ({'msc': True, 'garbage': True}, "garbage"),
        ({'nstate': 2}, "msc"),
        ({'dict39': True}, "dict39"),
        ({'norm_clamp': 1.0, 'abs_clamp': 1.0}, "norm_clamp"),
        ({'wer': True}, "bmr_words"),
        ({'bmr_wer': True, 'bmr_words': 'w.lst'}, "bmr_decoder"),
    ])
    def test_validate_rejects(self, changes, message):
        from satf import TrainingConfig, ConfigError
        with pytest.raises(ConfigError, match=message):
            TrainingConfig().replace(**changes).validate()

    def test_lr_norm(self):
        from satf.core import compute_lr_norm
        assert compute_lr_norm(0, False) == 1.0
        assert compute_lr_norm(4, False) == 0.25
        assert compute_lr_norm(4, True) == pytest.approx(0.5)

    def test_run_config_derived_rates(self):
        from satf import TrainingConfig, RunConfig
        options = TrainingConfig(lr=0.4, lr_crit=0.1, batch_size=2, lin_lr=-1, fal_lr=0.2)
        run = RunConfig.create(options, num_classes=5, kw=3, dw=1)

        assert run.lr_norm == 0.5
        assert run.lin_lr == 0.4
        assert run.lin_lr_crit == 0.1
        assert run.fal_lr == 0.2
        assert run.to_dict()['options']['lr'] == 0.4


class TestModules:
    """Test individual modules."""

    def test_gradient_clamp_selection(self):
        from satf import TrainingConfig
        from satf.modules import make_gradient_clamp

        assert make_gradient_clamp(TrainingConfig()) is None

        p = torch.nn.Parameter(torch.zeros(3))
        p.grad = torch.tensor([-5.0, 0.5, 5.0])
        clamp = make_gradient_clamp(TrainingConfig(abs_clamp=1.0))
        clamp([p])
        assert torch.equal(p.grad, torch.tensor([-1.0, 0.5, 1.0]))

    def test_norm_clamp(self):
        from satf.modules import norm_gradient_clamp

        p = torch.nn.Parameter(torch.zeros(2))
        p.grad = torch.tensor([3.0, 4.0])
        norm_gradient_clamp([p], 1.0)
        assert p.grad.norm().item() == pytest.approx(1.0, rel=1e-4)

    def test_optimizer_roles(self):
        from satf.modules import build_optimizer, set_learning_rates

        net = torch.nn.Linear(4, 3)
        transitions = torch.nn.Parameter(torch.zeros(3, 3))
        groups = [{'params': [net.weight], 'lr_scale': 0.25}, {'params': [net.bias]}]
        optimizer = build_optimizer(groups, transitions)
        set_learning_rates(optimizer, lr=1.0, lr_criterion=0.1)

        lrs = [(g['role'], g['lr']) for g in optimizer.param_groups]
        assert lrs == [('network', 0.25), ('network', 1.0), ('transitions', 0.1)]

    def test_transitions_skip_momentum_and_decay(self):
        from satf.modules import build_optimizer, set_learning_rates

        net = torch.nn.Linear(2, 2)
        transitions = torch.nn.Parameter(torch.ones(2, 2))
        optimizer = build_optimizer([{'params': list(net.parameters())}], transitions,
                                    momentum=0.9, weight_decay=0.5)
        set_learning_rates(optimizer, lr=0.1, lr_criterion=0.1)

        network_group, transition_group = optimizer.param_groups
        assert network_group['momentum'] == 0.9
        assert network_group['weight_decay'] == 0.5
        assert transition_group['momentum'] == 0.0
        assert transition_group['weight_decay'] == 0.0

        # a zero gradient (phase without transition gradient) leaves them untouched
        weight = net.weight.detach().clone()
        for p in list(net.parameters()) + [transitions]:
            p.grad = torch.zeros_like(p)
        optimizer.step()
        assert torch.equal(transitions.detach(), torch.ones(2, 2))
        assert not torch.equal(net.weight.detach(), weight)

    def test_model_shapes(self):
        from satf import get_model

        model = get_model('tiny', in_channels=4, num_classes=7)
        x = torch.randn(2, 50, 4)
        y = model(x)

        assert y.shape == (2, model.output_length(50), 7)

    def test_short_input_is_padded(self):
        from satf import get_model

        model = get_model('tiny', in_channels=2, num_classes=3)
        y = model(torch.randn(1, 1, 2))
        assert y.size(1) >= 1

    def test_zero_net(self):
        from satf import ZeroNet

        net = ZeroNet(kw=5, dw=2, num_classes=4)
        y = net(torch.randn(1, 21, 3))
        assert y.shape == (1, net.output_length(21), 4)
        assert not y.requires_grad
        assert float(y.abs().sum()) == 0.0

    def test_layer_lr_groups(self):
        from satf import get_model
        from satf.models import layer_lr_groups

        model = get_model('tiny', in_channels=4, num_classes=7)
        groups = layer_lr_groups(model, 1.0)
        params = [p for g in groups for p in g['params']]

        assert len(params) == len(list(model.parameters()))
        assert all(0 < g['lr_scale'] <= 1.0 for g in groups)


class TestUtilities:
    """Test utility functions."""

    def test_format_time(self):
        from satf import format_time

        assert format_time(30) == "30.0s"
        assert format_time(90) == "1.5min"
        assert format_time(3600) == "1.0h"

    def test_format_number(self):
        from satf import format_number

        assert format_number(500) == "500"
        assert format_number(1500) == "1.5K"
        assert format_number(1500000) == "1.5M"


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
