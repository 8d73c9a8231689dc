"""
Tests for the curriculum controller and the training hooks.

Run with: pytest tests/test_orchestrator.py -v
"""

from types import SimpleNamespace

import pytest
import torch


class RecordingEngine:
    """Epoch engine stand-in recording which phases were run."""

    def __init__(self):
        self.calls = []

    def train(self, state, hooks=None):
        self.calls.append((state.params, state.network, state.criterion, hooks))
        state.epoch = state.max_epoch
        return state


class SilentLogger:

    def __init__(self):
        self.messages = []
        self.statuses = []

    def info(self, message):
        self.messages.append(message)

    def log_status(self, **status):
        self.statuses.append(status)


def make_context(tmp_path, **options):
    from satf import TrainingConfig, RunConfig, BestModelTracker, CheckpointStore, get_model
    from satf.core import TrainingContext
    from satf.criteria import CriterionSet
    from satf.models import ZeroNet

    config = TrainingConfig(**options)
    run = RunConfig.create(config, num_classes=4, kw=3, dw=1, path=str(tmp_path))
    network = get_model('tiny', in_channels=2, num_classes=4)
    return TrainingContext(
        run=run,
        network=network,
        criteria=CriterionSet.build(config, 4),
        optimizer=None,
        meters=None,
        tracker=BestModelTracker(config.valid_names),
        logger=SilentLogger(),
        store=CheckpointStore(str(tmp_path), 1),
        coordinator=SimpleNamespace(is_main=True),
        aggregator=None,
        evaluator=None,
        train_iterator=[],
        valid_iterators={name: [] for name in config.valid_names},
        zero_network=ZeroNet(3, 1, 4),
        pristine_network=network,
    )


class TestPhases:

    def test_full_curriculum(self, tmp_path):
        from satf import CurriculumController

        ctx = make_context(tmp_path, linseg=2, falseg=3, iter=4, lr=0.8, lr_crit=0.4,
                           lin_lr=0.6, fal_lr=0.2, batch_size=2)
        phases = CurriculumController(ctx, RecordingEngine()).phases()

        assert [p.name for p in phases] == ['linseg', 'falseg', 'main']
        assert [p.index for p in phases] == [1, 2, 3]
        assert [p.max_epoch for p in phases] == [2, 3, 4]
        linseg, falseg, main = phases
        assert linseg.lr == pytest.approx(0.3)
        assert linseg.lr_criterion == pytest.approx(0.2)
        assert falseg.lr == pytest.approx(0.1)
        assert falseg.lr_criterion == 0.0
        assert main.lr == pytest.approx(0.4)
        assert main.lr_criterion == pytest.approx(0.2)

    def test_main_only(self, tmp_path):
        from satf import CurriculumController

        ctx = make_context(tmp_path, iter=5)
        phases = CurriculumController(ctx, RecordingEngine()).phases()

        assert [p.name for p in phases] == ['main']
        assert phases[0].lr == 1.0

    def test_no_linseg_with_given_segmentation(self, tmp_path):
        from satf import CurriculumController

        ctx = make_context(tmp_path, seg=True, linseg=3, iter=1)
        assert [p.name for p in CurriculumController(ctx).phases()] == ['main']

    def test_sqnorm(self, tmp_path):
        from satf import CurriculumController

        ctx = make_context(tmp_path, batch_size=4, sqnorm=True, lr=1.0)
        assert CurriculumController(ctx).phases()[-1].lr == pytest.approx(0.5)

    def test_run_order_and_criteria(self, tmp_path):
        from satf import CurriculumController

        ctx = make_context(tmp_path, linseg=1, falseg=1, iter=1)
        engine = RecordingEngine()
        states = CurriculumController(ctx, engine).run()

        assert [call[0].name for call in engine.calls] == ['linseg', 'falseg', 'main']
        assert engine.calls[0][2] is ctx.criteria.linseg
        assert engine.calls[1][2] is ctx.criteria.force_align
        assert engine.calls[2][2] is ctx.criteria.main
        assert all(call[1] is ctx.network for call in engine.calls)
        assert [s.epoch for s in states] == [1, 1, 1]
        assert len(ctx.logger.messages) == 3

    def test_zero_network_during_linseg(self, tmp_path):
        from satf import CurriculumController

        ctx = make_context(tmp_path, linseg=1, linseg_znet=True, iter=1)
        engine = RecordingEngine()
        CurriculumController(ctx, engine).run()

        assert engine.calls[0][1] is ctx.zero_network
        assert engine.calls[1][1] is ctx.network


class TestCheckpointHooks:

    def test_save_models(self, tmp_path):
        from satf.core import TrainingHooks, CurriculumController

        ctx = make_context(tmp_path, valid='dev other', iter=1)
        hooks = TrainingHooks(ctx, CurriculumController(ctx).phases()[0])

        improved = hooks.save_models({'valid:dev': 20.0, 'valid:other': 30.0})
        assert improved == {'dev': 20.0, 'other': 30.0}
        improved = hooks.save_models({'valid:dev': 20.0, 'valid:other': 25.0})
        assert improved == {'other': 25.0}

        assert (tmp_path / "001_model_last.bin").exists()
        assert (tmp_path / "001_model_dev.bin").exists()
        assert (tmp_path / "001_model_other.bin").exists()

    def test_non_main_worker_tracks_without_saving(self, tmp_path):
        from satf.core import TrainingHooks, CurriculumController

        ctx = make_context(tmp_path, valid='dev', iter=1)
        ctx.coordinator = SimpleNamespace(is_main=False)
        hooks = TrainingHooks(ctx, CurriculumController(ctx).phases()[0])

        assert hooks.save_models({'valid:dev': 3.0}) == {'dev': 3.0}
        assert ctx.tracker.best['dev'] == 3.0
        assert not list(tmp_path.glob("*.bin"))

    def test_end_epoch_evaluates_phase_network(self, tmp_path):
        from satf.core import TrainingHooks, CurriculumController, EngineState
        from satf.modules import LocalCoordinator, MetricAggregator
        from satf.utils import TrainingMeters

        ctx = make_context(tmp_path, valid='dev', linseg=1, linseg_znet=True, iter=1)
        evaluated = []
        ctx.evaluator = SimpleNamespace(
            run=lambda network, iterator, meters, desc='': evaluated.append(network))
        ctx.meters = TrainingMeters(['dev'])
        ctx.aggregator = MetricAggregator(LocalCoordinator())
        linseg = CurriculumController(ctx).phases()[0]
        state = EngineState(network=ctx.zero_network, criterion=None, iterator=[],
                            optimizer=None, params=linseg)
        state.epoch = 1

        TrainingHooks(ctx, linseg).on_end_epoch(state)

        assert evaluated == [ctx.zero_network]
        assert ctx.logger.statuses[0]['phase'] == 'linseg'
        assert (tmp_path / "001_model_last.bin").exists()

    def test_gradient_hook_clamps(self, tmp_path):
        from satf.core import TrainingHooks, CurriculumController, EngineState

        ctx = make_context(tmp_path, iter=1)
        ctx.coordinator = SimpleNamespace(is_main=True, all_reduce_gradients=lambda params: None)
        ctx.clamp = lambda params: [p.grad.clamp_(-1, 1) for p in params if p.grad is not None]
        ctx.meters = SimpleNamespace(network_timer=SimpleNamespace(stop=lambda: None))
        phase = CurriculumController(ctx).phases()[0]
        state = EngineState(network=ctx.network, criterion=None, iterator=[],
                            optimizer=None, params=phase)

        ctx.criteria.transitions.weight.grad = torch.full((4, 4), 5.0)
        TrainingHooks(ctx, phase).on_backward(state)

        assert float(ctx.criteria.transitions.weight.grad.max()) == 1.0


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
