"""Tests for the learning-rate scheduler."""
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import numpy as np
import pytest
from core.config import SchedulerConfig
from core.exceptions import UnknownStrategyError
from models.rl.scheduler import LearningRateScheduler


def _run(scheduler, steps, metrics=None):
    state = scheduler.initialize_state()
    lrs, infos = [], []
    for i in range(steps):
        metric = metrics[i] if metrics is not None else None
        lr, info = scheduler.step(state, metric)
        lrs.append(lr)
        infos.append(info)
    return state, np.array(lrs), infos


class TestWarmupCosine:
    def test_warmup_strictly_increases_then_non_increasing(self):
        scheduler = LearningRateScheduler(SchedulerConfig(warmup_steps=50, total_steps=500))
        _, lrs, infos = _run(scheduler, 500)
        warmup = lrs[:50]
        cosine = lrs[50:]
        assert np.all(np.diff(warmup) > 0)
        assert np.all(np.diff(cosine) <= 1e-15)
        assert infos[10].phase == 'warmup'
        assert infos[60].phase == 'cosine_annealing'

    def test_peak_and_floor(self):
        cfg = SchedulerConfig(initial_lr=1e-2, warmup_steps=10, total_steps=100, min_lr=1e-5)
        _, lrs, _ = _run(LearningRateScheduler(cfg), 150)
        assert lrs[9] == pytest.approx(1e-2)
        assert lrs[-1] == pytest.approx(1e-5)
        assert lrs.min() >= 1e-5

    def test_no_warmup(self):
        cfg = SchedulerConfig(warmup_steps=0, total_steps=100)
        _, lrs, _ = _run(LearningRateScheduler(cfg), 100)
        assert np.all(np.diff(lrs) <= 1e-15)


class TestCosine:
    def test_decays_to_min(self):
        cfg = SchedulerConfig(scheduler_type="cosine", total_steps=200, min_lr=1e-6)
        _, lrs, _ = _run(LearningRateScheduler(cfg), 250)
        assert lrs[0] < cfg.initial_lr
        assert np.all(np.diff(lrs) <= 1e-15)
        assert lrs[-1] == pytest.approx(1e-6)


class TestPlateau:
    def test_reduces_after_patience(self):
        cfg = SchedulerConfig(scheduler_type="plateau", initial_lr=1e-3, patience=3, factor=0.5)
        metrics = [1.0, 0.9, 0.9, 0.9, 0.9, 0.9]
        state, lrs, infos = _run(LearningRateScheduler(cfg), len(metrics), metrics)
        assert lrs[3] == pytest.approx(1e-3)
        assert lrs[4] == pytest.approx(5e-4)
        assert infos[4].was_reduced
        assert state.plateau_counter == 1

    def test_improvement_resets_counter(self):
        cfg = SchedulerConfig(scheduler_type="plateau", patience=2)
        metrics = [1.0, 1.0, 0.5, 0.5, 0.2]
        state, lrs, infos = _run(LearningRateScheduler(cfg), len(metrics), metrics)
        assert not any(info.was_reduced for info in infos)
        assert state.best_metric == pytest.approx(0.2)
        assert np.all(lrs == cfg.initial_lr)

    def test_missing_metric_leaves_lr(self):
        cfg = SchedulerConfig(scheduler_type="plateau", patience=1)
        state, lrs, _ = _run(LearningRateScheduler(cfg), 5)
        assert np.all(lrs == cfg.initial_lr)
        assert state.plateau_counter == 0

    def test_floor_at_min_lr(self):
        cfg = SchedulerConfig(scheduler_type="plateau", initial_lr=1e-3, min_lr=4e-4, patience=1, factor=0.1)
        _, lrs, _ = _run(LearningRateScheduler(cfg), 4, [1.0, 1.0, 1.0, 1.0])
        assert lrs.min() == pytest.approx(4e-4)


class TestWarmRestarts:
    def test_lr_jumps_up_at_restart(self):
        cfg = SchedulerConfig(scheduler_type="warm_restarts", restart_period=10, restart_mult=2.0)
        state, lrs, infos = _run(LearningRateScheduler(cfg), 40)
        restarts = [i for i, info in enumerate(infos) if info.was_restarted]
        # Periods 10 then 20: restarts at steps 10 and 30
        assert restarts == [9, 29]
        for i in restarts:
            assert lrs[i] > lrs[i - 1]
            assert lrs[i] == pytest.approx(cfg.initial_lr)
        assert state.restart_count == 2

    def test_decreasing_within_period(self):
        cfg = SchedulerConfig(scheduler_type="warm_restarts", restart_period=10, restart_mult=1.0)
        _, lrs, _ = _run(LearningRateScheduler(cfg), 9)
        assert np.all(np.diff(lrs) < 0)


class TestSchedulerControl:
    def test_unknown_type(self):
        scheduler = LearningRateScheduler(SchedulerConfig(scheduler_type="linear"))
        state = scheduler.initialize_state()
        with pytest.raises(UnknownStrategyError):
            scheduler.step(state)

    def test_apply_lr_factor(self):
        cfg = SchedulerConfig(initial_lr=1e-3, warmup_steps=0, total_steps=1000)
        scheduler = LearningRateScheduler(cfg)
        state = scheduler.initialize_state()
        scheduler.step(state)
        lr = scheduler.apply_lr_factor(state, 0.25)
        assert lr == pytest.approx(2.5e-4)
        assert cfg.initial_lr == pytest.approx(2.5e-4)
        next_lr, _ = scheduler.step(state)
        assert next_lr < 2.5e-4

    def test_lr_factor_uses_unpenalized_peak(self):
        # The second reset passes factor 0.25 ** 2, measured from the original peak
        cfg = SchedulerConfig(initial_lr=1e-3, warmup_steps=100, total_steps=1000)
        scheduler = LearningRateScheduler(cfg)
        state = scheduler.initialize_state()
        for _ in range(5):
            scheduler.step(state)
        assert scheduler.apply_lr_factor(state, 0.25) == pytest.approx(2.5e-4)
        for _ in range(5):
            scheduler.step(state)
        assert scheduler.apply_lr_factor(state, 0.0625) == pytest.approx(6.25e-5)
        assert cfg.initial_lr == pytest.approx(6.25e-5)

    def test_update_config_between_steps(self):
        scheduler = LearningRateScheduler(SchedulerConfig(scheduler_type="cosine"))
        state = scheduler.initialize_state()
        scheduler.step(state)
        scheduler.update_config(scheduler_type="plateau")
        lr, info = scheduler.step(state)
        assert info.phase == 'plateau'
        assert lr == pytest.approx(state.current_lr)

    def test_progression(self):
        scheduler = LearningRateScheduler(SchedulerConfig(warmup_steps=20, total_steps=100))
        report = scheduler.progression(steps=100)
        assert report['scheduler_type'] == 'warmup_cosine'
        assert report['lr_progression'][0]['phase'] == 'initial'
        assert report['final_lr'] == pytest.approx(1e-6)
