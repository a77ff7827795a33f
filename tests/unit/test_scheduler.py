from unittest.mock import MagicMock

import pytest
from apscheduler.triggers.cron import CronTrigger

from market_estimator.services import scheduler


@pytest.fixture(autouse=True)
def schedule_file(tmp_path, monkeypatch):
    path = tmp_path / "schedule_config.json"
    monkeypatch.setattr(scheduler, "_SCHEDULE_FILE", path)
    yield path
    scheduler.stop_scheduler()


@pytest.fixture
def service():
    svc = MagicMock()
    svc.retrain.return_value = {
        "search_volume": {"status": "insufficient_data"},
        "revenue": {"status": "ok", "model_version": "v2.0.20261016"},
    }
    svc.run_pending_refinements.return_value = 3
    return svc


def test_defaults_when_no_file():
    cfg = scheduler.load_config()
    assert cfg["enabled"] is False
    assert cfg["marketplace"] == "US"


def test_saved_config_merges_with_defaults():
    scheduler.save_config({"enabled": True, "frequency": "weekly"})
    cfg = scheduler.load_config()
    assert cfg["enabled"] is True
    assert cfg["frequency"] == "weekly"
    assert cfg["hour"] == 3


@pytest.mark.parametrize("frequency", ["daily", "weekly", "monthly", "hourly"])
def test_build_trigger(frequency):
    assert isinstance(scheduler._build_trigger({"frequency": frequency, "hour": 4}), CronTrigger)


def test_run_now_records_results(service):
    scheduler.run_now(service)
    service.retrain.assert_called_once_with("US")
    status = scheduler.get_scheduler_status()
    assert status["last_retrain"] is not None
    assert status["last_retrain_result"] == {"search_volume": "insufficient_data", "revenue": "ok"}


def test_sweep_counts_refined_snapshots(service):
    assert scheduler._run_pending_sweep(service) == 3
    assert scheduler._run_pending_sweep(service) == 3
    assert scheduler.get_scheduler_status()["snapshots_refined"] == 6


def test_disabled_scheduler_does_not_start():
    assert scheduler.start_scheduler() is None
    assert scheduler.get_scheduler_status()["running"] is False


def test_enabled_scheduler_registers_both_jobs(service):
    scheduler.save_config({"enabled": True})
    sched = scheduler.start_scheduler(service)
    try:
        assert {job.id for job in sched.get_jobs()} == {"estimator_retrain", "tier2_sweep"}
        service.requeue_interrupted.assert_called_once_with()
        assert scheduler.get_scheduler_status()["running"] is True
    finally:
        scheduler.stop_scheduler()
    assert scheduler.get_scheduler_status()["running"] is False


def test_restart_keeps_running_refinements(service):
    scheduler.save_config({"enabled": True})
    scheduler.start_scheduler(service)
    try:
        sched = scheduler.restart_scheduler(service)
        assert sched.running
        # only the first start requeues
        assert service.requeue_interrupted.call_count == 1
    finally:
        scheduler.stop_scheduler()
