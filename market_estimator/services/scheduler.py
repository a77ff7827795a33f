"""Scheduled jobs -- estimator retraining and the Tier-2 pending sweep."""
import json
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import DATA_DIR, DEFAULT_MARKETPLACE
from market_estimator.models.database import utcnow

logger = logging.getLogger(__name__)

_SCHEDULE_FILE = DATA_DIR / "schedule_config.json"
_scheduler: BackgroundScheduler | None = None


def _default_config() -> dict:
    return {
        "enabled": False,
        "frequency": "daily",  # "daily", "weekly", "monthly"
        "hour": 3,
        "day_of_week": "mon",  # for weekly
        "marketplace": DEFAULT_MARKETPLACE,
        "sweep_minutes": 15,
        "last_retrain": None,
        "last_retrain_result": None,
        "last_sweep": None,
        "snapshots_refined": 0,
    }


def load_config() -> dict:
    """Load schedule config from JSON file."""
    if _SCHEDULE_FILE.exists():
        try:
            with open(_SCHEDULE_FILE, "r") as f:
                cfg = json.load(f)
            defaults = _default_config()
            defaults.update(cfg)
            return defaults
        except (json.JSONDecodeError, OSError):
            logger.warning("Unreadable schedule config at %s; using defaults", _SCHEDULE_FILE)
    return _default_config()


def save_config(config: dict) -> None:
    """Save schedule config to JSON file."""
    try:
        with open(_SCHEDULE_FILE, "w") as f:
            json.dump(config, f, indent=2)
    except OSError:
        logger.exception("Failed to save schedule config")


def _build_trigger(config: dict) -> CronTrigger:
    """Build the retrain trigger from config."""
    freq = config.get("frequency", "daily")
    hour = config.get("hour", 3)

    if freq == "daily":
        return CronTrigger(hour=hour, minute=0)
    elif freq == "weekly":
        return CronTrigger(day_of_week=config.get("day_of_week", "mon"), hour=hour, minute=0)
    elif freq == "monthly":
        return CronTrigger(day=1, hour=hour, minute=0)
    return CronTrigger(hour=hour, minute=0)


def _run_retrain(service=None) -> dict:
    """Retrain every model type for the configured marketplace."""
    config = load_config()
    marketplace = config.get("marketplace") or DEFAULT_MARKETPLACE
    if service is None:
        from market_estimator.services.calibrated_estimator import CalibratedEstimator
        estimator = CalibratedEstimator()
        result = estimator.retrain(marketplace)
    else:
        result = service.retrain(marketplace)

    config["last_retrain"] = utcnow().isoformat()
    config["last_retrain_result"] = {k: v.get("status") for k, v in result.items()}
    save_config(config)
    logger.info("Scheduled retrain for %s: %s", marketplace, config["last_retrain_result"])
    return result


def _run_pending_sweep(service=None) -> int:
    """Refine snapshots whose Tier-2 never ran (e.g. after a restart)."""
    if service is None:
        from market_estimator.services.analysis_service import MarketAnalysisService
        service = MarketAnalysisService(marketplace=load_config().get("marketplace") or DEFAULT_MARKETPLACE)
    refined = service.run_pending_refinements()

    config = load_config()
    config["last_sweep"] = utcnow().isoformat()
    config["snapshots_refined"] = config.get("snapshots_refined", 0) + refined
    save_config(config)
    return refined


def start_scheduler(service=None, requeue: bool = True) -> BackgroundScheduler | None:
    """Start the background scheduler if enabled in config.

    With ``requeue`` set, snapshots a previous process left mid-refinement
    go back to pending so the sweep picks them up.
    """
    global _scheduler

    config = load_config()
    if not config.get("enabled"):
        logger.info("Scheduled retraining is disabled")
        return None

    if requeue:
        if service is None:
            from market_estimator.services.analysis_service import MarketAnalysisService
            MarketAnalysisService(marketplace=config.get("marketplace") or DEFAULT_MARKETPLACE).requeue_interrupted()
        else:
            service.requeue_interrupted()

    _scheduler = BackgroundScheduler()
    _scheduler.add_job(
        _run_retrain,
        trigger=_build_trigger(config),
        kwargs={"service": service},
        id="estimator_retrain",
        name="Calibrated estimator retrain",
        replace_existing=True,
    )
    _scheduler.add_job(
        _run_pending_sweep,
        trigger=IntervalTrigger(minutes=config.get("sweep_minutes", 15)),
        kwargs={"service": service},
        id="tier2_sweep",
        name="Tier-2 pending sweep",
        replace_existing=True,
    )
    _scheduler.start()
    logger.info("Scheduler started: retrain %s at %s:00", config["frequency"], config.get("hour", 3))
    return _scheduler


def stop_scheduler():
    """Stop the scheduler if running."""
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        _scheduler = None


def restart_scheduler(service=None):
    stop_scheduler()
    return start_scheduler(service, requeue=False)


def run_now(service=None) -> dict:
    """Trigger an immediate retrain."""
    return _run_retrain(service)


def get_scheduler_status() -> dict:
    config = load_config()
    return {
        "enabled": config.get("enabled", False),
        "frequency": config.get("frequency", "daily"),
        "hour": config.get("hour", 3),
        "day_of_week": config.get("day_of_week", "mon"),
        "marketplace": config.get("marketplace"),
        "last_retrain": config.get("last_retrain"),
        "last_retrain_result": config.get("last_retrain_result"),
        "last_sweep": config.get("last_sweep"),
        "snapshots_refined": config.get("snapshots_refined", 0),
        "running": _scheduler is not None and _scheduler.running,
    }
