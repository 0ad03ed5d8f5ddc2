"""Background job expiring payments abandoned in the pending state."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Event, Lock, Thread
from typing import Callable, Dict, Optional

try:
    from backend.app.payments import PaymentService
    from backend.app.services.payments import get_payment_config, get_payment_service
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "backend":
        raise
    from app.payments import PaymentService  # type: ignore[no-redef]
    from app.services.payments import get_payment_config, get_payment_service  # type: ignore[no-redef]

logger = logging.getLogger(__name__)

_scheduler_lock = Lock()
_worker: Optional["_CleanupWorker"] = None

_CLEANUP_METRICS: Dict[str, object] = {
    "runs": 0,
    "payments_expired": 0,
    "failures": 0,
    "last_run_at": None,
    "last_success_at": None,
    "last_error": None,
}
_metrics_lock = Lock()


def _record_run_start(started_at: datetime) -> None:
    with _metrics_lock:
        _CLEANUP_METRICS["runs"] = int(_CLEANUP_METRICS.get("runs", 0)) + 1
        _CLEANUP_METRICS["last_run_at"] = started_at


def _record_run_success(completed_at: datetime, expired: int) -> None:
    with _metrics_lock:
        _CLEANUP_METRICS["payments_expired"] = int(_CLEANUP_METRICS.get("payments_expired", 0)) + expired
        _CLEANUP_METRICS["last_success_at"] = completed_at
        _CLEANUP_METRICS["last_error"] = None


def _record_run_failure(error: Exception) -> None:
    with _metrics_lock:
        _CLEANUP_METRICS["failures"] = int(_CLEANUP_METRICS.get("failures", 0)) + 1
        _CLEANUP_METRICS["last_error"] = f"{type(error).__name__}: {error}"


def run_cleanup_job(
    *,
    now: Optional[datetime] = None,
    service: Optional[PaymentService] = None,
) -> int:
    """Expire stale pending payments once and return how many were expired."""

    if now is not None and now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    started_at = now or datetime.now(timezone.utc)

    payment_service = service or get_payment_service()
    _record_run_start(started_at)
    try:
        expired = payment_service.cleanup_expired_payments(now=now)
    except Exception as exc:
        _record_run_failure(exc)
        logger.exception("Payment cleanup job failed")
        raise
    else:
        _record_run_success(started_at, expired)
        logger.info(
            "Payment cleanup job completed",
            extra={"payments_expired": expired},
        )
        return expired


class _CleanupWorker(Thread):
    def __init__(self, job: Callable[[], int], *, initial_delay: float, interval: float):
        super().__init__(daemon=True, name="payment-cleanup")
        self._job = job
        self._initial_delay = max(0.0, initial_delay)
        self._interval = max(1.0, interval)
        self._stop_event = Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        if self._stop_event.wait(self._initial_delay):
            return
        while not self._stop_event.is_set():
            try:
                self._job()
            except Exception:
                logger.debug("Payment cleanup run failed; retrying at next interval")
            if self._stop_event.wait(self._interval):
                break


def start_cleanup_scheduler(
    *,
    interval: Optional[float] = None,
    initial_delay: float = 60.0,
    job: Optional[Callable[[], int]] = None,
) -> bool:
    """Start the cleanup worker. Returns ``False`` when disabled or already running."""

    global _worker

    config = get_payment_config()
    if not config.cleanup_enabled:
        logger.info("Payment cleanup scheduler disabled")
        return False

    with _scheduler_lock:
        if _worker is not None:
            return False
        run_interval = interval if interval is not None else config.cleanup_interval_seconds
        _worker = _CleanupWorker(job or run_cleanup_job, initial_delay=initial_delay, interval=run_interval)
        _worker.start()
        logger.info(
            "Payment cleanup scheduler started",
            extra={
                "interval_seconds": round(run_interval, 2),
                "pending_timeout_minutes": config.pending_timeout_minutes,
            },
        )
        return True


def shutdown_cleanup_scheduler() -> None:
    global _worker

    with _scheduler_lock:
        worker = _worker
        _worker = None
    if worker is None:
        return
    worker.stop()
    worker.join(timeout=1.0)
    logger.info("Payment cleanup scheduler stopped")


def is_cleanup_scheduler_running() -> bool:
    with _scheduler_lock:
        return _worker is not None and _worker.is_alive()


def get_cleanup_metrics() -> Dict[str, object]:
    with _metrics_lock:
        return {
            **_CLEANUP_METRICS,
            "last_run_at": _CLEANUP_METRICS["last_run_at"].isoformat() if _CLEANUP_METRICS.get("last_run_at") else None,
            "last_success_at": (
                _CLEANUP_METRICS["last_success_at"].isoformat() if _CLEANUP_METRICS.get("last_success_at") else None
            ),
        }


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        _CLEANUP_METRICS.update(
            {
                "runs": 0,
                "payments_expired": 0,
                "failures": 0,
                "last_run_at": None,
                "last_success_at": None,
                "last_error": None,
            }
        )


__all__ = [
    "get_cleanup_metrics",
    "is_cleanup_scheduler_running",
    "run_cleanup_job",
    "shutdown_cleanup_scheduler",
    "start_cleanup_scheduler",
]
