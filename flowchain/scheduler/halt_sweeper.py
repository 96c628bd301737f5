"""Halt Sweeper - Surface halted instances to the operational dashboard

Periodically lists instances that are BLOCKED or failed on the rework
bound and posts one alert per instance to the configured webhook. It
only reads instances, it never changes them.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pymongo.errors import PyMongoError

from ..config.settings import settings
from ..services.reporting_service import ReportingService
from ..utils.idgen import generate_correlation_id
from ..utils.logger import get_logger, set_correlation_id
from ..utils.time import ensure_utc, format_iso, utc_now

logger = get_logger(__name__)

# Overlap between sweeps so an instance committed mid-sweep is not missed
SWEEP_OVERLAP = timedelta(seconds=5)


class HaltSweeper:
    """
    APScheduler job posting alerts for halted instances

    Each halt (instance id plus the time it halted) is alerted once per
    process. A summary whose post failed is kept and posted again on every
    following sweep until it goes through, even after the query window
    has moved past it.
    """

    def __init__(
        self,
        reporting_service: Optional[ReportingService] = None,
        webhook_url: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.reporting_service = reporting_service or ReportingService()
        self.webhook_url = webhook_url if webhook_url is not None else settings.ops_alert_webhook_url
        self._transport = transport
        # instance_id -> halted_at of the alert already posted
        self._alerted: Dict[str, Optional[datetime]] = {}
        # instance_id -> summary whose post failed
        self._pending: Dict[str, Dict[str, Any]] = {}
        self._last_sweep: Optional[datetime] = None
        self._is_running = False

    def start(self) -> None:
        """Start the scheduler"""
        if self._is_running:
            logger.warning("Halt sweeper already running")
            return

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self._run,
            trigger=IntervalTrigger(seconds=settings.halt_sweep_interval_seconds),
            id="sweep_halted_instances",
            name="Alert on halted instances",
            replace_existing=True
        )
        self.scheduler.start()
        self._is_running = True
        logger.info(f"Halt sweeper started (every {settings.halt_sweep_interval_seconds}s)")

    def stop(self) -> None:
        """Stop the scheduler"""
        if self.scheduler:
            self.scheduler.shutdown()
            self._is_running = False
            logger.info("Halt sweeper stopped")

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def pending_alerts(self) -> List[str]:
        """Instance ids whose alert has not been delivered yet"""
        return sorted(self._pending)

    def _run(self) -> None:
        set_correlation_id(generate_correlation_id())
        try:
            self.sweep_once()
        except PyMongoError as e:
            logger.error(f"Halt sweep failed reading instances: {e}")

    def sweep_once(self) -> int:
        """Alert on instances halted since the previous sweep plus earlier failed posts; returns alerts sent"""
        started = utc_now()
        since = self._last_sweep - SWEEP_OVERLAP if self._last_sweep else None
        halted = self.reporting_service.list_halted(since=since)

        # A fresh summary replaces a stale pending one for the same instance
        due: Dict[str, Dict[str, Any]] = dict(self._pending)
        for summary in halted:
            due[summary["instance_id"]] = summary

        sent = 0
        self._pending = {}
        for instance_id, summary in due.items():
            if instance_id in self._alerted and self._alerted[instance_id] == summary.get("halted_at"):
                continue
            if self._alert(summary):
                self._alerted[instance_id] = summary.get("halted_at")
                sent += 1
            else:
                self._pending[instance_id] = summary

        self._forget_before(since)
        self._last_sweep = started
        if due:
            logger.info(
                f"Halt sweep found {len(due)} halted instances, sent {sent} alerts, "
                f"{len(self._pending)} still pending"
            )
        return sent

    def _forget_before(self, since: Optional[datetime]) -> None:
        # Halts older than the query window can no longer be returned by it
        if since is None:
            return
        self._alerted = {
            instance_id: halted_at
            for instance_id, halted_at in self._alerted.items()
            if halted_at is None or ensure_utc(halted_at) >= since
        }

    def _alert(self, summary: Dict[str, Any]) -> bool:
        extra = {"instance_id": summary["instance_id"], "flow_chain_id": summary["flow_chain_id"]}
        if not self.webhook_url:
            logger.error(
                f"Instance {summary['instance_id']} is halted ({summary['status']}); no alert webhook configured",
                extra=extra
            )
            return True

        payload = {
            **summary,
            "halted_at": format_iso(summary["halted_at"]) if summary.get("halted_at") else None,
        }
        try:
            with httpx.Client(timeout=10.0, transport=self._transport) as client:
                response = client.post(self.webhook_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to post halt alert for {summary['instance_id']}: {e}", extra=extra)
            return False

        logger.info(f"Posted halt alert for {summary['instance_id']}", extra=extra)
        return True


# Global sweeper instance
_sweeper: Optional[HaltSweeper] = None


def get_sweeper() -> HaltSweeper:
    """Get or create sweeper instance"""
    global _sweeper
    if _sweeper is None:
        _sweeper = HaltSweeper()
    return _sweeper


def start_sweeper() -> None:
    """Start the global sweeper"""
    get_sweeper().start()


def stop_sweeper() -> None:
    """Stop the global sweeper"""
    global _sweeper
    if _sweeper:
        _sweeper.stop()
        _sweeper = None
