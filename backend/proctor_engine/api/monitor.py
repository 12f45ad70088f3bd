"""Supervisor live-monitor routes (teacher/admin only)."""

import logging

from fastapi import APIRouter, Depends

from proctor_engine.api.deps import Identity, get_monitors, require_supervisor
from proctor_engine.schemas.common import SuccessResponse
from proctor_engine.schemas.session import MonitorRead
from proctor_engine.services.monitoring import MonitoringAggregator
from proctor_engine.services.registry import MonitorRegistry

logger = logging.getLogger(__name__)
router = APIRouter()


def _to_read(monitor: MonitoringAggregator) -> MonitorRead:
    error = monitor.last_error
    return MonitorRead(
        test_ref=monitor.test_ref,
        running=monitor.running,
        poll_in_flight=monitor.poll_in_flight,
        skipped_polls=monitor.skipped_polls,
        last_error=f"{error.code}: {error.message}" if error else None,
        snapshot=monitor.snapshot,
    )


@router.post("/{test_ref}/start", response_model=MonitorRead)
async def start_monitor(
    test_ref: str,
    current_user: Identity = Depends(require_supervisor),
    monitors: MonitorRegistry = Depends(get_monitors),
):
    """Begin polling attempts for a test (idempotent)."""
    monitor = monitors.start(test_ref)
    logger.info("Supervisor %s watching test %s", current_user.user_id, test_ref)
    return _to_read(monitor)


@router.get("/{test_ref}", response_model=MonitorRead)
async def get_monitor(
    test_ref: str,
    current_user: Identity = Depends(require_supervisor),
    monitors: MonitorRegistry = Depends(get_monitors),
):
    return _to_read(monitors.get(test_ref))


@router.post("/{test_ref}/refresh", response_model=MonitorRead)
async def refresh_monitor(
    test_ref: str,
    current_user: Identity = Depends(require_supervisor),
    monitors: MonitorRegistry = Depends(get_monitors),
):
    """"Refresh now" — joins a poll already in flight rather than starting a second one."""
    monitor = monitors.get(test_ref)
    await monitor.refresh()
    return _to_read(monitor)


@router.delete("/{test_ref}", response_model=SuccessResponse)
async def stop_monitor(
    test_ref: str,
    current_user: Identity = Depends(require_supervisor),
    monitors: MonitorRegistry = Depends(get_monitors),
):
    await monitors.stop(test_ref)
    return SuccessResponse(message="Monitor stopped", data={"test_ref": test_ref})
