"""
Notification job endpoints.

POST runs a single cycle or the continuous loop, GET sends a test push to
every subscribed user, DELETE is the emergency stop for a running loop.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse

from notifier.config import settings
from notifier.infrastructure.observability.logging import get_logger
from notifier.jobs.notification_job import NotificationCheckJob, notification_check_job
from notifier.jobs.notification_loop import NotificationLoop, notification_loop
from notifier.models.api.notification_request import DismissNotificationRequest
from notifier.models.domain.timestamps import now_millis
from notifier.repositories.notification_repository import (
    NotificationRepository,
    notification_repository,
)
from notifier.services.loop_lease import LoopLease, loop_lease

logger = get_logger(__name__)

router = APIRouter(prefix="/notifications", tags=["Notifications"])

CHECK_MODES = ("single", "loop")


def get_notification_job() -> NotificationCheckJob:
    return notification_check_job


def get_notification_loop() -> NotificationLoop:
    return notification_loop


def get_loop_lease() -> LoopLease:
    return loop_lease


def get_notification_repository() -> NotificationRepository:
    return notification_repository


async def _force_release(lease: LoopLease) -> None:
    try:
        await lease.force_release()
    except Exception as e:
        logger.error("Failed to reset notification loop lease", error=str(e))


async def _loop_status(lease: LoopLease) -> dict:
    try:
        return await lease.status()
    except Exception as e:
        logger.error("Failed to read notification loop status", error=str(e))
        return {"isLoopRunning": False, "loopStartTime": None}


@router.post("/check")
async def run_notification_check(
    mode: str = Query(default="loop", description="single: one cycle, loop: run continuously"),
    job: NotificationCheckJob = Depends(get_notification_job),
    loop: NotificationLoop = Depends(get_notification_loop),
    lease: LoopLease = Depends(get_loop_lease),
):
    """Run one notification cycle or the continuous loop and return its report."""
    mode = mode.strip().lower()
    if mode not in CHECK_MODES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown mode '{mode}'. Expected one of: {', '.join(CHECK_MODES)}",
        )

    logger.info("Notification check requested", mode=mode)

    try:
        if mode == "single":
            results = await job.execute_notification_check()
            return {
                "success": True,
                "message": "Single notification check completed",
                "results": results,
            }

        results = await loop.start()
        return {
            "success": True,
            "message": "Notification loop process completed",
            "results": results,
        }

    except Exception as e:
        logger.error(
            "Notification check failed", mode=mode, error=str(e), error_type=type(e).__name__
        )
        await _force_release(lease)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error", "details": str(e)},
        )


@router.get("/check")
async def send_test_notification(
    job: NotificationCheckJob = Depends(get_notification_job),
    lease: LoopLease = Depends(get_loop_lease),
):
    """Send a test push to every enabled, subscribed user and report loop status."""
    try:
        sent = await job.send_test_notifications(datetime.now(settings.tz()))
    except Exception as e:
        logger.error("Test notification failed", error=str(e))
        loop_status = await _loop_status(lease)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "isLoopRunning": loop_status["isLoopRunning"],
                "loopStartTime": loop_status["loopStartTime"],
                "error": str(e),
                "message": "Failed to send test notification",
            },
        )

    loop_status = await _loop_status(lease)
    return {
        "isLoopRunning": loop_status["isLoopRunning"],
        "loopStartTime": loop_status["loopStartTime"],
        "testNotification": sent,
        "message": f"Test notification sent to all users. Total sent: {sent['totalSent']}",
    }


@router.delete("/check")
async def stop_notification_loop(lease: LoopLease = Depends(get_loop_lease)):
    """Emergency stop. The running loop exits before its next cycle."""
    await _force_release(lease)
    logger.info("Notification loop stopped by request")
    return {"success": True, "message": "Notification loop stopped."}


@router.post("/dismiss")
async def dismiss_notifications(
    request: DismissNotificationRequest,
    repository: NotificationRepository = Depends(get_notification_repository),
):
    """
    Mark notifications as read.

    A read notification no longer blocks a fresh alert for the same task, so
    dismissing is what re-arms overdue and reminder alerts.
    """
    if not request.notification_id and not request.task_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Provide notificationId or taskId"
        )
    if not request.user_email:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="userEmail is required"
        )

    read_at = now_millis(datetime.now(settings.tz()))

    if request.notification_id:
        updated = await repository.dismiss_notification(
            request.user_email, request.notification_id, read_at
        )
        if updated == 0:
            return {"success": True, "updated": 0, "message": "No matching notification found"}
        return {"success": True, "updated": updated}

    updated = await repository.dismiss_task_notifications(
        request.user_email, request.task_id, read_at
    )
    if updated == 0:
        return {"success": True, "updated": 0, "message": "No unread notifications for this task"}
    return {"success": True, "updated": updated}
