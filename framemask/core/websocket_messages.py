"""
WebSocket message utilities for job progress.

Sends never raise: a failed send is logged and the pipeline continues.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import WebSocket

from framemask.core.models import ProcessingProgress

logger = logging.getLogger(__name__)


# WebSocket message types
WS_MSG_TYPE_PROGRESS = "processing_progress"
WS_MSG_TYPE_ERROR = "error"
WS_MSG_TYPE_DONE = "done"


async def send_progress(websocket: WebSocket, progress: ProcessingProgress) -> bool:
    """
    Send a progress snapshot via WebSocket.

    Args:
        websocket: WebSocket connection
        progress: Progress snapshot, sent with camelCase keys

    Returns:
        True if the message was sent.
    """
    try:
        await websocket.send_json({
            "type": WS_MSG_TYPE_PROGRESS,
            "jobId": progress.job_id,
            "data": progress.model_dump(mode="json", by_alias=True),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        return True
    except Exception as e:
        logger.warning(f"Failed to send progress update via WebSocket: {e}")
        return False


async def send_error(
    websocket: WebSocket,
    job_id: str,
    message: str,
    details: Optional[str] = None,
) -> bool:
    """
    Send a job error via WebSocket.

    Args:
        websocket: WebSocket connection
        job_id: Failed job
        message: Human-readable error message
        details: Optional error details
    """
    try:
        await websocket.send_json({
            "type": WS_MSG_TYPE_ERROR,
            "jobId": job_id,
            "message": message,
            "details": details,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        return True
    except Exception as e:
        logger.warning(f"Failed to send error message via WebSocket: {e}")
        return False


async def send_done(websocket: WebSocket, job_id: str, output_path: str) -> bool:
    """Send job completion via WebSocket."""
    try:
        await websocket.send_json({
            "type": WS_MSG_TYPE_DONE,
            "jobId": job_id,
            "outputPath": output_path,
        })
        return True
    except Exception as e:
        logger.warning(f"Failed to send done message via WebSocket: {e}")
        return False
