"""POST /v1/webhooks/processor - payment processor notification intake"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session

from settle_gateway.api.dependencies import get_reconciler, get_request_id
from settle_gateway.infrastructure.database.session import get_db
from settle_gateway.services.reconciler import WebhookReconciler

router = APIRouter()

logger = logging.getLogger(__name__)


@router.api_route("/webhooks/processor", methods=["GET", "POST"])
async def receive_processor_notification(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    reconciler: WebhookReconciler = Depends(get_reconciler),
):
    """
    Receive a processor notification.

    Always answers 200 so the processor stops redelivering; the notification
    is stored first and reconciled in the background. Malformed or unsigned
    notifications are recorded and dropped by the pipeline, never here.
    """
    request_id = get_request_id(request)

    body = None
    try:
        body = await request.json()
    except ValueError:
        logger.warning("Webhook body is not JSON", extra={"request_id": request_id})

    try:
        webhook = reconciler.accept(db, request.query_params, request.headers, body)
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to store webhook: {e}", extra={"request_id": request_id})
        return {"received": False}

    background_tasks.add_task(reconciler.process_in_background, webhook.id)
    logger.info(
        "Webhook accepted",
        extra={"request_id": request_id, "webhook_id": str(webhook.id), "notification_type": webhook.notification_type},
    )
    return {"received": True, "webhook_id": str(webhook.id)}
