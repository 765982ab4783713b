"""
支付网关 webhook 路由

webhook 永远返回 HTTP 200：网关只关心是否送达，
处理结果放在响应体的 code 里（见 app.services.reconciler）。
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Header, Request

from app.api.deps import GatewayDep, NotifierDep, SessionDep, WebhookPayloadDep
from app.api.routes.checkout import background_publisher
from app.api.schemas import ApiEnvelope
from app.core.config import settings
from app.services import reconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/gateway", response_model=ApiEnvelope)
def gateway_webhook(
    request: Request,
    session: SessionDep,
    gateway: GatewayDep,
    notifier: NotifierDep,
    background_tasks: BackgroundTasks,
    payload: WebhookPayloadDep,
    x_signature: str | None = Header(default=None),
    x_request_id: str | None = Header(default=None),
) -> ApiEnvelope:
    """
    接收支付网关通知

    请求路径: POST /api/v1/webhooks/gateway
    """
    notification = reconciler.parse_notification(payload, request.query_params)

    secret = settings.GATEWAY_WEBHOOK_SECRET
    if secret and not reconciler.verify_signature(
        secret=secret,
        signature=x_signature,
        request_id=x_request_id,
        data_id=notification.payment_id,
    ):
        logger.warning("Rejected gateway notification with bad signature: payment=%s", notification.payment_id)
        return ApiEnvelope(code=401301, message="Invalid signature", data={"received": True})

    result = reconciler.handle_notification(
        session=session,
        gateway=gateway,
        notification=notification,
        publish=background_publisher(background_tasks, notifier),
    )
    return ApiEnvelope(code=result.code, message=result.message, data=result.to_data())
