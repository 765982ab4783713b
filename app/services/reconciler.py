"""
网关 webhook 对账

网关通知只当作"有变化"的信号：不信任通知体里的状态，
总是按支付 ID 回查网关的权威记录，再用条件写入推进订单状态。

结果码（webhook 永远返回 HTTP 200，结果放在响应体 code 里）：
- 0: 已应用或幂等无操作（包括被忽略的非 payment 事件）
- 400301: 事件格式错误
- 401301: 签名校验失败
- 404301: 订单不存在
- 409301: 终态冲突
- 502301: 回查网关失败
- 500301: 内部错误（已记录日志）
"""
from __future__ import annotations

import hashlib
import hmac
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from sqlmodel import Session

from app import crud
from app.api.errors import GatewayError, IllegalTransitionError
from app.enums import AttemptEventType, PaymentStatus
from app.integrations.payment_gateway import PaymentGatewayClient
from app.services.checkout_service import PublishFn

logger = logging.getLogger(__name__)

PAYMENT_EVENT = "payment"


@dataclass(frozen=True)
class ReconcileResult:
    code: int = 0
    message: str = "success"
    order_id: str | None = None
    status: PaymentStatus | None = None
    changed: bool = False
    ignored: bool = False

    def to_data(self) -> dict[str, Any]:
        return {
            "received": True,
            "ignored": self.ignored,
            "order_id": self.order_id,
            "status": self.status.value if self.status else None,
            "changed": self.changed,
        }


@dataclass(frozen=True)
class Notification:
    """解析后的网关通知"""
    event_type: str | None
    payment_id: str | None


def parse_notification(payload: Mapping[str, Any] | None, query: Mapping[str, str]) -> Notification:
    """
    解析网关通知

    支持两种形式：
    - JSON 体: {"type": "payment", "data": {"id": "123"}}
    - 查询参数: ?type=payment&data.id=123 或 ?topic=payment&id=123
    """
    payload = payload or {}
    event_type = payload.get("type") or payload.get("topic") or query.get("type") or query.get("topic")

    payment_id = None
    data = payload.get("data")
    if isinstance(data, Mapping) and data.get("id") is not None:
        payment_id = data.get("id")
    elif query.get("data.id"):
        payment_id = query.get("data.id")
    elif query.get("id"):
        payment_id = query.get("id")

    return Notification(
        event_type=str(event_type).strip().lower() if event_type else None,
        payment_id=str(payment_id).strip() if payment_id not in (None, "") else None,
    )


def verify_signature(
    *,
    secret: str,
    signature: str | None,
    request_id: str | None,
    data_id: str | None,
) -> bool:
    """
    校验 x-signature 头

    格式: "ts=<时间戳>,v1=<hex>"，签名内容为
    "id:{data.id};request-id:{x-request-id};ts:{ts};" 的 HMAC-SHA256
    """
    if not signature:
        return False
    parts: dict[str, str] = {}
    for item in signature.split(","):
        key, sep, value = item.partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    ts = parts.get("ts")
    v1 = parts.get("v1")
    if not ts or not v1:
        return False

    manifest = ""
    if data_id:
        manifest += f"id:{data_id.lower() if data_id.isalnum() else data_id};"
    if request_id:
        manifest += f"request-id:{request_id};"
    manifest += f"ts:{ts};"
    expected = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, v1)


def reconcile(
    *,
    session: Session,
    gateway: PaymentGatewayClient,
    notification: Notification,
    publish: PublishFn | None = None,
) -> ReconcileResult:
    """
    对账一条通知

    状态写入和尝试记录在同一次 commit 中；只有状态真的发生变化
    （pending -> 终态）时才发布通知，重复投递不会重复发布。

    Raises:
        GatewayError: 回查网关失败
    """
    if notification.event_type is None:
        logger.warning("Malformed gateway notification: missing type")
        return ReconcileResult(code=400301, message="Malformed event")
    if notification.event_type != PAYMENT_EVENT:
        logger.info("Ignoring gateway notification of type %s", notification.event_type)
        return ReconcileResult(ignored=True)
    if not notification.payment_id:
        logger.warning("Malformed gateway notification: missing payment id")
        return ReconcileResult(code=400301, message="Malformed event")

    payment = gateway.get_payment(notification.payment_id)
    order = crud.get_order(session=session, order_id=payment.external_reference) if payment.external_reference else None
    if order is None:
        logger.error(
            "Gateway notification for unknown order: payment=%s external_reference=%s",
            payment.gateway_reference,
            payment.external_reference,
        )
        crud.append_attempt(
            session=session,
            event_type=AttemptEventType.webhook_order_not_found,
            order_id=payment.external_reference,
            gateway_payment_id=payment.gateway_reference,
            payment_status=payment.status,
            raw_status=payment.raw_status,
            payload=payment.raw,
        )
        return ReconcileResult(code=404301, message="Order not found", status=payment.status)

    try:
        transition = crud.transition_order_status(
            session=session,
            order_id=order.id,
            new_status=payment.status,
            gateway_payment_id=payment.gateway_reference,
            commit=False,
        )
    except IllegalTransitionError as e:
        logger.error("Payment state anomaly on webhook: %s (payment=%s)", e, payment.gateway_reference)
        crud.append_attempt(
            session=session,
            event_type=AttemptEventType.webhook_rejected,
            order_id=order.id,
            gateway_payment_id=payment.gateway_reference,
            payment_status=payment.status,
            raw_status=payment.raw_status,
            payload=payment.raw,
        )
        return ReconcileResult(
            code=409301,
            message="Illegal status transition",
            order_id=order.id,
            status=PaymentStatus(e.current),
        )

    crud.append_attempt(
        session=session,
        event_type=AttemptEventType.webhook_received,
        order_id=order.id,
        gateway_payment_id=payment.gateway_reference,
        payment_status=payment.status,
        raw_status=payment.raw_status,
        payload=payment.raw,
        commit=False,
    )
    session.commit()

    changed = transition is not None and transition.changed
    if changed:
        logger.info("Order %s payment status -> %s", order.id, payment.status.value)
        if payment.status == PaymentStatus.approved:
            logger.info("Order %s approved, redirect target unlocked", order.id)
        if publish is not None:
            publish(order.id, payment.status)
    return ReconcileResult(order_id=order.id, status=payment.status, changed=changed)


def handle_notification(
    *,
    session: Session,
    gateway: PaymentGatewayClient,
    notification: Notification,
    publish: PublishFn | None = None,
) -> ReconcileResult:
    """webhook 入口：任何异常都转换为结果码，调用方总是返回 200"""
    try:
        return reconcile(session=session, gateway=gateway, notification=notification, publish=publish)
    except GatewayError as e:
        session.rollback()
        logger.error("Gateway lookup failed for payment %s: %s", notification.payment_id, e.message)
        return ReconcileResult(code=502301, message="Gateway lookup failed")
    except Exception:
        session.rollback()
        logger.exception("Webhook processing failed for payment %s", notification.payment_id)
        return ReconcileResult(code=500301, message="Internal error")
