"""订单存储：订单 / 明细的原子写入、状态条件写入、支付尝试追加"""
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import update
from sqlmodel import Session, select

from app.api.errors import IllegalTransitionError
from app.enums import AttemptEventType, PaymentStatus
from app.models import Order, OrderItem, PaymentAttempt, utc_now
from app.services.payment_state import can_transition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionResult:
    """
    条件写入结果

    - applied: 本次写入是否命中了行（状态或网关引用被更新）
    - changed: 状态是否真的发生了变化（pending -> 终态）
    """
    order: Order
    previous: PaymentStatus
    applied: bool
    changed: bool


def create_with_items(*, session: Session, order: Order, items: list[OrderItem]) -> Order:
    """
    原子地创建订单及其明细

    订单和明细在同一次 commit 中写入，要么都成功，要么都不写入。
    主键冲突（客户端重复提交同一订单 ID）以 IntegrityError 抛给调用方。
    """
    for item in items:
        item.order_id = order.id
    try:
        session.add(order)
        session.add_all(items)
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(order)
    return order


def get(*, session: Session, order_id: str) -> Order | None:
    return session.get(Order, order_id)


def get_items(*, session: Session, order_id: str) -> list[OrderItem]:
    stmt = select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.is_order_bump)
    return list(session.exec(stmt).all())


def transition_status(
    *,
    session: Session,
    order_id: str,
    new_status: PaymentStatus,
    gateway_payment_id: str | None = None,
    commit: bool = True,
) -> TransitionResult | None:
    """
    按状态机推进订单支付状态（compare-and-set）

    只有当前状态为 pending 的行才会被更新，所以并发、乱序、重复的写入
    不会互相覆盖。未命中时重新读取当前状态：
    - 订单不存在：返回 None
    - 当前状态与新状态相同：幂等无操作
    - 其余情况：终态冲突，抛出 IllegalTransitionError

    Args:
        commit: False 时只 flush，由调用方与其他写入（如尝试记录）一起提交
    """
    new_status = PaymentStatus(new_status)
    now = utc_now()
    values: dict[str, Any] = {"payment_status": new_status.value, "updated_at": now}
    if gateway_payment_id:
        values["gateway_payment_id"] = gateway_payment_id
    if new_status == PaymentStatus.approved:
        values["paid_at"] = now

    stmt = (
        update(Order)
        .where(Order.id == order_id)
        .where(Order.payment_status == PaymentStatus.pending.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = session.exec(stmt)  # type: ignore[call-overload]
    if commit:
        session.commit()
    else:
        session.flush()

    order = session.get(Order, order_id, populate_existing=True)
    if order is None:
        return None

    if result.rowcount == 1:
        return TransitionResult(
            order=order,
            previous=PaymentStatus.pending,
            applied=True,
            changed=new_status != PaymentStatus.pending,
        )

    current = PaymentStatus(order.payment_status)
    if can_transition(current, new_status):
        return TransitionResult(order=order, previous=current, applied=False, changed=False)

    logger.warning(
        "Rejected payment status write: order=%s current=%s requested=%s",
        order_id,
        current.value,
        new_status.value,
    )
    raise IllegalTransitionError(order_id=order_id, current=current.value, requested=new_status.value)


def set_preference_id(
    *, session: Session, order_id: str, preference_id: str, commit: bool = True
) -> bool:
    """记录托管收银台偏好 ID，只在尚未记录时写入；返回是否写入"""
    stmt = (
        update(Order)
        .where(Order.id == order_id)
        .where(Order.gateway_preference_id.is_(None))  # type: ignore[union-attr]
        .values(gateway_preference_id=preference_id, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    result = session.exec(stmt)  # type: ignore[call-overload]
    if commit:
        session.commit()
    else:
        session.flush()
    return result.rowcount == 1


def append_attempt(
    *,
    session: Session,
    event_type: AttemptEventType,
    order_id: str | None,
    gateway_payment_id: str | None = None,
    payment_status: PaymentStatus | None = None,
    raw_status: str | None = None,
    payload: dict[str, Any] | None = None,
    commit: bool = True,
) -> PaymentAttempt:
    """追加一条支付尝试记录（只追加，从不更新）"""
    attempt = PaymentAttempt(
        order_id=order_id,
        gateway_payment_id=gateway_payment_id,
        event_type=event_type,
        payment_status=payment_status,
        raw_status=raw_status,
        payload=payload,
    )
    session.add(attempt)
    if commit:
        session.commit()
    return attempt


def list_attempts(*, session: Session, order_id: str) -> list[PaymentAttempt]:
    stmt = (
        select(PaymentAttempt)
        .where(PaymentAttempt.order_id == order_id)
        .order_by(PaymentAttempt.created_at)
    )
    return list(session.exec(stmt).all())


def latest_attempt(
    *, session: Session, order_id: str, event_type: AttemptEventType
) -> PaymentAttempt | None:
    stmt = (
        select(PaymentAttempt)
        .where(PaymentAttempt.order_id == order_id, PaymentAttempt.event_type == event_type)
        .order_by(PaymentAttempt.created_at.desc())  # type: ignore[union-attr]
    )
    return session.exec(stmt).first()
