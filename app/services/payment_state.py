"""
订单支付状态机

pending 是唯一的非终态：
- pending -> pending（无变化）
- pending -> approved / failed / rejected / cancelled
- 终态 -> 相同终态：幂等无操作
- 终态 -> 其他任何状态：非法，订单存储拒绝写入
"""
from __future__ import annotations

from app.enums import PaymentOutcome, PaymentStatus

TERMINAL_STATUSES: frozenset[PaymentStatus] = frozenset(
    {
        PaymentStatus.approved,
        PaymentStatus.failed,
        PaymentStatus.rejected,
        PaymentStatus.cancelled,
    }
)

FAILURE_STATUSES: frozenset[PaymentStatus] = frozenset(
    {PaymentStatus.failed, PaymentStatus.rejected, PaymentStatus.cancelled}
)


def is_terminal(status: PaymentStatus | str) -> bool:
    return PaymentStatus(status) in TERMINAL_STATUSES


def can_transition(current: PaymentStatus | str, new: PaymentStatus | str) -> bool:
    """当前状态是否允许写入新状态（包括相同状态的幂等写入）"""
    current = PaymentStatus(current)
    new = PaymentStatus(new)
    if current == new:
        return True
    return current == PaymentStatus.pending


def to_outcome(status: PaymentStatus | str) -> PaymentOutcome:
    """把内部状态收敛为客户可见的三种结果"""
    status = PaymentStatus(status)
    if status == PaymentStatus.approved:
        return PaymentOutcome.approved
    if status in FAILURE_STATUSES:
        return PaymentOutcome.failed
    return PaymentOutcome.processing
