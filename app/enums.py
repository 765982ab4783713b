"""
枚举类型定义模块

定义结账与支付流程中使用的所有枚举类型。

所有枚举都继承自 str 和 Enum，这样既可以用作字符串，又具有枚举的特性。
"""
from enum import Enum  # 枚举类型，用于定义固定的选项集合


class PaymentStatus(str, Enum):
    """
    订单支付状态枚举

    - pending: 待支付（初始状态，唯一的非终态）
    - approved: 已支付（终态）
    - failed: 支付失败（终态）
    - rejected: 被拒绝（终态，对客户端等同于 failed）
    - cancelled: 已取消（终态）
    """
    pending = "pending"
    approved = "approved"
    failed = "failed"
    rejected = "rejected"
    cancelled = "cancelled"


class PaymentOutcome(str, Enum):
    """
    面向客户的支付结果

    客户只会看到这三种结果，不暴露内部状态和错误细节。
    """
    processing = "processing"
    approved = "approved"
    failed = "failed"


class PaymentMethod(str, Enum):
    """
    支付方式枚举

    - instant_transfer: 即时转账（扫码 / 复制支付串）
    - card: 银行卡（可分期）
    - deferred_voucher: 延期凭证（到期前线下支付）
    - hosted_checkout: 托管收银台（跳转到网关页面，由客户在网关侧选择支付方式）
    """
    instant_transfer = "instant_transfer"
    card = "card"
    deferred_voucher = "deferred_voucher"
    hosted_checkout = "hosted_checkout"


class DiscountKind(str, Enum):
    """
    优惠码类型枚举

    - percentage: 按小计百分比折扣
    - fixed: 固定金额折扣（不超过小计）
    """
    percentage = "percentage"
    fixed = "fixed"


class DiscountRejection(str, Enum):
    """
    优惠码拒绝原因（按检查顺序）
    """
    invalid = "invalid"
    expired = "expired"
    below_minimum = "below_minimum"


class CardNetwork(str, Enum):
    """卡组织（网关的 payment_method_id）"""
    visa = "visa"
    master = "master"
    amex = "amex"
    elo = "elo"


class AttemptEventType(str, Enum):
    """
    支付尝试记录的事件类型

    - payment_created: 网关已受理创建请求
    - preference_created: 网关已创建托管收银台偏好（等待客户跳转支付）
    - payment_create_failed: 创建请求在传输层失败（订单保持 pending）
    - webhook_received: webhook 已处理（状态推进或幂等无操作）
    - webhook_rejected: webhook 隐含的状态转换被状态机拒绝
    - webhook_order_not_found: webhook 指向的订单不存在
    """
    payment_created = "payment_created"
    preference_created = "preference_created"
    payment_create_failed = "payment_create_failed"
    webhook_received = "webhook_received"
    webhook_rejected = "webhook_rejected"
    webhook_order_not_found = "webhook_order_not_found"
