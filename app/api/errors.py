"""
自定义异常模块

定义应用特定的异常类，用于统一的错误处理。
所有业务异常都继承自 AppError，在 main.py 中有统一的异常处理器。
"""
from __future__ import annotations


class AppError(Exception):
    """
    应用自定义异常类

    用于业务逻辑中的错误处理，包含：
    - code: 业务错误码（用于前端区分不同错误）
    - message: 错误消息（用户友好的提示）
    - status_code: HTTP 状态码（400, 404, 500 等）

    使用示例：
        raise AppError(code=404101, message="Product not found", status_code=404)
    """

    def __init__(self, *, code: int, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


class GatewayError(AppError):
    """
    支付网关传输层错误

    网络错误、超时、非 2xx 响应、响应格式错误。
    此时网关侧可能已经扣款，调用方不能把订单判定为失败。
    """

    def __init__(self, *, code: int, message: str, timed_out: bool = False) -> None:
        super().__init__(code=code, message=message, status_code=502)
        self.timed_out = timed_out


class IllegalTransitionError(Exception):
    """
    订单状态非法转换

    由订单存储的条件写入抛出：订单已处于终态，且新状态是另一个不同的值。
    """

    def __init__(self, *, order_id: str, current: str, requested: str) -> None:
        super().__init__(f"Illegal transition for order {order_id}: {current} -> {requested}")
        self.order_id = order_id
        self.current = current
        self.requested = requested


def product_not_found() -> AppError:
    return AppError(code=404101, message="Product not found", status_code=404)


def order_not_found() -> AppError:
    return AppError(code=404201, message="Order not found", status_code=404)


def coupon_rejected(reason: str) -> AppError:
    """
    创建"优惠码不可用"异常（便捷函数）

    错误码按拒绝原因区分：invalid / expired / below_minimum。
    """
    codes = {"invalid": 400111, "expired": 400112, "below_minimum": 400113}
    return AppError(code=codes.get(reason, 400111), message=f"Coupon {reason}", status_code=400)
