"""
结账编排服务

负责一次结账提交的完整流程：
1. 校验（商品、支付方式、客户资料、银行卡、加购项、优惠码）
2. 定价（与报价接口同一个定价函数）
3. 原子写入订单和明细
4. 按支付方式构建网关请求，以订单 ID 作为幂等键调用网关
   （托管收银台只创建网关偏好，返回跳转地址，支付结果通过 webhook 到达）
5. 条件写入网关状态和引用，追加支付尝试记录

失败处理：
- 第 3 步之前的任何失败都是校验错误，不写任何记录
- 网关调用失败（网络、超时、非 2xx、格式错误）时订单保持 pending，
  记录 payment_create_failed，返回 processing。网关侧可能已经扣款，
  所以本地永远不会因为网关调用失败而把订单判定为失败。

重试（幂等）：
- 客户端可以携带自己生成的 order_id
- 已存在时商品、支付方式、客户邮箱、优惠码、加购项必须与原订单一致，否则 409101
- 已存在且有网关引用：直接返回已存储的结果，不再调用网关
- 已存在但没有网关引用：用同一个幂等键重新提交
- 并发创建同一 order_id 时主键冲突，后到者进入重试路径
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from app import crud
from app.api.errors import (
    AppError,
    GatewayError,
    IllegalTransitionError,
    coupon_rejected,
    product_not_found,
)
from app.api.schemas import (
    CheckoutRequest,
    HostedCheckoutData,
    InstantTransferData,
    PaymentResultData,
    VoucherData,
)
from app.core.config import settings
from app.enums import AttemptEventType, CardNetwork, DiscountRejection, PaymentMethod, PaymentStatus
from app.integrations.payment_gateway import (
    CardDetails,
    GatewayPaymentRequest,
    GatewayPreferenceRequest,
    Payer,
    PaymentGatewayClient,
    PreferenceItem,
)
from app.models import AddOnOffer, Order, OrderItem, Product, new_id, utc_now
from app.services import discounts, pricing
from app.services.payment_state import is_terminal, to_outcome

logger = logging.getLogger(__name__)

# 状态变更发布回调：(order_id, status)
PublishFn = Callable[[str, PaymentStatus], Any]

# 卡号首位 -> 卡组织
_NETWORK_PREFIXES: dict[str, CardNetwork] = {
    "4": CardNetwork.visa,
    "5": CardNetwork.master,
    "2": CardNetwork.master,
    "3": CardNetwork.amex,
    "6": CardNetwork.elo,
}


@dataclass(frozen=True)
class Quote:
    """一次定价的完整结果"""
    breakdown: pricing.PriceBreakdown
    add_ons: list[tuple[AddOnOffer, Product]]
    decision: discounts.DiscountDecision | None = None

    @property
    def coupon_rejection(self) -> DiscountRejection | None:
        return self.decision.rejection if self.decision is not None else None


@dataclass(frozen=True)
class CheckoutResult:
    """
    下单结果

    submitted 为 False 表示网关调用没有完成（HTTP 202，客户端等待推送或轮询）
    """
    data: PaymentResultData
    submitted: bool = True


def detect_card_network(number: str) -> CardNetwork:
    """
    根据卡号首位识别卡组织

    Raises:
        AppError: 卡号无法识别时抛出 400105 错误
    """
    digits = "".join(ch for ch in number if ch.isdigit())
    network = _NETWORK_PREFIXES.get(digits[:1])
    if network is None:
        raise AppError(code=400105, message="Unsupported card network", status_code=400)
    return network


def enabled_methods(product: Product) -> list[PaymentMethod]:
    """商品启用的支付方式；未配置时全部启用"""
    if product.payment_methods is None:
        return list(PaymentMethod)
    return [m for m in PaymentMethod if m.value in product.payment_methods]


def has_valid_discount(offer: AddOnOffer) -> bool:
    """加购折扣百分比必须在 [0, 100] 区间，目录数据越界时该加购项不可售"""
    pct = offer.discount_percentage
    if pct is not None and 0 <= pct <= 100:
        return True
    logger.warning("Add-on offer %s has invalid discount percentage %s", offer.id, pct)
    return False


def load_active_product(*, session: Session, product_id: str) -> Product:
    product = crud.get_product(session=session, product_id=product_id)
    if product is None:
        raise product_not_found()
    if not product.is_active:
        raise AppError(code=400101, message="Product is not active", status_code=400)
    return product


def build_quote(
    *,
    session: Session,
    product: Product,
    add_on_ids: list[str],
    coupon_code: str | None,
    now: datetime | None = None,
    strict_coupon: bool = True,
) -> Quote:
    """
    计算报价

    选中的加购项必须全部可用（加购项和加购商品都处于激活状态，折扣百分比合法），否则 400106。
    优惠码按不含优惠的小计校验：strict_coupon 为 True 时被拒绝抛出错误，
    否则按无优惠计算并在结果中带上拒绝原因。
    """
    selected = list(dict.fromkeys(add_on_ids))
    add_ons = [
        (offer, bump)
        for offer, bump in crud.list_active_add_ons(session=session, product_id=product.id, offer_ids=selected)
        if has_valid_discount(offer)
    ]
    found = {offer.id for offer, _ in add_ons}
    missing = [offer_id for offer_id in selected if offer_id not in found]
    if missing:
        logger.info("Add-on offers not available for product %s: %s", product.id, missing)
        raise AppError(code=400106, message="Add-on offer not available", status_code=400)

    selections = [
        pricing.AddOnSelection(
            offer_id=offer.id,
            product_id=bump.id,
            price=bump.price,
            discount_percentage=offer.discount_percentage,
        )
        for offer, bump in add_ons
    ]
    undiscounted = pricing.price(product.price, selections, None, base_product_id=product.id)

    decision = None
    if coupon_code and coupon_code.strip():
        decision = discounts.validate_discount_code(
            session=session, code=coupon_code, subtotal=undiscounted.subtotal, now=now
        )
        if not decision.ok:
            if strict_coupon:
                raise coupon_rejected(decision.rejection.value if decision.rejection else "invalid")
            return Quote(breakdown=undiscounted, add_ons=add_ons, decision=decision)

    applied = decision.applied if decision is not None else None
    breakdown = pricing.price(product.price, selections, applied, base_product_id=product.id)
    return Quote(breakdown=breakdown, add_ons=add_ons, decision=decision)


def _check_method(*, product: Product, request: CheckoutRequest) -> CardNetwork | None:
    """校验支付方式相关的必填项，银行卡返回识别出的卡组织"""
    method = request.payment_method
    if method not in enabled_methods(product):
        raise AppError(code=400102, message="Payment method not enabled", status_code=400)

    if method in (PaymentMethod.card, PaymentMethod.deferred_voucher):
        document = request.customer.document or ""
        if not any(ch.isdigit() for ch in document):
            raise AppError(code=400103, message="Customer document is required", status_code=400)

    if method != PaymentMethod.card:
        return None
    if request.card is None:
        raise AppError(code=400104, message="Card data is required", status_code=400)
    if request.installments > settings.MAX_INSTALLMENTS:
        raise AppError(code=400107, message="Installments out of range", status_code=400)
    return detect_card_network(request.card.number)


def _log_client_totals(request: CheckoutRequest, breakdown: pricing.PriceBreakdown) -> None:
    """客户端金额只用于比对，不一致时记录日志"""
    pairs = (
        ("subtotal", request.subtotal, breakdown.subtotal),
        ("discount", request.discount, breakdown.discount),
        ("total", request.total, breakdown.total),
    )
    for name, client_value, server_value in pairs:
        if client_value is not None and pricing.to_money(client_value) != server_value:
            logger.warning(
                "Client %s %s differs from server %s for product %s",
                name,
                client_value,
                server_value,
                request.product_id,
            )


def build_gateway_request(
    *,
    order: Order,
    product: Product,
    request: CheckoutRequest,
    network: CardNetwork | None,
    now: datetime,
) -> GatewayPaymentRequest:
    """按支付方式塑形网关请求，幂等键为订单 ID"""
    method = PaymentMethod(order.payment_method)
    card = None
    if method == PaymentMethod.card and request.card is not None:
        card = CardDetails(
            number="".join(ch for ch in request.card.number if ch.isdigit()),
            holder_name=request.card.holder_name,
            expiry_month=request.card.expiry_month,
            expiry_year=request.card.expiry_year,
            cvv=request.card.cvv,
        )
    return GatewayPaymentRequest(
        idempotency_key=order.id,
        amount=Decimal(str(order.total_amount)),
        description=product.name,
        method=method,
        payer=Payer(
            email=order.customer_email,
            name=order.customer_name,
            document=order.customer_document,
        ),
        network=network,
        installments=request.installments if method == PaymentMethod.card else None,
        card=card,
        due_date=now + timedelta(days=settings.VOUCHER_DUE_DAYS)
        if method == PaymentMethod.deferred_voucher
        else None,
        notification_url=settings.GATEWAY_NOTIFICATION_URL or None,
    )


def result_data(order: Order, method_payload: dict[str, Any] | None = None) -> PaymentResultData:
    """订单 + 网关返回的支付方式数据 -> 对外结果"""
    status = PaymentStatus(order.payment_status)
    method = PaymentMethod(order.payment_method)
    payload = method_payload or {}
    instant_transfer = None
    voucher = None
    hosted_checkout = None
    if payload and method == PaymentMethod.instant_transfer:
        instant_transfer = InstantTransferData(**payload)
    elif payload and method == PaymentMethod.deferred_voucher:
        voucher = VoucherData(**payload)
    elif payload and method == PaymentMethod.hosted_checkout:
        hosted_checkout = HostedCheckoutData(**payload)
    return PaymentResultData(
        order_id=order.id,
        gateway_payment_id=order.gateway_payment_id,
        status=status,
        outcome=to_outcome(status),
        payment_method=method,
        subtotal=order.subtotal,
        discount=order.discount_amount,
        total=order.total_amount,
        instant_transfer=instant_transfer,
        voucher=voucher,
        hosted_checkout=hosted_checkout,
    )


def build_preference_request(
    *, session: Session, order: Order, product: Product, now: datetime
) -> GatewayPreferenceRequest:
    """
    托管收银台偏好请求

    商品行取自订单明细的单价快照。网关不接受负单价，
    有折扣时合并为一行订单总价。
    """
    if order.discount_amount and order.discount_amount > 0:
        items: list[PreferenceItem] = [
            PreferenceItem(
                id=order.id,
                title=product.name,
                unit_price=order.total_amount,
                description=f"{product.name} ({order.coupon_code})",
            )
        ]
    else:
        items = []
        for item in crud.orders.get_items(session=session, order_id=order.id):
            item_product = crud.get_product(session=session, product_id=item.product_id)
            items.append(
                PreferenceItem(
                    id=item.product_id,
                    title=item_product.name if item_product is not None else item.product_id,
                    unit_price=item.unit_price,
                )
            )

    return_base = settings.CHECKOUT_RETURN_BASE_URL.rstrip("/")
    return GatewayPreferenceRequest(
        idempotency_key=order.id,
        items=tuple(items),
        payer=Payer(email=order.customer_email, name=order.customer_name, document=order.customer_document),
        currency_id=settings.GATEWAY_CURRENCY_ID,
        success_url=f"{return_base}/payment-success?order={order.id}",
        failure_url=f"{return_base}/payment-failure?order={order.id}",
        pending_url=f"{return_base}/payment-success?order={order.id}",
        expires_at=now + timedelta(hours=settings.HOSTED_CHECKOUT_EXPIRY_HOURS),
        notification_url=settings.GATEWAY_NOTIFICATION_URL or None,
    )


def _record_submit_failure(*, session: Session, order: Order, error: GatewayError) -> CheckoutResult:
    """网关调用失败：订单保持 pending，记录失败尝试，返回 processing"""
    logger.warning(
        "Gateway submit failed for order %s (timed_out=%s): %s", order.id, error.timed_out, error.message
    )
    crud.append_attempt(
        session=session,
        event_type=AttemptEventType.payment_create_failed,
        order_id=order.id,
        payment_status=PaymentStatus.pending,
        payload={"code": error.code, "message": error.message, "timed_out": error.timed_out},
    )
    session.refresh(order)
    return CheckoutResult(data=result_data(order), submitted=False)


def _submit_hosted(
    *,
    session: Session,
    gateway: PaymentGatewayClient,
    order: Order,
    product: Product,
    now: datetime,
) -> CheckoutResult:
    """创建托管收银台偏好，订单保持 pending 直到 webhook 带回支付结果"""
    preference_request = build_preference_request(session=session, order=order, product=product, now=now)
    try:
        preference = gateway.create_preference(preference_request)
    except GatewayError as e:
        return _record_submit_failure(session=session, order=order, error=e)

    method_payload = {"preference_id": preference.preference_id, "checkout_url": preference.checkout_url}
    crud.set_preference_id(
        session=session, order_id=order.id, preference_id=preference.preference_id, commit=False
    )
    crud.append_attempt(
        session=session,
        event_type=AttemptEventType.preference_created,
        order_id=order.id,
        payment_status=PaymentStatus.pending,
        payload={"method_payload": method_payload, "raw": preference.raw},
        commit=False,
    )
    session.commit()
    session.refresh(order)

    logger.info("Hosted checkout created: order=%s preference=%s", order.id, preference.preference_id)
    return CheckoutResult(data=result_data(order, method_payload))


def _submit(
    *,
    session: Session,
    gateway: PaymentGatewayClient,
    order: Order,
    product: Product,
    request: CheckoutRequest,
    network: CardNetwork | None,
    now: datetime,
    publish: PublishFn | None,
) -> CheckoutResult:
    """调用网关并记录结果（调用期间不持有任何事务）"""
    if order.payment_method == PaymentMethod.hosted_checkout.value:
        return _submit_hosted(session=session, gateway=gateway, order=order, product=product, now=now)

    gateway_request = build_gateway_request(
        order=order, product=product, request=request, network=network, now=now
    )
    try:
        submitted = gateway.submit(gateway_request)
    except GatewayError as e:
        return _record_submit_failure(session=session, order=order, error=e)

    changed = False
    try:
        transition = crud.transition_order_status(
            session=session,
            order_id=order.id,
            new_status=submitted.status,
            gateway_payment_id=submitted.gateway_reference,
            commit=False,
        )
        changed = transition is not None and transition.changed
    except IllegalTransitionError as e:
        # webhook 已经先写入了不同的终态，以存储中的状态为准
        logger.error("Payment state anomaly on submit: %s", e)

    crud.append_attempt(
        session=session,
        event_type=AttemptEventType.payment_created,
        order_id=order.id,
        gateway_payment_id=submitted.gateway_reference,
        payment_status=submitted.status,
        raw_status=submitted.raw_status,
        payload={
            "status_detail": submitted.status_detail,
            "method_payload": submitted.method_payload,
        },
        commit=False,
    )
    session.commit()
    session.refresh(order)

    logger.info(
        "Payment submitted: order=%s gateway_payment_id=%s status=%s",
        order.id,
        submitted.gateway_reference,
        order.payment_status,
    )
    if changed and publish is not None and is_terminal(order.payment_status):
        publish(order.id, PaymentStatus(order.payment_status))
    return CheckoutResult(data=result_data(order, submitted.method_payload))


def _retry_mismatch(*, session: Session, order: Order, request: CheckoutRequest) -> str | None:
    """
    比对重试请求与原订单，返回第一个不一致的字段名，一致时返回 None

    回放的结果里带有原客户的支付数据，任何一项不一致都不能复用这个订单。
    """
    if order.product_id != request.product_id:
        return "product_id"
    if order.payment_method != request.payment_method.value:
        return "payment_method"
    if order.customer_email.lower() != request.customer.email.lower():
        return "customer.email"

    coupon = request.coupon_code.strip() if request.coupon_code else ""
    if (crud.catalog.normalize_code(coupon) if coupon else None) != order.coupon_code:
        return "coupon_code"

    requested: list[str] = []
    for offer_id in dict.fromkeys(request.selected_add_on_ids):
        offer = session.get(AddOnOffer, offer_id)
        if offer is None or offer.product_id != order.product_id:
            return "selected_add_on_ids"
        requested.append(offer.bump_product_id)
    stored = [
        item.product_id
        for item in crud.orders.get_items(session=session, order_id=order.id)
        if item.is_order_bump
    ]
    if sorted(requested) != sorted(stored):
        return "selected_add_on_ids"
    return None


def _retry_existing(
    *,
    session: Session,
    gateway: PaymentGatewayClient,
    order: Order,
    request: CheckoutRequest,
    now: datetime,
    publish: PublishFn | None,
) -> CheckoutResult:
    """同一 order_id 的重复提交：回放已存储结果或用同一幂等键重新提交"""
    mismatch = _retry_mismatch(session=session, order=order, request=request)
    if mismatch is not None:
        logger.warning("Retry for order %s does not match the original checkout: %s", order.id, mismatch)
        raise AppError(code=409101, message="Order id already used for a different checkout", status_code=409)

    hosted = order.payment_method == PaymentMethod.hosted_checkout.value
    if order.gateway_payment_id or order.gateway_preference_id or is_terminal(order.payment_status):
        attempt = crud.orders.latest_attempt(
            session=session,
            order_id=order.id,
            event_type=AttemptEventType.preference_created if hosted else AttemptEventType.payment_created,
        )
        method_payload = (attempt.payload or {}).get("method_payload") if attempt else None
        logger.info("Replaying stored payment result for order %s", order.id)
        return CheckoutResult(data=result_data(order, method_payload))

    product = crud.get_product(session=session, product_id=order.product_id)
    if product is None:
        raise product_not_found()
    network = _check_method(product=product, request=request)
    logger.info("Resubmitting order %s to gateway", order.id)
    return _submit(
        session=session,
        gateway=gateway,
        order=order,
        product=product,
        request=request,
        network=network,
        now=now,
        publish=publish,
    )


def create_payment(
    *,
    session: Session,
    gateway: PaymentGatewayClient,
    request: CheckoutRequest,
    publish: PublishFn | None = None,
    now: datetime | None = None,
) -> CheckoutResult:
    """
    创建支付

    Args:
        session: 数据库会话
        gateway: 支付网关客户端
        request: 结账提交请求
        publish: 同步得到终态时的状态发布回调
        now: 当前时间（用于优惠码过期判断和凭证到期日）

    Returns:
        CheckoutResult

    Raises:
        AppError: 校验失败
    """
    now = now or utc_now()

    if request.order_id:
        existing = crud.get_order(session=session, order_id=request.order_id)
        if existing is not None:
            return _retry_existing(
                session=session, gateway=gateway, order=existing, request=request, now=now, publish=publish
            )

    product = load_active_product(session=session, product_id=request.product_id)
    network = _check_method(product=product, request=request)
    quote = build_quote(
        session=session,
        product=product,
        add_on_ids=request.selected_add_on_ids,
        coupon_code=request.coupon_code,
        now=now,
    )
    breakdown = quote.breakdown
    _log_client_totals(request, breakdown)

    order = Order(
        id=request.order_id or new_id(),
        product_id=product.id,
        customer_name=request.customer.name,
        customer_email=request.customer.email,
        customer_phone=request.customer.phone,
        customer_document=request.customer.document,
        subtotal=breakdown.subtotal,
        discount_amount=breakdown.discount,
        total_amount=breakdown.total,
        coupon_code=quote.decision.code if quote.decision is not None and quote.decision.ok else None,
        payment_method=request.payment_method.value,
        payment_status=PaymentStatus.pending.value,
        redirect_url=product.redirect_url,
    )
    items = [
        OrderItem(
            product_id=line.product_id,
            quantity=1,
            unit_price=line.unit_price,
            total_price=line.unit_price,
            is_order_bump=line.is_add_on,
        )
        for line in breakdown.lines
    ]
    order_id = order.id
    try:
        order = crud.create_order_with_items(session=session, order=order, items=items)
    except IntegrityError:
        existing = crud.get_order(session=session, order_id=order_id)
        if existing is None:
            raise
        logger.info("Concurrent create for order %s, falling back to retry", order_id)
        return _retry_existing(
            session=session, gateway=gateway, order=existing, request=request, now=now, publish=publish
        )

    logger.info(
        "Order created: id=%s product=%s method=%s total=%s",
        order.id,
        product.id,
        order.payment_method,
        order.total_amount,
    )
    return _submit(
        session=session,
        gateway=gateway,
        order=order,
        product=product,
        request=request,
        network=network,
        now=now,
        publish=publish,
    )
