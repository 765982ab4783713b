"""
结账路由模块

处理结账页面相关的 API 端点，包括：
- 商品与加购项展示
- 报价（每次选择变化时调用）
- 优惠码校验
- 创建支付
- 查询订单状态（轮询 / 断线重连）
- 订单状态 SSE 推送流
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse

from app import crud
from app.api.deps import GatewayDep, NotifierDep, SessionDep
from app.api.errors import order_not_found
from app.api.schemas import (
    AddOnOfferData,
    ApiEnvelope,
    CheckoutRequest,
    CouponValidateData,
    CouponValidateRequest,
    OrderStatusData,
    PriceLineData,
    ProductCheckoutData,
    QuoteData,
    QuoteRequest,
)
from app.core.config import settings
from app.enums import DiscountKind, PaymentStatus
from app.models import Order
from app.services import checkout_service, discounts, pricing
from app.services.payment_state import to_outcome
from app.services.sse import status_event_stream
from app.services.status_notifier import StatusNotifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/checkout", tags=["checkout"])


def background_publisher(background_tasks: BackgroundTasks, notifier: StatusNotifier) -> checkout_service.PublishFn:
    """把状态发布放到响应之后执行，写路径不等待推送"""

    def publish(order_id: str, status: PaymentStatus) -> None:
        background_tasks.add_task(notifier.publish, order_id, status)

    return publish


def _to_order_status_data(order: Order) -> OrderStatusData:
    """
    将订单模型转换为状态响应数据

    跳转地址只在支付成功后返回。
    """
    status = PaymentStatus(order.payment_status)
    return OrderStatusData(
        order_id=order.id,
        status=status,
        outcome=to_outcome(status),
        payment_method=order.payment_method,
        gateway_payment_id=order.gateway_payment_id,
        subtotal=order.subtotal,
        discount=order.discount_amount,
        total=order.total_amount,
        coupon_code=order.coupon_code,
        redirect_url=order.redirect_url if status == PaymentStatus.approved else None,
        created_at=order.created_at,
        updated_at=order.updated_at,
        paid_at=order.paid_at,
    )


@router.get("/products/{product_id}", response_model=ApiEnvelope)
def get_checkout_product(session: SessionDep, product_id: str) -> ApiEnvelope:
    """
    获取结账页商品信息

    请求路径: GET /api/v1/checkout/products/{product_id}

    Returns:
        ApiEnvelope: 商品、当前可用的加购项和启用的支付方式

    Raises:
        AppError: 商品不存在（404101）或未激活（400101）
    """
    product = checkout_service.load_active_product(session=session, product_id=product_id)
    add_ons = [
        AddOnOfferData(
            id=offer.id,
            title=offer.title,
            description=offer.description,
            product_id=bump.id,
            price=bump.price,
            discount_percentage=offer.discount_percentage,
            discounted_price=pricing.add_on_price(
                pricing.AddOnSelection(
                    offer_id=offer.id,
                    product_id=bump.id,
                    price=bump.price,
                    discount_percentage=offer.discount_percentage,
                )
            ),
        )
        for offer, bump in crud.list_active_add_ons(session=session, product_id=product.id)
        if checkout_service.has_valid_discount(offer)
    ]
    data = ProductCheckoutData(
        id=product.id,
        name=product.name,
        description=product.description,
        price=product.price,
        payment_methods=checkout_service.enabled_methods(product),
        add_ons=add_ons,
    )
    return ApiEnvelope(data=data)


@router.post("/quote", response_model=ApiEnvelope)
def quote(session: SessionDep, body: QuoteRequest) -> ApiEnvelope:
    """
    报价

    和下单使用同一个定价函数。优惠码不可用时不报错，
    按无优惠计算并返回拒绝原因。

    请求路径: POST /api/v1/checkout/quote
    """
    product = checkout_service.load_active_product(session=session, product_id=body.product_id)
    result = checkout_service.build_quote(
        session=session,
        product=product,
        add_on_ids=body.selected_add_on_ids,
        coupon_code=body.coupon_code,
        strict_coupon=False,
    )
    breakdown = result.breakdown
    decision = result.decision
    data = QuoteData(
        subtotal=breakdown.subtotal,
        discount=breakdown.discount,
        total=breakdown.total,
        coupon_code=decision.code if decision is not None else None,
        coupon_rejection=result.coupon_rejection,
        lines=[
            PriceLineData(
                product_id=line.product_id,
                offer_id=line.offer_id,
                unit_price=line.unit_price,
                is_add_on=line.is_add_on,
            )
            for line in breakdown.lines
        ],
    )
    return ApiEnvelope(data=data)


@router.post("/coupons/validate", response_model=ApiEnvelope)
def validate_coupon(session: SessionDep, body: CouponValidateRequest) -> ApiEnvelope:
    """
    校验优惠码

    只读：不修改使用次数，重复调用结果相同。

    请求路径: POST /api/v1/checkout/coupons/validate
    """
    decision = discounts.validate_discount_code(session=session, code=body.code, subtotal=body.subtotal)
    if not decision.ok or decision.applied is None:
        return ApiEnvelope(data=CouponValidateData(code=decision.code, valid=False, reason=decision.rejection))

    applied = decision.applied
    data = CouponValidateData(
        code=decision.code,
        valid=True,
        discount_type=DiscountKind(applied.kind),
        discount_value=applied.value,
        discount=pricing.discount_amount(pricing.to_money(body.subtotal), applied),
    )
    return ApiEnvelope(data=data)


@router.post("/payments", response_model=ApiEnvelope)
def create_payment(
    session: SessionDep,
    gateway: GatewayDep,
    notifier: NotifierDep,
    background_tasks: BackgroundTasks,
    response: Response,
    body: CheckoutRequest,
) -> ApiEnvelope:
    """
    创建支付

    网关调用未完成（超时、网络错误等）时返回 HTTP 202 和 outcome=processing，
    最终结果通过 webhook 到达后由推送流或轮询获得。

    请求路径: POST /api/v1/checkout/payments

    Raises:
        AppError: 校验失败（4001xx / 404101 / 409101）
    """
    result = checkout_service.create_payment(
        session=session,
        gateway=gateway,
        request=body,
        publish=background_publisher(background_tasks, notifier),
    )
    if not result.submitted:
        response.status_code = 202
    return ApiEnvelope(data=result.data)


@router.get("/orders/{order_id}", response_model=ApiEnvelope)
def get_order_status(session: SessionDep, order_id: str) -> ApiEnvelope:
    """
    查询订单状态

    请求路径: GET /api/v1/checkout/orders/{order_id}

    Raises:
        AppError: 订单不存在时抛出 404201 错误
    """
    order = crud.get_order(session=session, order_id=order_id)
    if order is None:
        raise order_not_found()
    return ApiEnvelope(data=_to_order_status_data(order))


@router.get("/orders/{order_id}/events")
async def order_status_events(
    request: Request, session: SessionDep, notifier: NotifierDep, order_id: str
) -> StreamingResponse:
    """
    订单状态推送流（Server-Sent Events）

    先订阅再读取当前状态：读取和订阅之间发生的变更不会丢失。
    第一条事件总是当前状态；收到终态后关闭。

    请求路径: GET /api/v1/checkout/orders/{order_id}/events
    """
    subscription = await notifier.subscribe(order_id)
    order = await run_in_threadpool(crud.get_order, session=session, order_id=order_id)
    if order is None:
        await subscription.close()
        raise order_not_found()

    initial = _to_order_status_data(order).model_dump(mode="json")
    return StreamingResponse(
        status_event_stream(
            subscription,
            initial,
            keepalive_seconds=settings.SSE_KEEPALIVE_SECONDS,
            is_disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
