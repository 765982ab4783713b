"""
支付网关集成模块

封装外部支付网关（Mercado Pago Payments API 线格式）的调用，包括：
- 创建支付（POST /v1/payments，携带 X-Idempotency-Key）
- 按 ID 查询支付（GET /v1/payments/{id}，webhook 对账时使用）
- 创建托管收银台偏好（POST /checkout/preferences），客户跳转到网关页面完成支付

网关返回的状态词汇通过固定映射表收敛为内部状态，
未知状态一律映射为 pending：既不假定成功，也不假定失败。

传输层失败（网络错误、超时、5xx）使用 tenacity 以同一幂等键自动重试，
由网关负责去重；4xx 和响应格式错误不重试。

支持模拟模式（mock），用于本地开发时不需要真实网关。
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

import httpx
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from app.api.errors import GatewayError
from app.core.config import settings
from app.enums import CardNetwork, PaymentMethod, PaymentStatus

logger = logging.getLogger(__name__)

_PAYMENTS_PATH = "/v1/payments"  # 创建支付接口
_PAYMENT_PATH = "/v1/payments/{payment_id}"  # 查询支付接口
_PREFERENCES_PATH = "/checkout/preferences"  # 托管收银台偏好接口

# 模拟模式最多保留的支付记录数
_MOCK_MAX_PAYMENTS = 1000

# 网关状态 -> 内部状态
STATUS_MAP: dict[str, PaymentStatus] = {
    "approved": PaymentStatus.approved,
    "authorized": PaymentStatus.pending,
    "pending": PaymentStatus.pending,
    "in_process": PaymentStatus.pending,
    "in_mediation": PaymentStatus.pending,
    "rejected": PaymentStatus.failed,
    "cancelled": PaymentStatus.cancelled,
}

# 内部支付方式 -> 网关 payment_method_id（银行卡由卡组织决定）
_METHOD_IDS = {
    PaymentMethod.instant_transfer: "pix",
    PaymentMethod.deferred_voucher: "bolbradesco",
}


def normalize_status(raw_status: str | None) -> PaymentStatus:
    """把网关状态映射为内部状态，未知值映射为 pending"""
    if not raw_status:
        return PaymentStatus.pending
    status = STATUS_MAP.get(str(raw_status).strip().lower())
    if status is None:
        logger.warning("Unknown gateway status %r, treating as pending", raw_status)
        return PaymentStatus.pending
    return status


@dataclass(frozen=True)
class Payer:
    """付款人信息"""
    email: str
    name: str
    document: str | None = None

    def to_wire(self) -> dict[str, Any]:
        parts = self.name.split()
        payer: dict[str, Any] = {
            "email": self.email,
            "first_name": parts[0] if parts else self.name,
            "last_name": " ".join(parts[1:]) or "N/A",
        }
        if self.document:
            payer["identification"] = document_identification(self.document)
        return payer


@dataclass(frozen=True)
class CardDetails:
    """银行卡信息（只在请求网关时使用，不落库）"""
    number: str
    holder_name: str
    expiry_month: int
    expiry_year: int
    cvv: str


@dataclass(frozen=True)
class GatewayPaymentRequest:
    """
    支付创建请求

    由编排器按支付方式塑形：
    - instant_transfer: 无卡信息
    - card: network + installments + card
    - deferred_voucher: due_date
    """
    idempotency_key: str  # 即订单 ID
    amount: Decimal
    description: str
    method: PaymentMethod
    payer: Payer
    network: CardNetwork | None = None
    installments: int | None = None
    card: CardDetails | None = None
    due_date: date | datetime | None = None
    notification_url: str | None = None

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "transaction_amount": float(self.amount),
            "description": self.description,
            "external_reference": self.idempotency_key,
            "payer": self.payer.to_wire(),
            "metadata": {"order_id": self.idempotency_key},
        }
        if self.notification_url:
            payload["notification_url"] = self.notification_url

        if self.method == PaymentMethod.card:
            if self.network is None:
                raise ValueError("Card payments require a card network")
            payload["payment_method_id"] = self.network.value
            payload["installments"] = self.installments or 1
            if self.card is not None:
                cardholder: dict[str, Any] = {"name": self.card.holder_name}
                if self.payer.document:
                    cardholder["identification"] = document_identification(self.payer.document)
                payload["card"] = {
                    "number": self.card.number,
                    "security_code": self.card.cvv,
                    "expiration_month": self.card.expiry_month,
                    "expiration_year": self.card.expiry_year,
                    "cardholder": cardholder,
                }
        else:
            payload["payment_method_id"] = _METHOD_IDS[self.method]

        if self.method == PaymentMethod.deferred_voucher and self.due_date is not None:
            payload["date_of_expiration"] = format_due_date(self.due_date)
        return payload


@dataclass(frozen=True)
class GatewaySubmitResult:
    """
    支付创建结果（已归一化）

    method_payload 按支付方式不同：
    - instant_transfer: qr_code / qr_code_base64 / ticket_url
    - deferred_voucher: pdf_url / barcode
    - card: 空
    """
    gateway_reference: str
    status: PaymentStatus
    raw_status: str | None = None
    status_detail: str | None = None
    method_payload: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] | None = None


@dataclass(frozen=True)
class GatewayPayment:
    """按 ID 查询到的权威支付记录"""
    gateway_reference: str
    status: PaymentStatus
    raw_status: str | None = None
    status_detail: str | None = None
    external_reference: str | None = None
    raw: dict[str, Any] | None = None


@dataclass(frozen=True)
class PreferenceItem:
    id: str
    title: str
    unit_price: Decimal
    description: str | None = None


@dataclass(frozen=True)
class GatewayPreferenceRequest:
    """
    托管收银台偏好请求

    网关页面上由客户自己选择支付方式；支付创建后网关按
    external_reference（订单 ID）回调 webhook，对账流程与直接支付相同。
    """
    idempotency_key: str  # 即订单 ID
    items: tuple[PreferenceItem, ...]
    payer: Payer
    currency_id: str
    success_url: str
    failure_url: str
    pending_url: str
    expires_at: datetime
    notification_url: str | None = None

    def to_wire(self) -> dict[str, Any]:
        payer = self.payer.to_wire()
        payload: dict[str, Any] = {
            "items": [
                {
                    "id": item.id,
                    "title": item.title,
                    "description": item.description or item.title,
                    "quantity": 1,
                    "currency_id": self.currency_id,
                    "unit_price": float(item.unit_price),
                }
                for item in self.items
            ],
            "payer": {"name": self.payer.name, "email": self.payer.email},
            "back_urls": {
                "success": self.success_url,
                "failure": self.failure_url,
                "pending": self.pending_url,
            },
            "auto_return": "approved",
            "external_reference": self.idempotency_key,
            "metadata": {"order_id": self.idempotency_key},
            "expires": True,
            "expiration_date_to": format_due_date(self.expires_at),
        }
        if "identification" in payer:
            payload["payer"]["identification"] = payer["identification"]
        if self.notification_url:
            payload["notification_url"] = self.notification_url
        return payload


@dataclass(frozen=True)
class GatewayPreferenceResult:
    preference_id: str
    checkout_url: str
    raw: dict[str, Any] | None = None


def document_identification(document: str) -> dict[str, str]:
    """税号：11 位及以下为个人（CPF），否则为企业（CNPJ）"""
    digits = "".join(ch for ch in document if ch.isdigit())
    return {"type": "CPF" if len(digits) <= 11 else "CNPJ", "number": digits}


def format_due_date(value: date | datetime) -> str:
    """网关日期格式：带时区的毫秒精度时间戳，纯日期原样输出"""
    if isinstance(value, datetime):
        return value.isoformat(timespec="milliseconds")
    return value.isoformat()


def extract_method_payload(method: PaymentMethod, data: dict[str, Any]) -> dict[str, Any]:
    """从网关响应中取出支付方式相关的客户端数据"""
    if method == PaymentMethod.instant_transfer:
        poi = data.get("point_of_interaction")
        tx = poi.get("transaction_data") if isinstance(poi, dict) else None
        if not isinstance(tx, dict):
            tx = {}
        return {
            "qr_code": tx.get("qr_code"),
            "qr_code_base64": tx.get("qr_code_base64"),
            "ticket_url": tx.get("ticket_url"),
        }
    if method == PaymentMethod.deferred_voucher:
        details = data.get("transaction_details") or {}
        barcode = data.get("barcode") or {}
        return {
            "pdf_url": details.get("external_resource_url") if isinstance(details, dict) else None,
            "barcode": barcode.get("content") if isinstance(barcode, dict) else None,
        }
    return {}


def _is_transient(exc: BaseException) -> bool:
    """网络错误、超时、5xx 视为可重试"""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


class PaymentGatewayClient:
    """
    支付网关客户端

    创建支付和查询支付使用同一套凭证，webhook 对账与下单走同一个客户端。
    """

    def __init__(self) -> None:
        self._mock = settings.GATEWAY_MOCK
        self._base_url = settings.GATEWAY_BASE_URL.rstrip("/")
        self._access_token = settings.GATEWAY_ACCESS_TOKEN
        self._timeout = settings.GATEWAY_TIMEOUT_SECONDS
        self._max_attempts = max(1, settings.GATEWAY_MAX_ATTEMPTS)
        self._retry_wait = settings.GATEWAY_RETRY_WAIT_SECONDS
        # 模拟模式只用于本地开发，按插入顺序淘汰最旧的记录
        self._mock_payments: OrderedDict[str, dict[str, Any]] = OrderedDict()

    def _headers(self, *, idempotency_key: str | None = None) -> dict[str, str]:
        """
        构建请求头

        Raises:
            GatewayError: 当访问令牌未配置时抛出 502400 错误（调用方按网关失败处理）
        """
        if not self._access_token:
            logger.error("GATEWAY_ACCESS_TOKEN not configured")
            raise GatewayError(code=502400, message="Gateway credentials not configured")
        headers = {
            "Authorization": f"Bearer {self._access_token}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key
        return headers

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_fixed(self._retry_wait),
            retry=retry_if_exception(_is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def _post(self, url: str, *, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        for attempt in self._retrying():
            with attempt:
                with httpx.Client(timeout=self._timeout) as client:
                    r = client.post(url, json=payload, headers=headers)
                    r.raise_for_status()
                    return r.json()
        raise RuntimeError("unreachable")  # pragma: no cover

    def _get(self, url: str, *, headers: dict[str, str]) -> dict[str, Any]:
        for attempt in self._retrying():
            with attempt:
                with httpx.Client(timeout=self._timeout) as client:
                    r = client.get(url, headers=headers)
                    r.raise_for_status()
                    return r.json()
        raise RuntimeError("unreachable")  # pragma: no cover

    def submit(self, request: GatewayPaymentRequest) -> GatewaySubmitResult:
        """
        创建支付

        Args:
            request: 已按支付方式塑形的请求

        Returns:
            GatewaySubmitResult: 归一化后的创建结果

        Raises:
            GatewayError: 传输层失败（网络、超时、非 2xx、响应格式错误）
        """
        if self._mock:
            return self._mock_submit(request)

        url = f"{self._base_url}{_PAYMENTS_PATH}"
        headers = self._headers(idempotency_key=request.idempotency_key)
        try:
            data = self._post(url, payload=request.to_wire(), headers=headers)
        except httpx.TimeoutException as e:
            raise GatewayError(code=502401, message=f"Gateway create payment timeout: {e}", timed_out=True)
        except httpx.HTTPError as e:
            raise GatewayError(code=502401, message=f"Gateway create payment error: {e}")
        except ValueError as e:
            raise GatewayError(code=502402, message=f"Gateway create payment invalid response: {e}")

        if not isinstance(data, dict) or data.get("id") is None:
            raise GatewayError(code=502402, message="Gateway create payment invalid response")

        raw_status = str(data.get("status") or "") or None
        return GatewaySubmitResult(
            gateway_reference=str(data.get("id")),
            status=normalize_status(raw_status),
            raw_status=raw_status,
            status_detail=data.get("status_detail"),
            method_payload=extract_method_payload(request.method, data),
            raw=data,
        )

    def get_payment(self, payment_id: str) -> GatewayPayment:
        """
        查询权威支付记录

        Raises:
            GatewayError: 传输层失败或响应格式错误
        """
        if self._mock:
            return self._mock_get(payment_id)

        url = f"{self._base_url}{_PAYMENT_PATH.format(payment_id=payment_id)}"
        try:
            data = self._get(url, headers=self._headers())
        except httpx.TimeoutException as e:
            raise GatewayError(code=502403, message=f"Gateway get payment timeout: {e}", timed_out=True)
        except httpx.HTTPError as e:
            raise GatewayError(code=502403, message=f"Gateway get payment error: {e}")
        except ValueError as e:
            raise GatewayError(code=502404, message=f"Gateway get payment invalid response: {e}")

        if not isinstance(data, dict) or data.get("id") is None:
            raise GatewayError(code=502404, message="Gateway get payment invalid response")

        raw_status = str(data.get("status") or "") or None
        external_reference = data.get("external_reference")
        return GatewayPayment(
            gateway_reference=str(data.get("id")),
            status=normalize_status(raw_status),
            raw_status=raw_status,
            status_detail=data.get("status_detail"),
            external_reference=str(external_reference) if external_reference else None,
            raw=data,
        )

    def create_preference(self, request: GatewayPreferenceRequest) -> GatewayPreferenceResult:
        """
        创建托管收银台偏好

        Returns:
            GatewayPreferenceResult: 偏好 ID 和客户跳转地址

        Raises:
            GatewayError: 传输层失败或响应格式错误
        """
        if self._mock:
            preference_id = f"pref_mock_{request.idempotency_key}"
            return GatewayPreferenceResult(
                preference_id=preference_id,
                checkout_url=f"https://example.com/checkout/{preference_id}",
                raw={"id": preference_id, "mock": True},
            )

        url = f"{self._base_url}{_PREFERENCES_PATH}"
        headers = self._headers(idempotency_key=request.idempotency_key)
        try:
            data = self._post(url, payload=request.to_wire(), headers=headers)
        except httpx.TimeoutException as e:
            raise GatewayError(code=502405, message=f"Gateway create preference timeout: {e}", timed_out=True)
        except httpx.HTTPError as e:
            raise GatewayError(code=502405, message=f"Gateway create preference error: {e}")
        except ValueError as e:
            raise GatewayError(code=502406, message=f"Gateway create preference invalid response: {e}")

        if not isinstance(data, dict) or data.get("id") is None or not data.get("init_point"):
            raise GatewayError(code=502406, message="Gateway create preference invalid response")

        return GatewayPreferenceResult(
            preference_id=str(data["id"]),
            checkout_url=str(data["init_point"]),
            raw=data,
        )

    def _mock_submit(self, request: GatewayPaymentRequest) -> GatewaySubmitResult:
        # 同一幂等键重复提交返回同一笔支付
        reference = f"mock_{request.idempotency_key}"
        if reference not in self._mock_payments:
            raw_status = "approved" if request.method == PaymentMethod.card else "pending"
            data: dict[str, Any] = {
                "id": reference,
                "status": raw_status,
                "external_reference": request.idempotency_key,
                "mock": True,
            }
            if request.method == PaymentMethod.instant_transfer:
                data["point_of_interaction"] = {
                    "transaction_data": {
                        "qr_code": f"00020126-mock-{request.idempotency_key}",
                        "qr_code_base64": "bW9jay1xci1jb2Rl",
                        "ticket_url": f"https://example.com/pix/{reference}",
                    }
                }
            elif request.method == PaymentMethod.deferred_voucher:
                data["transaction_details"] = {"external_resource_url": f"https://example.com/boleto/{reference}.pdf"}
                data["barcode"] = {"content": "23790000000000000000000000000000000000000000"}
            self._mock_payments[reference] = data
            while len(self._mock_payments) > _MOCK_MAX_PAYMENTS:
                self._mock_payments.popitem(last=False)

        data = self._mock_payments[reference]
        return GatewaySubmitResult(
            gateway_reference=reference,
            status=normalize_status(data["status"]),
            raw_status=data["status"],
            method_payload=extract_method_payload(request.method, data),
            raw=data,
        )

    def _mock_get(self, payment_id: str) -> GatewayPayment:
        # 模拟客户完成支付：查询时 pending 的支付转为 approved
        data = self._mock_payments.get(payment_id)
        if data is None:
            raise GatewayError(code=502403, message=f"Gateway get payment error: unknown payment {payment_id}")
        if data["status"] == "pending":
            data["status"] = "approved"
        return GatewayPayment(
            gateway_reference=payment_id,
            status=normalize_status(data["status"]),
            raw_status=data["status"],
            external_reference=data.get("external_reference"),
            raw=data,
        )


# 创建全局客户端实例（单例模式）
payment_gateway_client = PaymentGatewayClient()
