from __future__ import annotations

from collections.abc import Generator
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, delete

from app import crud
from app.api.deps import get_db, get_gateway, get_notifier
from app.api.errors import GatewayError
from app.enums import DiscountKind, PaymentStatus
from app.integrations.payment_gateway import (
    GatewayPayment,
    GatewayPaymentRequest,
    GatewayPreferenceRequest,
    GatewayPreferenceResult,
    GatewaySubmitResult,
    extract_method_payload,
    normalize_status,
)
from app.main import app
from app.models import (
    AddOnOffer,
    DiscountCode,
    Order,
    OrderItem,
    PaymentAttempt,
    Product,
)
from app.services.status_notifier import MemoryStatusNotifier


class FakeGateway:
    """In-memory gateway keyed by idempotency key, like the real one."""

    def __init__(self) -> None:
        self.submitted: list[GatewayPaymentRequest] = []
        self.lookups: list[str] = []
        self.payments: dict[str, dict[str, Any]] = {}
        self.submit_error: GatewayError | None = None
        self.submit_status: dict[str, str] = {}
        self.preferences: list[GatewayPreferenceRequest] = []
        self.preference_error: GatewayError | None = None

    def submit(self, request: GatewayPaymentRequest) -> GatewaySubmitResult:
        self.submitted.append(request)
        if self.submit_error is not None:
            raise self.submit_error
        reference = f"pay_{request.idempotency_key}"
        if reference not in self.payments:
            raw_status = self.submit_status.get(request.method.value, "pending")
            self.payments[reference] = {
                "id": reference,
                "status": raw_status,
                "external_reference": request.idempotency_key,
                "point_of_interaction": {
                    "transaction_data": {
                        "qr_code": f"qr-{request.idempotency_key}",
                        "qr_code_base64": "cXI=",
                        "ticket_url": f"https://pay.example.com/{reference}",
                    }
                },
                "transaction_details": {"external_resource_url": f"https://pay.example.com/{reference}.pdf"},
                "barcode": {"content": "0000111122223333"},
            }
        data = self.payments[reference]
        return GatewaySubmitResult(
            gateway_reference=reference,
            status=normalize_status(data["status"]),
            raw_status=data["status"],
            method_payload=extract_method_payload(request.method, data),
            raw=data,
        )

    def create_preference(self, request: GatewayPreferenceRequest) -> GatewayPreferenceResult:
        self.preferences.append(request)
        if self.preference_error is not None:
            raise self.preference_error
        preference_id = f"pref_{request.idempotency_key}"
        return GatewayPreferenceResult(
            preference_id=preference_id,
            checkout_url=f"https://pay.example.com/checkout/{preference_id}",
            raw={"id": preference_id},
        )

    def get_payment(self, payment_id: str) -> GatewayPayment:
        self.lookups.append(payment_id)
        data = self.payments.get(payment_id)
        if data is None:
            raise GatewayError(code=502403, message=f"unknown payment {payment_id}")
        return GatewayPayment(
            gateway_reference=payment_id,
            status=normalize_status(data["status"]),
            raw_status=data["status"],
            external_reference=data.get("external_reference"),
            raw=data,
        )

    def set_status(self, payment_id: str, raw_status: str, *, external_reference: str | None = None) -> None:
        data = self.payments.setdefault(payment_id, {"id": payment_id})
        data["status"] = raw_status
        if external_reference is not None:
            data["external_reference"] = external_reference


class RecordingNotifier(MemoryStatusNotifier):
    def __init__(self) -> None:
        super().__init__()
        self.published: list[tuple[str, PaymentStatus]] = []

    def publish(self, order_id: str, status: PaymentStatus | str) -> int:
        self.published.append((order_id, PaymentStatus(status)))
        return super().publish(order_id, status)


@dataclass
class Catalog:
    product: Product
    bump_product: Product
    offer: AddOnOffer
    coupon: DiscountCode


@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture(scope="function")
def db(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
        # Clean tables after each test (children first).
        session.rollback()
        session.exec(delete(PaymentAttempt))
        session.exec(delete(OrderItem))
        session.exec(delete(Order))
        session.exec(delete(AddOnOffer))
        session.exec(delete(DiscountCode))
        session.exec(delete(Product))
        session.commit()


@pytest.fixture(scope="function")
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture(scope="function")
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture(scope="function")
def client(engine, db, gateway, notifier) -> Generator[TestClient, None, None]:
    def _override_get_db() -> Generator[Session, None, None]:
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def catalog(db) -> Catalog:
    product = crud.create_product(
        session=db,
        name="Course",
        price=Decimal("100.00"),
        redirect_url="https://example.com/members/course",
    )
    bump_product = crud.create_product(session=db, name="Workbook", price=Decimal("50.00"))
    offer = crud.create_add_on(
        session=db,
        product_id=product.id,
        bump_product_id=bump_product.id,
        title="Add the workbook",
        discount_percentage=Decimal("20"),
    )
    coupon = crud.create_discount_code(
        session=db,
        code="SAVE10",
        kind=DiscountKind.percentage,
        value=Decimal("10"),
    )
    return Catalog(product=product, bump_product=bump_product, offer=offer, coupon=coupon)
