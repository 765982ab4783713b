"""
数据库连接模块

管理数据库引擎和会话的创建。
使用 SQLModel 的 create_engine 创建数据库连接池。

重要提示：
- 数据库表结构通过 Alembic 迁移管理，不要在这里创建表
- 确保在使用前导入所有模型（app.models），否则关系可能无法正确初始化
"""
import logging
from datetime import timedelta
from decimal import Decimal

from sqlmodel import Session, create_engine, select

from app import crud
from app.core.config import settings
from app.enums import DiscountKind
from app.models import Product, utc_now

logger = logging.getLogger(__name__)

# 创建数据库引擎（连接池）
# pool_pre_ping：webhook 可能在长时间空闲后到达，先探活再使用连接
engine = create_engine(str(settings.SQLALCHEMY_DATABASE_URI), pool_pre_ping=True)


def init_db(session: Session) -> None:
    """
    初始化数据库（本地演示目录）

    表结构由 Alembic 创建。商品、优惠码、加购项正常由目录管理端维护；
    本地环境且目录为空时写入一套演示数据，配合模拟网关跑通结账流程。
    """
    if settings.ENVIRONMENT != "local":
        return
    if session.exec(select(Product)).first() is not None:
        return

    course = crud.create_product(
        session=session,
        name="Demo Course",
        price=Decimal("100.00"),
        description="Demo product for local checkout",
        redirect_url="https://example.com/members/demo-course",
    )
    workbook = crud.create_product(
        session=session,
        name="Demo Workbook",
        price=Decimal("50.00"),
        redirect_url="https://example.com/members/demo-workbook",
    )
    crud.create_add_on(
        session=session,
        product_id=course.id,
        bump_product_id=workbook.id,
        title="Add the workbook",
        discount_percentage=Decimal("20"),
    )
    crud.create_discount_code(
        session=session,
        code="SAVE10",
        kind=DiscountKind.percentage,
        value=Decimal("10"),
        expires_at=utc_now() + timedelta(days=365),
    )
    logger.info("Seeded demo catalog: product=%s add_on_product=%s", course.id, workbook.id)
