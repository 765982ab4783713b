"""
工具路由模块

存活检查和就绪检查。
"""
import logging

from fastapi import APIRouter
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from app.api.deps import SessionDep
from app.api.errors import AppError
from app.api.schemas import ApiEnvelope

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/utils", tags=["utils"])


@router.get("/health-check/")
async def health_check() -> bool:
    """
    存活检查

    请求路径: GET /api/v1/utils/health-check/
    """
    return True


@router.get("/ready/", response_model=ApiEnvelope)
def readiness(session: SessionDep) -> ApiEnvelope:
    """
    就绪检查：订单存储可用才算就绪

    请求路径: GET /api/v1/utils/ready/

    Raises:
        AppError: 数据库不可用时抛出 503001 错误
    """
    try:
        session.exec(select(1)).one()
    except SQLAlchemyError as e:
        logger.error("Readiness check failed: %s", e)
        raise AppError(code=503001, message="Database unavailable", status_code=503)
    return ApiEnvelope(data={"database": "ok"})
