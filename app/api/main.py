"""
API 路由聚合模块

将所有业务路由模块聚合到一个统一的 router 中。
这个 router 会被注册到主应用（app/main.py）上。

路由模块说明：
- checkout: 结账相关（商品、报价、优惠码、支付、订单状态、状态推送流）
- webhooks: 支付网关回调
- utils: 工具相关（健康检查等）
"""
from fastapi import APIRouter

from app.api.routes import (
    checkout,  # 结账路由
    utils,  # 工具路由
    webhooks,  # 网关回调路由
)

# 创建主 API 路由器
api_router = APIRouter()

# 注册所有业务路由模块
# 每个模块的路径前缀在各自的 router 中定义
api_router.include_router(checkout.router)  # /checkout/*
api_router.include_router(webhooks.router)  # /webhooks/*
api_router.include_router(utils.router)  # /utils/*
