"""
应用配置模块

使用 Pydantic Settings 管理所有环境变量和配置。
配置从项目根目录的 .env 文件读取，支持类型验证和默认值。

关键概念：
- BaseSettings: Pydantic 的配置基类，自动从环境变量读取
- computed_field: 计算字段，根据其他字段动态生成
- model_validator: 模型验证器，用于自定义验证逻辑
"""
import warnings  # 用于发出警告
from typing import Annotated, Any, Literal  # 类型注解工具

from pydantic import (
    AnyUrl,  # URL 类型验证
    BeforeValidator,  # 字段验证前的转换器
    HttpUrl,  # HTTP URL 类型验证
    PostgresDsn,  # PostgreSQL 连接字符串验证
    computed_field,  # 计算字段装饰器
    model_validator,  # 模型验证器装饰器
)
from pydantic_settings import BaseSettings, SettingsConfigDict  # 配置管理
from typing_extensions import Self  # 用于类型注解中引用自身类型


def parse_cors(v: Any) -> list[str] | str:
    """
    解析 CORS 配置值

    支持逗号分隔的字符串和列表两种格式。

    Raises:
        ValueError: 当输入格式不正确时
    """
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",") if i.strip()]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)


class Settings(BaseSettings):
    """
    应用配置类

    配置来源优先级：
    1. 环境变量（最高优先级）
    2. .env 文件
    3. 代码中的默认值（最低优先级）
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,  # 忽略空的环境变量
        extra="ignore",  # 忽略未定义的额外字段
    )
    API_V1_STR: str = "/api/v1"  # API 版本前缀
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    BACKEND_CORS_ORIGINS: Annotated[
        list[AnyUrl] | str, BeforeValidator(parse_cors)
    ] = []

    @computed_field  # type: ignore[prop-decorator]
    @property
    def all_cors_origins(self) -> list[str]:
        """获取所有 CORS 允许的源（去除尾部斜杠）"""
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS]

    PROJECT_NAME: str = "Storefront Checkout"
    SENTRY_DSN: HttpUrl | None = None

    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "checkout"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> PostgresDsn:
        return PostgresDsn.build(
            scheme="postgresql+psycopg",
            username=self.POSTGRES_USER,
            password=self.POSTGRES_PASSWORD,
            host=self.POSTGRES_SERVER,
            port=self.POSTGRES_PORT,
            path=self.POSTGRES_DB,
        )

    # Redis 配置（订单状态推送的 pub/sub 通道）
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str | None = None

    # 支付网关配置
    GATEWAY_MOCK: bool = True  # 本地开发时使用模拟网关
    GATEWAY_BASE_URL: str = "https://api.mercadopago.com"
    GATEWAY_ACCESS_TOKEN: str | None = None
    GATEWAY_TIMEOUT_SECONDS: float = 15.0  # 单次请求超时（秒）
    GATEWAY_MAX_ATTEMPTS: int = 3  # 传输层失败时的最大尝试次数（同一幂等键）
    GATEWAY_RETRY_WAIT_SECONDS: float = 0.5
    GATEWAY_NOTIFICATION_URL: str | None = None  # 网关回调 webhook 的公网地址
    GATEWAY_WEBHOOK_SECRET: str | None = None  # webhook 签名密钥（可选）

    # 结账业务配置
    VOUCHER_DUE_DAYS: int = 3  # 延期凭证（boleto）到期天数
    MAX_INSTALLMENTS: int = 12
    GATEWAY_CURRENCY_ID: str = "BRL"  # 托管收银台商品行的币种
    CHECKOUT_RETURN_BASE_URL: str = "http://localhost:5173"  # 托管收银台支付后跳回的前端地址
    HOSTED_CHECKOUT_EXPIRY_HOURS: int = 24

    # 订单状态推送
    NOTIFIER_BACKEND: Literal["memory", "redis"] = "memory"
    NOTIFIER_CHANNEL_PREFIX: str = "checkout:order-status"
    SSE_KEEPALIVE_SECONDS: float = 15.0

    def _check_default_secret(self, var_name: str, value: str | None) -> None:
        """
        检查敏感配置是否使用了默认值

        本地环境只发出警告，其他环境直接报错。

        Raises:
            ValueError: 在非本地环境使用默认值时
        """
        if value == "changethis":
            message = (
                f'The value of {var_name} is "changethis", '
                "for security, please change it, at least for deployments."
            )
            if self.ENVIRONMENT == "local":
                warnings.warn(message, stacklevel=1)
            else:
                raise ValueError(message)

    @model_validator(mode="after")
    def _enforce_non_default_secrets(self) -> Self:
        """确保敏感配置不使用默认值"""
        self._check_default_secret("POSTGRES_PASSWORD", self.POSTGRES_PASSWORD)
        self._check_default_secret("GATEWAY_ACCESS_TOKEN", self.GATEWAY_ACCESS_TOKEN)
        self._check_default_secret("GATEWAY_WEBHOOK_SECRET", self.GATEWAY_WEBHOOK_SECRET)

        return self


# 创建全局配置实例，整个应用共享
settings = Settings()  # type: ignore
