"""Tsukiko 异常定义

按处理方式分组：
- 策略拒绝（审核、限流）不抛异常，由调用方静默丢弃
- 连接类异常由连接管理器内部重试，只有首次 connect() 会抛给调用方
- 配置类异常导致对应集成在启动时被跳过
- 契约错误直接使用 ValueError / TypeError
"""


class TsukikoError(Exception):
    """所有自定义异常的基类"""


class IntegrationConfigError(TsukikoError):
    """集成缺少必需的配置（如凭据），该集成在启动时被跳过"""

    def __init__(self, integration: str, missing: str):
        self.integration = integration
        self.missing = missing
        super().__init__(f"{integration} 缺少必需配置: {missing}")


class ConnectionFailedError(TsukikoError):
    """外部 socket 服务连接或认证失败"""

    def __init__(self, service: str, reason: str):
        self.service = service
        self.reason = reason
        super().__init__(f"{service} 连接失败: {reason}")


class RequestTimeoutError(TsukikoError):
    """等待外部服务响应超时"""


class GenerationError(TsukikoError):
    """文本生成服务调用失败"""


class InvalidShowStepError(TsukikoError):
    """节目流程步骤无效（如 cron 表达式非法）"""


class DatabaseInitializationError(TsukikoError):
    """数据库引擎初始化失败"""
