"""
统一异常体系。

所有业务异常继承 BaseAppException，包含：
- type:        错误类型标识（validation_error / block / transient）
- code:        业务错误码（INVALID_TRANSITION / ALLOCATION_CONFLICT / ...）
- message:     人类可读的描述
- detail:      可选的附加信息（dict / list / None）
- http_status: HTTP 状态码

Service 层只需 raise，exception_handler 统一捕获并格式化响应。
intake/ 下的纯逻辑模块只有 flow router 会 raise；validator 永远返回错误列表。
"""


class BaseAppException(Exception):
    """所有业务异常的基类。"""

    type = 'error'
    code = 'UNKNOWN_ERROR'
    http_status = 500

    def __init__(self, message, code=None, detail=None, http_status=None):
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.detail = detail
        super().__init__(message)


class ValidationError(BaseAppException):
    """输入验证失败，用户修正后可重新提交。400。"""

    type = 'validation_error'
    code = 'VALIDATION_ERROR'
    http_status = 400


class ConfigurationError(ValidationError):
    """患者编号配置不合法。只在保存设置时抛出，分配编号时不会。"""

    code = 'INVALID_ID_CONFIG'


class BlockError(BaseAppException):
    """业务规则阻止操作。409。"""

    type = 'block'
    code = 'BUSINESS_BLOCK'
    http_status = 409


class InvalidTransitionError(BlockError):
    """
    流程状态机不允许的跳转。

    抛出时数据库里的 current_flow_step 保持不变。
    """

    code = 'INVALID_TRANSITION'

    def __init__(self, current, target, message=None, **kwargs):
        self.current = current
        self.target = target
        detail = kwargs.pop('detail', None) or {
            'current_step': _value(current),
            'target_step': _value(target),
        }
        if message is None:
            message = f"Cannot move patient from '{_value(current)}' to '{_value(target)}'."
        super().__init__(message, detail=detail, **kwargs)


class AllocationConflictError(BaseAppException):
    """
    并发分配患者编号时多次 CAS 失败。

    属于暂时性错误：重试次数已用完，客户端稍后重新提交即可。
    """

    type = 'transient'
    code = 'ALLOCATION_CONFLICT'
    http_status = 503


def _value(step):
    return getattr(step, 'value', step)
