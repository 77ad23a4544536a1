from flask import jsonify
from marshmallow import ValidationError
import logging

logger = logging.getLogger(__name__)

# ============================================
# 錯誤分類
# ============================================

class AppError(Exception):
    """
    所有業務錯誤的基底類別

    kind 是前端可以穩定判斷的代碼,message 給人看
    """
    kind = 'error'
    status_code = 400

    def __init__(self, message, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self):
        body = {'error': self.kind, 'message': self.message}
        body.update(self.extra)
        return body


class AuthenticationRequired(AppError):
    kind = 'authentication_required'
    status_code = 401

    def __init__(self, message='Authentication required'):
        super().__init__(message)


class NotFound(AppError):
    kind = 'not_found'
    status_code = 404


class Forbidden(AppError):
    kind = 'forbidden'
    status_code = 403
    reason = 'forbidden'

    def __init__(self, message='Access denied', **extra):
        super().__init__(message, reason=self.reason, **extra)


class NotMemberError(Forbidden):
    reason = 'not_a_member'

    def __init__(self, message='Access denied. You are not a member of this project.'):
        super().__init__(message)


class InsufficientRoleError(Forbidden):
    reason = 'insufficient_role'

    def __init__(self, required_role, actual_role):
        self.required_role = required_role
        self.actual_role = actual_role
        super().__init__(
            f'Access denied. Required role: {required_role.label}, your role: {actual_role.label}',
            required_role=required_role.label,
            actual_role=actual_role.label
        )


class AdminOnlyError(Forbidden):
    reason = 'admin_only'


class NotOwnerError(Forbidden):
    reason = 'not_owner'


class Conflict(AppError):
    kind = 'conflict'
    status_code = 409


class ValidationFailed(AppError):
    kind = 'validation_failed'
    status_code = 400

    def __init__(self, details, message='Validation failed'):
        super().__init__(message, details=details)
        self.details = details


class LimitExceeded(AppError):
    kind = 'limit_exceeded'
    status_code = 400

    def __init__(self, limit, message=None):
        self.limit = limit
        super().__init__(message or f'Doing column limit reached ({limit} tasks)', limit=limit)


class InternalError(AppError):
    kind = 'internal_error'
    status_code = 500

# ============================================
# 輸入驗證
# ============================================

def flatten_validation_messages(messages, prefix=''):
    """把 marshmallow 的巢狀錯誤轉成 [{field, message}] 列表"""
    details = []
    for field, value in messages.items():
        name = f'{prefix}.{field}' if prefix else str(field)
        if isinstance(value, dict):
            details.extend(flatten_validation_messages(value, name))
        elif isinstance(value, (list, tuple)):
            for message in value:
                if isinstance(message, dict):
                    details.extend(flatten_validation_messages(message, name))
                else:
                    details.append({'field': name, 'message': str(message)})
        else:
            details.append({'field': name, 'message': str(value)})
    return details


def validate_request_data(schema_class, data, partial=False):
    """
    統一的輸入驗證

    驗證失敗直接丟 ValidationFailed,在任何資料變更之前就擋下來
    """
    if data is None:
        raise ValidationFailed(
            [{'field': '_body', 'message': 'Request body must be JSON'}],
            message='Request body must be JSON'
        )
    schema = schema_class()
    try:
        return schema.load(data, partial=partial)
    except ValidationError as err:
        raise ValidationFailed(flatten_validation_messages(err.messages))

# ============================================
# Flask 錯誤處理註冊
# ============================================

def register_error_handlers(app):
    """把 AppError 轉成統一的 JSON 回應"""

    @app.errorhandler(AppError)
    def handle_app_error(error):
        if error.status_code >= 500:
            logger.error(f"{error.kind}: {error.message}", exc_info=error.__cause__ or True)
        elif error.status_code in (401, 403):
            logger.warning(f"{error.kind}: {error.message}")
        return jsonify(error.to_dict()), error.status_code
