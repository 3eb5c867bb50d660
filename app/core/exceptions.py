"""Ошибки платежного сервиса."""


class PaymentServiceError(Exception):
    """Базовая ошибка, сопоставляется с HTTP-статусом в app.main."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str = "Внутренняя ошибка сервиса"):
        super().__init__(message)
        self.message = message


class ValidationError(PaymentServiceError):
    """Неверные входные данные."""

    status_code = 400
    code = "VALIDATION_ERROR"


class AuthError(PaymentServiceError):
    """API-ключ отсутствует или недействителен."""

    status_code = 401
    code = "UNAUTHORIZED"


class ForbiddenError(AuthError):
    """IP клиента не входит в список разрешенных."""

    status_code = 403
    code = "FORBIDDEN"


class RateLimitError(PaymentServiceError):
    """Превышен лимит запросов."""

    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, message: str = "Слишком много запросов", retry_after: int = 60):
        super().__init__(message)
        self.retry_after = retry_after


class DuplicateError(PaymentServiceError):
    """Заказ с таким внешним номером уже принят."""

    status_code = 409
    code = "DUPLICATE_ORDER"


class ConflictError(PaymentServiceError):
    """Операция невозможна из-за связанных данных."""

    status_code = 409
    code = "CONFLICT"


class NotFoundError(PaymentServiceError):
    status_code = 404
    code = "NOT_FOUND"


class AmountMismatchError(PaymentServiceError):
    """Сумма в callback не совпадает с суммой заказа."""

    status_code = 409
    code = "AMOUNT_MISMATCH"


class OrderStateError(PaymentServiceError):
    """Переход из терминального состояния заказа."""

    status_code = 409
    code = "INVALID_ORDER_STATE"


class SignatureError(PaymentServiceError):
    """CheckMacValue не прошел проверку."""

    status_code = 400
    code = "INVALID_SIGNATURE"


class UpstreamError(PaymentServiceError):
    """ECPay вернул ошибку или недоступен."""

    status_code = 502
    code = "UPSTREAM_ERROR"


class UpstreamTimeoutError(UpstreamError):
    """ECPay не ответил вовремя. Клиент может повторить запрос."""

    status_code = 504
    code = "UPSTREAM_TIMEOUT"
