"""
Исключения слоя интеграций (Marzban, Mercuryo).

Позволяют отличать ошибки конфигурации, авторизации, "не найдено",
временные сбои и ошибки безопасности друг от друга.
"""
from typing import Optional


class IntegrationError(Exception):
    """Базовое исключение для всех внешних интеграций."""
    pass


class ConfigurationError(IntegrationError):
    """Не заданы обязательные настройки клиента. Фатально при старте."""
    pass


class MarzbanError(IntegrationError):
    """Ошибка обращения к Marzban API."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        operation: Optional[str] = None,
        attempts: Optional[int] = None,
    ):
        super().__init__(message)
        self.status = status
        self.operation = operation
        self.attempts = attempts


class MarzbanAuthError(MarzbanError):
    """Авторизация не удалась (после всех попыток или повторный 401)."""
    pass


class MarzbanNotFoundError(MarzbanError):
    """Пользователь не найден в Marzban (404)."""
    pass


class MarzbanRetryableError(MarzbanError):
    """Временный сбой, запрос можно повторить."""
    pass


class MarzbanServerError(MarzbanRetryableError):
    """Ответ 5xx."""
    pass


class MarzbanTimeoutError(MarzbanRetryableError):
    """Запрос не уложился в таймаут."""
    pass


class MarzbanClientError(MarzbanError):
    """Ответ 4xx (кроме 401 и 404). Не повторяется."""
    pass


class QRCodeError(IntegrationError):
    """Не удалось отрисовать QR-код."""
    pass


class MercuryoError(IntegrationError):
    """Ошибка обращения к Mercuryo API."""

    def __init__(self, message: str, *, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class WebhookSignatureError(MercuryoError):
    """Подпись вебхука не совпала. Тело не разбирается."""
    pass


class MercuryoPayloadError(MercuryoError):
    """Подписанный вебхук не является JSON-объектом."""
    pass
