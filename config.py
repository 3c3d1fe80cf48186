"""
Конфигурация приложения.
Все секреты загружаются из .env файла.
"""
import logging
import os
from dotenv import load_dotenv

# Загружаем переменные из .env
load_dotenv()

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Основная конфигурация"""

    # Marzban (панель VPN пользователей)
    MARZBAN_URL: str = os.getenv("MARZBAN_URL", "")
    MARZBAN_USERNAME: str = os.getenv("MARZBAN_USERNAME", "")
    MARZBAN_PASSWORD: str = os.getenv("MARZBAN_PASSWORD", "")
    MARZBAN_VERIFY_SSL: bool = _env_bool("MARZBAN_VERIFY_SSL", True)
    MARZBAN_TIMEOUT: float = float(os.getenv("MARZBAN_TIMEOUT", "30") or "30")

    # Mercuryo (платёжный шлюз)
    MERCURYO_API_KEY: str = os.getenv("MERCURYO_API_KEY", "")
    MERCURYO_SECRET: str = os.getenv("MERCURYO_SECRET", "")
    MERCURYO_WEBHOOK_SECRET: str = os.getenv("MERCURYO_WEBHOOK_SECRET", "")
    MERCURYO_BASE_URL: str = os.getenv("MERCURYO_BASE_URL", "https://api.mercuryo.io")

    # Публичный адрес VPN сервера (попадает в vless:// ссылки)
    VPN_HOST: str = os.getenv("VPN_HOST", "")
    VPN_PORT: int = int(os.getenv("VPN_PORT", "443") or "443")

    # Сервер вебхуков
    WEBHOOK_PORT: int = int(os.getenv("WEBHOOK_PORT", "8083") or "8083")

    @classmethod
    def validate(cls) -> list[str]:
        """Проверка обязательных переменных. Возвращает список ошибок."""
        errors = []

        for name in (
            "MARZBAN_URL",
            "MARZBAN_USERNAME",
            "MARZBAN_PASSWORD",
            "MERCURYO_API_KEY",
            "MERCURYO_SECRET",
            "MERCURYO_WEBHOOK_SECRET",
            "VPN_HOST",
        ):
            if not getattr(cls, name):
                errors.append(f"{name} не установлен")

        for error in errors:
            logger.error(f"Ошибка конфигурации: {error}")

        if not errors:
            logger.info("Конфигурация загружена успешно")
        return errors


# Создаём экземпляр конфигурации
config = Config()
