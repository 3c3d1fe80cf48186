"""
Точка входа приложения.
Интеграции VPN бэкенда: панель Marzban и платежи Mercuryo.
"""
import asyncio
import logging

from config import config
from services.marzban_service import close_marzban, init_marzban
from services.mercuryo_service import MercuryoService, WebhookData
from webhook_server import run_webhook_server

logger = logging.getLogger(__name__)


async def on_settlement(event: WebhookData) -> None:
    """Подтверждение платежа от Mercuryo. Дальше работает подписочный сценарий."""
    logger.info(
        f"Mercuryo: платёж {event.id} в статусе {event.status} "
        f"(user={event.user_id}, order={event.order_id})"
    )


async def main():
    """Главная функция"""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )

    if config.validate():
        raise SystemExit("Ошибка конфигурации. Проверьте .env файл.")

    # Ошибки конфигурации и авторизации здесь фатальны
    await init_marzban()
    mercuryo = MercuryoService.from_config(config)

    runner = await run_webhook_server(mercuryo, on_settlement, port=config.WEBHOOK_PORT)
    logger.info(f"🚀 Запущено, VPN сервер {config.VPN_HOST}:{config.VPN_PORT}")

    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()
        await mercuryo.close()
        await close_marzban()
        logger.info("👋 Остановлено")


if __name__ == "__main__":
    asyncio.run(main())
