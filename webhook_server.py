"""
HTTP-сервер для вебхуков Mercuryo.
Запускается параллельно с основным приложением.

Тело запроса передаётся в проверку подписи как есть, без разбора.
"""
import asyncio
import logging
from typing import Awaitable, Callable

from aiohttp import web

from services.exceptions import MercuryoPayloadError, WebhookSignatureError
from services.mercuryo_service import MercuryoService, WebhookData

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature"

SettlementHandler = Callable[[WebhookData], Awaitable[None]]

MERCURYO_KEY = web.AppKey("mercuryo", MercuryoService)
SETTLEMENT_KEY = web.AppKey("on_settlement", SettlementHandler)


async def mercuryo_webhook(request: web.Request) -> web.Response:
    """Обработчик вебхука о платеже"""
    mercuryo = request.app[MERCURYO_KEY]

    raw_body = await request.read()
    signature = request.headers.get(SIGNATURE_HEADER, "")

    try:
        event = mercuryo.parse_webhook(raw_body, signature)
    except WebhookSignatureError:
        return web.json_response({"error": "invalid signature"}, status=401)
    except MercuryoPayloadError as e:
        logger.warning(f"Mercuryo: некорректный вебхук: {e}")
        return web.json_response({"error": "invalid payload"}, status=400)

    logger.info(f"Mercuryo: вебхук по платежу {event.id}, статус {event.status}")
    await request.app[SETTLEMENT_KEY](event)
    return web.json_response({"ok": True})


async def health_check(request: web.Request) -> web.Response:
    """Проверка что сервер жив"""
    return web.Response(text="OK")


def create_app(mercuryo: MercuryoService, on_settlement: SettlementHandler) -> web.Application:
    """Создать веб-приложение"""
    app = web.Application()
    app[MERCURYO_KEY] = mercuryo
    app[SETTLEMENT_KEY] = on_settlement
    app.router.add_post('/webhooks/mercuryo', mercuryo_webhook)
    app.router.add_get('/health', health_check)
    return app


async def run_webhook_server(
    mercuryo: MercuryoService,
    on_settlement: SettlementHandler,
    port: int = 8083,
) -> web.AppRunner:
    """Запустить сервер вебхуков"""
    app = create_app(mercuryo, on_settlement)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, '0.0.0.0', port)
    await site.start()
    logger.info(f"Сервер вебхуков запущен на порту {port}")
    return runner


if __name__ == "__main__":
    # Для отдельного запуска сервера
    async def main():
        logging.basicConfig(level=logging.INFO)

        async def log_settlement(event: WebhookData) -> None:
            logger.info(f"Mercuryo: платёж {event.id} -> {event.status}")

        mercuryo = MercuryoService.from_config()
        runner = await run_webhook_server(mercuryo, log_settlement)
        try:
            await asyncio.Event().wait()  # Бесконечно
        finally:
            await runner.cleanup()
            await mercuryo.close()

    asyncio.run(main())
