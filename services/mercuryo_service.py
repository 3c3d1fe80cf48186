"""
Сервис для работы с Mercuryo.
Создание платежей, статус платежа, проверка подписи вебхуков.

Создание платежа не повторяется автоматически: повторная отправка может
привести к двойному списанию, решение о повторе принимает вызывающий код.
"""
import asyncio
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Union
from urllib.parse import quote

import aiohttp

from config import config as app_config
from .exceptions import (
    ConfigurationError,
    MercuryoError,
    MercuryoPayloadError,
    WebhookSignatureError,
)

logger = logging.getLogger(__name__)

MERCURYO_BASE_URL = "https://api.mercuryo.io"
API_VERSION = "v1.6"


@dataclass
class MercuryoSettings:
    """Настройки Mercuryo"""

    api_key: str
    secret: str
    webhook_secret: str
    base_url: str = MERCURYO_BASE_URL
    timeout: float = 30.0

    @classmethod
    def from_config(cls, cfg=None) -> "MercuryoSettings":
        """
        Raises:
            ConfigurationError: если не задан ключ, секрет или секрет вебхука
        """
        cfg = cfg or app_config
        missing = [
            name for name in ("MERCURYO_API_KEY", "MERCURYO_SECRET", "MERCURYO_WEBHOOK_SECRET")
            if not getattr(cfg, name, "")
        ]
        if missing:
            raise ConfigurationError(
                f"Не задана конфигурация Mercuryo: {', '.join(missing)}"
            )

        return cls(
            api_key=cfg.MERCURYO_API_KEY,
            secret=cfg.MERCURYO_SECRET,
            webhook_secret=cfg.MERCURYO_WEBHOOK_SECRET,
            base_url=(getattr(cfg, "MERCURYO_BASE_URL", "") or MERCURYO_BASE_URL).rstrip("/"),
        )


@dataclass
class PaymentInfo:
    """Платёж Mercuryo"""

    id: str
    status: str
    payment_url: Optional[str]
    amount: Optional[int]            # в минимальных единицах валюты
    currency: Optional[str]
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict) -> "PaymentInfo":
        return cls(
            id=str(data.get("id", "")),
            status=data.get("status", "unknown"),
            payment_url=data.get("payment_url"),
            amount=data.get("amount"),
            currency=data.get("currency"),
            raw=data,
        )


@dataclass
class WebhookData:
    """Уведомление о платеже. Поля копируются из JSON без изменений."""

    id: Optional[str]
    status: Optional[str]
    amount: Optional[int]
    currency: Optional[str]
    order_id: Optional[str] = None
    user_id: Optional[str] = None
    metadata: Optional[dict] = None
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict) -> "WebhookData":
        return cls(
            id=data.get("id"),
            status=data.get("status"),
            amount=data.get("amount"),
            currency=data.get("currency"),
            order_id=data.get("order_id"),
            user_id=data.get("user_id"),
            metadata=data.get("metadata"),
            raw=data,
        )


class MercuryoService:
    """Клиент Mercuryo. Создаётся при старте и передаётся явно."""

    def __init__(self, settings: MercuryoSettings):
        self.settings = settings
        self._http_session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_config(cls, cfg=None) -> "MercuryoService":
        return cls(MercuryoSettings.from_config(cfg))

    async def _get_http_session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.settings.timeout),
                headers={
                    "Authorization": f"Bearer {self.settings.api_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._http_session

    async def close(self):
        """Закрыть HTTP сессию"""
        if self._http_session and not self._http_session.closed:
            await self._http_session.close()
        self._http_session = None

    async def _call(
        self,
        operation: str,
        method: str,
        path: str,
        payload: Optional[dict] = None,
    ) -> dict:
        """Один запрос без повторов. Любая ошибка -> MercuryoError."""
        session = await self._get_http_session()
        url = f"{self.settings.base_url.rstrip('/')}/{API_VERSION}{path}"

        try:
            async with session.request(method, url, json=payload) as response:
                status = response.status
                text = await response.text()
        except asyncio.TimeoutError as e:
            raise MercuryoError(f"{operation}: таймаут запроса к Mercuryo") from e
        except aiohttp.ClientError as e:
            raise MercuryoError(f"{operation}: ошибка соединения с Mercuryo: {e}") from e

        if status >= 400:
            raise MercuryoError(f"{operation}: HTTP {status}: {text[:200]}", status=status)

        try:
            data = json.loads(text)
        except ValueError as e:
            raise MercuryoError(f"{operation}: некорректный JSON в ответе", status=status) from e
        if not isinstance(data, dict):
            raise MercuryoError(f"{operation}: неожиданный ответ Mercuryo", status=status)
        return data

    async def create_payment(
        self,
        amount: int,
        currency: str,
        user_ref: str,
        plan: str,
        return_url: str,
    ) -> PaymentInfo:
        """
        Создать платёж в Mercuryo.

        Args:
            amount: Сумма в минимальных единицах валюты (центы, копейки)
            currency: Код валюты (USD, EUR...)
            user_ref: ID пользователя в нашей системе
            plan: Тарифный план
            return_url: Куда вернуть пользователя после оплаты

        Returns:
            PaymentInfo с id платежа и ссылкой на оплату

        Raises:
            MercuryoError: запрос не удался (не повторяется)
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError(f"Сумма должна быть положительным целым числом, получено: {amount!r}")

        payload = {
            "amount": amount,
            "currency": currency,
            "return_url": return_url,
            "metadata": {
                "userId": user_ref,
                "plan": plan,
            },
        }

        data = await self._call("create_payment", "POST", "/payment", payload)
        payment = PaymentInfo.from_dict(data)

        logger.info(
            f"Mercuryo: создан платёж {payment.id} для user={user_ref}, plan={plan}, "
            f"amount={amount} {currency}"
        )
        return payment

    async def get_payment_status(self, payment_id: str) -> PaymentInfo:
        """Получить статус платежа (без повторов)"""
        data = await self._call(
            "get_payment_status", "GET", f"/payment/{quote(str(payment_id), safe='')}"
        )
        payment = PaymentInfo.from_dict(data)
        logger.debug(f"Mercuryo: платёж {payment_id} в статусе {payment.status}")
        return payment

    def verify_webhook_signature(self, payload: Union[bytes, str], signature: Optional[str]) -> bool:
        """
        Проверить подпись вебхука: HMAC-SHA256 от сырого тела в hex.

        Сравнение за постоянное время (hmac.compare_digest).
        """
        if not signature:
            return False
        if isinstance(payload, str):
            payload = payload.encode("utf-8")

        expected = hmac.new(
            self.settings.webhook_secret.encode("utf-8"),
            payload,
            hashlib.sha256,
        ).hexdigest()

        return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))

    def parse_webhook(self, raw_body: Union[bytes, str], signature: Optional[str]) -> WebhookData:
        """
        Проверить подпись и только после этого разобрать тело вебхука.

        Raises:
            WebhookSignatureError: подпись не совпала (тело не разбирается)
            MercuryoPayloadError: тело не JSON-объект
        """
        if not self.verify_webhook_signature(raw_body, signature):
            logger.warning("Mercuryo: вебхук с неверной подписью отклонён")
            raise WebhookSignatureError("Неверная подпись вебхука")

        try:
            data = json.loads(raw_body)
        except ValueError as e:
            raise MercuryoPayloadError(f"Тело вебхука не JSON: {e}") from e
        if not isinstance(data, dict):
            raise MercuryoPayloadError("Тело вебхука не JSON-объект")

        return WebhookData.from_dict(data)
