"""
Выдача VPN доступа поверх Marzban.

Вызывается при оформлении и продлении подписки. Ошибки Marzban не
подавляются: подписочный сценарий должен видеть, что доступ не выдан.
"""
import logging
from dataclasses import dataclass
from datetime import datetime

from config import config as app_config
from .exceptions import ConfigurationError, MarzbanNotFoundError
from .marzban_service import MarzbanService, MarzbanUser, to_timestamp

logger = logging.getLogger(__name__)


@dataclass
class AccessBundle:
    """Всё, что нужно показать пользователю после оплаты"""
    user: MarzbanUser
    vless_url: str
    qr_code: str                     # data:image/png;base64,...


class ProvisioningService:
    """Сервис выдачи и отзыва VPN доступа"""

    def __init__(self, marzban: MarzbanService, host: str, port: int = 443):
        self.marzban = marzban
        self.host = host
        self.port = port

    @classmethod
    def from_config(cls, marzban: MarzbanService, cfg=None) -> "ProvisioningService":
        cfg = cfg or app_config
        if not getattr(cfg, "VPN_HOST", ""):
            raise ConfigurationError("Не задан VPN_HOST")
        return cls(marzban, cfg.VPN_HOST, cfg.VPN_PORT)

    async def provision(self, username: str, data_limit: int, expire: datetime) -> AccessBundle:
        """
        Выдать или продлить доступ до expire.

        Пользователь создаётся при первом обращении; если он уже был
        (например, истёкший), продлеваем и активируем.
        """
        user = await self.marzban.get_or_create_user(username, data_limit, expire)

        if (
            not user.is_active
            or user.expire is None
            or to_timestamp(user.expire) != to_timestamp(expire)
        ):
            user = await self.marzban.extend_subscription(username, expire)

        vless_url = await self.marzban.get_vless_config(username, self.host, self.port)
        qr_code = self.marzban.generate_qr_code(vless_url)

        logger.info(f"VPN: доступ для {username} выдан до {expire.isoformat()}")
        return AccessBundle(user=user, vless_url=vless_url, qr_code=qr_code)

    async def revoke(self, username: str) -> MarzbanUser:
        """Отключить пользователя (аккаунт остаётся в Marzban)"""
        user = await self.marzban.update_user(username, {"status": "disabled"})
        logger.info(f"VPN: доступ для {username} отключён")
        return user

    async def remove(self, username: str) -> bool:
        """
        Удалить пользователя из Marzban.

        Returns:
            False если пользователя уже не было
        """
        try:
            await self.marzban.delete_user(username)
        except MarzbanNotFoundError:
            logger.info(f"VPN: {username} уже удалён")
            return False
        return True
