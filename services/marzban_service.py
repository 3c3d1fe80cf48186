"""
Сервис для работы с Marzban VPN API.

Клиент держит одну авторизованную сессию на процесс. Токен Marzban живёт
24 часа, мы обновляем его за час до истечения. Временные сбои (5xx,
таймаут) повторяются с экспоненциальной задержкой, на 401 выполняется
одна переавторизация и один повтор запроса.
"""
import asyncio
import base64
import json
import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from io import BytesIO
from typing import Any, Optional
from urllib.parse import quote

import aiohttp
import qrcode

from config import config as app_config
from .exceptions import (
    ConfigurationError,
    MarzbanAuthError,
    MarzbanClientError,
    MarzbanError,
    MarzbanNotFoundError,
    MarzbanRetryableError,
    MarzbanServerError,
    MarzbanTimeoutError,
    QRCodeError,
)

logger = logging.getLogger(__name__)


# Retry настройки
MAX_RETRIES = 3
RETRY_DELAY = 1.0  # секунд, удваивается после каждой неудачной попытки

# Токен выдаётся на 24 часа, обновляем на час раньше
TOKEN_TTL = 23 * 60 * 60

VLESS_FLOW = "xtls-rprx-vision"

# QR-код
QR_BOX_SIZE = 8
QR_BORDER = 2


def backoff_delay(attempt: int, base: float = RETRY_DELAY) -> float:
    """Задержка после неудачной попытки номер attempt: 1с, 2с, 4с..."""
    return base * (2 ** (attempt - 1))


def to_timestamp(value: datetime) -> int:
    """datetime -> unix-время в секундах. Наивные даты считаются UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def build_vless_url(proxy_id: str, host: str, port: int, name: str) -> str:
    """
    Собрать VLESS ссылку для клиента.

    Формат фиксированный, клиенты (v2rayNG, Happ, Streisand) парсят его
    побайтово, поэтому параметры не экранируются и порядок не меняется.
    """
    return (
        f"vless://{proxy_id}@{host}:{port}"
        f"?encryption=none&flow={VLESS_FLOW}&security=tls&sni={host}"
        f"&type=tcp&headerType=none#{name}"
    )


def render_qr_code(data: str) -> str:
    """Отрисовать строку как QR-код, вернуть data URL с PNG."""
    if not data:
        raise QRCodeError("Нет данных для QR-кода")

    try:
        qr = qrcode.QRCode(
            version=None,
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=QR_BOX_SIZE,
            border=QR_BORDER,
        )
        qr.add_data(data)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")
        bio = BytesIO()
        img.save(bio, format="PNG")
    except Exception as e:
        raise QRCodeError(f"Не удалось сгенерировать QR-код: {e}") from e

    encoded = base64.b64encode(bio.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"


@dataclass
class MarzbanSettings:
    """Настройки подключения к Marzban"""

    url: str
    username: str
    password: str
    verify_ssl: bool = True
    timeout: float = 30.0            # таймаут одного запроса, секунд
    max_retries: int = MAX_RETRIES
    retry_delay: float = RETRY_DELAY

    @classmethod
    def from_config(cls, cfg=None) -> "MarzbanSettings":
        """
        Собрать настройки из конфигурации приложения.

        Raises:
            ConfigurationError: если не задан URL, логин или пароль
        """
        cfg = cfg or app_config
        missing = [
            name for name in ("MARZBAN_URL", "MARZBAN_USERNAME", "MARZBAN_PASSWORD")
            if not getattr(cfg, name, "")
        ]
        if missing:
            raise ConfigurationError(
                f"Не задана конфигурация Marzban: {', '.join(missing)}"
            )

        return cls(
            url=cfg.MARZBAN_URL.rstrip("/"),
            username=cfg.MARZBAN_USERNAME,
            password=cfg.MARZBAN_PASSWORD,
            verify_ssl=getattr(cfg, "MARZBAN_VERIFY_SSL", True),
            timeout=getattr(cfg, "MARZBAN_TIMEOUT", 30.0),
        )


@dataclass
class MarzbanUser:
    """Пользователь Marzban (как его вернул API)"""

    username: str
    proxy_id: Optional[str]          # VLESS UUID
    status: str
    data_limit: int = 0              # байт, 0 = безлимит
    used_traffic: int = 0
    expire: Optional[datetime] = None
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict) -> "MarzbanUser":
        proxies = data.get("proxies") or {}
        vless = proxies.get("vless") or {}
        expire_ts = data.get("expire")

        return cls(
            username=data.get("username", ""),
            proxy_id=vless.get("id"),
            status=data.get("status", "unknown"),
            data_limit=data.get("data_limit") or 0,
            used_traffic=data.get("used_traffic") or 0,
            expire=datetime.fromtimestamp(expire_ts, tz=timezone.utc) if expire_ts else None,
            raw=data,
        )

    @property
    def is_active(self) -> bool:
        return self.status == "active"


class MarzbanService:
    """Клиент Marzban API с управлением токеном и повторами"""

    # Подменяется в тестах, чтобы не ждать backoff
    _sleep = staticmethod(asyncio.sleep)

    def __init__(self, settings: MarzbanSettings):
        self.settings = settings

        # Сессия: токен и момент, после которого он считается истёкшим
        self._token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self._auth_task: Optional[asyncio.Future] = None

        # HTTP сессия (переиспользуется)
        self._http_session: Optional[aiohttp.ClientSession] = None

    async def _get_http_session(self) -> aiohttp.ClientSession:
        """Получить HTTP сессию с правильными настройками"""
        if self._http_session is None or self._http_session.closed:
            timeout = aiohttp.ClientTimeout(total=self.settings.timeout)
            connector = aiohttp.TCPConnector(ssl=self.settings.verify_ssl)
            self._http_session = aiohttp.ClientSession(
                timeout=timeout,
                connector=connector,
            )
        return self._http_session

    async def close(self):
        """Закрыть HTTP сессию"""
        if self._http_session and not self._http_session.closed:
            await self._http_session.close()
        self._http_session = None

    def _url(self, path: str) -> str:
        return f"{self.settings.url.rstrip('/')}{path}"

    @staticmethod
    def _user_path(username: str) -> str:
        return f"/api/user/{quote(username, safe='')}"

    @property
    def is_authenticated(self) -> bool:
        """Есть токен и он ещё не истёк"""
        return self._token is not None and time.monotonic() < self._token_expires_at

    # === АВТОРИЗАЦИЯ ===

    async def authenticate(self) -> None:
        """
        Авторизация в Marzban с повторами.

        Одновременно выполняется не больше одного обмена токена:
        параллельные вызовы ждут ту же самую попытку.

        Raises:
            MarzbanAuthError: если все попытки неудачны
        """
        if self._auth_task is None:
            self._auth_task = asyncio.ensure_future(self._authenticate_with_retry())
            self._auth_task.add_done_callback(self._auth_finished)
        await asyncio.shield(self._auth_task)

    def _auth_finished(self, task: asyncio.Future) -> None:
        if self._auth_task is task:
            self._auth_task = None

    async def _authenticate_with_retry(self) -> None:
        attempts = self.settings.max_retries
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                token = await self._fetch_token()
            except (MarzbanError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                last_error = e
                logger.warning(f"Marzban: попытка авторизации {attempt}/{attempts} не удалась: {e}")
                if attempt < attempts:
                    await self._sleep(backoff_delay(attempt, self.settings.retry_delay))
                continue

            self._token = token
            self._token_expires_at = time.monotonic() + TOKEN_TTL
            logger.info(f"Marzban: авторизация успешна (попытка {attempt})")
            return

        raise MarzbanAuthError(
            f"Авторизация в Marzban не удалась после {attempts} попыток: {last_error}",
            status=getattr(last_error, "status", None),
            attempts=attempts,
        ) from last_error

    async def _fetch_token(self) -> str:
        """Обмен логина/пароля на токен (form-encoded POST)"""
        session = await self._get_http_session()
        data = {"username": self.settings.username, "password": self.settings.password}

        async with session.post(self._url("/api/admin/token"), data=data) as response:
            if response.status != 200:
                text = await response.text()
                raise MarzbanAuthError(f"HTTP {response.status}: {text[:200]}", status=response.status)
            payload = await response.json(content_type=None)

        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise MarzbanAuthError("В ответе Marzban нет access_token")
        return token

    async def _ensure_authenticated(self) -> None:
        """Убедиться что токен есть и не истёк"""
        if not self.is_authenticated:
            await self.authenticate()

    async def _refresh_token(self, stale_token: Optional[str]) -> None:
        """Переавторизация после 401, если токен ещё никто не обновил"""
        if self._auth_task is not None or self._token == stale_token:
            await self.authenticate()

    # === ЗАПРОСЫ ===

    async def _send(self, method: str, path: str, body: Optional[dict]) -> tuple[int, str]:
        """Один HTTP запрос с текущим токеном"""
        session = await self._get_http_session()
        headers = {"Authorization": f"Bearer {self._token}"}

        try:
            async with session.request(method, self._url(path), json=body, headers=headers) as response:
                return response.status, await response.text()
        except asyncio.TimeoutError as e:
            raise MarzbanTimeoutError(f"{method} {path}: таймаут запроса") from e
        except aiohttp.ClientError as e:
            raise MarzbanError(f"{method} {path}: ошибка соединения: {e}") from e

    async def _execute(self, method: str, path: str, body: Optional[dict]) -> Any:
        """Запрос с одной переавторизацией на 401"""
        token = self._token
        status, text = await self._send(method, path, body)

        if status == 401:
            logger.info(f"Marzban: токен отклонён ({method} {path}), переавторизация")
            await self._refresh_token(token)
            status, text = await self._send(method, path, body)
            if status == 401:
                raise MarzbanAuthError(
                    f"{method} {path}: токен отклонён после повторной авторизации",
                    status=status,
                )

        return self._parse_response(method, path, status, text)

    @staticmethod
    def _parse_response(method: str, path: str, status: int, text: str) -> Any:
        if 200 <= status < 300:
            if not text:
                return None
            try:
                return json.loads(text)
            except ValueError as e:
                raise MarzbanError(f"{method} {path}: некорректный JSON в ответе", status=status) from e

        message = f"{method} {path}: HTTP {status}: {text[:200]}"
        if status == 404:
            raise MarzbanNotFoundError(message, status=status)
        if status >= 500:
            raise MarzbanServerError(message, status=status)
        raise MarzbanClientError(message, status=status)

    async def request(self, method: str, path: str, body: Optional[dict] = None) -> Any:
        """
        Выполнить запрос к Marzban API.

        5xx и таймауты повторяются до MAX_RETRIES раз с экспоненциальной
        задержкой, остальные ошибки пробрасываются сразу.

        Returns:
            Разобранный JSON ответа (или None для пустого тела)
        """
        method = method.upper()
        attempts = self.settings.max_retries

        for attempt in range(1, attempts + 1):
            await self._ensure_authenticated()
            try:
                return await self._execute(method, path, body)
            except MarzbanRetryableError as e:
                if attempt == attempts:
                    e.attempts = attempt
                    raise
                delay = backoff_delay(attempt, self.settings.retry_delay)
                logger.warning(
                    f"Marzban: {method} {path} не удался (попытка {attempt}/{attempts}), "
                    f"повтор через {delay:.1f}с: {e}"
                )
                await self._sleep(delay)

    @contextmanager
    def _operation(self, name: str, username: str):
        """Добавить к ошибке имя операции и пользователя, сохранив её тип"""
        try:
            yield
        except MarzbanError as e:
            logger.error(f"Marzban: {name} для {username} не удался: {e}")
            raise e.__class__(
                f"{name} ({username}): {e}",
                status=e.status,
                operation=name,
                attempts=e.attempts,
            ) from e

    @staticmethod
    def _to_user(data: Any) -> MarzbanUser:
        if not isinstance(data, dict):
            raise MarzbanError("Неожиданный ответ Marzban: ожидался объект пользователя")
        try:
            return MarzbanUser.from_dict(data)
        except (TypeError, ValueError, AttributeError, OverflowError, OSError) as e:
            raise MarzbanError(f"Неожиданный ответ Marzban: некорректный пользователь ({e})") from e

    # === ПОЛЬЗОВАТЕЛИ ===

    async def create_user(
        self,
        username: str,
        data_limit: int,
        expire: Optional[datetime] = None,
    ) -> MarzbanUser:
        """
        Создать пользователя в Marzban с новым VLESS UUID.

        Если username занят, ошибка Marzban пробрасывается как есть.
        """
        logger.info(f"Marzban: создание пользователя {username}")

        payload = {
            "username": username,
            "proxies": {"vless": {"id": str(uuid.uuid4()), "flow": VLESS_FLOW}},
            "data_limit": data_limit,
            "status": "active",
        }
        if expire is not None:
            payload["expire"] = to_timestamp(expire)

        with self._operation("create_user", username):
            user = self._to_user(await self.request("POST", "/api/user", payload))

        logger.info(f"Marzban: создан пользователь {username}")
        return user

    async def update_user(self, username: str, updates: dict) -> MarzbanUser:
        """Частичное обновление пользователя (status, expire, data_limit...)"""
        payload = dict(updates)
        if isinstance(payload.get("expire"), datetime):
            payload["expire"] = to_timestamp(payload["expire"])

        logger.info(f"Marzban: обновление пользователя {username}: {sorted(payload)}")

        with self._operation("update_user", username):
            user = self._to_user(await self.request("PUT", self._user_path(username), payload))

        logger.info(f"Marzban: пользователь {username} обновлён")
        return user

    async def get_user(self, username: str) -> MarzbanUser:
        """
        Получить пользователя.

        Raises:
            MarzbanNotFoundError: пользователя нет в Marzban
        """
        with self._operation("get_user", username):
            return self._to_user(await self.request("GET", self._user_path(username)))

    async def delete_user(self, username: str) -> None:
        """
        Удалить пользователя.

        Повторное удаление даёт MarzbanNotFoundError.
        """
        logger.info(f"Marzban: удаление пользователя {username}")

        with self._operation("delete_user", username):
            await self.request("DELETE", self._user_path(username))

        logger.info(f"Marzban: пользователь {username} удалён")

    async def user_exists(self, username: str) -> bool:
        """Есть ли пользователь. Любая ошибка получения считается "нет"."""
        try:
            await self.get_user(username)
        except MarzbanError:
            return False
        return True

    async def extend_subscription(self, username: str, new_expire: datetime) -> MarzbanUser:
        """Установить новую дату окончания и активировать пользователя"""
        logger.info(f"Marzban: продление {username} до {new_expire.isoformat()}")

        with self._operation("extend_subscription", username):
            return await self.update_user(username, {
                "expire": to_timestamp(new_expire),
                "status": "active",
            })

    async def get_or_create_user(
        self,
        username: str,
        data_limit: int,
        expire: Optional[datetime] = None,
    ) -> MarzbanUser:
        """Получить пользователя, при любой ошибке получения создать нового"""
        try:
            return await self.get_user(username)
        except MarzbanError as e:
            logger.info(f"Marzban: {username} не получен ({e}), создаём")

        return await self.create_user(username, data_limit, expire)

    # === КОНФИГУРАЦИЯ КЛИЕНТА ===

    async def get_vless_config(self, username: str, host: str, port: int) -> str:
        """Получить VLESS ссылку пользователя для указанного сервера"""
        logger.info(f"Marzban: VLESS конфиг для {username} ({host}:{port})")

        with self._operation("get_vless_config", username):
            user = await self.get_user(username)
            if not user.proxy_id:
                raise MarzbanError("У пользователя нет VLESS ID")

        return build_vless_url(user.proxy_id, host, port, username)

    def generate_qr_code(self, vless_url: str) -> str:
        """QR-код для VLESS ссылки (data URL с PNG)"""
        return render_qr_code(vless_url)


# === ЖИЗНЕННЫЙ ЦИКЛ ===
#
# init_marzban() вызывается один раз при старте, close_marzban() при остановке.
# get_marzban() отдаёт уже созданный клиент (или инициализирует его при первом
# обращении). reset_marzban() сбрасывает состояние без I/O, для тестов.

_marzban: Optional[MarzbanService] = None
_init_task: Optional[asyncio.Future] = None


async def _create_marzban(settings: Optional[MarzbanSettings]) -> MarzbanService:
    global _marzban
    service = MarzbanService(settings or MarzbanSettings.from_config())
    try:
        await service.authenticate()
    except MarzbanError:
        await service.close()
        raise

    _marzban = service
    logger.info(f"Marzban: клиент инициализирован ({service.settings.url})")
    return service


def _init_finished(task: asyncio.Future) -> None:
    global _init_task
    if _init_task is task:
        _init_task = None


async def init_marzban(settings: Optional[MarzbanSettings] = None) -> MarzbanService:
    """
    Создать и авторизовать глобальный клиент Marzban.

    Одновременные вызовы ждут одну и ту же инициализацию и получают
    один клиент или одну и ту же ошибку.

    Raises:
        ConfigurationError: не заданы настройки
        MarzbanAuthError: не удалось авторизоваться
    """
    global _init_task
    if _marzban is not None:
        return _marzban

    if _init_task is None:
        _init_task = asyncio.ensure_future(_create_marzban(settings))
        _init_task.add_done_callback(_init_finished)
    return await asyncio.shield(_init_task)


async def get_marzban() -> MarzbanService:
    """Получить глобальный клиент Marzban"""
    if _marzban is not None:
        return _marzban
    return await init_marzban()


async def close_marzban() -> None:
    """Закрыть глобальный клиент"""
    if _marzban is not None:
        await _marzban.close()
    reset_marzban()


def reset_marzban() -> None:
    """Забыть глобальный клиент (без закрытия соединений)"""
    global _marzban, _init_task
    _marzban = None
    _init_task = None
