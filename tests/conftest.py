"""
Pytest fixtures для тестов интеграций.

Marzban и Mercuryo подменяются настоящими aiohttp приложениями на
локальном порту, поэтому клиенты работают через свой HTTP код.
"""
import asyncio
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from services.marzban_service import MarzbanService, MarzbanSettings, reset_marzban
from services.mercuryo_service import MercuryoService, MercuryoSettings


ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "secret"
WEBHOOK_SECRET = "whsec-test"


class FakePanel:
    """Marzban API в памяти"""

    def __init__(self):
        self.url = ""
        self.users: dict[str, dict] = {}
        self.requests: list[tuple[str, str]] = []
        self.token_requests = 0
        self.valid_tokens: set[str] = set()

        # Управление сбоями
        self.auth_failures = 0           # сколько запросов токена получат 500
        self.auth_delay = 0.0            # задержка выдачи токена, секунд
        self.user_failures: list[int] = []   # статусы для следующих запросов к /api/user
        self.user_delays: list[float] = []   # задержки для следующих запросов к /api/user
        self.user_overrides: list[dict] = []  # тела 200-ответов для следующих GET /api/user/{username}
        self.always_unauthorized = False

    def add_user(self, username: str, proxy_id="abc-123", status="active", expire=None, data_limit=0):
        proxies = {"vless": {"id": proxy_id, "flow": "xtls-rprx-vision"}} if proxy_id else {}
        self.users[username] = {
            "username": username,
            "proxies": proxies,
            "status": status,
            "used_traffic": 0,
            "data_limit": data_limit,
            "expire": expire,
        }
        return self.users[username]

    def count(self, method: str, path: str) -> int:
        return self.requests.count((method, path))

    def revoke_tokens(self):
        """Имитация инвалидации токенов на стороне Marzban"""
        self.valid_tokens.clear()

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/api/admin/token", self.token)
        app.router.add_post("/api/user", self.create_user)
        app.router.add_get("/api/user/{username}", self.get_user)
        app.router.add_put("/api/user/{username}", self.update_user)
        app.router.add_delete("/api/user/{username}", self.delete_user)
        return app

    async def token(self, request: web.Request) -> web.Response:
        self.token_requests += 1
        form = await request.post()

        if self.auth_delay:
            await asyncio.sleep(self.auth_delay)
        if self.auth_failures > 0:
            self.auth_failures -= 1
            return web.json_response({"detail": "Internal error"}, status=500)
        if form.get("username") != ADMIN_USERNAME or form.get("password") != ADMIN_PASSWORD:
            return web.json_response({"detail": "Incorrect username or password"}, status=401)

        token = f"token-{self.token_requests}"
        self.valid_tokens.add(token)
        return web.json_response({"access_token": token, "token_type": "bearer"})

    async def _guard(self, request: web.Request):
        """Авторизация и запланированные сбои. Возвращает ответ-ошибку или None."""
        self.requests.append((request.method, request.path))

        auth = request.headers.get("Authorization", "")
        token = auth.removeprefix("Bearer ")
        if self.always_unauthorized or token not in self.valid_tokens:
            return web.json_response({"detail": "Could not validate credentials"}, status=401)

        if self.user_delays:
            await asyncio.sleep(self.user_delays.pop(0))
        if self.user_failures:
            return web.json_response({"detail": "scheduled failure"}, status=self.user_failures.pop(0))
        return None

    async def create_user(self, request: web.Request) -> web.Response:
        error = await self._guard(request)
        if error:
            return error

        body = await request.json()
        username = body["username"]
        if username in self.users:
            return web.json_response({"detail": "User already exists"}, status=409)

        self.users[username] = {
            "username": username,
            "proxies": body.get("proxies", {}),
            "status": body.get("status", "active"),
            "used_traffic": 0,
            "data_limit": body.get("data_limit", 0),
            "expire": body.get("expire"),
        }
        return web.json_response(self.users[username])

    async def get_user(self, request: web.Request) -> web.Response:
        error = await self._guard(request)
        if error:
            return error
        if self.user_overrides:
            return web.json_response(self.user_overrides.pop(0))

        user = self.users.get(request.match_info["username"])
        if user is None:
            return web.json_response({"detail": "User not found"}, status=404)
        return web.json_response(user)

    async def update_user(self, request: web.Request) -> web.Response:
        error = await self._guard(request)
        if error:
            return error

        user = self.users.get(request.match_info["username"])
        if user is None:
            return web.json_response({"detail": "User not found"}, status=404)
        user.update(await request.json())
        return web.json_response(user)

    async def delete_user(self, request: web.Request) -> web.Response:
        error = await self._guard(request)
        if error:
            return error

        if self.users.pop(request.match_info["username"], None) is None:
            return web.json_response({"detail": "User not found"}, status=404)
        return web.json_response({})


class FakeGateway:
    """Mercuryo API в памяти"""

    def __init__(self):
        self.url = ""
        self.payments: dict[str, dict] = {}
        self.requests: list[dict] = []
        self.fail_status: int | None = None

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/v1.6/payment", self.create_payment)
        app.router.add_get("/v1.6/payment/{payment_id}", self.get_payment)
        return app

    async def create_payment(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.requests.append({
            "method": "POST",
            "authorization": request.headers.get("Authorization"),
            "body": body,
        })
        if self.fail_status:
            return web.json_response({"error": "gateway failure"}, status=self.fail_status)

        payment_id = f"pay_{len(self.payments) + 1}"
        self.payments[payment_id] = {
            "id": payment_id,
            "status": "new",
            "payment_url": f"https://pay.example.com/{payment_id}",
            "amount": body["amount"],
            "currency": body["currency"],
        }
        return web.json_response(self.payments[payment_id])

    async def get_payment(self, request: web.Request) -> web.Response:
        self.requests.append({"method": "GET", "path": request.path})
        if self.fail_status:
            return web.json_response({"error": "gateway failure"}, status=self.fail_status)

        payment = self.payments.get(request.match_info["payment_id"])
        if payment is None:
            return web.json_response({"error": "not found"}, status=404)
        return web.json_response(payment)


class SleepRecorder:
    """Записывает задержки backoff вместо реального ожидания"""

    def __init__(self):
        self.delays: list[float] = []

    async def sleep(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture(autouse=True)
def clean_marzban_state():
    """Глобальный клиент Marzban не переживает тест"""
    reset_marzban()
    yield
    reset_marzban()


@pytest.fixture
async def panel():
    """Поддельный Marzban на локальном порту"""
    fake = FakePanel()
    server = TestServer(fake.make_app())
    await server.start_server()
    fake.url = f"http://{server.host}:{server.port}"
    yield fake
    await server.close()


@pytest.fixture
def marzban_settings(panel):
    return MarzbanSettings(
        url=panel.url,
        username=ADMIN_USERNAME,
        password=ADMIN_PASSWORD,
        timeout=5.0,
    )


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
async def marzban(marzban_settings, sleeps):
    """Клиент Marzban без реального ожидания backoff"""
    service = MarzbanService(marzban_settings)
    service._sleep = sleeps.sleep
    yield service
    await service.close()


@pytest.fixture
async def gateway():
    """Поддельный Mercuryo на локальном порту"""
    fake = FakeGateway()
    server = TestServer(fake.make_app())
    await server.start_server()
    fake.url = f"http://{server.host}:{server.port}"
    yield fake
    await server.close()


@pytest.fixture
async def mercuryo(gateway):
    service = MercuryoService(MercuryoSettings(
        api_key="api-key-test",
        secret="secret-test",
        webhook_secret=WEBHOOK_SECRET,
        base_url=gateway.url,
        timeout=5.0,
    ))
    yield service
    await service.close()
