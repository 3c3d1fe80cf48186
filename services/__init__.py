from .exceptions import (
    ConfigurationError,
    IntegrationError,
    MarzbanAuthError,
    MarzbanClientError,
    MarzbanError,
    MarzbanNotFoundError,
    MarzbanRetryableError,
    MarzbanServerError,
    MarzbanTimeoutError,
    MercuryoError,
    MercuryoPayloadError,
    QRCodeError,
    WebhookSignatureError,
)
from .marzban_service import (
    MarzbanService,
    MarzbanSettings,
    MarzbanUser,
    close_marzban,
    get_marzban,
    init_marzban,
    reset_marzban,
)
from .mercuryo_service import MercuryoService, MercuryoSettings, PaymentInfo, WebhookData
from .provisioning_service import AccessBundle, ProvisioningService

__all__ = [
    "AccessBundle",
    "ConfigurationError",
    "IntegrationError",
    "MarzbanAuthError",
    "MarzbanClientError",
    "MarzbanError",
    "MarzbanNotFoundError",
    "MarzbanRetryableError",
    "MarzbanServerError",
    "MarzbanService",
    "MarzbanSettings",
    "MarzbanTimeoutError",
    "MarzbanUser",
    "MercuryoError",
    "MercuryoPayloadError",
    "MercuryoService",
    "MercuryoSettings",
    "PaymentInfo",
    "ProvisioningService",
    "QRCodeError",
    "WebhookData",
    "WebhookSignatureError",
    "close_marzban",
    "get_marzban",
    "init_marzban",
    "reset_marzban",
]
