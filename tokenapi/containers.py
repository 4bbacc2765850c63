from dependency_injector import containers, providers

from tokenapi.config import get_settings
from tokenapi.providers.notifications import LoggingNotificationSender
from tokenapi.providers.payments.phonepe import PhonePeGateway
from tokenapi.providers.payments.razorpay import RazorpayGateway
from tokenapi.providers.payments.token_cache import GatewayTokenCache
from tokenapi.schemas.payment import GatewayName


class ConfigModule(containers.DeclarativeContainer):
    """Application configuration."""

    config = providers.Singleton(get_settings)


class GatewayModule(containers.DeclarativeContainer):
    """Payment gateway clients (one per process, PhonePe token cache shared)."""

    config = providers.DependenciesContainer()

    phonepe_token_cache = providers.Singleton(
        GatewayTokenCache,
        refresh_buffer_seconds=config.config.provided.PHONEPE_TOKEN_REFRESH_BUFFER_SECONDS,
    )
    phonepe = providers.Singleton(
        PhonePeGateway, settings=config.config, token_cache=phonepe_token_cache
    )
    razorpay = providers.Singleton(RazorpayGateway, settings=config.config)

    all = providers.Dict(
        {
            GatewayName.PHONEPE: phonepe,
            GatewayName.RAZORPAY: razorpay,
        }
    )


class NotificationModule(containers.DeclarativeContainer):
    """Outbound notifications."""

    sender = providers.Singleton(LoggingNotificationSender)


class Container(containers.DeclarativeContainer):
    """Application container."""

    config = providers.Container(ConfigModule)
    gateways = providers.Container(GatewayModule, config=config)
    notifications = providers.Container(NotificationModule)
