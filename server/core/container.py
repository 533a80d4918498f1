"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from services.device_auth import DeviceAuthService
from services.realtime.registry import SessionRegistry
from services.realtime.upstream import connect_provider


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Device credential validation
    device_auth = providers.Singleton(
        DeviceAuthService,
        settings=settings
    )

    # Opens provider connections; tests override this with a fake
    provider_connector = providers.Object(connect_provider)

    # One registry per process, shared by both transports
    session_registry = providers.Singleton(
        SessionRegistry,
        settings=settings,
        connector=provider_connector
    )


# Global container instance
container = Container()
