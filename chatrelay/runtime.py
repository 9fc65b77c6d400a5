"""
Runtime wiring.

Builds the long-lived services shared by the HTTP layer and tears them down
on shutdown.
"""
import importlib
from dataclasses import dataclass

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatrelay.config import settings
from chatrelay.logging_config import get_logger
from chatrelay.protocol.base import ClientFactory
from chatrelay.services.event_router import EventRouter
from chatrelay.services.notification_hub import NotificationHub
from chatrelay.services.persistence import PersistenceGateway
from chatrelay.services.scheduler import DelayedTaskScheduler
from chatrelay.services.session_registry import SessionRegistry
from chatrelay.services.webhook_service import WebhookDispatcher

logger = get_logger(component="runtime")


def load_client_factory(path: str) -> ClientFactory:
    """
    Instantiate a ClientFactory from a "module:attribute" path.

    Example:
        load_client_factory("chatrelay.protocol.stub:StubClientFactory")
    """
    module_name, _, attr = path.partition(":")
    if not attr:
        raise ValueError(f"Invalid client factory path: {path!r} (expected 'module:attribute')")
    factory_cls = getattr(importlib.import_module(module_name), attr)
    factory = factory_cls()
    if not isinstance(factory, ClientFactory):
        raise TypeError(f"{path} does not build a ClientFactory")
    return factory


@dataclass
class Runtime:
    persistence: PersistenceGateway
    hub: NotificationHub
    dispatcher: WebhookDispatcher
    router: EventRouter
    registry: SessionRegistry

    async def shutdown(self) -> None:
        """Close sessions, cancel webhook retries, drain background fan-out."""
        await self.registry.shutdown()
        await self.router.close()
        try:
            await self.dispatcher.cleanup()
        except Exception as e:
            logger.error("webhook_cleanup_failed", error=str(e))
        await self.dispatcher.close()
        logger.info("runtime_shutdown_complete")


def build_runtime(
    session_factory: async_sessionmaker[AsyncSession],
    client_factory: ClientFactory | None = None,
    http_client: httpx.AsyncClient | None = None,
    hub: NotificationHub | None = None,
    reconnect_scheduler: DelayedTaskScheduler | None = None,
    retry_scheduler: DelayedTaskScheduler | None = None,
    reconnect_delay: float | None = None,
) -> Runtime:
    persistence = PersistenceGateway(session_factory)
    hub = hub or NotificationHub()
    dispatcher = WebhookDispatcher(persistence, http_client=http_client, scheduler=retry_scheduler)
    router = EventRouter(persistence, hub, dispatcher)
    registry = SessionRegistry(
        persistence,
        router,
        hub,
        client_factory or load_client_factory(settings.PROTOCOL_CLIENT_FACTORY),
        scheduler=reconnect_scheduler,
        reconnect_delay=reconnect_delay,
    )
    return Runtime(
        persistence=persistence,
        hub=hub,
        dispatcher=dispatcher,
        router=router,
        registry=registry,
    )
