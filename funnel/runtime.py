"""Wiring of the engine components for one process."""

from dataclasses import dataclass
from typing import Optional

import httpx

from funnel.config import Settings
from funnel.services.delivery_service import DeliveryService
from funnel.services.funnel_service import FunnelService
from funnel.services.load_balancer import LoadBalancer
from funnel.services.scheduler import EventKind, Scheduler


@dataclass
class FunnelRuntime:
    settings: Settings
    session_factory: object
    load_balancer: LoadBalancer
    scheduler: Scheduler
    delivery: DeliveryService
    funnel: FunnelService

    @classmethod
    def build(
        cls,
        session_factory,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **scheduler_options,
    ) -> "FunnelRuntime":
        """Build all components and register the scheduler handlers.

        ``scheduler_options`` (e.g. ``sleep_func``, ``now_func``) go to the Scheduler;
        the load balancer shares its clock.
        """
        scheduler = Scheduler(
            session_factory,
            sweep_interval_seconds=settings.sweep_interval_seconds,
            sweep_batch_limit=settings.sweep_batch_limit,
            recovery_lookahead_hours=settings.recovery_lookahead_hours,
            default_max_attempts=settings.max_delivery_attempts,
            **scheduler_options,
        )
        load_balancer = LoadBalancer(
            settings.channels,
            default_channel=settings.default_channel,
            window_days=settings.load_balance_window_days,
            disabled_channels=settings.disabled_channels,
            now_func=scheduler.now,
        )
        delivery = DeliveryService(
            scheduler,
            session_factory,
            webhook_url=settings.workflow_webhook_url,
            timeout_seconds=settings.delivery_timeout_seconds,
            max_attempts=settings.max_delivery_attempts,
            base_delay_seconds=settings.retry_base_delay_seconds,
            transport=transport,
        )
        funnel = FunnelService(
            session_factory,
            scheduler,
            delivery,
            load_balancer,
            payment_timeout_seconds=settings.payment_timeout_seconds,
            local_timezone=settings.local_timezone,
        )

        scheduler.register(EventKind.PAYMENT_TIMEOUT, funnel.handle_payment_timeout)
        scheduler.register(EventKind.DELIVERY_RETRY, delivery.handle_retry)

        return cls(
            settings=settings,
            session_factory=session_factory,
            load_balancer=load_balancer,
            scheduler=scheduler,
            delivery=delivery,
            funnel=funnel,
        )

    async def start(self) -> int:
        recovered = await self.scheduler.recover_on_startup()
        self.scheduler.start()
        return recovered

    async def stop(self) -> None:
        await self.scheduler.stop()
