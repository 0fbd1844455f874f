"""
Provider webhook ingestion with signature verification and de-duplication.

Implements:
- Signature verification through the provider adapter
- Normalization to ``WebhookEvent``
- Event de-duplication per provider using Redis
- Routing to handlers registered per (provider, event type)
"""
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from payment_orchestration.config import get_settings
from payment_orchestration.core.exceptions import WebhookError
from payment_orchestration.core.schemas import WebhookEvent
from payment_orchestration.monitoring.metrics import metrics
from payment_orchestration.providers.registry import ProviderRegistry

logger = structlog.get_logger(__name__)

WebhookHandlerFunc = Callable[[WebhookEvent], Awaitable[Any]]


class WebhookProcessor:
    """
    Verifies, de-duplicates and routes provider notifications.

    Redis outages fail open: the event is processed rather than lost, and
    handlers are expected to be idempotent.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        secrets: Optional[Dict[str, str]] = None,
        redis_client: Optional[aioredis.Redis] = None,
    ):
        """
        Initialize webhook processor.

        Args:
            registry: Provider registry used to look up adapters
            secrets: Verification secret per provider name, as each adapter defines it
            redis_client: Optional Redis client for event de-duplication
        """
        self.settings = get_settings()
        self.registry = registry
        self.secrets = dict(secrets or {})
        self.redis_client = redis_client
        self._owns_redis = redis_client is None
        self.event_handlers: Dict[Tuple[str, str], WebhookHandlerFunc] = {}

    def _ensure_redis(self) -> aioredis.Redis:
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    def register_handler(
        self, provider: str, event_type: str, handler: WebhookHandlerFunc
    ) -> None:
        """
        Register a handler for one provider event type.

        Args:
            provider: Provider name (e.g. 'stripe')
            event_type: Provider event type (e.g. 'payment_intent.succeeded')
            handler: Async callable receiving the normalized event

        Example:
            async def on_succeeded(event):
                ...

            processor.register_handler("stripe", "payment_intent.succeeded", on_succeeded)
        """
        self.event_handlers[(provider, event_type)] = handler
        logger.info("webhook_handler_registered", provider=provider, event_type=event_type)

    @staticmethod
    def _dedup_key(provider: str, event_id: str) -> str:
        return f"webhook:processed:{provider}:{event_id}"

    async def is_event_processed(self, provider: str, event_id: str) -> bool:
        """
        Check if an event has already been processed.

        Returns:
            bool: True if seen before; False when unseen or Redis is unavailable
        """
        try:
            exists = await self._ensure_redis().exists(self._dedup_key(provider, event_id))
            return bool(exists)
        except (RedisError, OSError) as e:
            logger.warning(
                "webhook_dedup_check_error", provider=provider, event_id=event_id, error=str(e)
            )
            return False

    async def mark_event_processed(self, provider: str, event_id: str) -> None:
        try:
            await self._ensure_redis().setex(
                self._dedup_key(provider, event_id),
                self.settings.webhook_dedup_ttl_seconds,
                "1",
            )
        except (RedisError, OSError) as e:
            logger.warning(
                "webhook_mark_processed_error", provider=provider, event_id=event_id, error=str(e)
            )

    async def process(
        self,
        provider_name: str,
        payload: str,
        signature: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Verify and dispatch one notification.

        Args:
            provider_name: Provider the notification was addressed to
            payload: Raw request body
            signature: Signature header value, empty when the provider sends none
            headers: Request headers, for providers that sign more than one

        Returns:
            Dict[str, Any]: Result with ``status`` one of ``invalid_signature``,
            ``duplicate``, ``no_handler`` or ``success``

        Raises:
            ProviderNotFoundError: If the provider is not registered
            ProviderTransportError: If verification needs the provider and it is unreachable
            WebhookError: If the payload cannot be parsed or the handler fails
        """
        provider = self.registry.require(provider_name)

        if not await provider.verify_webhook_signature(
            payload, signature, self.secrets.get(provider_name, ""), headers
        ):
            logger.warning("webhook_signature_verification_failed", provider=provider_name)
            metrics.record_webhook_event(provider_name, "invalid_signature")
            return {"status": "invalid_signature", "provider": provider_name}

        event = provider.parse_webhook_event(payload)
        log = logger.bind(
            provider=provider_name, event_id=event.event_id, event_type=event.event_type
        )
        log.info("processing_webhook_event")

        if event.event_id and await self.is_event_processed(provider_name, event.event_id):
            log.info("webhook_event_already_processed")
            metrics.record_webhook_event(provider_name, "duplicate")
            return {"status": "duplicate", "provider": provider_name, "event_id": event.event_id}

        handler = self.event_handlers.get((provider_name, event.event_type))
        if handler is None:
            log.info("webhook_no_handler")
            # Mark as processed so redeliveries are not re-routed
            if event.event_id:
                await self.mark_event_processed(provider_name, event.event_id)
            metrics.record_webhook_event(provider_name, "no_handler")
            return {
                "status": "no_handler",
                "provider": provider_name,
                "event_id": event.event_id,
                "event_type": event.event_type,
            }

        try:
            result = await handler(event)
        except Exception as e:
            log.error("webhook_event_processing_failed", error=str(e))
            metrics.record_webhook_event(provider_name, "error")
            raise WebhookError(
                f"Failed to process {provider_name} event {event.event_id}: {e}"
            ) from e

        if event.event_id:
            await self.mark_event_processed(provider_name, event.event_id)
        log.info("webhook_event_processed")
        metrics.record_webhook_event(provider_name, "success")
        return {
            "status": "success",
            "provider": provider_name,
            "event_id": event.event_id,
            "event_type": event.event_type,
            "result": result,
        }

    async def close(self) -> None:
        """Close the Redis connection if this processor opened it."""
        if self.redis_client is not None and self._owns_redis:
            await self.redis_client.aclose()
            self.redis_client = None
