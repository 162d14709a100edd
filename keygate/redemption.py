# redemption.py
"""
Key redemption: the only multi-step flow in the panel.

  1. validate the key (exists, not used, quota, service restriction)
  2. validate the service (exists, active, has an endpoint)
  3. insert the order as pending
  4. consume the key with a single conditional UPDATE
  5. log order_created
     -- steps 1-5 commit together; a lost race on step 4 rolls back 3 --
  6. call the provider (no transaction held), bounded retries
  7. completed: store response, log order_completed
  8. failed: store the error, log order_failed, raise UpstreamFailure

The key stays consumed when step 6 fails. There is no compensation.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import (
    InvalidKey, KeyAlreadyUsed, NotFound, ServiceUnavailable,
    UpstreamFailure, ValidationError,
)
from .model import Storage
from .model import logs as log_types
from .model.db import Key, Order, Service
from .provider import ProviderAdapter, map_provider_status

logger = logging.getLogger(__name__)


@dataclass
class RedeemRequest:
    key_value: str
    service_id: int
    target_url: str
    quantity: int


def check_key(key: Optional[Key], quantity: Optional[int] = None,
              service_id: Optional[int] = None) -> Key:
    if key is None:
        raise InvalidKey("Invalid key")
    if key.is_used:
        raise KeyAlreadyUsed("Key has already been used")
    if service_id is not None and key.service_id is not None \
            and key.service_id != service_id:
        raise ValidationError("This key can only be used for another service")
    if quantity is not None and key.max_quantity is not None:
        remaining = key.remaining_quantity
        if quantity > remaining:
            raise ValidationError(
                f"Quantity exceeds what this key allows (max {remaining})"
            )
    return key


def check_service(service: Optional[Service]) -> Service:
    if service is None or not service.is_active or not service.api_endpoint:
        raise ServiceUnavailable("Service not available")
    return service


async def redeem(storage: Storage, provider: ProviderAdapter,
                 req: RedeemRequest) -> Order:
    async with storage.transaction():
        key = check_key(await storage.keys.get_by_value(req.key_value),
                        req.quantity, req.service_id)
        service = check_service(await storage.services.get(req.service_id))

        order = await storage.orders.create(
            key_id=key.id,
            service_id=service.id,
            target_url=req.target_url,
            quantity=req.quantity,
        )
        consumed = await storage.keys.consume(key, req.quantity,
                                              f"order_{order.id}")
        if consumed is None:
            # another redemption moved the key between our read and the
            # update; report whatever state it is in now
            logger.info("key %s lost a concurrent redemption", key.id)
            check_key(await storage.keys.get(key.id, fresh=True),
                      req.quantity, req.service_id)
            raise ValidationError(
                "Quantity exceeds what this key allows "
                f"(max {key.remaining_quantity})"
            )

        await storage.logs.write(
            log_types.ORDER_CREATED,
            f"Order created for {service.name}",
            key_id=key.id,
            order_id=order.id,
            data={
                "targetUrl": req.target_url,
                "quantity": req.quantity,
                "service": service.name,
            },
        )
    logger.info("order %s created: key=%s service=%s qty=%d",
                order.public_id, key.id, service.id, req.quantity)

    try:
        placed = await provider.place_order(service, req.target_url,
                                            req.quantity)
    except UpstreamFailure as e:
        async with storage.transaction():
            order = await storage.orders.mark_failed(order.id, e.message)
            await storage.logs.write(
                log_types.ORDER_FAILED,
                f"Order failed: {e.message}",
                key_id=key.id,
                order_id=order.id,
                data={"error": e.message},
            )
        logger.warning("order %s failed: %s", order.public_id, e.message)
        raise UpstreamFailure(
            "Failed to process order",
            upstream_status=e.upstream_status,
            error=e.message,
            orderId=order.public_id,
        )

    async with storage.transaction():
        order = await storage.orders.mark_completed(
            order.id, placed.response, placed.provider_order_id
        )
        await storage.logs.write(
            log_types.ORDER_COMPLETED,
            "Order completed successfully",
            key_id=key.id,
            order_id=order.id,
            data={"response": placed.response, "attempts": placed.attempts},
        )
    logger.info("order %s completed after %d attempt(s)", order.public_id,
                placed.attempts)
    return order


async def search_order(storage: Storage, provider: ProviderAdapter,
                       public_id: str, refresh: bool = False
                       ) -> Dict[str, Any]:
    async with storage.transaction():
        found = await storage.orders.find_with_details(public_id)
    if found is None:
        raise NotFound(f"Order {public_id} not found")
    order, service, key = found

    refresh_error = None
    if refresh and service is not None and order.provider_order_id:
        try:
            data = await provider.order_status(service,
                                               order.provider_order_id)
        except UpstreamFailure as e:
            logger.warning("status refresh for %s failed: %s",
                           public_id, e.message)
            refresh_error = e.message
        else:
            status = map_provider_status(data)
            if status is not None and status != order.status:
                async with storage.transaction():
                    previous = order.status
                    order = await storage.orders.set_status(order.id, status)
                    await storage.logs.write(
                        log_types.ORDER_STATUS_UPDATED,
                        f"Order status changed from {previous} to {status}",
                        key_id=order.key_id,
                        order_id=order.id,
                        data={"provider": data},
                    )
    elif refresh:
        refresh_error = "Order has no provider reference to refresh"

    body = order.to_dict()
    body["service"] = service.to_public_dict() if service else None
    body["key"] = (
        {"id": key.id, "type": key.type} if key else None
    )
    if refresh_error:
        body["refreshError"] = refresh_error
    return body
