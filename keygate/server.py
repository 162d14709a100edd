from __future__ import annotations
import logging
from typing import AsyncIterator, Dict, Optional

import httpx
from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import ORJSONResponse
from pydantic import ValidationError as SchemaError
from sqlalchemy.exc import IntegrityError

from .auth import (
    TokenSigner, authenticate, clear_admin_cookie, hash_password,
    require_admin, set_admin_cookie,
)
from .config import Settings
from .errors import (
    Conflict, NotFound, UpstreamFailure, ValidationError,
    install_error_handlers,
)
from .helpers import start_of_day_ts
from .model import Storage, create_schema, open_database
from .model import logs as log_types
from .model.db import ORDER_STATUSES
from .provider import (
    HttpProvider, ProviderAdapter, RetryPolicy, format_services,
)
from .redemption import RedeemRequest, check_key, redeem, search_order
from .schemas import (
    AdminCreateIn, AdminStatusIn, KeyCreateIn, LoginIn, OrderIn, ServiceIn,
    ServicesFetchIn, ServicesImportIn, ServiceUpdateIn, ValidateKeyIn,
    import_item, service_fields,
)

logger = logging.getLogger(__name__)

Admin = Dict[str, str]


# ----------------------------
# Dependencies
# ----------------------------
async def get_storage(request: Request) -> AsyncIterator[Storage]:
    db = request.app.state.db
    async with db.sessionmaker() as session:
        yield Storage(session=session, gated=db.gated)


def get_provider(request: Request) -> ProviderAdapter:
    return request.app.state.provider


def _clamp(limit: int, hi: int = 500) -> int:
    return max(1, min(limit, hi))


def create_app(settings: Optional[Settings] = None,
               transport: Optional[httpx.AsyncBaseTransport] = None
               ) -> FastAPI:
    """
    Build the panel. `transport` replaces the network for outbound
    provider calls (tests pass an httpx.MockTransport).
    """
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level)

    db = open_database(settings)

    app = FastAPI(
        title="Keygate",
        default_response_class=ORJSONResponse,
    )
    app.state.settings = settings
    app.state.db = db
    app.state.signer = TokenSigner(settings.secret_key,
                                   settings.admin_token_ttl)
    install_error_handlers(app)

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _db_init():
        await create_schema(db)
        logger.info("database ready")

    @app.on_event("startup")
    async def _http_client_start():
        app.state.http = httpx.AsyncClient(
            timeout=settings.provider_timeout,
            limits=httpx.Limits(
                max_connections=100, max_keepalive_connections=20
            ),
            transport=transport,
        )
        app.state.provider = HttpProvider(
            app.state.http,
            RetryPolicy(
                max_attempts=settings.provider_max_attempts,
                backoff=settings.provider_backoff,
            ),
        )

    @app.on_event("shutdown")
    async def _http_client_stop():
        http = getattr(app.state, "http", None)
        if http is not None:
            await http.aclose()
            app.state.http = None

    @app.on_event("shutdown")
    async def _db_stop():
        await db.dispose()

    @app.get("/")
    async def health():
        return {"status": "ok"}

    # ----------------------------
    # Admin session
    # ----------------------------
    @app.post("/api/admin/login")
    async def admin_login(
        body: LoginIn,
        response: Response,
        storage: Storage = Depends(get_storage),
    ):
        identity = await authenticate(storage, settings, body.username,
                                      body.password)
        token = app.state.signer.issue(identity)
        set_admin_cookie(response, token, settings)
        logger.info("admin %s logged in", identity["username"])
        return {
            "success": True,
            "message": "Login successful",
            "user": identity,
        }

    @app.post("/api/admin/logout")
    async def admin_logout(response: Response):
        clear_admin_cookie(response, settings)
        return {"success": True, "message": "Logged out successfully"}

    @app.get("/api/admin/me")
    async def admin_me(admin: Admin = Depends(require_admin)):
        return {
            "id": admin["id"],
            "username": admin["username"],
            "role": admin["role"],
        }

    # ----------------------------
    # Admin users
    # ----------------------------
    @app.get("/api/admin/users")
    async def admin_users_list(
        admin: Admin = Depends(require_admin),
        storage: Storage = Depends(get_storage),
    ):
        async with storage.transaction():
            admins = await storage.admins.list_all()
        return [a.to_dict() for a in admins]

    @app.post("/api/admin/users", status_code=201)
    async def admin_users_create(
        body: AdminCreateIn,
        admin: Admin = Depends(require_admin),
        storage: Storage = Depends(get_storage),
    ):
        if body.username == settings.admin_username:
            raise Conflict("Username is already taken")
        password_hash = hash_password(body.password)
        try:
            async with storage.transaction():
                if await storage.admins.get_by_username(body.username):
                    raise Conflict("Username is already taken")
                created = await storage.admins.create(
                    username=body.username,
                    password_hash=password_hash,
                    email=body.email,
                )
                await storage.logs.write(
                    log_types.ADMIN_CREATED,
                    f"Admin {created.username} created",
                    user_id=admin["username"],
                )
        except IntegrityError:
            raise Conflict("Username is already taken")
        return created.to_dict()

    @app.put("/api/admin/users/{admin_id}/status")
    async def admin_users_status(
        admin_id: int,
        body: AdminStatusIn,
        admin: Admin = Depends(require_admin),
        storage: Storage = Depends(get_storage),
    ):
        async with storage.transaction():
            updated = await storage.admins.set_active(admin_id, body.isActive)
            if updated is None:
                raise NotFound("Admin not found")
            await storage.logs.write(
                log_types.ADMIN_STATUS_CHANGED,
                f"Admin {updated.username} "
                f"{'activated' if body.isActive else 'suspended'}",
                user_id=admin["username"],
            )
        return updated.to_dict()

    # ----------------------------
    # Keys
    # ----------------------------
    @app.get("/api/keys")
    async def keys_list(
        admin: Admin = Depends(require_admin),
        storage: Storage = Depends(get_storage),
    ):
        async with storage.transaction():
            keys = await storage.keys.list_all()
        return [k.to_dict() for k in keys]

    @app.get("/api/keys/stats")
    async def keys_stats(
        admin: Admin = Depends(require_admin),
        storage: Storage = Depends(get_storage),
    ):
        async with storage.transaction():
            return await storage.keys.stats()

    @app.post("/api/keys")
    async def keys_create(
        body: KeyCreateIn,
        admin: Admin = Depends(require_admin),
        storage: Storage = Depends(get_storage),
    ):
        created = []
        try:
            async with storage.transaction():
                if body.serviceId is not None and \
                        await storage.services.get(body.serviceId) is None:
                    raise NotFound("Service not found")
                for _ in range(body.count):
                    key = await storage.keys.create(
                        created_by=admin["username"],
                        type=body.type,
                        name=body.name,
                        max_quantity=body.maxQuantity,
                        service_id=body.serviceId,
                    )
                    await storage.logs.write(
                        log_types.KEY_CREATED,
                        f"Key {key.value} created",
                        user_id=admin["username"],
                        key_id=key.id,
                        data={"keyName": key.name, "keyType": key.type},
                    )
                    created.append(key)
        except IntegrityError:
            # generated value collided with an existing key
            raise Conflict("Key generation collided, please retry")
        logger.info("%s created %d key(s)", admin["username"], len(created))
        if body.count == 1:
            return created[0].to_dict()
        return {"keys": [k.to_dict() for k in created]}

    @app.delete("/api/keys/{key_id}")
    async def keys_delete(
        key_id: int,
        admin: Admin = Depends(require_admin),
        storage: Storage = Depends(get_storage),
    ):
        async with storage.transaction():
            if not await storage.keys.delete(key_id):
                raise NotFound("Key not found")
            await storage.logs.write(
                log_types.KEY_DELETED,
                f"Key with ID {key_id} deleted",
                user_id=admin["username"],
                key_id=key_id,
            )
        return {"success": True}

    @app.post("/api/validate-key")
    async def validate_key(
        body: ValidateKeyIn,
        storage: Storage = Depends(get_storage),
    ):
        async with storage.transaction():
            key = check_key(await storage.keys.get_by_value(body.key))
        return {
            "valid": True,
            "keyId": key.id,
            "type": key.type,
            "maxQuantity": key.max_quantity,
            "usedQuantity": key.used_quantity,
            "remainingQuantity": key.remaining_quantity,
            "serviceId": key.service_id,
        }

    # ----------------------------
    # Services
    # ----------------------------
    @app.get("/api/services")
    async def services_active(storage: Storage = Depends(get_storage)):
        async with storage.transaction():
            services = await storage.services.list_active()
        return [s.to_public_dict() for s in services]

    @app.get("/api/services/all")
    async def services_all(
        admin: Admin = Depends(require_admin),
        storage: Storage = Depends(get_storage),
    ):
        async with storage.transaction():
            services = await storage.services.list_all()
        return [s.to_dict() for s in services]

    @app.get("/api/services/{service_id}")
    async def services_get(
        service_id: int,
        admin: Admin = Depends(require_admin),
        storage: Storage = Depends(get_storage),
    ):
        async with storage.transaction():
            service = await storage.services.get(service_id)
        if service is None:
            raise NotFound("Service not found")
        return service.to_dict()

    @app.post("/api/services")
    async def services_create(
        body: ServiceIn,
        admin: Admin = Depends(require_admin),
        storage: Storage = Depends(get_storage),
    ):
        async with storage.transaction():
            service = await storage.services.create(service_fields(body))
            await storage.logs.write(
                log_types.SERVICE_CREATED,
                f"Service {service.name} created",
                user_id=admin["username"],
                data={"serviceId": service.id},
            )
        return service.to_dict()

    @app.put("/api/services/{service_id}")
    async def services_update(
        service_id: int,
        body: ServiceUpdateIn,
        admin: Admin = Depends(require_admin),
        storage: Storage = Depends(get_storage),
    ):
        updates = service_fields(body, partial=True)
        async with storage.transaction():
            service = await storage.services.update(service_id, updates)
            if service is None:
                raise NotFound("Service not found")
            await storage.logs.write(
                log_types.SERVICE_UPDATED,
                f"Service {service.name} updated",
                user_id=admin["username"],
                data={"serviceId": service.id, "fields": sorted(updates)},
            )
        return service.to_dict()

    @app.delete("/api/services/{service_id}")
    async def services_delete(
        service_id: int,
        admin: Admin = Depends(require_admin),
        storage: Storage = Depends(get_storage),
    ):
        async with storage.transaction():
            if not await storage.services.delete(service_id):
                raise NotFound("Service not found")
            await storage.logs.write(
                log_types.SERVICE_DELETED,
                f"Service with ID {service_id} deleted",
                user_id=admin["username"],
                data={"serviceId": service_id},
            )
        return {"success": True}

    @app.post("/api/services/import")
    async def services_import(
        body: ServicesImportIn,
        admin: Admin = Depends(require_admin),
        storage: Storage = Depends(get_storage),
    ):
        valid, errors = [], []
        for i, raw in enumerate(body.services):
            try:
                valid.append(service_fields(import_item(raw, i)))
            except SchemaError as e:
                first = e.errors()[0]
                where = ".".join(str(p) for p in first.get("loc", ()))
                errors.append(
                    f"Service {i + 1} ({raw.get('name') or 'unnamed'}): "
                    f"{where}: {first.get('msg')}"
                )

        created, batch_errors = await storage.services.bulk_create(
            valid, chunk_size=settings.import_chunk_size
        )
        errors.extend(batch_errors)

        async with storage.transaction():
            await storage.logs.write(
                log_types.SERVICES_IMPORTED,
                f"Imported {len(created)} of {len(body.services)} services",
                user_id=admin["username"],
                data={"imported": len(created), "errors": len(errors)},
            )
        logger.info("service import: %d/%d imported, %d error(s)",
                    len(created), len(body.services), len(errors))
        return {
            "success": True,
            "imported": len(created),
            "total": len(body.services),
            "errors": errors,
            "services": [s.to_dict() for s in created[:10]],
        }

    @app.post("/api/services/fetch")
    async def services_fetch(
        body: ServicesFetchIn,
        admin: Admin = Depends(require_admin),
        provider: ProviderAdapter = Depends(get_provider),
    ):
        data = await provider.fetch_services(body.apiUrl, body.apiKey)
        services = format_services(data, body.apiUrl, body.apiKey)
        if not services:
            raise UpstreamFailure("No services found in the API response")
        return {"count": len(services), "services": services}

    # ----------------------------
    # Orders
    # ----------------------------
    @app.post("/api/orders")
    async def orders_create(
        body: OrderIn,
        storage: Storage = Depends(get_storage),
        provider: ProviderAdapter = Depends(get_provider),
    ):
        order = await redeem(storage, provider, RedeemRequest(
            key_value=body.keyValue,
            service_id=body.serviceId,
            target_url=body.targetUrl,
            quantity=body.quantity,
        ))
        return {
            "success": True,
            "message": "Order completed successfully",
            "order": order.to_dict(),
        }

    @app.get("/api/orders")
    async def orders_list(
        status: Optional[str] = None,
        limit: int = 200,
        admin: Admin = Depends(require_admin),
        storage: Storage = Depends(get_storage),
    ):
        if status is not None and status not in ORDER_STATUSES:
            raise ValidationError(f"Unknown order status {status}")
        async with storage.transaction():
            orders = await storage.orders.list_all(status, _clamp(limit))
        return [o.to_dict() for o in orders]

    @app.get("/api/orders/search/{order_id}")
    async def orders_search(
        order_id: str,
        refresh: bool = False,
        storage: Storage = Depends(get_storage),
        provider: ProviderAdapter = Depends(get_provider),
    ):
        return await search_order(storage, provider, order_id.strip(),
                                  refresh=refresh)

    # ----------------------------
    # Audit log & aggregates
    # ----------------------------
    @app.get("/api/logs")
    async def logs_list(
        type: Optional[str] = None,
        limit: int = 200,
        admin: Admin = Depends(require_admin),
        storage: Storage = Depends(get_storage),
    ):
        async with storage.transaction():
            entries = await storage.logs.list(type=type, limit=_clamp(limit))
        return [e.to_dict() for e in entries]

    @app.get("/api/dashboard/stats")
    async def dashboard_stats(
        admin: Admin = Depends(require_admin),
        storage: Storage = Depends(get_storage),
    ):
        async with storage.transaction():
            keys = await storage.keys.stats()
            active = await storage.services.count_active()
            orders = await storage.orders.counts(since=start_of_day_ts())
        return {
            "totalKeys": keys["total"],
            "usedKeys": keys["used"],
            "activeServices": active,
            "dailyTransactions": orders["since"],
            "totalOrders": orders["total"],
            "completedOrders": orders["completed"],
            "failedOrders": orders["failed"],
        }

    return app
