from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from .auth import AccountService, Authenticator, Principal, StoreAuthenticator
from .db import Store
from .dispatcher import CommandDispatcher
from .location import GeofenceHook, LocationIngest
from .registry import DeviceRegistry
from .settings import Settings
from .ws_manager import ConnectionManager


@dataclass
class Services:
    settings: Settings
    store: Store
    bus: ConnectionManager
    authenticator: Authenticator
    accounts: AccountService
    registry: DeviceRegistry
    dispatcher: CommandDispatcher
    ingest: LocationIngest

    @property
    def presence_window(self) -> timedelta:
        return timedelta(seconds=self.settings.presence_window_seconds)


def build_services(
    settings: Settings,
    store: Store,
    bus: Optional[ConnectionManager] = None,
    authenticator: Optional[Authenticator] = None,
    geofence_hook: Optional[GeofenceHook] = None,
) -> Services:
    bus = bus or ConnectionManager()
    registry = DeviceRegistry(store, bus)
    return Services(
        settings=settings,
        store=store,
        bus=bus,
        authenticator=authenticator or StoreAuthenticator(store),
        accounts=AccountService(store, timedelta(hours=settings.token_ttl_hours)),
        registry=registry,
        dispatcher=CommandDispatcher(store, registry, bus),
        ingest=LocationIngest(store, registry, bus, geofence_hook),
    )


api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
bearer_scheme = HTTPBearer(auto_error=False)


def get_services(request: Request) -> Services:
    return request.app.state.services


def current_principal(
    services: Services = Depends(get_services),
    api_key: Optional[str] = Depends(api_key_header),
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Principal:
    token = creds.credentials if creds is not None and creds.scheme.lower() == "bearer" else None
    return services.authenticator.authenticate(api_key=api_key, bearer=token)
