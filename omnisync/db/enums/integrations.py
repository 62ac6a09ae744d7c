"""Integration enums."""

from enum import Enum

from omnisync.db.enums.sync import SyncService


class Provider(str, Enum):
    """External providers a credential can belong to."""

    MAIL = "mail"
    CALENDAR = "calendar"


class CredentialStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


SERVICE_PROVIDER: dict[SyncService, Provider] = {
    SyncService.GMAIL: Provider.MAIL,
    SyncService.CALENDAR: Provider.CALENDAR,
}
PROVIDER_SERVICE: dict[Provider, SyncService] = {
    provider: service for service, provider in SERVICE_PROVIDER.items()
}
