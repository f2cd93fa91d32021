"""Wiring of the service graph"""
from dataclasses import dataclass
from typing import Optional

from keyhub.core.cache.rate_limiter import RateLimiter
from keyhub.core.config import Settings, settings as default_settings
from keyhub.core.credentials import generate_uid
from keyhub.core.locks import KeyLockRegistry
from keyhub.core.security import TokenCodec
from keyhub.db.gateway import PersistenceGateway
from keyhub.db.session import Database
from keyhub.models.domain import ApiKey, KeyType
from keyhub.services.access import KeyAccessPolicy
from keyhub.services.admin import AdminService
from keyhub.services.audit import AuditService
from keyhub.services.gatekeeper import RequestGatekeeper
from keyhub.services.lifecycle import SubscriptionLifecycleEngine
from keyhub.services.maintenance import MaintenanceService
from keyhub.services.sessions import SessionManager
from keyhub.utils.clock import Clock, utcnow
from keyhub.utils.logger import logger


@dataclass
class Services:
    """Everything a request handler may need, owned by the application"""
    database: Database
    gateway: PersistenceGateway
    locks: KeyLockRegistry
    rate_limiter: RateLimiter
    codec: TokenCodec
    audit: AuditService
    lifecycle: SubscriptionLifecycleEngine
    access: KeyAccessPolicy
    sessions: SessionManager
    gatekeeper: RequestGatekeeper
    admin: AdminService
    maintenance: MaintenanceService
    settings: Settings
    clock: Clock = utcnow


def build_services(
    database: Database,
    clock: Clock = utcnow,
    config: Optional[Settings] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> Services:
    config = config or default_settings

    gateway = PersistenceGateway(database, clock=clock)
    locks = KeyLockRegistry(timeout=config.LOCK_TIMEOUT_SECONDS)
    rate_limiter = rate_limiter or RateLimiter()
    codec = TokenCodec(config.JWT_SECRET_KEY, config.JWT_ALGORITHM, clock=clock)
    audit = AuditService(gateway, clock=clock)
    lifecycle = SubscriptionLifecycleEngine(
        gateway,
        locks,
        audit,
        clock=clock,
        expiring_days=config.EXPIRING_THRESHOLD_DAYS,
        auto_renew_days=config.AUTO_RENEW_DAYS,
        auto_renew_window_hours=config.AUTO_RENEW_WINDOW_HOURS,
    )
    access = KeyAccessPolicy(gateway, lifecycle)
    sessions = SessionManager(
        gateway,
        codec,
        locks,
        access,
        audit,
        clock=clock,
        access_ttl=config.ACCESS_TOKEN_EXPIRE_SECONDS,
        refresh_ttl=config.REFRESH_TOKEN_EXPIRE_SECONDS,
    )

    return Services(
        database=database,
        gateway=gateway,
        locks=locks,
        rate_limiter=rate_limiter,
        codec=codec,
        audit=audit,
        lifecycle=lifecycle,
        access=access,
        sessions=sessions,
        gatekeeper=RequestGatekeeper(sessions, gateway, access),
        admin=AdminService(gateway, lifecycle, sessions, locks, audit, clock=clock),
        maintenance=MaintenanceService(gateway, lifecycle, rate_limiter, clock=clock),
        settings=config,
        clock=clock,
    )


async def ensure_bootstrap_admin(services: Services, key_value: Optional[str]) -> Optional[ApiKey]:
    """Create an admin key with the given value on first boot, if none has it yet"""
    if not key_value:
        return None
    existing = await services.gateway.get_api_key_by_credential(key_value)
    if existing is not None:
        return existing

    api_key = await services.gateway.put_api_key(generate_uid(), {
        "key_value": key_value,
        "name": "Bootstrap Admin",
        "type": KeyType.ADMIN,
        "is_active": True,
    })
    logger.info(f"Bootstrap admin key created ({api_key.uid})")
    await services.audit.log_action("create_api_key", api_key.uid, {
        "name": api_key.name,
        "type": api_key.type,
        "bootstrap": True,
    })
    return api_key
