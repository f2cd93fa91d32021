"""Maintenance endpoint for external schedulers"""
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header

from keyhub.api.dependencies import get_services
from keyhub.core.credentials import extract_bearer_token
from keyhub.models.schemas import MaintenanceResponse
from keyhub.services.container import Services
from keyhub.utils.exceptions import AuthError
from keyhub.utils.logger import logger

router = APIRouter(prefix="/cron", tags=["Maintenance"])


def verify_cron_secret(
    authorization: Optional[str] = Header(None),
    services: Services = Depends(get_services),
) -> None:
    """Require ``Bearer {CRON_SECRET}`` when a secret is configured"""
    expected = services.settings.CRON_SECRET
    if not expected:
        return
    presented = extract_bearer_token(authorization) or ""
    if not secrets.compare_digest(presented, expected):
        logger.warning("Maintenance trigger rejected: bad cron secret")
        raise AuthError()


@router.post(
    "/maintenance",
    response_model=MaintenanceResponse,
    summary="Run Maintenance",
    dependencies=[Depends(verify_cron_secret)],
)
async def run_maintenance(services: Services = Depends(get_services)):
    """
    Run the maintenance sweep once.

    Expires overdue subscriptions, auto-renews those ending within 24 hours,
    purges lapsed revocation entries and prunes rate limit counters.
    """
    report = await services.maintenance.run_maintenance_sweep()
    return MaintenanceResponse(report=report)
