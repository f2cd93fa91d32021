"""Key usability rules shared by login, refresh and every protected route"""
from typing import Optional, Tuple

from keyhub.db.gateway import PersistenceGateway
from keyhub.models.domain import ApiKey, Subscription, SubscriptionView
from keyhub.services.lifecycle import SubscriptionLifecycleEngine
from keyhub.utils.exceptions import InactiveKey, SubscriptionExpired, WrongKeyType
from keyhub.utils.logger import logger


class KeyAccessPolicy:
    """
    Decides whether a resolved key may operate right now.

    Order: active flag, role, then the subscription (expired inline
    before it is evaluated so the stored status follows the check).
    """

    def __init__(self, gateway: PersistenceGateway, lifecycle: SubscriptionLifecycleEngine):
        self.gateway = gateway
        self.lifecycle = lifecycle

    async def check(
        self, api_key: ApiKey, require_admin: bool = True
    ) -> Tuple[Optional[Subscription], SubscriptionView]:
        if not api_key.is_active:
            raise InactiveKey()
        if require_admin and not api_key.is_admin:
            raise WrongKeyType()

        subscription = await self.gateway.get_subscription(api_key.uid)
        if subscription is not None and subscription.enabled:
            subscription = await self.lifecycle.check_and_expire(subscription)

        view = self.lifecycle.evaluate(subscription)
        if not view.is_valid:
            logger.warning(f"Key {api_key.uid} rejected: subscription {view.state.value}")
            raise SubscriptionExpired()
        return subscription, view
