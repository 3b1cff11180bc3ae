from typing import Any, Dict

import stripe
from flask import current_app
from stripe import StripeClient

from billing_sync.errors import UpstreamLookupFailure
from .events import as_dict


class StripeGateway:
    """
    Provider reads. Transport retries with exponential backoff are done by the
    SDK (``max_network_retries``); callers see a single UpstreamLookupFailure.
    """

    def __init__(self, api_key=None, max_network_retries=None):
        self._api_key = api_key
        self._max_network_retries = max_network_retries
        self._client = None

    def _get_client(self) -> StripeClient:
        if self._client is None:
            key = self._api_key or current_app.config.get("STRIPE_SECRET_KEY")
            if not key:
                raise UpstreamLookupFailure("STRIPE_SECRET_KEY is not configured")
            retries = self._max_network_retries
            if retries is None:
                retries = current_app.config.get("STRIPE_MAX_NETWORK_RETRIES", 3)
            self._client = StripeClient(key, max_network_retries=int(retries))
        return self._client

    def retrieve_subscription(self, stripe_subscription_id: str) -> Dict[str, Any]:
        if not stripe_subscription_id:
            raise UpstreamLookupFailure("No subscription id to retrieve")
        client = self._get_client()
        try:
            sub_obj = client.subscriptions.retrieve(stripe_subscription_id)
        except stripe.StripeError as exc:
            current_app.logger.warning(
                "Stripe subscription lookup failed for %s: %s", stripe_subscription_id, exc
            )
            raise UpstreamLookupFailure(
                f"Could not retrieve subscription {stripe_subscription_id}: {exc}",
                stripe_subscription_id=stripe_subscription_id,
            ) from exc
        return as_dict(sub_obj)
