"""Hosted checkout through Stripe.

Only two calls are needed: create a checkout session for one line item and
retrieve a session to learn whether it was paid. Stripe errors are mapped to
service errors here so callers never see the ``stripe`` exception types.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict

import stripe

from .services.exceptions import BadRequest, UpstreamFailure

logger = logging.getLogger(__name__)


@dataclass
class StripeConfig:
    """Configuration for the Stripe gateway."""

    secret_key: str
    timeout: float = 10.0
    max_retries: int = 1


@dataclass
class CheckoutSession:
    """The parts of a gateway checkout session this service relies on."""

    id: str
    payment_status: str
    amount_total: int
    currency: str
    payer_email: str | None
    payment_intent: str | None
    metadata: Dict[str, str] = field(default_factory=dict)
    url: str | None = None

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"

    @property
    def transaction_id(self) -> str:
        # sessions settled without an intent (e.g. 100% coupons) fall back to the session id
        return self.payment_intent or self.id


def _plain(obj) -> dict:
    if obj is None:
        return {}
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def _session_from_stripe(session) -> CheckoutSession:
    details = getattr(session, "customer_details", None)
    email = getattr(details, "email", None) if details else None
    intent = getattr(session, "payment_intent", None)
    if intent is not None and not isinstance(intent, str):
        intent = getattr(intent, "id", None)
    return CheckoutSession(
        id=session.id,
        payment_status=getattr(session, "payment_status", None) or "unpaid",
        amount_total=getattr(session, "amount_total", None) or 0,
        currency=getattr(session, "currency", None) or "",
        payer_email=email or getattr(session, "customer_email", None),
        payment_intent=intent,
        metadata={k: str(v) for k, v in _plain(getattr(session, "metadata", None)).items()},
        url=getattr(session, "url", None),
    )


class StripeGateway:
    """Payment gateway client backed by Stripe Checkout."""

    def __init__(self, config: StripeConfig):
        self._config = config
        # bounded network timeout for every call made through the library
        stripe.default_http_client = stripe.RequestsClient(timeout=config.timeout)
        stripe.max_network_retries = config.max_retries

    def create_session(
        self,
        *,
        amount: int,
        currency: str,
        description: str,
        customer_email: str,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        try:
            session = stripe.checkout.Session.create(
                api_key=self._config.secret_key,
                payment_method_types=["card"],
                customer_email=customer_email,
                line_items=[
                    {
                        "price_data": {
                            "currency": currency,
                            "unit_amount": amount,
                            "product_data": {"name": description},
                        },
                        "quantity": 1,
                    }
                ],
                mode="payment",
                metadata=metadata,
                success_url=success_url,
                cancel_url=cancel_url,
            )
        except stripe.InvalidRequestError as e:
            logger.error("Stripe rejected checkout session for %s: %s", customer_email, e)
            raise BadRequest("Payment gateway rejected the checkout request")
        except stripe.StripeError as e:
            logger.error("Stripe error creating checkout session: %s", e)
            raise UpstreamFailure("Payment gateway unavailable, please retry")
        return _session_from_stripe(session)

    def retrieve_session(self, session_id: str) -> CheckoutSession:
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self._config.secret_key)
        except stripe.InvalidRequestError as e:
            logger.warning("Unknown checkout session %s: %s", session_id, e)
            raise BadRequest("Invalid session_id")
        except stripe.StripeError as e:
            logger.error("Stripe error retrieving session %s: %s", session_id, e)
            raise UpstreamFailure("Payment gateway unavailable, please retry")
        return _session_from_stripe(session)
