"""
Stripe invoice mirror.

Stripe holds a copy of each invoice. Creating a draft, syncing its customer and
adding a line item must succeed in Stripe before anything is written locally.
Deleting a draft and reading payment history are best effort and only logged
when they fail.
"""
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional

import stripe

from config import settings
from core.errors import UpstreamFailure
from core.models.portal import PaymentRecord

LOG_TAG = "[stripe-mirror]"


def _field(obj, name: str):
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _object_id(value) -> Optional[str]:
    """Expandable Stripe fields are either an id string or the object."""
    if value is None or isinstance(value, str):
        return value
    return _field(value, "id")


def describe_payment_method(charge) -> Optional[str]:
    details = _field(charge, "payment_method_details")
    card = _field(details, "card")
    brand = _field(card, "brand")
    last4 = _field(card, "last4")
    if brand and last4:
        return f"{brand.upper()} •••• {last4}"
    return _field(details, "type")


def charge_to_payment(charge) -> PaymentRecord:
    created = _field(charge, "created")
    amount = _field(charge, "amount_captured")
    if amount is None:
        amount = _field(charge, "amount") or 0
    return PaymentRecord(
        id=_field(charge, "id"),
        amount_cents=int(amount),
        status=_field(charge, "status") or "unknown",
        processed_at=datetime.fromtimestamp(created, tz=timezone.utc).isoformat() if created else None,
        method=describe_payment_method(charge),
        receipt_url=_field(charge, "receipt_url"),
    )


class PaymentMirror:
    """Thin wrapper around the stripe SDK. Replaced by a mock in tests."""

    def __init__(self, secret_key: str, api_version: str):
        self._options = {"api_key": secret_key, "stripe_version": api_version}

    def ensure_customer(
        self,
        customer_id: Optional[str],
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """
        Update the stored customer, or create one when there is none or Stripe
        no longer knows it (an id from the other Stripe mode). Returns the id.
        """
        params = {
            "name": name,
            "email": email,
            "metadata": {k: str(v) for k, v in (metadata or {}).items()},
        }
        params = {key: value for key, value in params.items() if value}
        try:
            if customer_id:
                try:
                    return stripe.Customer.modify(customer_id, **params, **self._options).id
                except stripe.InvalidRequestError as e:
                    if e.code != "resource_missing":
                        raise
                    print(f"{LOG_TAG} customer missing, creating a new one customer={customer_id}")
            return stripe.Customer.create(**params, **self._options).id
        except stripe.StripeError as e:
            print(f"{LOG_TAG} customer sync failed customer={customer_id} error={e}")
            raise UpstreamFailure("Unable to sync Stripe customer for this client.") from e

    def create_draft_invoice(
        self,
        customer_id: str,
        *,
        description: str,
        collection_method: str = "charge_automatically",
        due_date: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """Create an empty Stripe draft that is not finalized automatically. Returns its id."""
        params = {
            "customer": customer_id,
            "auto_advance": False,
            "collection_method": collection_method,
            "description": description,
            "pending_invoice_items_behavior": "exclude",
            "metadata": {k: str(v) for k, v in (metadata or {}).items()},
        }
        if due_date is not None:
            params["due_date"] = due_date
        try:
            return stripe.Invoice.create(**params, **self._options).id
        except stripe.StripeError as e:
            print(f"{LOG_TAG} draft create failed customer={customer_id} error={e}")
            raise UpstreamFailure("Unable to create the Stripe invoice.") from e

    def add_line_item(
        self,
        customer_id: str,
        invoice_id: str,
        description: str,
        unit_amount_cents: int,
        quantity: int = 1,
        metadata: Optional[Dict[str, str]] = None,
    ):
        """Create an invoice item on a draft Stripe invoice. Raises on failure."""
        try:
            return stripe.InvoiceItem.create(
                customer=customer_id,
                invoice=invoice_id,
                description=description,
                quantity=quantity,
                unit_amount=int(unit_amount_cents),
                currency="usd",
                # Stripe metadata values must be strings
                metadata={k: str(v) for k, v in (metadata or {}).items()},
                **self._options,
            )
        except stripe.StripeError as e:
            print(f"{LOG_TAG} add line item failed stripe_invoice={invoice_id} error={e}")
            raise UpstreamFailure("Unable to add line item to the invoice.") from e

    def delete_draft_invoice(self, invoice_id: str) -> bool:
        """Delete a Stripe draft. Stripe refuses finalized invoices; that is logged, not raised."""
        try:
            stripe.Invoice.delete(invoice_id, **self._options)
            return True
        except stripe.StripeError as e:
            print(f"{LOG_TAG} draft delete failed stripe_invoice={invoice_id} error={e}")
            return False

    def list_charges(self, invoice_id: str) -> List[Any]:
        invoice = stripe.Invoice.retrieve(invoice_id, **self._options)
        payment_intent_id = _object_id(_field(invoice, "payment_intent"))
        if payment_intent_id:
            return list(stripe.Charge.list(payment_intent=payment_intent_id, **self._options).data)
        charge_id = _object_id(_field(invoice, "charge"))
        if charge_id:
            return [stripe.Charge.retrieve(charge_id, **self._options)]
        return []

    def list_payments(self, invoice_id: str) -> List[PaymentRecord]:
        """Payment history for an invoice. Empty when Stripe cannot be reached."""
        try:
            charges = self.list_charges(invoice_id)
        except stripe.StripeError as e:
            print(f"{LOG_TAG} unable to load payment history stripe_invoice={invoice_id} error={e}")
            return []
        return [charge_to_payment(charge) for charge in charges]


@lru_cache()
def _cached_mirror(secret_key: str, api_version: str) -> PaymentMirror:
    return PaymentMirror(secret_key, api_version)


def get_payment_mirror() -> Optional[PaymentMirror]:
    """The configured mirror, or None when Stripe is not configured."""
    if not settings.stripe_secret_key:
        return None
    return _cached_mirror(settings.stripe_secret_key, settings.stripe_api_version)
