"""
Charge materializer.

Persists a UsageAggregate as an immutable usage event plus a pending invoice
item that references it. The two inserts are not transactional; they run as a
two-step saga whose only compensation is deleting the usage event again:

    1. insert usage_events            (failure: nothing written)
    2. insert pending_invoice_items   (failure: delete step 1, raise)

Repeated imports of the same file are not deduplicated here.
"""
from datetime import date
from typing import Tuple

from core.database import DATASTORE_ERRORS, first_row
from core.errors import (
    ValidationFailed, NotFound, UpstreamFailure, ChargeMaterializationError
)
from core.models.billing import UsageAggregate, UsageEvent, PendingInvoiceItem

LOG_TAG = "[import-usage]"


def load_import_targets(db, user_id: str, project_id: str, billing_period_id: str) -> Tuple[dict, dict]:
    """
    Load the project and billing period an import is attached to.
    Both must be owned by the importing user.
    """
    try:
        project_result = db.table("projects").select("id, name, client_id").eq(
            "id", project_id
        ).eq("created_by", user_id).limit(1).execute()
    except DATASTORE_ERRORS as e:
        print(f"{LOG_TAG} project lookup failed project={project_id} error={e}")
        raise UpstreamFailure("Unable to load project.") from e

    project = first_row(project_result)
    if not project:
        raise NotFound("Project not found.")

    try:
        period_result = db.table("billing_periods").select("id, project_id, client_id").eq(
            "id", billing_period_id
        ).eq("project_id", project_id).eq("created_by", user_id).limit(1).execute()
    except DATASTORE_ERRORS as e:
        print(f"{LOG_TAG} billing period lookup failed period={billing_period_id} error={e}")
        raise UpstreamFailure("Unable to load billing period.") from e

    period = first_row(period_result)
    if not period:
        raise NotFound("Billing period not found.")

    return project, period


def check_targets(project: dict, period: dict) -> str:
    """Referential checks. Returns the client id the charge belongs to."""
    client_id = project.get("client_id")
    if not client_id:
        raise ValidationFailed("Project must be linked to a client.")
    if period.get("project_id") and period["project_id"] != project["id"]:
        raise ValidationFailed("Billing period does not belong to this project.")
    if period.get("client_id") and period["client_id"] != client_id:
        raise ValidationFailed("Billing period does not belong to this client.")
    return client_id


def build_usage_event_row(user_id: str, project: dict, period: dict, aggregate: UsageAggregate) -> dict:
    start = aggregate.first_date.isoformat() if aggregate.first_date else None
    end = aggregate.last_date.isoformat() if aggregate.last_date else None
    return {
        "project_id": project["id"],
        "billing_period_id": period["id"],
        "event_date": end or date.today().isoformat(),
        "metric_type": aggregate.metric_type,
        "quantity": 1,
        "unit_price_cents": aggregate.total_cost_cents,
        "description": aggregate.description,
        "metadata": {
            "total_rows": aggregate.valid_rows,
            "total_tokens": aggregate.total_tokens,
            "sum_cost_cents": aggregate.total_cost_cents,
            "date_start": start,
            "date_end": end,
            "warnings": aggregate.warnings,
        },
        "created_by": user_id,
    }


def build_pending_item_row(user_id: str, client_id: str, event: dict, aggregate: UsageAggregate) -> dict:
    return {
        "created_by": user_id,
        "client_id": client_id,
        "project_id": event["project_id"],
        "source_type": "usage",
        "source_ref_id": event["id"],
        "description": aggregate.description,
        "quantity": 1,
        "unit_price_cents": aggregate.total_cost_cents,
        "status": "pending",
        "metadata": {
            "usage_event_id": event["id"],
            "billing_period_id": event["billing_period_id"],
            "metric_type": aggregate.metric_type,
            "total_tokens": aggregate.total_tokens,
            "total_rows": aggregate.valid_rows,
        },
    }


def _compensate(db, event_id: str, user_id: str) -> bool:
    """Delete the usage event written in step 1. Not retried."""
    try:
        db.table("usage_events").delete().eq("id", event_id).eq("created_by", user_id).execute()
        return True
    except DATASTORE_ERRORS as e:
        print(f"{LOG_TAG} compensating delete failed usage_event={event_id} error={e}")
        return False


def materialize_charge(
    db,
    *,
    user_id: str,
    project: dict,
    period: dict,
    aggregate: UsageAggregate,
) -> Tuple[UsageEvent, PendingInvoiceItem]:
    """
    Write the usage event and its pending invoice item.

    Raises:
        ValidationFailed: project/period do not belong together
        UpstreamFailure: the usage event could not be written
        ChargeMaterializationError: the pending item could not be written;
            the usage event was deleted again unless `compensated` is False
    """
    client_id = check_targets(project, period)

    event_row = build_usage_event_row(user_id, project, period, aggregate)
    try:
        event_result = db.table("usage_events").insert(event_row).execute()
    except DATASTORE_ERRORS as e:
        print(f"{LOG_TAG} usage event insert failed project={project['id']} period={period['id']} error={e}")
        raise UpstreamFailure("Failed to import usage rows.") from e

    event = first_row(event_result)
    if not event:
        print(f"{LOG_TAG} usage event insert returned no row project={project['id']} period={period['id']}")
        raise UpstreamFailure("Failed to import usage rows.")

    item_row = build_pending_item_row(user_id, client_id, event, aggregate)
    try:
        item_result = db.table("pending_invoice_items").insert(item_row).execute()
        item = first_row(item_result)
        if not item:
            raise UpstreamFailure("Pending item insert returned no row.")
    except (UpstreamFailure, *DATASTORE_ERRORS) as e:
        print(f"{LOG_TAG} pending item insert failed usage_event={event['id']} project={project['id']} error={e}")
        compensated = _compensate(db, event["id"], user_id)
        if compensated:
            print(f"{LOG_TAG} rolled back usage_event={event['id']}")
        raise ChargeMaterializationError(event["id"], compensated) from e

    print(
        f"{LOG_TAG} imported usage_event={event['id']} pending_item={item['id']} "
        f"rows={aggregate.valid_rows} cost_cents={aggregate.total_cost_cents}"
    )
    return UsageEvent(**event), PendingInvoiceItem(**item)
