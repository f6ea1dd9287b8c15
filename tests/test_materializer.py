"""Tests for the charge materializer saga."""

from datetime import date
from decimal import Decimal

import pytest

from core.billing.materializer import check_targets, load_import_targets, materialize_charge
from core.errors import ChargeMaterializationError, NotFound, UpstreamFailure, ValidationFailed
from core.models import UsageAggregate

from conftest import OWNER, STRANGER


def _aggregate(**overrides) -> UsageAggregate:
    values = dict(
        total_cost_cents=300,
        total_cost_dollars=Decimal("3.00"),
        total_quantity=Decimal("1500"),
        total_tokens=1500,
        valid_rows=2,
        first_date=date(2024, 1, 1),
        last_date=date(2024, 1, 2),
        metric_type="tokens",
        description="AI usage 2024-01-01 → 2024-01-02 (2 rows; 1,500 tokens)",
        warnings=[],
    )
    values.update(overrides)
    return UsageAggregate(**values)


class TestLoadImportTargets:
    def test_owned_targets(self, db, acme):
        project, period = load_import_targets(db, OWNER["id"], acme.project["id"], acme.period["id"])
        assert project["id"] == acme.project["id"]
        assert period["id"] == acme.period["id"]

    def test_project_of_someone_else(self, db, acme):
        with pytest.raises(NotFound) as exc_info:
            load_import_targets(db, STRANGER["id"], acme.project["id"], acme.period["id"])
        assert exc_info.value.detail == "Project not found."

    def test_unknown_period(self, db, acme):
        with pytest.raises(NotFound) as exc_info:
            load_import_targets(db, OWNER["id"], acme.project["id"], "period-missing")
        assert exc_info.value.detail == "Billing period not found."

    def test_datastore_error(self, db, acme):
        db.fail("projects", "select")
        with pytest.raises(UpstreamFailure):
            load_import_targets(db, OWNER["id"], acme.project["id"], acme.period["id"])


class TestCheckTargets:
    def test_project_without_client(self):
        with pytest.raises(ValidationFailed):
            check_targets({"id": "p1", "client_id": None}, {"id": "bp1", "project_id": "p1"})

    def test_period_of_other_client(self):
        with pytest.raises(ValidationFailed) as exc_info:
            check_targets({"id": "p1", "client_id": "c1"}, {"id": "bp1", "project_id": "p1", "client_id": "c2"})
        assert exc_info.value.detail == "Billing period does not belong to this client."

    def test_returns_client(self):
        assert check_targets({"id": "p1", "client_id": "c1"}, {"id": "bp1", "project_id": "p1"}) == "c1"


class TestMaterializeCharge:
    def test_writes_event_and_pending_item(self, db, acme):
        event, item = materialize_charge(
            db, user_id=OWNER["id"], project=acme.project, period=acme.period, aggregate=_aggregate()
        )

        assert event.quantity == 1
        assert event.unit_price_cents == 300
        assert event.event_date == date(2024, 1, 2)
        assert event.metadata["total_tokens"] == 1500
        assert event.metadata["date_start"] == "2024-01-01"

        assert item.source_type == "usage"
        assert item.source_ref_id == event.id
        assert item.status == "pending"
        assert item.unit_price_cents == 300
        assert item.client_id == acme.client["id"]
        assert item.metadata["usage_event_id"] == event.id

        assert len(db.rows("usage_events")) == 1
        assert len(db.rows("pending_invoice_items")) == 1

    def test_event_insert_failure_writes_nothing(self, db, acme):
        db.fail("usage_events", "insert")

        with pytest.raises(UpstreamFailure) as exc_info:
            materialize_charge(db, user_id=OWNER["id"], project=acme.project, period=acme.period,
                               aggregate=_aggregate())

        assert not isinstance(exc_info.value, ChargeMaterializationError)
        assert db.rows("usage_events") == []
        assert db.rows("pending_invoice_items") == []

    def test_pending_item_failure_deletes_usage_event(self, db, acme):
        db.fail("pending_invoice_items", "insert")

        with pytest.raises(ChargeMaterializationError) as exc_info:
            materialize_charge(db, user_id=OWNER["id"], project=acme.project, period=acme.period,
                               aggregate=_aggregate())

        assert exc_info.value.compensated is True
        assert exc_info.value.status_code == 500
        assert exc_info.value.detail == "Failed to import usage rows."
        assert db.rows("usage_events") == []
        assert ("usage_events", "delete") in db.calls

    def test_failed_compensation_is_reported(self, db, acme):
        db.fail("pending_invoice_items", "insert")
        db.fail("usage_events", "delete")

        with pytest.raises(ChargeMaterializationError) as exc_info:
            materialize_charge(db, user_id=OWNER["id"], project=acme.project, period=acme.period,
                               aggregate=_aggregate())

        assert exc_info.value.compensated is False
        assert exc_info.value.usage_event_id == db.rows("usage_events")[0]["id"]

    def test_mismatched_period_is_rejected_before_writing(self, db, acme):
        period = dict(acme.period, project_id="project-other")

        with pytest.raises(ValidationFailed):
            materialize_charge(db, user_id=OWNER["id"], project=acme.project, period=period,
                               aggregate=_aggregate())

        assert db.calls == []
