"""Route tests for the client portal, public share links and feature flags."""

import pytest

from core.models import PaymentRecord

from conftest import FUTURE, MEMBER, OWNER, PAST, STRANGER, auth_header


@pytest.fixture
def invoices(db, acme):
    """An open invoice with a live share link, a paid one, and an unrelated client's invoice."""
    open_invoice = db.seed(
        "invoices", id="inv-open", client_id=acme.client["id"], project_id=acme.project["id"],
        invoice_number="INV-0002", status="open", total_cents=10250, subtotal_cents=10250, tax_cents=0,
        net_amount_cents=0, public_share_id="share-open", public_share_expires_at=FUTURE,
        stripe_invoice_id="in_open", stripe_pdf_url="https://pay.example/inv-open.pdf",
        portal_payload={"aiNotes": "Quiet month"}, created_at="2024-02-01T00:00:00+00:00",
    )
    paid_invoice = db.seed(
        "invoices", id="inv-paid", client_id=acme.client["id"], invoice_number="INV-0001", status="paid",
        total_cents=5000, net_amount_cents=5000, public_share_id="share-paid", public_share_expires_at=PAST,
        created_at="2024-01-01T00:00:00+00:00",
    )
    db.seed("clients", id="client-other", name="Other", created_by=STRANGER["id"])
    db.seed("invoices", id="inv-other", client_id="client-other", status="open", total_cents=1,
            public_share_id="share-other", public_share_expires_at=FUTURE)
    db.seed("invoice_line_items", invoice_id="inv-open", description="AI usage", quantity=1,
            unit_price_cents=5250, amount_cents=5250, line_type="usage", sort_order=0)
    db.seed("invoice_line_items", invoice_id="inv-open", description="Support", quantity=2,
            unit_price_cents=2500, amount_cents=5000, line_type="project", sort_order=100)
    return open_invoice, paid_invoice


# ── Memberships ───────────────────────────────────────────────


class TestMemberships:
    def test_lists_clients(self, client, acme):
        response = client.get("/api/client-portal/memberships", headers=auth_header(MEMBER))

        assert response.status_code == 200
        assert response.json() == {"clients": [{
            "id": acme.client["id"],
            "name": "Acme",
            "companyName": "Acme Corp",
            "role": "viewer",
            "portalEnabled": True,
        }]}

    def test_requires_authentication(self, client, acme):
        response = client.get("/api/client-portal/memberships")

        assert response.status_code == 401
        assert response.json()["detail"] == "Unauthorized"


# ── Invoices ──────────────────────────────────────────────────


class TestInvoiceList:
    def test_member_lists_newest_first(self, client, acme, invoices):
        response = client.get("/api/client-portal/invoices", params={"clientId": acme.client["id"]},
                              headers=auth_header(MEMBER))

        assert response.status_code == 200
        listed = response.json()["invoices"]
        assert [invoice["id"] for invoice in listed] == ["inv-open", "inv-paid"]
        assert listed[0]["amountDueCents"] == 10250
        assert listed[1]["amountDueCents"] == 0

    def test_status_filter_and_limit(self, client, acme, invoices):
        response = client.get(
            "/api/client-portal/invoices",
            params={"clientId": acme.client["id"], "status": "paid,void", "limit": 500},
            headers=auth_header(OWNER),
        )
        assert [invoice["id"] for invoice in response.json()["invoices"]] == ["inv-paid"]

    def test_share_link_lists_the_linked_client(self, client, acme, invoices):
        response = client.get("/api/client-portal/invoices", params={"shareId": "share-open"})

        assert response.status_code == 200
        assert {invoice["id"] for invoice in response.json()["invoices"]} == {"inv-open", "inv-paid"}

    def test_expired_share_link(self, client, acme, invoices):
        response = client.get("/api/client-portal/invoices", params={"shareId": "share-paid"},
                              headers=auth_header(OWNER))

        assert response.status_code == 404
        assert response.json()["detail"] == "The provided share link is invalid or expired."

    def test_stranger_is_forbidden(self, client, db, acme, invoices):
        response = client.get("/api/client-portal/invoices", params={"clientId": acme.client["id"]},
                              headers=auth_header(STRANGER))

        assert response.status_code == 403
        assert ("invoices", "select") not in db.calls

    def test_anonymous_without_client_or_share(self, client, db, acme, invoices):
        response = client.get("/api/client-portal/invoices")

        assert response.status_code == 401
        assert db.calls == []

    def test_portal_disabled_for_creator(self, client, acme, invoices):
        acme.client["client_portal_enabled"] = False
        response = client.get("/api/client-portal/invoices", params={"clientId": acme.client["id"]},
                              headers=auth_header(OWNER))

        assert response.status_code == 403
        assert response.json()["detail"] == "Client portal access is disabled for this client."


class TestInvoiceDetail:
    def test_detail_with_payments(self, client_with_mirror, mirror, acme, invoices):
        mirror.list_payments.return_value = [
            PaymentRecord(id="ch_1", amount_cents=10250, status="succeeded", method="VISA •••• 4242"),
        ]
        response = client_with_mirror.get("/api/client-portal/invoices/inv-open", headers=auth_header(MEMBER))

        assert response.status_code == 200
        body = response.json()
        assert [line["description"] for line in body["lineItems"]] == ["AI usage", "Support"]
        assert body["lineItems"][1]["totalCents"] == 5000
        assert body["payments"][0]["method"] == "VISA •••• 4242"
        assert body["projectName"] == "Acme Assistant"
        mirror.list_payments.assert_called_once_with("in_open")

    def test_without_stripe(self, client, acme, invoices):
        response = client.get("/api/client-portal/invoices/inv-open", headers=auth_header(OWNER))

        assert response.status_code == 200
        assert response.json()["payments"] == []

    def test_share_link_cannot_open_other_clients_invoice(self, client, acme, invoices):
        response = client.get("/api/client-portal/invoices/inv-other", params={"shareId": "share-open"})
        assert response.status_code == 403

    def test_anonymous_without_share(self, client, db, acme, invoices):
        response = client.get("/api/client-portal/invoices/inv-open")

        assert response.status_code == 401
        assert db.calls == []

    def test_unknown_invoice(self, client, acme):
        response = client.get("/api/client-portal/invoices/inv-missing", headers=auth_header(OWNER))
        assert response.status_code == 404


# ── Usage ─────────────────────────────────────────────────────


class TestUsage:
    def test_breakdown(self, client, db, acme):
        for cents, day in ((100, "2024-01-01"), (200, "2024-01-02")):
            db.seed("usage_events", project_id=acme.project["id"], event_date=day, metric_type="tokens",
                    quantity=1, unit_price_cents=cents)

        response = client.get(
            "/api/client-portal/usage",
            params={"clientId": acme.client["id"], "startDate": "2024-01-01", "endDate": "2024-01-31"},
            headers=auth_header(MEMBER),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["breakdown"] == [
            {"metricType": "tokens", "totalQuantity": 2.0, "rawCostCents": 300, "events": 2},
        ]
        assert body["summary"] == {"totalCostCents": 300, "totalQuantity": 2.0, "totalEvents": 2}
        assert [point["date"] for point in body["timeseries"]] == ["2024-01-01", "2024-01-02"]

    def test_range_excludes_outside_events(self, client, db, acme):
        db.seed("usage_events", project_id=acme.project["id"], event_date="2023-12-31", metric_type="tokens",
                quantity=1, unit_price_cents=999)
        response = client.get(
            "/api/client-portal/usage",
            params={"clientId": acme.client["id"], "startDate": "2024-01-01", "endDate": "2024-01-31"},
            headers=auth_header(OWNER),
        )
        assert response.json()["summary"]["totalEvents"] == 0

    def test_imported_usage_matches_import_total(self, client, db, acme):
        csv_text = "\n".join([
            "client_name,date,metric_type,quantity,unit_price,description",
            "Acme,2024-01-01,tokens,333,0.001,AI usage",
            "Acme,2024-01-02,tokens,333,0.001,AI usage",
            "Acme,2024-01-03,tokens,334,0.001,AI usage",
        ])
        imported = client.post(
            "/api/billing/import-usage",
            data={"projectId": acme.project["id"], "billingPeriodId": acme.period["id"]},
            files={"file": ("usage.csv", csv_text.encode(), "text/csv")},
            headers=auth_header(OWNER),
        ).json()

        report = client.get(
            "/api/client-portal/usage",
            params={"clientId": acme.client["id"], "startDate": "2024-01-01", "endDate": "2024-01-31"},
            headers=auth_header(OWNER),
        ).json()

        assert imported["totals"]["cost_cents"] == 100
        assert report["summary"]["totalCostCents"] == 100

    def test_invalid_range(self, client, acme):
        response = client.get(
            "/api/client-portal/usage",
            params={"clientId": acme.client["id"], "startDate": "2024-02-01", "endDate": "2024-01-01"},
            headers=auth_header(OWNER),
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid date range."

    def test_client_without_projects(self, client, db):
        db.seed("clients", id="client-empty", name="Empty", created_by=OWNER["id"])
        response = client.get("/api/client-portal/usage", params={"clientId": "client-empty"},
                              headers=auth_header(OWNER))

        assert response.status_code == 200
        assert response.json()["events"] == []


# ── Statements ────────────────────────────────────────────────


class TestStatements:
    def test_pdf_redirect(self, client, acme, invoices):
        response = client.get(
            "/api/client-portal/statements/inv-open/download",
            params={"type": "pdf"},
            headers=auth_header(MEMBER),
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"] == "https://pay.example/inv-open.pdf"

    def test_pdf_url_as_json(self, client, acme, invoices):
        headers = {**auth_header(MEMBER), "X-Client-Portal-Download": "1"}
        response = client.get("/api/client-portal/statements/inv-open/download", headers=headers)

        assert response.json() == {"url": "https://pay.example/inv-open.pdf"}

    def test_pdf_missing(self, client, acme, invoices):
        response = client.get("/api/client-portal/statements/inv-paid/download", headers=auth_header(OWNER))

        assert response.status_code == 404
        assert response.json()["detail"] == "PDF not available for this invoice."

    def test_csv_attachment(self, client, acme, invoices):
        response = client.get(
            "/api/client-portal/statements/inv-open/download",
            params={"type": "csv", "shareId": "share-open"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert response.headers["content-disposition"] == 'attachment; filename="invoice-INV-0002.csv"'
        assert response.text.startswith('"Invoice Number","INV-0002"')

    def test_unsupported_type(self, client, acme, invoices):
        response = client.get("/api/client-portal/statements/inv-open/download", params={"type": "xlsx"},
                              headers=auth_header(OWNER))
        assert response.status_code == 400


# ── Public share links ────────────────────────────────────────


class TestPublicInvoice:
    def test_view(self, client, acme, invoices):
        response = client.get("/api/public-invoices/share-open")

        assert response.status_code == 200
        body = response.json()
        assert body["clientName"] == "Acme"
        assert body["amountDueCents"] == 10250
        assert body["portalPayload"] == {"aiNotes": "Quiet month"}
        assert [line["totalCents"] for line in body["lineItems"]] == [5250, 5000]

    def test_expired(self, client, acme, invoices):
        response = client.get("/api/public-invoices/share-paid")
        assert response.status_code == 404

    def test_portal_disabled(self, client, acme, invoices):
        acme.client["client_portal_enabled"] = False
        response = client.get("/api/public-invoices/share-open")
        assert response.status_code == 403


# ── Feature flags ─────────────────────────────────────────────


class TestFeatures:
    def test_defaults(self, client):
        response = client.get("/api/me/features", headers=auth_header(MEMBER))
        assert response.json() == {"features": ["billing"], "privileged": False}

    def test_stored_features_are_merged(self, client, db):
        db.seed("profile_settings", user_id=MEMBER["id"], features=["tasks", "bogus", "billing"])
        response = client.get("/api/me/features", headers=auth_header(MEMBER))
        assert response.json()["features"] == ["billing", "tasks"]

    def test_privileged_operator_gets_everything(self, client, monkeypatch):
        monkeypatch.setattr("core.auth.settings.super_admin_emails", "Owner@Example.com, ops@example.com")
        response = client.get("/api/me/features", headers=auth_header(OWNER))

        assert response.json() == {
            "features": ["billing", "dashboard", "tasks", "ai_summary", "admin"],
            "privileged": True,
        }

    def test_datastore_error_falls_back_to_defaults(self, client, db):
        db.fail("profile_settings", "select")
        response = client.get("/api/me/features", headers=auth_header(MEMBER))
        assert response.json()["features"] == ["billing"]
