"""
API tests for /delivery-receipts.
"""

from datetime import datetime, timedelta, timezone

import pytest

from mini_crm.services import delivery_receipt_service

T0 = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)


def at(minutes: int) -> str:
    return (T0 + timedelta(minutes=minutes)).isoformat()


def receipt(vendor_message_id, status, minutes, **extra):
    return {"vendor_message_id": vendor_message_id, "status": status, "occurred_at": at(minutes), **extra}


@pytest.fixture
def launched(client, customer_factory):
    """Pune 고객 2명에게 queued 메시지가 적재된 캠페인."""
    first = customer_factory()
    second = customer_factory()
    segment_id = client.post(
        "/segments",
        json={
            "name": "Pune",
            "rule_tree": {"logic": "AND", "children": [{"field": "city", "operator": "equals", "value": "Pune"}]},
        },
    ).json()["id"]
    campaign = client.post(
        "/campaigns",
        json={"name": "Launch", "segment_id": segment_id, "channel": "sms", "body": "Hi"},
    ).json()
    client.post(f"/campaigns/{campaign['id']}/launch")
    key = campaign["campaign_key"]
    return {
        "campaign_id": campaign["id"],
        "customers": [first.id, second.id],
        "vids": [f"{key}-{first.id}", f"{key}-{second.id}"],
    }


class TestSingleReceipt:
    def test_applied_then_duplicate(self, client, launched):
        vid = launched["vids"][0]

        first = client.post("/delivery-receipts", json=receipt(vid, "sent", 1))
        again = client.post("/delivery-receipts", json=receipt(vid, "sent", 1))

        assert first.status_code == again.status_code == 200
        assert first.json()["outcome"] == "Applied"
        assert first.json()["message_status"] == "sent"
        assert again.json()["outcome"] == "Ignored-Duplicate"

    def test_out_of_order_catch_up(self, client, launched):
        vid = launched["vids"][0]

        clicked = client.post("/delivery-receipts", json=receipt(vid, "clicked", 9)).json()
        late = client.post("/delivery-receipts", json=receipt(vid, "delivered", 3)).json()

        assert clicked["inferred"] == ["sent", "delivered", "opened"]
        assert late["outcome"] == "Ignored-Stale"

        delivery = client.get(f"/delivery-receipts/{vid}").json()
        assert delivery["status"] == "clicked"
        assert delivery["inferred_statuses"] == ["opened", "sent"]
        assert delivery["timestamps"]["delivered"].startswith("2026-10-18T09:03:00")
        assert delivery["timestamps"]["opened"].startswith("2026-10-18T09:09:00")

    def test_invalid_transition_is_reported_with_200(self, client, launched):
        vid = launched["vids"][0]
        client.post("/delivery-receipts", json=receipt(vid, "failed", 1, error_code="1002"))

        response = client.post("/delivery-receipts", json=receipt(vid, "delivered", 2))

        assert response.status_code == 200
        assert response.json()["outcome"] == "Rejected-InvalidTransition"
        assert client.get(f"/delivery-receipts/{vid}").json()["error_code"] == "1002"

    def test_status_is_case_insensitive(self, client, launched):
        response = client.post("/delivery-receipts", json=receipt(launched["vids"][0], "SENT", 1))

        assert response.json()["outcome"] == "Applied"

    def test_unknown_status(self, client, launched):
        response = client.post("/delivery-receipts", json=receipt(launched["vids"][0], "teleported", 1))

        assert response.status_code == 400

    def test_unknown_message(self, client, launched):
        assert client.post("/delivery-receipts", json=receipt("nope", "sent", 1)).status_code == 404
        assert client.get("/delivery-receipts/nope").status_code == 404

    def test_campaign_mismatch(self, client, launched):
        payload = receipt(launched["vids"][0], "sent", 1, campaign_id=launched["campaign_id"] + 1)

        assert client.post("/delivery-receipts", json=payload).status_code == 400
        assert client.get(f"/delivery-receipts/{launched['vids'][0]}").json()["status"] == "queued"


class TestBatch:
    def test_results_follow_request_order(self, client, launched):
        first, second = launched["vids"]
        payload = {
            "receipts": [
                receipt(first, "delivered", 2),
                receipt(second, "teleported", 1),
                receipt(first, "sent", 1),
                receipt("unknown", "sent", 1),
                receipt(second, "bounced", 4),
                receipt(first, "delivered", 2),
            ]
        }

        body = client.post("/delivery-receipts/batch", json=payload).json()

        assert [r["vendor_message_id"] for r in body["results"]] == [
            first,
            second,
            first,
            "unknown",
            second,
            first,
        ]
        assert [r["outcome"] for r in body["results"]] == [
            "Applied",
            None,
            "Applied",
            None,
            "Applied",
            "Ignored-Duplicate",
        ]
        assert body["errors"] == 2
        assert body["processed"] == 4
        assert body["outcomes"] == {"Applied": 3, "Ignored-Duplicate": 1}
        assert client.get(f"/delivery-receipts/{first}").json()["inferred_statuses"] == []

    def test_batch_limit(self, client, launched, monkeypatch):
        monkeypatch.setattr(delivery_receipt_service.settings, "receipt_batch_max", 2)
        vid = launched["vids"][0]

        response = client.post(
            "/delivery-receipts/batch",
            json={"receipts": [receipt(vid, "sent", 1), receipt(vid, "delivered", 2), receipt(vid, "opened", 3)]},
        )

        assert response.status_code == 400

    def test_empty_batch(self, client):
        assert client.post("/delivery-receipts/batch", json={"receipts": []}).status_code == 422
