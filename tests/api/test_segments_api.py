"""
API tests for /segments.
"""

from datetime import datetime, timedelta, timezone

from mini_crm.models.domain import Segment


def rule(field, operator, value=None):
    return {"field": field, "operator": operator, "value": value}


def tree(*children, logic="AND"):
    return {"logic": logic, "children": list(children)}


PUNE = tree(rule("city", "equals", "Pune"))


class TestFields:
    def test_lists_catalog_with_operators(self, client):
        response = client.get("/segments/fields")

        assert response.status_code == 200
        by_name = {item["name"]: item for item in response.json()}
        assert by_name["total_spending"]["type"] == "number"
        assert "greaterThan" in by_name["total_spending"]["operators"]
        assert "contains" not in by_name["total_spending"]["operators"]
        assert by_name["churn_risk"]["options"] == ["low", "medium", "high"]


class TestPreview:
    def test_spend_and_recent_order(self, client, customer_factory):
        recent_big = customer_factory(total_spending=600, orders=[(600, 10)])
        customer_factory(total_spending=600, orders=[(600, 40)])
        customer_factory(total_spending=400, orders=[(400, 5)])
        since = (datetime.now(timezone.utc) - timedelta(days=30)).isoformat()

        response = client.post(
            "/segments/preview",
            json={
                "rule_tree": tree(
                    rule("total_spending", "greaterThan", 500),
                    rule("last_order_at", "greaterOrEqual", since),
                )
            },
        )

        body = response.json()
        assert response.status_code == 200
        assert body["valid"] is True
        assert body["audience_size"] == 1
        assert [c["id"] for c in body["sample"]] == [recent_big.id]
        assert body["description"].startswith("total_spending is greater than 500 AND last_order_at")

    def test_derived_order_fields(self, client, customer_factory):
        frequent = customer_factory(orders=[(100, 3), (300, 20), (200, 60)])
        customer_factory(orders=[(50, 2)])

        response = client.post(
            "/segments/preview",
            json={
                "rule_tree": tree(
                    rule("order_count", "greaterOrEqual", 3),
                    rule("average_order_value", "equals", 200),
                    rule("days_since_last_order", "lessOrEqual", 7),
                )
            },
        )

        assert response.json()["audience_size"] == 1
        assert response.json()["sample"][0]["id"] == frequent.id

    def test_invalid_tree_returns_errors_not_failure(self, client):
        response = client.post(
            "/segments/preview",
            json={"rule_tree": tree(rule("favourite_colour", "equals", "red"))},
        )

        body = response.json()
        assert response.status_code == 200
        assert body["valid"] is False
        assert body["audience_size"] == 0
        assert body["errors"][0]["code"] == "UNKNOWN_FIELD"
        assert body["errors"][0]["path"] == "root.children[0]"

    def test_sample_size_is_respected(self, client, customer_factory):
        for _ in range(4):
            customer_factory()

        response = client.post("/segments/preview", json={"rule_tree": PUNE, "sample_size": 2})

        assert response.json()["audience_size"] == 4
        assert len(response.json()["sample"]) == 2

    def test_legacy_rule_groups_shape(self, client, customer_factory):
        customer_factory(city="Mumbai")
        customer_factory(city="Delhi")

        response = client.post(
            "/segments/preview",
            json={"rule_tree": [{"field": "city", "operator": "=", "value": "Mumbai"}]},
        )

        assert response.json()["audience_size"] == 1


class TestSegmentCrud:
    def test_create_computes_audience_and_description(self, client, customer_factory):
        customer_factory()
        customer_factory(city="Delhi")

        response = client.post("/segments", json={"name": "Pune shoppers", "rule_tree": PUNE})

        body = response.json()
        assert response.status_code == 201
        assert body["audience_size"] == 1
        assert body["description"] == 'city equals "Pune"'
        assert body["is_active"] is True
        assert body["last_calculated_at"] is not None

    def test_create_with_invalid_tree_is_rejected(self, client):
        response = client.post(
            "/segments",
            json={"name": "broken", "rule_tree": tree(rule("total_spending", "contains", "9"))},
        )

        assert response.status_code == 400
        assert response.json()["detail"]["errors"][0]["code"] == "OPERATOR_NOT_ALLOWED"

    def test_update_recomputes_audience(self, client, customer_factory):
        customer_factory()
        customer_factory(city="Delhi")
        segment_id = client.post("/segments", json={"name": "Pune", "rule_tree": PUNE}).json()["id"]

        response = client.put(
            f"/segments/{segment_id}",
            json={"name": "Everyone", "rule_tree": tree(rule("city", "in", ["Pune", "Delhi"]))},
        )

        assert response.status_code == 200
        assert response.json()["name"] == "Everyone"
        assert response.json()["audience_size"] == 2

    def test_delete_deactivates(self, client):
        segment_id = client.post("/segments", json={"name": "Pune", "rule_tree": PUNE}).json()["id"]

        response = client.delete(f"/segments/{segment_id}")

        assert response.status_code == 200
        assert response.json()["is_active"] is False
        assert client.get("/segments").json() == []
        assert [s["id"] for s in client.get("/segments?include_inactive=true").json()] == [segment_id]

    def test_missing_segment(self, client):
        assert client.get("/segments/999").status_code == 404
        assert client.put("/segments/999", json={"name": "x"}).status_code == 404
        assert client.delete("/segments/999").status_code == 404


class TestSegmentCustomers:
    def test_paged_and_sorted(self, client, customer_factory):
        low = customer_factory(total_spending=100)
        high = customer_factory(total_spending=900)
        mid = customer_factory(total_spending=500)
        customer_factory(city="Delhi", total_spending=5000)
        segment_id = client.post("/segments", json={"name": "Pune", "rule_tree": PUNE}).json()["id"]

        response = client.get(
            f"/segments/{segment_id}/customers",
            params={"sort_key": "total_spending", "descending": True, "limit": 2},
        )

        body = response.json()
        assert body["total"] == 3
        assert [c["id"] for c in body["items"]] == [high.id, mid.id]

        second_page = client.get(
            f"/segments/{segment_id}/customers",
            params={"sort_key": "total_spending", "descending": True, "limit": 2, "offset": 2},
        ).json()
        assert [c["id"] for c in second_page["items"]] == [low.id]

    def test_unknown_sort_key(self, client):
        segment_id = client.post("/segments", json={"name": "Pune", "rule_tree": PUNE}).json()["id"]

        response = client.get(f"/segments/{segment_id}/customers", params={"sort_key": "shoe_size"})

        assert response.status_code == 400

    def test_stored_tree_that_no_longer_compiles(self, client, db_session):
        segment = Segment(
            name="legacy",
            rule_tree=tree(rule("loyalty_tier", "equals", "gold")),
            audience_size=0,
            is_active=True,
        )
        db_session.add(segment)
        db_session.commit()

        response = client.get(f"/segments/{segment.id}/customers")

        assert response.status_code == 409
        assert response.json()["detail"]["errors"][0]["code"] == "UNKNOWN_FIELD"


class TestFromText:
    def test_keyword_fallback(self, client):
        response = client.post("/segments/from-text", json={"text": "High value customers"})

        body = response.json()
        assert response.status_code == 200
        assert body["source"] == "fallback"
        assert body["valid"] is True
        assert body["rule_tree"]["children"][0]["field"] == "total_spending"

    def test_blank_text(self, client):
        assert client.post("/segments/from-text", json={"text": "   "}).status_code == 400
