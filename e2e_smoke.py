from __future__ import annotations

from fastapi.testclient import TestClient

from mini_crm.main import app


def run_smoke() -> None:
    client = TestClient(app)
    client.get("/health/ping").raise_for_status()
    fields = client.get("/segments/fields")
    fields.raise_for_status()
    resp = client.post(
        "/segments/preview",
        json={"rule_tree": {"logic": "AND", "children": [{"field": "is_active", "operator": "equals", "value": True}]}},
    )
    resp.raise_for_status()
    print("Smoke test completed. fields=", len(fields.json()), "audience=", resp.json().get("audience_size"))


if __name__ == "__main__":
    run_smoke()
