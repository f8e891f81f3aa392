"""API tests for catalog, matching, task, review and memory endpoints"""

from uuid import uuid4


def create_catalog(client):
    template = client.post("/api/v1/templates", json={"name": "卷烟目录"}).json()
    products = {}
    for name, brand in (("中华(软盒)", "中华"), ("玉溪(软)", "玉溪")):
        response = client.post(
            "/api/v1/products",
            json={"template_id": template["id"], "name": name, "brand": brand},
        )
        assert response.status_code == 201
        products[brand] = response.json()
    return template, products


class TestCatalogEndpoints:
    """Test template and product endpoints"""

    def test_duplicate_template_rejected(self, client, db_session):
        """Test template names are unique"""
        create_catalog(client)
        response = client.post("/api/v1/templates", json={"name": "卷烟目录"})
        assert response.status_code == 400

    def test_product_for_missing_template(self, client, db_session):
        """Test products need an existing template"""
        response = client.post("/api/v1/products", json={"template_id": str(uuid4()), "name": "中华"})
        assert response.status_code == 404


class TestMatchEndpoint:
    """Test the stateless match endpoint"""

    def test_match_ranks_candidates(self, client, db_session):
        """Test a tolerant match is returned without persisting anything"""
        template, products = create_catalog(client)

        response = client.post(
            "/api/v1/match",
            json={"template_id": template["id"], "items": [{"name": "中华(软)"}, {"price": 3}]},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["profile"] == "aggressive"
        matched, malformed = data["results"]
        assert matched["normalized_name"] == "中华软"
        assert matched["candidates"][0]["product_id"] == products["中华"]["id"]
        assert matched["candidates"][0]["score"]["total"] == 97
        assert malformed["error"] is not None
        assert malformed["candidates"] == []

        tasks = client.get("/api/v1/matching-tasks").json()
        assert tasks["total"] == 0

    def test_non_finite_numbers_are_item_errors(self, client, db_session):
        """Test NaN and infinite values fail their own item and the rest still match"""
        template, products = create_catalog(client)

        response = client.post(
            "/api/v1/match",
            json={
                "template_id": template["id"],
                "items": [
                    {"name": "中华(软)", "price": "NaN"},
                    {"name": "中华(软)", "price": "sNaN"},
                    {"name": "中华(软)", "quantity": "inf"},
                    {"name": "中华(软)"},
                ],
            },
        )

        assert response.status_code == 200
        results = response.json()["results"]
        assert [r["error"] is not None for r in results] == [True, True, True, False]
        assert results[3]["candidates"][0]["product_id"] == products["中华"]["id"]

    def test_unknown_profile(self, client, db_session):
        """Test unknown scoring profiles are a bad request"""
        template, _ = create_catalog(client)
        response = client.post(
            "/api/v1/match",
            json={"template_id": template["id"], "items": [{"name": "中华"}], "profile": "reckless"},
        )
        assert response.status_code == 400

    def test_missing_template(self, client, db_session):
        """Test matching against a missing template"""
        response = client.post("/api/v1/match", json={"template_id": str(uuid4()), "items": [{"name": "中华"}]})
        assert response.status_code == 404

    def test_empty_items_rejected(self, client, db_session):
        """Test the request must carry at least one item"""
        response = client.post("/api/v1/match", json={"template_id": str(uuid4()), "items": []})
        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"


class TestTaskWorkflow:
    """Test the task lifecycle through the API"""

    def test_submit_execute_review(self, client, db_session, enqueued):
        """Test submission, matching, review and learning end to end"""
        template, products = create_catalog(client)

        created = client.post(
            "/api/v1/matching-tasks",
            json={"template_id": template["id"], "items": [{"name": "中华(软)"}, {"name": "玉溪硬"}]},
        )
        assert created.status_code == 201
        task = created.json()
        assert task["status"] == "pending"

        executed = client.post(f"/api/v1/matching-tasks/{task['id']}/execute")
        assert executed.status_code == 202
        assert [str(task_id) for task_id in enqueued] == [task["id"]]

        task = client.get(f"/api/v1/matching-tasks/{task['id']}").json()
        assert task["status"] == "review"

        records = client.get(f"/api/v1/matching-tasks/{task['id']}/records").json()
        assert records["total"] == 2
        open_record = next(r for r in records["items"] if r["status"] == "exception")

        pending = client.get("/api/v1/matching-records/pending").json()
        assert [r["id"] for r in pending["items"]] == [open_record["id"]]

        reviewed = client.post(
            f"/api/v1/matching-records/{open_record['id']}/review",
            json={"action": "confirm", "product_id": products["玉溪"]["id"], "remember": True},
        )
        assert reviewed.status_code == 200
        assert reviewed.json()["status"] == "confirmed"
        assert reviewed.json()["selected_match"]["match_type"] == "manual"

        task = client.get(f"/api/v1/matching-tasks/{task['id']}").json()
        assert task["status"] == "completed"

        memory = client.get("/api/v1/memory", params={"template_id": template["id"]}).json()
        assert memory["total"] == 1
        assert memory["items"][0]["normalized_name"] == "玉溪硬"

    def test_execute_twice_conflicts(self, client, db_session, enqueued):
        """Test a task can only be started while pending"""
        template, _ = create_catalog(client)
        task = client.post(
            "/api/v1/matching-tasks",
            json={"template_id": template["id"], "items": [{"name": "中华(软)"}]},
        ).json()

        assert client.post(f"/api/v1/matching-tasks/{task['id']}/execute").status_code == 202
        assert client.post(f"/api/v1/matching-tasks/{task['id']}/execute").status_code == 409
        assert len(enqueued) == 1

    def test_inconsistent_thresholds(self, client, db_session):
        """Test the review threshold may not exceed the auto-confirm threshold"""
        template, _ = create_catalog(client)
        response = client.post(
            "/api/v1/matching-tasks",
            json={
                "template_id": template["id"],
                "items": [{"name": "中华"}],
                "threshold": 95,
                "auto_confirm_threshold": 90,
            },
        )
        assert response.status_code == 422

    def test_confirm_requires_product(self, client, db_session):
        """Test confirm without a product is a validation error"""
        response = client.post(
            f"/api/v1/matching-records/{uuid4()}/review", json={"action": "confirm"},
        )
        assert response.status_code == 422

    def test_review_missing_record(self, client, db_session):
        """Test reviewing an unknown record"""
        response = client.post(f"/api/v1/matching-records/{uuid4()}/review", json={"action": "reject"})
        assert response.status_code == 404

    def test_delete_task(self, client, db_session):
        """Test deleting a task and its records"""
        template, _ = create_catalog(client)
        task = client.post(
            "/api/v1/matching-tasks",
            json={"template_id": template["id"], "items": [{"name": "中华"}]},
        ).json()

        assert client.delete(f"/api/v1/matching-tasks/{task['id']}").status_code == 204
        assert client.get(f"/api/v1/matching-tasks/{task['id']}").status_code == 404


class TestMemoryEndpoints:
    """Test direct memory endpoints"""

    def test_learn_and_reject(self, client, db_session):
        """Test a binding learned through the API can be weakened"""
        template, products = create_catalog(client)
        payload = {
            "original_name": "玉溪硬",
            "product_id": products["玉溪"]["id"],
            "template_id": template["id"],
        }

        learned = client.post("/api/v1/memory/learn", json=payload)
        assert learned.status_code == 201

        rejected = client.post("/api/v1/memory/reject", json=payload)
        assert rejected.status_code == 200

        memory = client.get(f"/api/v1/memory/{learned.json()['id']}").json()
        assert memory["weight"] == 1.05

    def test_missing_memory(self, client, db_session):
        """Test reading an unknown memory record"""
        assert client.get(f"/api/v1/memory/{uuid4()}").status_code == 404


class TestObservability:
    """Test health and metrics endpoints"""

    def test_health(self, client, db_session):
        """Test the health check with an eager broker"""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_metrics(self, client, db_session):
        """Test the Prometheus exposition"""
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "wholesale_matcher_" in response.text

    def test_request_id_echoed(self, client, db_session):
        """Test the request id header is returned"""
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
