import uuid

import pytest

API = "/api/v1"


@pytest.fixture
def project_id(client):
    response = client.post(f"{API}/projects", json={
        "name": "Riverside Offices",
        "category": "commercial",
        "start_date": "2025-03-03",
        "floor_count": 6,
        "basement_levels": 1,
    })
    assert response.status_code == 201
    return response.json()["data"]["id"]


def _task(client, project_id, name, **body):
    response = client.post(f"{API}/projects/{project_id}/tasks", json={"name": name, **body})
    assert response.status_code == 201, response.text
    return response.json()["data"]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_create_and_get_project(client, project_id):
    response = client.get(f"{API}/projects/{project_id}")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["name"] == "Riverside Offices"
    assert data["category"] == "commercial"
    assert data["start_date"] == "2025-03-03"


def test_unknown_project_is_404(client):
    response = client.get(f"{API}/projects/{uuid.uuid4()}")
    assert response.status_code == 404
    assert response.json()["kind"] == "not_found"


def test_cycle_is_rejected_with_path(client, project_id):
    a = _task(client, project_id, "Piling", duration_days=3)
    b = _task(client, project_id, "Pile caps", duration_days=2, dependencies=[a["id"]])

    response = client.put(f"{API}/tasks/{a['id']}/dependencies", json={"dependencies": [b["id"]]})

    assert response.status_code == 422
    body = response.json()
    assert body["kind"] == "cycle"
    assert body["context"]["cycle"][0] == body["context"]["cycle"][-1]


def test_dependency_dry_run(client, project_id):
    a = _task(client, project_id, "Piling")
    ok = client.post(f"{API}/projects/{project_id}/dependencies/validate", json={"dependencies": [a["id"]]})
    assert ok.status_code == 200
    assert ok.json()["data"]["valid"] is True

    bad = client.post(
        f"{API}/projects/{project_id}/dependencies/validate",
        json={"task_id": a["id"], "dependencies": [a["id"]]},
    )
    assert bad.status_code == 422
    assert bad.json()["kind"] == "self_reference"


def test_capacity_is_enforced(client, project_id):
    task = _task(client, project_id, "Steel erection")
    url = f"{API}/tasks/{task['id']}/assignments"
    assert client.post(url, json={"user_id": str(uuid.uuid4()), "split_percentage": 70}).status_code == 201

    response = client.post(url, json={"user_id": str(uuid.uuid4()), "split_percentage": 40})

    assert response.status_code == 422
    assert response.json()["kind"] == "capacity_exceeded"
    assert response.json()["context"]["available"] == 30.0
    assert client.get(f"{url}/stats").json()["data"]["total_split_percentage"] == 70.0


def test_schedule_endpoints(client, project_id):
    a = _task(client, project_id, "Piling", duration_days=3)
    b = _task(client, project_id, "Pile caps", duration_days=2, dependencies=[a["id"]])

    schedule = client.get(f"{API}/projects/{project_id}/schedule").json()["data"]
    assert schedule["critical_path"] == [a["id"], b["id"]]
    assert schedule["finish_date"] == "2025-03-08"

    written = client.post(f"{API}/projects/{project_id}/schedule/calculate").json()["data"]
    assert written["updated_task_count"] == 2
    assert client.get(f"{API}/tasks/{b['id']}").json()["data"]["start_date"] == "2025-03-06"


def test_conditional_tags_endpoints(client, project_id):
    lot = _task(client, project_id, "Car park fit-out", conditional_tag="site/basement")
    assert lot["is_hidden"] is False

    client.patch(f"{API}/projects/{project_id}", json={"basement_levels": 0})
    result = client.post(f"{API}/projects/{project_id}/conditional-tags/process").json()["data"]

    assert result["changed"] == 1
    assert client.get(f"{API}/tasks/{lot['id']}").json()["data"]["is_hidden"] is True
    tags = [t["tag"] for t in client.get(f"{API}/projects/{project_id}/conditional-tags").json()["data"]]
    assert "use/commercial" in tags


def test_unknown_tag_is_422(client, project_id):
    response = client.post(f"{API}/projects/{project_id}/tasks", json={"name": "Moat", "conditional_tag": "site/moat"})
    assert response.status_code == 422
    assert response.json()["context"]["reason"] == "unknown_tag"


def test_template_preview_and_apply(client, project_id):
    template = client.post(f"{API}/templates", json={
        "name": "Core and shell",
        "template_data": [
            {"name": "Core walls", "duration_days": 4},
            {"name": "Floor plates", "dep": [0], "duration_days": 6},
        ],
    }).json()["data"]
    body = {"template_id": template["id"], "preview_only": True}

    preview = client.post(f"{API}/projects/{project_id}/templates/apply", json=body).json()["data"]
    assert preview["created_tasks"] == 2
    assert client.get(f"{API}/projects/{project_id}/tasks").json()["data"] == []

    body["preview_only"] = False
    applied = client.post(f"{API}/projects/{project_id}/templates/apply", json=body).json()["data"]
    assert applied["log_id"]
    assert len(client.get(f"{API}/projects/{project_id}/tasks").json()["data"]) == 2

    frozen = client.patch(f"{API}/templates/{template['id']}", json={"name": "Renamed"})
    assert frozen.status_code == 409


def test_variance_without_baseline(client, project_id):
    response = client.get(f"{API}/projects/{project_id}/variance")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "no_baseline"
    assert data["cost_variance"] is None


def test_baseline_lifecycle(client, project_id):
    _task(client, project_id, "Piling", duration_days=3, planned_cost=250)
    actor = str(uuid.uuid4())

    created = client.post(
        f"{API}/projects/{project_id}/baselines",
        json={"baseline_type": "contract", "note": "Signed"},
        headers={"X-User-Id": actor},
    )
    assert created.status_code == 201
    baseline = created.json()["data"]
    assert baseline["version"] == 1
    assert baseline["created_by"] == actor

    current = client.get(f"{API}/projects/{project_id}/baselines/current", params={"baseline_type": "contract"})
    assert current.json()["data"]["id"] == baseline["id"]

    second = client.post(f"{API}/projects/{project_id}/baselines/{baseline['id']}/rebaseline", json={}).json()["data"]
    diff = client.get(
        f"{API}/projects/{project_id}/baselines/compare",
        params={"from": baseline["id"], "to": second["id"]},
    ).json()["data"]
    assert diff["cost_delta"] == 0.0

    variance = client.get(f"{API}/projects/{project_id}/variance", params={"baseline_type": "contract"})
    assert variance.json()["data"]["baseline_version"] == 2


def test_missing_current_baseline_is_404(client, project_id):
    response = client.get(f"{API}/projects/{project_id}/baselines/current", params={"baseline_type": "execution"})
    assert response.status_code == 404


def test_task_in_use_cannot_be_deleted(client, project_id):
    a = _task(client, project_id, "Piling")
    b = _task(client, project_id, "Pile caps", dependencies=[a["id"]])

    blocked = client.delete(f"{API}/tasks/{a['id']}")
    assert blocked.status_code == 409
    assert blocked.json()["context"]["dependent_task_ids"] == [b["id"]]

    assert client.delete(f"{API}/tasks/{b['id']}").status_code == 204
    assert client.delete(f"{API}/tasks/{a['id']}").status_code == 204


def test_events_record_the_acting_user(client, project_id):
    actor = str(uuid.uuid4())
    response = client.post(
        f"{API}/projects/{project_id}/tasks", json={"name": "Survey"}, headers={"X-User-Id": actor}
    )
    assert response.status_code == 201

    events = client.get(f"{API}/projects/{project_id}/events").json()["data"]
    assert events[0]["entity_type"] == "task"
    assert events[0]["actor_id"] == actor
