"""End-to-end tests for the HTTP layer on a SQLite database."""

import io

import openpyxl
import pytest
from fastapi.testclient import TestClient

from sitesched.main import app

client = TestClient(app)


@pytest.fixture
def schedule(sqlite_db):
    """Three tasks: Excavate (3d) -> Footings (2d), plus a free-standing Permit."""
    ids = {}
    for name, start, duration in [("Excavate", "2024-01-01", 3), ("Footings", "2024-01-04", 2),
                                  ("Permit", "2024-01-01", 1)]:
        response = client.post("/schedules/s1/tasks", json={
            "name": name, "start_date": start, "duration_days": duration})
        assert response.status_code == 201
        ids[name] = response.json()["id"]
    response = client.post("/schedules/s1/dependencies", json={
        "task_id": ids["Footings"], "depends_on_task_id": ids["Excavate"]})
    assert response.status_code == 201
    ids["edge"] = response.json()["id"]
    return ids


def windows(schedule_id="s1"):
    tasks = client.get(f"/schedules/{schedule_id}").json()["tasks"]
    return {t["name"]: (t["start_date"], t["end_date"]) for t in tasks}


class TestDependencies:
    """Dependency creation and its rejections."""

    def test_created_task_has_end_date(self, schedule):
        assert windows()["Excavate"] == ("2024-01-01", "2024-01-03")

    def test_cycle_rejected(self, schedule):
        response = client.post("/schedules/s1/dependencies", json={
            "task_id": schedule["Excavate"], "depends_on_task_id": schedule["Footings"]})
        assert response.status_code == 400
        detail = response.json()["detail"]
        assert "circular reference" in detail["message"]
        assert detail["cycle"][0] == detail["cycle"][-1] == schedule["Excavate"]
        assert len(client.get("/schedules/s1").json()["dependencies"]) == 1

    def test_duplicate(self, schedule):
        response = client.post("/schedules/s1/dependencies", json={
            "task_id": schedule["Footings"], "depends_on_task_id": schedule["Excavate"],
            "dependency_type": "start_to_start"})
        assert response.status_code == 409

    def test_self_loop(self, schedule):
        response = client.post("/schedules/s1/dependencies", json={
            "task_id": schedule["Permit"], "depends_on_task_id": schedule["Permit"]})
        assert response.status_code == 400

    def test_unknown_task(self, schedule):
        response = client.post("/schedules/s1/dependencies", json={
            "task_id": schedule["Permit"], "depends_on_task_id": "missing"})
        assert response.status_code == 404

    def test_delete(self, schedule):
        url = f"/schedules/s1/dependencies/{schedule['edge']}"
        assert client.delete(url).json() == {"deleted": [schedule["edge"]]}
        assert client.delete(url).status_code == 404


class TestDates:
    """Manual edits cascade through dependents."""

    def test_cascade(self, schedule):
        response = client.put(f"/schedules/s1/tasks/{schedule['Excavate']}/dates",
                              json={"new_start": "2024-01-03", "new_end": "2024-01-05"})
        assert response.status_code == 200
        updated = response.json()["cascade"]["updated"]
        assert {w["task_id"] for w in updated} == {schedule["Excavate"], schedule["Footings"]}
        assert windows()["Footings"] == ("2024-01-06", "2024-01-07")
        assert windows()["Permit"] == ("2024-01-01", "2024-01-01")

    def test_end_before_start(self, schedule):
        response = client.put(f"/schedules/s1/tasks/{schedule['Excavate']}/dates",
                              json={"new_start": "2024-01-05", "new_end": "2024-01-03"})
        assert response.status_code == 400

    def test_unknown_task(self, schedule):
        response = client.put("/schedules/s1/tasks/nope/dates", json={"new_end": "2024-01-03"})
        assert response.status_code == 404

    def test_constraint_violation_reported(self, schedule):
        response = client.post("/schedules/s1/tasks", json={
            "name": "Inspection", "start_date": "2024-01-06", "duration_days": 1,
            "constraint_type": "start_no_later_than", "constraint_date": "2024-01-06"})
        inspection = response.json()["id"]
        client.post("/schedules/s1/dependencies", json={
            "task_id": inspection, "depends_on_task_id": schedule["Footings"]})

        response = client.put(f"/schedules/s1/tasks/{schedule['Excavate']}/dates",
                              json={"new_start": "2024-01-02", "new_end": "2024-01-04"})

        violations = response.json()["cascade"]["violations"]
        assert [v["task_id"] for v in violations] == [inspection]
        assert violations[0]["kind"] == "constraint_violated"


class TestScheduleAndMilestones:
    """Auto-scheduling and milestone tracking."""

    def test_auto_schedule(self, schedule):
        response = client.post("/schedules/s1/auto-schedule", json={"project_start": "2024-02-01"})
        assert response.status_code == 200
        body = response.json()["schedule"]
        assert body["critical_path"] == [schedule["Excavate"], schedule["Footings"]]
        assert body["project_finish"] == "2024-02-05"
        assert windows()["Footings"] == ("2024-02-04", "2024-02-05")

    def test_milestone_goes_at_risk(self, schedule):
        response = client.post("/schedules/s1/milestones", json={
            "name": "Foundation done", "target_date": "2024-01-06",
            "task_ids": [schedule["Footings"]]})
        assert response.status_code == 201

        response = client.put(f"/schedules/s1/tasks/{schedule['Excavate']}/dates",
                              json={"new_start": "2024-01-03", "new_end": "2024-01-05"})
        milestone = response.json()["milestones"][0]
        assert milestone["new_status"] == "at_risk"
        assert client.get("/schedules/s1").json()["milestones"][0]["status"] == "at_risk"

        evaluated = client.post("/schedules/s1/milestones/evaluate").json()["milestones"]
        assert evaluated[0]["new_status"] == "at_risk"

    def test_milestone_unknown_task(self, schedule):
        response = client.post("/schedules/s1/milestones", json={
            "name": "Bad", "target_date": "2024-01-06", "task_ids": ["nope"]})
        assert response.status_code == 404

    def test_delete_task(self, schedule):
        response = client.delete(f"/schedules/s1/tasks/{schedule['Excavate']}")
        assert response.json() == {"deleted": [schedule["Excavate"]], "dependencies": [schedule["edge"]]}
        assert set(windows()) == {"Footings", "Permit"}


class TestTemplateUpload:
    """Spreadsheet templates."""

    def workbook(self):
        wb = openpyxl.Workbook()
        sheet = wb.active
        sheet.append(["Task", "Predecessors", "Duration"])
        sheet.append(["Rough plumbing", None, 2])
        sheet.append(["Drywall", "Rough plumbing", 3])
        buffer = io.BytesIO()
        wb.save(buffer)
        return buffer.getvalue()

    def test_upload(self, sqlite_db):
        response = client.post(
            "/schedules/t1/template?project_start=2024-03-04",
            files={"file": ("interior.xlsx", self.workbook(),
                            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet")},
        )
        assert response.status_code == 200
        assert response.json()["created"] == 2
        assert windows("t1") == {"Rough plumbing": ("2024-03-04", "2024-03-05"),
                                 "Drywall": ("2024-03-06", "2024-03-08")}

    def test_wrong_extension(self, sqlite_db):
        response = client.post("/schedules/t1/template?project_start=2024-03-04",
                               files={"file": ("interior.csv", b"Task\nDrywall\n", "text/csv")})
        assert response.status_code == 400

    def test_corrupt_workbook(self, sqlite_db):
        response = client.post("/schedules/t1/template?project_start=2024-03-04",
                               files={"file": ("interior.xlsx", b"not a zip", "application/octet-stream")})
        assert response.status_code == 400


class TestUpdates:
    """Editing tasks and dependencies in place."""

    def test_completing_tasks_completes_milestone(self, schedule):
        client.post("/schedules/s1/milestones", json={
            "name": "Foundation done", "target_date": "2024-01-10",
            "task_ids": [schedule["Excavate"], schedule["Footings"]]})

        response = client.put(f"/schedules/s1/tasks/{schedule['Excavate']}",
                              json={"status": "complete", "progress": 100})
        assert response.status_code == 200
        assert response.json()["task"]["status"] == "complete"
        assert response.json()["milestones"][0]["new_status"] == "pending"

        response = client.put(f"/schedules/s1/tasks/{schedule['Footings']}",
                              json={"status": "complete"})
        milestone = response.json()["milestones"][0]
        assert (milestone["old_status"], milestone["new_status"]) == ("pending", "complete")
        assert client.get("/schedules/s1").json()["milestones"][0]["status"] == "complete"

    def test_task_update_errors(self, schedule):
        assert client.put("/schedules/s1/tasks/nope", json={"progress": 5}).status_code == 404
        assert client.put(f"/schedules/s1/tasks/{schedule['Permit']}", json={}).status_code == 400
        response = client.put(f"/schedules/s1/tasks/{schedule['Permit']}", json={"progress": 150})
        assert response.status_code == 422

    def test_lag_change_cascades(self, schedule):
        response = client.put(f"/schedules/s1/dependencies/{schedule['edge']}",
                              json={"lag_days": 2})
        assert response.status_code == 200
        body = response.json()
        assert body["dependency"]["lag_days"] == 2
        assert [w["task_id"] for w in body["cascade"]["updated"]] == [schedule["Footings"]]
        assert windows()["Footings"] == ("2024-01-06", "2024-01-07")
        assert client.get("/schedules/s1").json()["dependencies"][0]["lag_days"] == 2

    def test_dependency_update_errors(self, schedule):
        assert client.put("/schedules/s1/dependencies/nope",
                          json={"lag_days": 1}).status_code == 404
        assert client.put(f"/schedules/s1/dependencies/{schedule['edge']}",
                          json={}).status_code == 400
        assert client.put(f"/schedules/s1/dependencies/{schedule['edge']}",
                          json={"dependency_type": "sideways"}).status_code == 422
