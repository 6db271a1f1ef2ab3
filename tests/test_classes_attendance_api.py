"""API tests for classes, sections and attendance."""

import pytest

from conftest import login


@pytest.fixture
def teacher(client, admin_headers, make_staff):
    """A staff record plus a Staff login linked to it."""
    staff = make_staff()
    resp = client.post(
        "/api/users",
        data={"full_name": staff["full_name"], "email": "login@school.com", "password": "teach123",
              "role": "Staff", "staff_ref": staff["id"]},
        headers=admin_headers,
    )
    assert resp.status_code == 201, resp.text
    return {"staff": staff, "headers": login(client, "login@school.com", "teach123")}


@pytest.fixture
def enrolled(client, admin_headers, make_class, teacher):
    cls = make_class("Grade 3", [{"name": "A", "staff": teacher["staff"]["email"]}, {"name": "B"}])
    students = []
    for n in range(2):
        resp = client.post(
            "/api/students",
            data={"admission_no": f"ADM-{n}", "full_name": f"Kid {n}", "email": f"kid{n}@school.com",
                  "class_id": cls["id"], "section_id": cls["sections"][0]["id"]},
            headers=admin_headers,
        )
        assert resp.status_code == 201, resp.text
        students.append(resp.json()["student"])
    return {"class": cls, "students": students}


class TestClasses:
    def test_sections_resolve_staff(self, make_class, make_staff):
        staff = make_staff()
        cls = make_class("Grade 1", [{"name": "A", "staff": staff["staff_code"]}, {"name": "B"}])

        assert cls["class_code"] == "CLASS0001"
        a, b = cls["sections"]
        assert a["staff_id"] == staff["id"]
        assert a["staff_code"] == staff["staff_code"]
        assert a["staff_identifier"] == staff["staff_id"]
        assert b["staff_id"] is None
        assert a["id"] != b["id"]

    def test_unknown_staff(self, client, admin_headers):
        resp = client.post(
            "/api/classes",
            json={"class_name": "Grade 2", "sections": [{"name": "A", "staff": "ghost@school.com"}]},
            headers=admin_headers,
        )
        assert resp.status_code == 400

    def test_update_replaces_sections(self, client, admin_headers, make_class):
        cls = make_class("Grade 4", [{"name": "A"}, {"name": "B"}])
        resp = client.put(
            f"/api/classes/{cls['id']}",
            json={"class_name": "Grade IV", "sections": [{"name": "C"}]},
            headers=admin_headers,
        )
        updated = resp.json()["class"]
        assert updated["class_name"] == "Grade IV"
        assert [s["name"] for s in updated["sections"]] == ["C"]

    def test_get_list_delete(self, client, admin_headers, make_class):
        cls = make_class()
        assert len(client.get("/api/classes", headers=admin_headers).json()) == 1
        assert client.get(f"/api/classes/{cls['id']}", headers=admin_headers).status_code == 200
        assert client.delete(f"/api/classes/{cls['id']}", headers=admin_headers).status_code == 200
        assert client.get(f"/api/classes/{cls['id']}", headers=admin_headers).status_code == 404

    def test_staff_cannot_create_classes(self, client, teacher):
        resp = client.post("/api/classes", json={"class_name": "X"}, headers=teacher["headers"])
        assert resp.status_code == 403


class TestAttendance:
    def mark(self, client, headers, enrolled, status="Present", section="A", day="2024-06-03"):
        return client.post(
            "/api/attendance/mark",
            json={
                "class_id": enrolled["class"]["id"],
                "section": section,
                "date": day,
                "records": [{"student_id": s["id"], "status": status} for s in enrolled["students"]],
            },
            headers=headers,
        )

    def test_assigned_teacher_marks_section(self, client, teacher, enrolled):
        resp = self.mark(client, teacher["headers"], enrolled)

        assert resp.status_code == 201, resp.text
        records = resp.json()["records"]
        assert len(records) == 2
        assert records[0]["attendance_code"] == "ATTEND0001"
        assert records[0]["marked_by"] == teacher["staff"]["id"]

    def test_remarking_updates_instead_of_duplicating(self, client, teacher, enrolled, mongo_db):
        self.mark(client, teacher["headers"], enrolled)
        resp = self.mark(client, teacher["headers"], enrolled, status="Absent")

        assert {r["status"] for r in resp.json()["records"]} == {"Absent"}
        assert mongo_db["attendance"].count_documents({}) == 2

    def test_unassigned_teacher_is_forbidden(self, client, teacher, enrolled):
        resp = self.mark(client, teacher["headers"], enrolled, section="B")
        assert resp.status_code == 403

    def test_admin_may_mark_any_section(self, client, admin_headers, enrolled):
        resp = self.mark(client, admin_headers, enrolled)
        assert resp.status_code == 201

    def test_students_outside_section_are_skipped(self, client, admin_headers, enrolled):
        resp = self.mark(client, admin_headers, enrolled, section="B")
        assert resp.json()["records"] == []

    def test_invalid_status(self, client, admin_headers, enrolled):
        resp = self.mark(client, admin_headers, enrolled, status="Sleeping")
        assert resp.status_code == 422

    def test_queries_and_update(self, client, teacher, enrolled):
        headers = teacher["headers"]
        self.mark(client, headers, enrolled)
        self.mark(client, headers, enrolled, day="2024-06-04")
        cls_id = enrolled["class"]["id"]

        day = client.get(f"/api/attendance/class/{cls_id}/section/A?date=2024-06-03", headers=headers).json()
        assert len(day) == 2
        assert day[0]["student"]["full_name"].startswith("Kid")

        assert len(client.get(f"/api/attendance/class/{cls_id}/section/A", headers=headers).json()) == 4

        student_id = enrolled["students"][0]["id"]
        history = client.get(f"/api/attendance/student/{student_id}", headers=headers).json()
        assert [r["date"][:10] for r in history] == ["2024-06-03", "2024-06-04"]

        resp = client.put(f"/api/attendance/{history[0]['id']}", json={"status": "Late"}, headers=headers)
        assert resp.json()["attendance"]["status"] == "Late"

    def test_update_missing_record(self, client, admin_headers):
        resp = client.put("/api/attendance/64b7f0c2a1b2c3d4e5f60718", json={"status": "Late"}, headers=admin_headers)
        assert resp.status_code == 404
