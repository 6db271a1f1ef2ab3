"""API tests for staff records and their attachments."""

import os

from conftest import pdf, png


def stored(staff, store):
    paths = [d["stored_path"] for d in staff["documents"]]
    if staff.get("photo"):
        paths.append(staff["photo"]["stored_path"])
    return paths


class TestCreateStaff:
    def test_create_with_documents_and_photo(self, client, admin_headers, store):
        resp = client.post(
            "/api/staff",
            data={"staff_id": "T-1", "full_name": "Asha Rao", "email": "Asha@School.com", "salary": "42000"},
            files=[("documents", pdf("cv.pdf")), ("documents", pdf("degree.pdf")), ("photo", png())],
            headers=admin_headers,
        )

        assert resp.status_code == 201, resp.text
        staff = resp.json()["staff"]
        assert staff["staff_code"] == "STAFF0001"
        assert staff["email"] == "asha@school.com"
        assert staff["salary"] == 42000
        assert staff["created_by"] == "USER0001"

        prefix = f"uploads/staff/STAFF0001/{staff['id']}/"
        assert [d["original_name"] for d in staff["documents"]] == ["cv.pdf", "degree.pdf"]
        for doc in staff["documents"]:
            assert doc["stored_path"].startswith(prefix + "documents/")
        assert staff["photo"]["stored_path"].startswith(prefix + "photo/photo-")
        for path in stored(staff, store):
            assert (store.root / path).is_file()
        assert os.listdir(store.staging_dir) == []

    def test_codes_increase(self, make_staff):
        assert make_staff()["staff_code"] == "STAFF0001"
        assert make_staff()["staff_code"] == "STAFF0002"

    def test_missing_required_fields(self, client, admin_headers):
        resp = client.post("/api/staff", data={"full_name": "No Email"}, headers=admin_headers)
        assert resp.status_code == 400

    def test_invalid_field_value(self, client, admin_headers):
        resp = client.post(
            "/api/staff",
            data={"staff_id": "T-1", "full_name": "A", "email": "a@school.com", "experience_years": "-2"},
            headers=admin_headers,
        )
        assert resp.status_code == 422

    def test_rejected_photo_type_leaves_nothing_behind(self, client, admin_headers, store, mongo_db):
        resp = client.post(
            "/api/staff",
            data={"staff_id": "T-1", "full_name": "A", "email": "a@school.com"},
            files=[("documents", pdf()), ("photo", pdf("not-an-image.pdf"))],
            headers=admin_headers,
        )
        assert resp.status_code == 400
        assert "Only images" in resp.json()["detail"]
        assert mongo_db["staff"].count_documents({}) == 0
        assert not (store.upload_dir / "staff").exists()

    def test_unknown_file_field(self, client, admin_headers):
        resp = client.post(
            "/api/staff",
            data={"staff_id": "T-1", "full_name": "A", "email": "a@school.com"},
            files=[("resume", pdf())],
            headers=admin_headers,
        )
        assert resp.status_code == 400

    def test_duplicate_email(self, client, admin_headers, make_staff):
        make_staff(email="dup@school.com")
        resp = client.post(
            "/api/staff",
            data={"staff_id": "T-99", "full_name": "B", "email": "dup@school.com"},
            headers=admin_headers,
        )
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Email already used"

    def test_requires_authentication(self, client, mongo_db):
        resp = client.post("/api/staff", data={"staff_id": "T-1", "full_name": "A", "email": "a@school.com"})
        assert resp.status_code == 401


class TestReadStaff:
    def test_list_and_get(self, client, admin_headers, make_staff):
        created = make_staff()
        listing = client.get("/api/staff", headers=admin_headers).json()
        assert [s["id"] for s in listing] == [created["id"]]
        assert listing[0]["created_by_info"]["user_code"] == "USER0001"

        one = client.get(f"/api/staff/{created['id']}", headers=admin_headers)
        assert one.status_code == 200
        assert one.json()["staff_code"] == created["staff_code"]

    def test_get_missing_and_malformed(self, client, admin_headers):
        assert client.get("/api/staff/64b7f0c2a1b2c3d4e5f60718", headers=admin_headers).status_code == 404
        assert client.get("/api/staff/not-an-id", headers=admin_headers).status_code == 400


class TestUpdateStaff:
    def test_remove_one_document(self, client, admin_headers, make_staff, store):
        staff = make_staff(files=[("documents", pdf("a.pdf")), ("documents", pdf("b.pdf"))])
        gone, kept = [d["stored_path"] for d in staff["documents"]]

        resp = client.put(
            f"/api/staff/{staff['id']}",
            data={"designation": "Head Teacher", "removed_files": [gone]},
            headers=admin_headers,
        )

        assert resp.status_code == 200, resp.text
        updated = resp.json()["staff"]
        assert updated["designation"] == "Head Teacher"
        assert [d["stored_path"] for d in updated["documents"]] == [kept]
        assert not (store.root / gone).exists()
        assert (store.root / kept).is_file()

    def test_removed_files_as_json_string(self, client, admin_headers, make_staff, store):
        staff = make_staff(files=[("documents", pdf("a.pdf")), ("documents", pdf("b.pdf"))])
        paths = [d["stored_path"] for d in staff["documents"]]

        resp = client.put(
            f"/api/staff/{staff['id']}",
            data={"removed_files": '["%s", "%s"]' % tuple(paths)},
            headers=admin_headers,
        )

        assert resp.json()["staff"]["documents"] == []
        assert not any((store.root / p).exists() for p in paths)

    def test_removed_files_json_field(self, client, admin_headers, make_staff, store):
        staff = make_staff(files=[("documents", pdf("a.pdf"))])
        path = staff["documents"][0]["stored_path"]

        resp = client.put(
            f"/api/staff/{staff['id']}",
            data={"removedFilesJson": '["%s"]' % path},
            headers=admin_headers,
        )

        assert resp.json()["staff"]["documents"] == []
        assert not (store.root / path).exists()

    def test_foreign_paths_are_ignored(self, client, admin_headers, make_staff, store):
        victim = make_staff(files=[("documents", pdf())])
        other = make_staff()
        victim_path = victim["documents"][0]["stored_path"]

        resp = client.put(
            f"/api/staff/{other['id']}",
            data={"removed_files": [victim_path, "../../etc/passwd"]},
            headers=admin_headers,
        )

        assert resp.status_code == 200
        assert (store.root / victim_path).is_file()

    def test_add_documents_and_replace_photo(self, client, admin_headers, make_staff, store):
        staff = make_staff(files=[("documents", pdf("a.pdf")), ("photo", png("old.png"))])
        old_photo = staff["photo"]["stored_path"]

        resp = client.put(
            f"/api/staff/{staff['id']}",
            files=[("documents", pdf("c.pdf")), ("photo", png("new.png"))],
            headers=admin_headers,
        )

        updated = resp.json()["staff"]
        assert [d["original_name"] for d in updated["documents"]] == ["a.pdf", "c.pdf"]
        assert updated["photo"]["original_name"] == "new.png"
        assert not (store.root / old_photo).exists()
        assert (store.root / updated["photo"]["stored_path"]).is_file()

    def test_clear_photo(self, client, admin_headers, make_staff, store):
        staff = make_staff(files=[("photo", png())])
        photo = staff["photo"]["stored_path"]

        resp = client.put(
            f"/api/staff/{staff['id']}", data={"removed_files": photo}, headers=admin_headers
        )

        assert resp.json()["staff"]["photo"] is None
        assert not (store.root / photo).exists()

    def test_duplicate_staff_id(self, client, admin_headers, make_staff):
        make_staff(staff_id="T-100")
        staff = make_staff()
        resp = client.put(f"/api/staff/{staff['id']}", data={"staff_id": "T-100"}, headers=admin_headers)
        assert resp.status_code == 400

    def test_too_many_documents(self, client, admin_headers, make_staff):
        staff = make_staff()
        files = [("documents", pdf(f"{i}.pdf")) for i in range(11)]
        resp = client.put(f"/api/staff/{staff['id']}", files=files, headers=admin_headers)
        assert resp.status_code == 400
        assert "Too many documents" in resp.json()["detail"]


class TestDeleteStaff:
    def test_delete_removes_record_and_folder(self, client, admin_headers, make_staff, store, mongo_db):
        staff = make_staff(files=[("documents", pdf()), ("photo", png())])
        owner_dir = store.root / f"uploads/staff/{staff['staff_code']}/{staff['id']}"
        assert owner_dir.is_dir()

        resp = client.delete(f"/api/staff/{staff['id']}", headers=admin_headers)

        assert resp.status_code == 200
        assert mongo_db["staff"].count_documents({}) == 0
        assert not owner_dir.exists()

    def test_delete_unassigns_sections(self, client, admin_headers, make_staff, make_class, mongo_db):
        staff = make_staff()
        cls = make_class(sections=[{"name": "A", "staff": staff["staff_id"]}])

        client.delete(f"/api/staff/{staff['id']}", headers=admin_headers)

        section = mongo_db["classroom"].find_one()["sections"][0]
        assert section["id"] == cls["sections"][0]["id"]
        assert section["staff_id"] is None

    def test_delete_missing(self, client, admin_headers):
        resp = client.delete("/api/staff/64b7f0c2a1b2c3d4e5f60718", headers=admin_headers)
        assert resp.status_code == 404
