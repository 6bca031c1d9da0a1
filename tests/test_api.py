"""
Tests: HTTP API (auth chain, role checks, admin and learner flows, cron trigger).
"""

from app.models import db


def _json(resp):
    return resp.get_json()


# ═══════════════════════════════════════════════════════════════════════════
#  Health & auth
# ═══════════════════════════════════════════════════════════════════════════

class TestHealthAndAuth:
    def test_health_needs_no_token(self, client):
        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        assert _json(resp)["status"] == "ok"

    def test_live_reports_database_and_jobs(self, client):
        resp = client.get("/api/v1/health/live")
        assert resp.status_code == 200
        checks = _json(resp)["checks"]
        assert checks["database"]["status"] == "ok"
        assert "deadline_reminders" in checks["scheduler"]["jobs"]

    def test_missing_token_is_401(self, client):
        resp = client.get("/api/v1/me/learning")
        assert resp.status_code == 401
        assert _json(resp)["code"] == "ERR_UNAUTHORIZED"

    def test_garbage_token_is_401(self, client):
        resp = client.get("/api/v1/me/learning", headers={"Authorization": "Bearer not.a.jwt"})
        assert resp.status_code == 401

    def test_inactive_company_is_403(self, client, company, learner, auth_headers):
        company.is_active = False
        db.session.commit()
        resp = client.get("/api/v1/me/learning", headers=auth_headers(learner))
        assert resp.status_code == 403

    def test_token_for_user_of_other_company_is_403(self, client, company, other_company, make_user):
        from app.services.jwt_service import generate_access_token

        outsider = make_user(company_id=other_company.id)
        token = generate_access_token(outsider.id, company.id, ["admin"])
        resp = client.get("/api/v1/departments", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 403

    def test_learner_cannot_use_admin_endpoints(self, client, learner, auth_headers):
        resp = client.post("/api/v1/departments", json={"name": "Sales"}, headers=auth_headers(learner))
        assert resp.status_code == 403
        assert _json(resp)["details"]["required_role"] == ["admin"]

    def test_unknown_route_is_json_404(self, client, learner, auth_headers):
        resp = client.get("/api/v1/nothing-here", headers=auth_headers(learner))
        assert resp.status_code == 404
        assert _json(resp)["code"] == "ERR_NOT_FOUND"


# ═══════════════════════════════════════════════════════════════════════════
#  Admin flows
# ═══════════════════════════════════════════════════════════════════════════

class TestAdminFlows:
    def test_department_and_bulk_assignment(self, client, admin, make_user, make_program, auth_headers):
        u1, u2 = make_user(), make_user()
        headers = auth_headers(admin)
        program = make_program("Onboarding", modules=3)

        resp = client.post("/api/v1/departments", json={"name": "Sales"}, headers=headers)
        assert resp.status_code == 201
        dept_id = _json(resp)["id"]

        resp = client.post(f"/api/v1/departments/{dept_id}/members", json={"user_ids": [u1.id, u2.id]},
                           headers=headers)
        assert resp.status_code == 200

        resp = client.post(f"/api/v1/programs/{program.id}/assignments",
                           json={"department_ids": [dept_id]}, headers=headers)
        assert resp.status_code == 200
        body = _json(resp)
        assert body["summary"] == "2 assigned, 0 already had access"
        assert body["assigned_user_ids"] == sorted([u1.id, u2.id])

        resp = client.get(f"/api/v1/programs/{program.id}/assignments", headers=headers)
        items = _json(resp)["items"]
        assert len(items) == 3
        assert {i.get("derived_status") for i in items if i["assignment_type"] == "user"} == {"not_started"}

        resp = client.get(f"/api/v1/departments/{dept_id}", headers=headers)
        assert _json(resp)["assignment_counts"] == {"programs": 1, "checklists": 0}

    def test_assign_requires_a_recipient(self, client, admin, make_program, auth_headers):
        program = make_program()
        resp = client.post(f"/api/v1/programs/{program.id}/assignments", json={}, headers=auth_headers(admin))
        assert resp.status_code == 422

    def test_bad_due_date_is_422(self, client, admin, learner, make_program, auth_headers):
        program = make_program()
        resp = client.post(f"/api/v1/programs/{program.id}/assignments",
                           json={"user_ids": [learner.id], "due_date": "soon"}, headers=auth_headers(admin))
        assert resp.status_code == 422
        assert _json(resp)["details"] == {"due_date": "invalid format"}

    def test_unassign_user_twice(self, client, admin, learner, make_checklist, auth_headers):
        checklist = make_checklist()
        headers = auth_headers(admin)
        client.post(f"/api/v1/checklists/{checklist.id}/assignments", json={"user_ids": [learner.id]},
                    headers=headers)

        first = client.delete(f"/api/v1/checklists/{checklist.id}/assignments?user_id={learner.id}",
                              headers=headers)
        second = client.delete(f"/api/v1/checklists/{checklist.id}/assignments?user_id={learner.id}",
                               headers=headers)
        assert len(_json(first)["removed_assignment_ids"]) == 1
        assert second.status_code == 200
        assert _json(second)["removed_assignment_ids"] == []

    def test_unassign_body_ids_are_coerced(self, client, admin, learner, make_checklist, auth_headers):
        checklist = make_checklist()
        headers = auth_headers(admin)
        client.post(f"/api/v1/checklists/{checklist.id}/assignments", json={"user_ids": [learner.id]},
                    headers=headers)

        bad = client.delete(f"/api/v1/checklists/{checklist.id}/assignments",
                            json={"user_id": "someone"}, headers=headers)
        good = client.delete(f"/api/v1/checklists/{checklist.id}/assignments",
                             json={"user_id": str(learner.id)}, headers=headers)

        assert bad.status_code == 422
        assert _json(bad)["details"] == {"user_id": "invalid id"}
        assert good.status_code == 200
        assert len(_json(good)["removed_assignment_ids"]) == 1

    def test_duplicate_department_name_is_409(self, client, admin, make_department, auth_headers):
        make_department("Sales")
        resp = client.post("/api/v1/departments", json={"name": "Sales"}, headers=auth_headers(admin))
        assert resp.status_code == 409

    def test_create_user_with_departments(self, client, admin, make_department, auth_headers):
        dept = make_department("Ops")
        resp = client.post("/api/v1/users", json={
            "email": "new.hire@acme.com", "full_name": "New Hire", "department_ids": [dept.id],
        }, headers=auth_headers(admin))
        assert resp.status_code == 201
        assert _json(resp)["department_ids"] == [dept.id]

    def test_create_program_with_modules(self, client, admin, auth_headers):
        headers = auth_headers(admin)
        resp = client.post("/api/v1/programs", json={"title": "Ethics"}, headers=headers)
        assert resp.status_code == 201
        pid = _json(resp)["id"]
        resp = client.post(f"/api/v1/programs/{pid}/modules", json={
            "title": "Check", "type": "question",
            "content": {"question": {"question": "OK?", "options": ["yes", "no"], "correctIndex": 0}},
        }, headers=headers)
        assert resp.status_code == 201
        resp = client.get(f"/api/v1/programs/{pid}", headers=headers)
        assert _json(resp)["module_count"] == 1

    def test_dashboard_for_instructor_not_learner(self, client, instructor, learner, auth_headers):
        assert client.get("/api/v1/reports/dashboard", headers=auth_headers(instructor)).status_code == 200
        assert client.get("/api/v1/reports/dashboard", headers=auth_headers(learner)).status_code == 403


# ═══════════════════════════════════════════════════════════════════════════
#  Learner flows
# ═══════════════════════════════════════════════════════════════════════════

class TestLearnerFlows:
    def _assign(self, client, admin, learner, program, auth_headers):
        resp = client.post(f"/api/v1/programs/{program.id}/assignments", json={"user_ids": [learner.id]},
                           headers=auth_headers(admin))
        assert resp.status_code == 200

    def test_my_learning_and_completion(self, client, admin, learner, make_program, auth_headers):
        program = make_program("Fire Safety", modules=1)
        module_id = program.modules[0].id
        self._assign(client, admin, learner, program, auth_headers)
        headers = auth_headers(learner)

        resp = client.get("/api/v1/me/learning", headers=headers)
        body = _json(resp)
        assert body["total"] == 1
        row = body["assignments"][0]
        assert row["title"] == "Fire Safety"
        assert row["status"] == "not_started"

        resp = client.post(
            f"/api/v1/me/assignments/program/{row['assignment_id']}/items/{module_id}/complete",
            json={"time_spent_minutes": 4}, headers=headers,
        )
        assert resp.status_code == 200
        assert _json(resp)["assignment_completed"] is True

        body = _json(client.get("/api/v1/me/learning", headers=headers))
        assert body["assignments"][0]["status"] == "completed"
        assert body["by_status"]["completed"] == 1

    def test_checklist_item_toggle(self, client, admin, learner, make_checklist, auth_headers):
        checklist = make_checklist(items=1)
        item_id = checklist.checklist_items[0].id
        client.post(f"/api/v1/checklists/{checklist.id}/assignments", json={"user_ids": [learner.id]},
                    headers=auth_headers(admin))
        headers = auth_headers(learner)
        assignment_id = _json(client.get("/api/v1/me/learning", headers=headers))["assignments"][0]["assignment_id"]

        resp = client.put(f"/api/v1/checklist-assignments/{assignment_id}/items/{item_id}",
                          json={"status": "completed"}, headers=headers)
        assert resp.status_code == 200
        assert _json(resp)["assignment"]["progress_percentage"] == 100

    def test_notification_feed(self, client, admin, learner, make_program, auth_headers):
        self._assign(client, admin, learner, make_program("Ethics"), auth_headers)
        headers = auth_headers(learner)

        body = _json(client.get("/api/v1/notifications", headers=headers))
        assert body["unread_count"] == 1
        nid = body["items"][0]["id"]

        assert client.patch(f"/api/v1/notifications/{nid}/read", headers=headers).status_code == 200
        assert _json(client.get("/api/v1/notifications/unread-count", headers=headers))["unread_count"] == 0

    def test_preferences_roundtrip(self, client, learner, auth_headers):
        headers = auth_headers(learner)
        resp = client.put("/api/v1/notifications/preferences", json={"deadline_reminders": False},
                          headers=headers)
        assert resp.status_code == 200
        assert _json(client.get("/api/v1/notifications/preferences", headers=headers))["deadline_reminders"] is False


# ═══════════════════════════════════════════════════════════════════════════
#  Company isolation
# ═══════════════════════════════════════════════════════════════════════════

class TestCompanyIsolation:
    def test_foreign_program_looks_missing(self, client, admin, other_company, make_program, auth_headers):
        foreign = make_program("Their course", company_id=other_company.id)
        resp = client.get(f"/api/v1/programs/{foreign.id}", headers=auth_headers(admin))
        assert resp.status_code == 404
        assert _json(resp)["error"] == "TrainingProgram not found"

    def test_cannot_assign_foreign_program(self, client, admin, learner, other_company, make_program,
                                           auth_headers):
        foreign = make_program(company_id=other_company.id)
        resp = client.post(f"/api/v1/programs/{foreign.id}/assignments", json={"user_ids": [learner.id]},
                           headers=auth_headers(admin))
        assert resp.status_code == 404

    def test_cannot_read_foreign_assignment(self, client, admin, learner, other_company, make_user,
                                            make_program, auth_headers):
        from app.services import assignment_service

        outsider = make_user(company_id=other_company.id)
        foreign_admin = make_user("admin", company_id=other_company.id)
        program = make_program(company_id=other_company.id)
        a = assignment_service.assign_to_user("program", program.id, outsider.id,
                                              company_id=other_company.id, assigned_by=foreign_admin.id).assignment
        resp = client.get(f"/api/v1/me/assignments/program/{a.id}", headers=auth_headers(learner))
        assert resp.status_code == 404


# ═══════════════════════════════════════════════════════════════════════════
#  Cron trigger
# ═══════════════════════════════════════════════════════════════════════════

class TestCronTrigger:
    def test_without_secret_is_401(self, client):
        assert client.post("/api/v1/jobs/deadline_reminders/run").status_code == 401

    def test_wrong_secret_is_401(self, client):
        resp = client.post("/api/v1/jobs/deadline_reminders/run", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_with_secret_runs_job(self, client):
        resp = client.post("/api/v1/jobs/deadline_reminders/run",
                           headers={"Authorization": "Bearer test-cron-secret"})
        assert resp.status_code == 200
        body = _json(resp)
        assert body["status"] == "success"
        assert body["result"]["reminders_sent"] == 0

    def test_unknown_job_is_404(self, client):
        resp = client.post("/api/v1/jobs/nightly_backup/run", headers={"Authorization": "Bearer test-cron-secret"})
        assert resp.status_code == 404

    def test_admin_can_pause_job(self, client, admin, auth_headers):
        headers = auth_headers(admin)
        client.post("/api/v1/jobs/deadline_reminders/run", headers={"Authorization": "Bearer test-cron-secret"})
        resp = client.patch("/api/v1/scheduler/jobs/deadline_reminders/toggle", json={"enabled": False},
                            headers=headers)
        assert resp.status_code == 200
        assert _json(resp)["is_enabled"] is False
