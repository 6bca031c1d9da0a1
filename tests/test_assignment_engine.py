"""
Tests: assignment engine.

Covers:
    1. Direct assignment (idempotency, progress rows, due dates)
    2. Department fan-out and membership hooks
    3. Re-justification on department removal
    4. Unassign idempotency and direct-row protection
    5. Lost insert races
    6. Company isolation
    7. Bulk assignment summaries
"""

from datetime import datetime, timedelta, timezone

import pytest

from app.core.exceptions import CrossTenantError, NotFoundError, ValidationError
from app.models import db
from app.models.assignment import ChecklistAssignment, ChecklistItemStatus, ProgramAssignment, UserProgress
from app.models.audit import AuditLog
from app.models.company import UserDepartment
from app.models.notification import Notification
from app.services import assignment_service, membership_service, status_resolver
from app.utils.helpers import as_utc


def _user_rows(program_id, user_id):
    return ProgramAssignment.query.filter_by(program_id=program_id, assigned_to_user_id=user_id).all()


def _progress_for(assignment):
    return UserProgress.query.filter_by(assignment_id=assignment.id).all()


# ═══════════════════════════════════════════════════════════════════════════
#  1. Direct assignment
# ═══════════════════════════════════════════════════════════════════════════

class TestAssignToUser:
    def test_creates_assignment_with_progress_rows(self, company, admin, learner, make_program):
        program = make_program(modules=3)
        result = assignment_service.assign_to_user(
            "program", program.id, learner.id, company_id=company.id, assigned_by=admin.id,
        )
        assert result.status == "created"
        a = result.assignment
        assert a.is_auto_assigned is False
        assert a.assigned_by == admin.id
        rows = _progress_for(a)
        assert len(rows) == 3
        assert {r.status for r in rows} == {"not_started"}

    def test_assigning_twice_is_idempotent(self, company, admin, learner, make_program):
        program = make_program(modules=2)
        first = assignment_service.assign_to_user("program", program.id, learner.id,
                                                  company_id=company.id, assigned_by=admin.id)
        second = assignment_service.assign_to_user("program", program.id, learner.id,
                                                   company_id=company.id, assigned_by=admin.id)
        assert second.status == "already_assigned"
        assert second.assignment.id == first.assignment.id
        assert len(_user_rows(program.id, learner.id)) == 1
        assert UserProgress.query.count() == 2

    def test_default_due_date_follows_deadline_days(self, company, admin, learner, make_program):
        program = make_program(deadline_days=10)
        a = assignment_service.assign_to_user("program", program.id, learner.id,
                                              company_id=company.id, assigned_by=admin.id).assignment
        delta = as_utc(a.due_date) - as_utc(a.assigned_at)
        assert delta == timedelta(days=10)

    def test_explicit_bare_date_means_end_of_day(self, company, admin, learner, make_program):
        program = make_program()
        a = assignment_service.assign_to_user("program", program.id, learner.id, company_id=company.id,
                                              assigned_by=admin.id, due_date="2030-05-01").assignment
        assert as_utc(a.due_date) == datetime(2030, 5, 1, 23, 59, 59, tzinfo=timezone.utc)

    def test_invalid_due_date_rejected(self, company, admin, learner, make_program):
        program = make_program()
        with pytest.raises(ValidationError):
            assignment_service.assign_to_user("program", program.id, learner.id, company_id=company.id,
                                              assigned_by=admin.id, due_date="next tuesday")
        assert ProgramAssignment.query.count() == 0

    def test_checklist_assignment_has_no_default_due_date(self, company, admin, learner, make_checklist):
        checklist = make_checklist(items=4)
        a = assignment_service.assign_to_user("checklist", checklist.id, learner.id,
                                              company_id=company.id, assigned_by=admin.id).assignment
        assert isinstance(a, ChecklistAssignment)
        assert a.due_date is None
        assert ChecklistItemStatus.query.filter_by(assignment_id=a.id).count() == 4

    def test_program_and_checklist_assignments_are_independent(self, company, admin, learner,
                                                               make_program, make_checklist):
        program = make_program()
        checklist = make_checklist()
        assert assignment_service.assign_to_user("program", program.id, learner.id,
                                                 company_id=company.id, assigned_by=admin.id).created
        assert assignment_service.assign_to_user("checklist", checklist.id, learner.id,
                                                 company_id=company.id, assigned_by=admin.id).created

    def test_notifies_assignee(self, company, admin, learner, make_program):
        program = make_program(title="Fire Safety")
        assignment_service.assign_to_user("program", program.id, learner.id,
                                          company_id=company.id, assigned_by=admin.id)
        notif = Notification.query.filter_by(user_id=learner.id).one()
        assert notif.type == "assignment_created"
        assert "Fire Safety" in notif.title
        assert notif.link == f"/programs/{program.id}"

    def test_writes_audit_row(self, company, admin, learner, make_program):
        program = make_program()
        a = assignment_service.assign_to_user("program", program.id, learner.id,
                                              company_id=company.id, assigned_by=admin.id).assignment
        log = AuditLog.query.filter_by(entity_type="program_assignment", entity_id=str(a.id)).one()
        assert log.action == "assignment.create"
        assert log.actor_user_id == admin.id

    def test_unknown_kind_rejected(self, company, admin, learner):
        with pytest.raises(ValidationError):
            assignment_service.assign_to_user("webinar", 1, learner.id, company_id=company.id, assigned_by=admin.id)

    def test_resume_fills_missing_progress_rows(self, company, admin, learner, make_program):
        """A fan-out interrupted after the assignment commit is completed by a retry."""
        program = make_program(modules=3)
        a = assignment_service.assign_to_user("program", program.id, learner.id,
                                              company_id=company.id, assigned_by=admin.id).assignment
        UserProgress.query.filter_by(assignment_id=a.id).delete()
        db.session.commit()

        retry = assignment_service.assign_to_user("program", program.id, learner.id,
                                                  company_id=company.id, assigned_by=admin.id)
        assert retry.status == "already_assigned"
        assert len(_progress_for(a)) == 3


# ═══════════════════════════════════════════════════════════════════════════
#  2. Department fan-out
# ═══════════════════════════════════════════════════════════════════════════

class TestDepartmentFanOut:
    def test_scenario_sales_onboarding(self, company, admin, make_user, make_department, make_program):
        u1, u2 = make_user(), make_user()
        sales = make_department("Sales", members=[u1, u2])
        onboarding = make_program("Onboarding", modules=3)

        result = assignment_service.assign_to_department(
            "program", onboarding.id, sales.id, company_id=company.id, assigned_by=admin.id,
        )

        assert result.department_row_created is True
        assert sorted(result.assigned_user_ids) == sorted([u1.id, u2.id])
        user_rows = ProgramAssignment.query.filter(ProgramAssignment.assigned_to_user_id.isnot(None)).all()
        assert len(user_rows) == 2
        assert all(r.is_auto_assigned for r in user_rows)
        assert UserProgress.query.count() == 6
        assert {r.status for r in UserProgress.query.all()} == {"not_started"}
        for row in user_rows:
            assert status_resolver.resolve_assignment("program", row) == "not_started"

    def test_department_row_holds_no_progress(self, company, admin, learner, make_department, make_program):
        dept = make_department("Ops", members=[learner])
        program = make_program(modules=2)
        result = assignment_service.assign_to_department("program", program.id, dept.id,
                                                         company_id=company.id, assigned_by=admin.id)
        dept_row = result.department_assignment
        assert dept_row.assigned_to_department_id == dept.id
        assert dept_row.assigned_to_user_id is None
        assert UserProgress.query.filter_by(assignment_id=dept_row.id).count() == 0

    def test_member_with_direct_row_reported_already_assigned(self, company, admin, learner, make_department,
                                                              make_program):
        program = make_program()
        direct = assignment_service.assign_to_user("program", program.id, learner.id,
                                                   company_id=company.id, assigned_by=admin.id).assignment
        dept = make_department("Ops", members=[learner])

        result = assignment_service.assign_to_department("program", program.id, dept.id,
                                                         company_id=company.id, assigned_by=admin.id)
        assert result.already_assigned_user_ids == [learner.id]
        db.session.refresh(direct)
        assert direct.is_auto_assigned is False

    def test_repeat_department_assignment_is_idempotent(self, company, admin, learner, make_department,
                                                        make_program):
        dept = make_department("Ops", members=[learner])
        program = make_program()
        assignment_service.assign_to_department("program", program.id, dept.id,
                                                company_id=company.id, assigned_by=admin.id)
        again = assignment_service.assign_to_department("program", program.id, dept.id,
                                                        company_id=company.id, assigned_by=admin.id)
        assert again.department_row_created is False
        assert again.already_assigned_user_ids == [learner.id]
        assert ProgramAssignment.query.count() == 2

    def test_explicit_due_date_passes_to_members(self, company, admin, learner, make_department, make_program):
        dept = make_department("Ops", members=[learner])
        program = make_program()
        assignment_service.assign_to_department("program", program.id, dept.id, company_id=company.id,
                                                assigned_by=admin.id, due_date="2031-01-31")
        row = _user_rows(program.id, learner.id)[0]
        assert as_utc(row.due_date).date().isoformat() == "2031-01-31"

    def test_user_joining_department_gets_its_assignments(self, company, admin, learner, make_department,
                                                          make_program, make_checklist):
        dept = make_department("Ops")
        program = make_program(modules=2)
        checklist = make_checklist(items=2)
        assignment_service.assign_to_department("program", program.id, dept.id,
                                                company_id=company.id, assigned_by=admin.id)
        assignment_service.assign_to_department("checklist", checklist.id, dept.id,
                                                company_id=company.id, assigned_by=admin.id)

        results = membership_service.add_user_to_department(learner.id, dept.id, company_id=company.id)

        assert [r.status for r in results] == ["created", "created"]
        row = _user_rows(program.id, learner.id)[0]
        assert row.is_auto_assigned is True
        assert len(_progress_for(row)) == 2
        assert ChecklistAssignment.query.filter_by(assigned_to_user_id=learner.id).count() == 1

    def test_fan_out_failure_reported_per_user(self, company, admin, make_user, make_department, make_program,
                                               monkeypatch):
        from sqlalchemy.exc import OperationalError

        u1, u2 = make_user(), make_user()
        dept = make_department("Ops", members=[u1, u2])
        program = make_program()
        real = assignment_service._fan_out_user

        def flaky(kind, target, user_id, **kw):
            if user_id == u1.id:
                raise OperationalError("INSERT", {}, Exception("database is locked"))
            return real(kind, target, user_id, **kw)

        monkeypatch.setattr(assignment_service, "_fan_out_user", flaky)
        result = assignment_service.assign_to_department("program", program.id, dept.id,
                                                         company_id=company.id, assigned_by=admin.id)
        assert result.failed_user_ids == [u1.id]
        assert result.assigned_user_ids == [u2.id]


# ═══════════════════════════════════════════════════════════════════════════
#  3. Re-justification
# ═══════════════════════════════════════════════════════════════════════════

class TestReJustification:
    def test_assignment_survives_while_another_department_justifies_it(self, company, admin, learner,
                                                                       make_department, make_program):
        d1 = make_department("Sales", members=[learner])
        d2 = make_department("EMEA", members=[learner])
        program = make_program()
        assignment_service.assign_to_department("program", program.id, d1.id,
                                                company_id=company.id, assigned_by=admin.id)
        assignment_service.assign_to_department("program", program.id, d2.id,
                                                company_id=company.id, assigned_by=admin.id)
        assert len(_user_rows(program.id, learner.id)) == 1

        first = assignment_service.unassign("program", program.id, company_id=company.id, department_id=d1.id)
        assert first.preserved_user_ids == [learner.id]
        assert len(_user_rows(program.id, learner.id)) == 1

        second = assignment_service.unassign("program", program.id, company_id=company.id, department_id=d2.id)
        assert second.removed_user_ids == [learner.id]
        assert _user_rows(program.id, learner.id) == []
        assert UserProgress.query.count() == 0

    def test_scenario_leaving_sales_removes_derived_rows(self, company, admin, make_user, make_department,
                                                         make_program):
        u1, u2 = make_user(), make_user()
        sales = make_department("Sales", members=[u1, u2])
        onboarding = make_program("Onboarding", modules=3)
        assignment_service.assign_to_department("program", onboarding.id, sales.id,
                                                company_id=company.id, assigned_by=admin.id)

        removed = membership_service.remove_user_from_department(u2.id, sales.id, company_id=company.id)

        assert len(removed) == 1
        assert _user_rows(onboarding.id, u2.id) == []
        assert UserProgress.query.filter_by(user_id=u2.id).count() == 0
        u1_row = _user_rows(onboarding.id, u1.id)[0]
        assert len(_progress_for(u1_row)) == 3

    def test_leaving_one_of_two_assigned_departments_keeps_row(self, company, admin, learner, make_department,
                                                               make_program):
        d1 = make_department("Sales", members=[learner])
        d2 = make_department("EMEA", members=[learner])
        program = make_program()
        for d in (d1, d2):
            assignment_service.assign_to_department("program", program.id, d.id,
                                                    company_id=company.id, assigned_by=admin.id)

        removed = membership_service.remove_user_from_department(learner.id, d1.id, company_id=company.id)
        assert removed == []
        assert len(_user_rows(program.id, learner.id)) == 1

        removed = membership_service.remove_user_from_department(learner.id, d2.id, company_id=company.id)
        assert len(removed) == 1
        assert _user_rows(program.id, learner.id) == []

    def test_direct_assignment_survives_department_removal(self, company, admin, learner, make_department,
                                                           make_program):
        dept = make_department("Ops", members=[learner])
        program = make_program()
        assignment_service.assign_to_user("program", program.id, learner.id,
                                          company_id=company.id, assigned_by=admin.id)
        assignment_service.assign_to_department("program", program.id, dept.id,
                                                company_id=company.id, assigned_by=admin.id)

        assignment_service.unassign("program", program.id, company_id=company.id, department_id=dept.id)
        membership_service.remove_user_from_department(learner.id, dept.id, company_id=company.id)

        rows = _user_rows(program.id, learner.id)
        assert len(rows) == 1
        assert rows[0].is_auto_assigned is False

    def test_removal_writes_auto_remove_audit(self, company, admin, learner, make_department, make_program):
        dept = make_department("Ops", members=[learner])
        program = make_program()
        assignment_service.assign_to_department("program", program.id, dept.id,
                                                company_id=company.id, assigned_by=admin.id)
        assignment_service.unassign("program", program.id, company_id=company.id, department_id=dept.id,
                                    actor_user_id=admin.id)
        actions = [log.action for log in AuditLog.query.order_by(AuditLog.id).all()]
        assert "assignment.auto_remove" in actions
        assert actions[-1] == "assignment.delete"


# ═══════════════════════════════════════════════════════════════════════════
#  4. Unassign
# ═══════════════════════════════════════════════════════════════════════════

class TestUnassign:
    def test_unassign_twice_is_noop(self, company, admin, learner, make_program):
        program = make_program()
        assignment_service.assign_to_user("program", program.id, learner.id,
                                          company_id=company.id, assigned_by=admin.id)
        first = assignment_service.unassign("program", program.id, company_id=company.id, user_id=learner.id)
        second = assignment_service.unassign("program", program.id, company_id=company.id, user_id=learner.id)
        assert len(first.removed_assignment_ids) == 1
        assert second.noop
        assert ProgramAssignment.query.count() == 0
        assert UserProgress.query.count() == 0

    def test_department_unassign_twice_is_noop(self, company, admin, learner, make_department, make_program):
        dept = make_department("Ops", members=[learner])
        program = make_program()
        assignment_service.assign_to_department("program", program.id, dept.id,
                                                company_id=company.id, assigned_by=admin.id)
        assignment_service.unassign("program", program.id, company_id=company.id, department_id=dept.id)
        again = assignment_service.unassign("program", program.id, company_id=company.id, department_id=dept.id)
        assert again.noop
        assert ProgramAssignment.query.count() == 0

    def test_requires_exactly_one_recipient(self, company, learner, make_department, make_program):
        program = make_program()
        dept = make_department("Ops")
        with pytest.raises(ValidationError):
            assignment_service.unassign("program", program.id, company_id=company.id)
        with pytest.raises(ValidationError):
            assignment_service.unassign("program", program.id, company_id=company.id,
                                        user_id=learner.id, department_id=dept.id)

    def test_interrupted_department_unassign_can_be_repeated(self, company, admin, make_user, make_department,
                                                             make_program, monkeypatch):
        u1, u2 = make_user(), make_user()
        dept = make_department("Ops", members=[u1, u2])
        program = make_program()
        assignment_service.assign_to_department("program", program.id, dept.id,
                                                company_id=company.id, assigned_by=admin.id)

        real = assignment_service._delete_assignment
        calls = {"n": 0}

        def crash_on_second(kind, assignment, **kw):
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("connection dropped")
            return real(kind, assignment, **kw)

        monkeypatch.setattr(assignment_service, "_delete_assignment", crash_on_second)
        with pytest.raises(RuntimeError):
            assignment_service.unassign("program", program.id, company_id=company.id, department_id=dept.id)
        db.session.rollback()
        monkeypatch.setattr(assignment_service, "_delete_assignment", real)

        # department row still present, so the retry knows what to clean up
        assert ProgramAssignment.query.filter_by(assigned_to_department_id=dept.id).count() == 1
        assignment_service.unassign("program", program.id, company_id=company.id, department_id=dept.id)
        assert ProgramAssignment.query.count() == 0
        assert UserProgress.query.count() == 0


# ═══════════════════════════════════════════════════════════════════════════
#  5. Races
# ═══════════════════════════════════════════════════════════════════════════

class TestConcurrentInsert:
    def test_lost_insert_race_reported_as_already_assigned(self, company, admin, learner, make_program,
                                                           monkeypatch):
        program = make_program(modules=2)
        winner = assignment_service.assign_to_user("program", program.id, learner.id,
                                                   company_id=company.id, assigned_by=admin.id).assignment

        real = assignment_service._find_user_assignment
        calls = {"n": 0}

        def stale_check(kind, target_id, user_id):
            # the first lookup misses the row the "other request" just committed
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return real(kind, target_id, user_id)

        monkeypatch.setattr(assignment_service, "_find_user_assignment", stale_check)
        loser = assignment_service.assign_to_user("program", program.id, learner.id,
                                                  company_id=company.id, assigned_by=admin.id)

        assert loser.status == "already_assigned"
        assert loser.assignment.id == winner.id
        assert ProgramAssignment.query.count() == 1
        assert UserProgress.query.count() == 2


# ═══════════════════════════════════════════════════════════════════════════
#  6. Company isolation
# ═══════════════════════════════════════════════════════════════════════════

class TestCompanyIsolation:
    def test_foreign_program_rejected(self, company, other_company, admin, learner, make_program):
        foreign = make_program(company_id=other_company.id)
        with pytest.raises(CrossTenantError):
            assignment_service.assign_to_user("program", foreign.id, learner.id,
                                              company_id=company.id, assigned_by=admin.id)
        assert ProgramAssignment.query.count() == 0

    def test_foreign_user_rejected(self, company, other_company, admin, make_user, make_program):
        outsider = make_user(company_id=other_company.id)
        program = make_program()
        with pytest.raises(NotFoundError):
            assignment_service.assign_to_user("program", program.id, outsider.id,
                                              company_id=company.id, assigned_by=admin.id)

    def test_foreign_department_rejected(self, company, other_company, admin, make_department, make_program):
        foreign_dept = make_department("Their Sales", company_id=other_company.id)
        program = make_program()
        with pytest.raises(CrossTenantError):
            assignment_service.assign_to_department("program", program.id, foreign_dept.id,
                                                    company_id=company.id, assigned_by=admin.id)

    def test_missing_program_is_plain_not_found(self, company, admin, learner):
        with pytest.raises(NotFoundError) as exc_info:
            assignment_service.assign_to_user("program", 9999, learner.id,
                                              company_id=company.id, assigned_by=admin.id)
        assert not isinstance(exc_info.value, CrossTenantError)


# ═══════════════════════════════════════════════════════════════════════════
#  7. Bulk assignment
# ═══════════════════════════════════════════════════════════════════════════

class TestBulkAssign:
    def test_summary_counts_new_and_existing(self, company, admin, make_user, make_department, make_program):
        u1, u2, u3 = make_user(), make_user(), make_user()
        dept = make_department("Ops", members=[u1, u2])
        program = make_program()
        assignment_service.assign_to_user("program", program.id, u2.id,
                                          company_id=company.id, assigned_by=admin.id)

        result = assignment_service.bulk_assign(
            "program", program.id, company_id=company.id, assigned_by=admin.id,
            user_ids=[u3.id, u1.id], department_ids=[dept.id],
        )

        assert result.assigned_user_ids == {u1.id, u3.id}
        assert result.already_assigned_user_ids == {u2.id}
        assert result.summary == "2 assigned, 1 already had access"

    def test_unknown_recipient_fails_whole_request(self, company, admin, learner, make_program):
        program = make_program()
        with pytest.raises(NotFoundError):
            assignment_service.bulk_assign("program", program.id, company_id=company.id, assigned_by=admin.id,
                                           user_ids=[learner.id, 4242])
        assert ProgramAssignment.query.count() == 0

    def test_failed_recipients_named_in_summary(self, company, admin, make_user, make_program, monkeypatch):
        from sqlalchemy.exc import OperationalError

        u1, u2 = make_user(), make_user()
        program = make_program()
        real = assignment_service.assign_to_user

        def flaky(kind, target_id, user_id, **kw):
            if user_id == u2.id:
                raise OperationalError("INSERT", {}, Exception("timeout"))
            return real(kind, target_id, user_id, **kw)

        monkeypatch.setattr(assignment_service, "assign_to_user", flaky)
        result = assignment_service.bulk_assign("program", program.id, company_id=company.id,
                                                assigned_by=admin.id, user_ids=[u1.id, u2.id])
        assert result.summary == f"1 assigned, 0 already had access, could not process user {u2.id}"


class TestQueries:
    def test_list_user_assignments_programs_first(self, company, admin, learner, make_program, make_checklist):
        checklist = make_checklist()
        program = make_program()
        assignment_service.assign_to_user("checklist", checklist.id, learner.id,
                                          company_id=company.id, assigned_by=admin.id)
        assignment_service.assign_to_user("program", program.id, learner.id,
                                          company_id=company.id, assigned_by=admin.id)
        kinds = [k for k, _ in assignment_service.list_user_assignments(learner.id, company_id=company.id)]
        assert kinds == ["program", "checklist"]

    def test_list_for_target_can_skip_department_rows(self, company, admin, learner, make_department,
                                                      make_program):
        dept = make_department("Ops", members=[learner])
        program = make_program()
        assignment_service.assign_to_department("program", program.id, dept.id,
                                                company_id=company.id, assigned_by=admin.id)
        all_rows = assignment_service.list_assignments_for_target("program", program.id, company_id=company.id)
        users_only = assignment_service.list_assignments_for_target("program", program.id, company_id=company.id,
                                                                    include_departments=False)
        assert len(all_rows) == 2
        assert len(users_only) == 1

    def test_membership_row_removed_before_hook(self, company, admin, learner, make_department):
        dept = make_department("Ops", members=[learner])
        membership_service.remove_user_from_department(learner.id, dept.id, company_id=company.id)
        assert UserDepartment.query.filter_by(user_id=learner.id).count() == 0
