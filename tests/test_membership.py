"""
Tests: companies, users, departments and membership hooks.
"""

import pytest

from app.core.exceptions import ConflictError, CrossTenantError, ValidationError
from app.models.assignment import ProgramAssignment
from app.models.company import Department, UserDepartment
from app.services import assignment_service, membership_service, progress_service


def _program_rows(user_id):
    return ProgramAssignment.query.filter_by(assigned_to_user_id=user_id).all()


class TestUsers:
    def test_create_user_normalizes_email(self, company):
        user = membership_service.create_user(company.id, {"email": "  Dana.Smith@Acme.com ", "full_name": "Dana"})
        assert user.email == "dana.smith@acme.com"
        assert user.role == "user"

    def test_invalid_email_rejected(self, company):
        with pytest.raises(ValidationError) as exc_info:
            membership_service.create_user(company.id, {"email": "not-an-email"})
        assert exc_info.value.details == {"email": "invalid"}

    def test_duplicate_email_conflicts(self, company):
        membership_service.create_user(company.id, {"email": "sam@acme.com"})
        with pytest.raises(ConflictError):
            membership_service.create_user(company.id, {"email": "SAM@acme.com"})

    def test_same_email_allowed_in_other_company(self, company, other_company):
        membership_service.create_user(company.id, {"email": "sam@acme.com"})
        other = membership_service.create_user(other_company.id, {"email": "sam@acme.com"})
        assert other.company_id == other_company.id

    def test_unknown_role_rejected(self, company):
        with pytest.raises(ValidationError):
            membership_service.create_user(company.id, {"email": "x@acme.com", "role": "owner"})

    def test_list_users_by_department(self, company, make_user, make_department):
        u1, u2 = make_user(), make_user()
        dept = make_department("Ops", members=[u2])
        assert [u.id for u in membership_service.list_users(company.id, department_id=dept.id)] == [u2.id]
        assert {u.id for u in membership_service.list_users(company.id)} == {u1.id, u2.id}


class TestDepartments:
    def test_create_and_rename(self, company):
        dept = membership_service.create_department(company.id, {"name": "Sales"})
        membership_service.update_department(company.id, dept.id, {"name": "Field Sales"})
        assert dept.name == "Field Sales"

    def test_duplicate_name_conflicts(self, company):
        membership_service.create_department(company.id, {"name": "Sales"})
        with pytest.raises(ConflictError):
            membership_service.create_department(company.id, {"name": "Sales"})

    def test_name_required(self, company):
        with pytest.raises(ValidationError):
            membership_service.create_department(company.id, {"name": ""})

    def test_foreign_department_hidden(self, company, other_company, make_department):
        foreign = make_department("Theirs", company_id=other_company.id)
        with pytest.raises(CrossTenantError):
            membership_service.update_department(company.id, foreign.id, {"name": "Mine"})

    def test_delete_department_removes_derived_assignments(self, company, admin, make_user, make_department,
                                                           make_program):
        u1, u2 = make_user(), make_user()
        sales = make_department("Sales", members=[u1, u2])
        emea = make_department("EMEA", members=[u2])
        program = make_program()
        for dept in (sales, emea):
            assignment_service.assign_to_department("program", program.id, dept.id,
                                                    company_id=company.id, assigned_by=admin.id)

        membership_service.delete_department(company.id, sales.id, actor_user_id=admin.id)

        assert _program_rows(u1.id) == []
        assert len(_program_rows(u2.id)) == 1
        assert Department.query.filter_by(id=sales.id).first() is None
        assert UserDepartment.query.filter_by(department_id=sales.id).count() == 0

    def test_assignment_counts(self, company, admin, make_department, make_program, make_checklist):
        dept = make_department("Ops")
        assignment_service.assign_to_department("program", make_program().id, dept.id,
                                                company_id=company.id, assigned_by=admin.id)
        assignment_service.assign_to_department("checklist", make_checklist().id, dept.id,
                                                company_id=company.id, assigned_by=admin.id)
        counts = membership_service.department_assignment_counts(company.id, dept.id)
        assert counts == {"programs": 1, "checklists": 1}


class TestMembershipHooks:
    def test_join_twice_is_idempotent(self, company, admin, learner, make_department, make_program):
        dept = make_department("Ops")
        program = make_program()
        assignment_service.assign_to_department("program", program.id, dept.id,
                                                company_id=company.id, assigned_by=admin.id)

        first = membership_service.add_user_to_department(learner.id, dept.id, company_id=company.id)
        second = membership_service.add_user_to_department(learner.id, dept.id, company_id=company.id)

        assert [r.status for r in first] == ["created"]
        assert [r.status for r in second] == ["already_assigned"]
        assert UserDepartment.query.filter_by(user_id=learner.id).count() == 1
        assert len(_program_rows(learner.id)) == 1

    def test_leave_without_membership_is_noop(self, company, learner, make_department):
        dept = make_department("Ops")
        assert membership_service.remove_user_from_department(learner.id, dept.id, company_id=company.id) == []

    def test_join_inherits_department_due_date(self, company, admin, learner, make_department, make_program):
        dept = make_department("Ops")
        program = make_program()
        assignment_service.assign_to_department("program", program.id, dept.id, company_id=company.id,
                                                assigned_by=admin.id, due_date="2031-06-30")
        membership_service.add_user_to_department(learner.id, dept.id, company_id=company.id)
        row = _program_rows(learner.id)[0]
        assert row.due_date.date().isoformat() == "2031-06-30"
        assert row.assigned_by == admin.id

    def test_set_user_departments_applies_difference(self, company, admin, learner, make_department,
                                                     make_program):
        sales = make_department("Sales", members=[learner])
        ops = make_department("Ops")
        p_sales, p_ops = make_program("Pitching"), make_program("Forklift")
        assignment_service.assign_to_department("program", p_sales.id, sales.id,
                                                company_id=company.id, assigned_by=admin.id)
        assignment_service.assign_to_department("program", p_ops.id, ops.id,
                                                company_id=company.id, assigned_by=admin.id)

        result = membership_service.set_user_departments(learner.id, [ops.id], company_id=company.id)

        assert result == [ops.id]
        assert [r.program_id for r in _program_rows(learner.id)] == [p_ops.id]

    def test_moving_between_departments_keeps_shared_progress(self, company, admin, learner, make_department,
                                                              make_program):
        old = make_department("Night shift", members=[learner])
        new = make_department("Day shift")
        program = make_program("Forklift", modules=2)
        for dept in (old, new):
            assignment_service.assign_to_department("program", program.id, dept.id,
                                                    company_id=company.id, assigned_by=admin.id)
        (row,) = _program_rows(learner.id)
        row_id = row.id
        progress_service.complete_item("program", row.id, program.modules[0].id,
                                       user_id=learner.id, company_id=company.id)

        membership_service.set_user_departments(learner.id, [new.id], company_id=company.id)

        (after,) = _program_rows(learner.id)
        assert after.id == row_id
        assert after.progress_percentage == 50
        assert after.is_auto_assigned is True

    def test_foreign_department_in_set_rejected(self, company, other_company, learner, make_department):
        foreign = make_department("Theirs", company_id=other_company.id)
        with pytest.raises(CrossTenantError):
            membership_service.set_user_departments(learner.id, [foreign.id], company_id=company.id)
        assert UserDepartment.query.count() == 0
