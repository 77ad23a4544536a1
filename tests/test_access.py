"""
權限判斷測試

authorize 的真值表、透過任務判斷、刪除任務的兩段式關卡
"""
import pytest
from access import authorize_project, authorize_task, authorize_note, require_admin_to_delete
from errors import NotFound, NotMemberError, InsufficientRoleError, AdminOnlyError
from models import db, Role, Task, Note


@pytest.fixture
def board(make_user, make_project):
    owner = make_user('owner')
    editor = make_user('editor')
    viewer = make_user('viewer')
    outsider = make_user('outsider')
    project = make_project(owner, members={editor: 'editor', viewer: 'viewer'})
    return project, owner, editor, viewer, outsider


class TestRoleOrdering:

    def test_ranks_are_totally_ordered(self):
        assert Role.VIEWER < Role.EDITOR < Role.ADMIN

    def test_satisfies_compares_rank(self):
        assert Role.ADMIN.satisfies('viewer')
        assert Role.EDITOR.satisfies(Role.EDITOR)
        assert not Role.VIEWER.satisfies('editor')

    def test_parse_rejects_unknown_role(self):
        with pytest.raises(ValueError):
            Role.parse('owner')


class TestAuthorizeProject:

    @pytest.mark.parametrize('member_role,required,allowed', [
        ('viewer', 'viewer', True),
        ('viewer', 'editor', False),
        ('viewer', 'admin', False),
        ('editor', 'viewer', True),
        ('editor', 'editor', True),
        ('editor', 'admin', False),
        ('admin', 'viewer', True),
        ('admin', 'editor', True),
        ('admin', 'admin', True),
    ])
    def test_truth_table(self, make_user, make_project, member_role, required, allowed):
        owner = make_user('owner')
        member = make_user('member')
        project = make_project(owner, members={member: member_role})

        if allowed:
            grant = authorize_project(member.id, project.id, required)
            assert grant.role == Role.parse(member_role)
            assert grant.is_creator is False
        else:
            with pytest.raises(InsufficientRoleError) as exc:
                authorize_project(member.id, project.id, required)
            body = exc.value.to_dict()
            assert body['reason'] == 'insufficient_role'
            assert body['required_role'] == required
            assert body['actual_role'] == member_role

    def test_creator_flag(self, board):
        project, owner, *_ = board
        grant = authorize_project(owner.id, project.id, Role.ADMIN)
        assert grant.role == Role.ADMIN
        assert grant.is_creator is True

    def test_non_member_is_forbidden(self, board):
        project, *_, outsider = board
        with pytest.raises(NotMemberError) as exc:
            authorize_project(outsider.id, project.id, Role.VIEWER)
        assert exc.value.to_dict()['reason'] == 'not_a_member'

    def test_missing_project_is_not_found(self, board):
        *_, outsider = board
        with pytest.raises(NotFound):
            authorize_project(outsider.id, 9999, Role.VIEWER)


class TestAuthorizeThroughChildren:

    def test_missing_task_is_not_found_even_for_outsiders(self, board):
        *_, outsider = board
        with pytest.raises(NotFound) as exc:
            authorize_task(outsider.id, 12345, Role.VIEWER)
        assert exc.value.message == 'Task not found'

    def test_task_resolves_owning_project(self, board):
        project, owner, editor, *_ = board
        task = Task(title='T', project_id=project.id, created_by=owner.id)
        db.session.add(task)
        db.session.commit()

        grant = authorize_task(editor.id, task.id, Role.EDITOR)
        assert grant.project.id == project.id
        assert grant.task.id == task.id
        assert grant.role == Role.EDITOR

    def test_task_of_foreign_project_is_forbidden(self, board):
        project, owner, *_, outsider = board
        task = Task(title='T', project_id=project.id, created_by=owner.id)
        db.session.add(task)
        db.session.commit()

        with pytest.raises(NotMemberError):
            authorize_task(outsider.id, task.id, Role.VIEWER)

    def test_note_resolves_owning_project(self, board):
        project, owner, editor, viewer, _ = board
        note = Note(title='N', content='c', type='notice', project_id=project.id, created_by=owner.id)
        db.session.add(note)
        db.session.commit()

        assert authorize_note(viewer.id, note.id, Role.VIEWER).note.id == note.id
        with pytest.raises(InsufficientRoleError):
            authorize_note(viewer.id, note.id, Role.EDITOR)


class TestDeleteGate:

    def test_editor_reaches_task_but_cannot_delete(self, board):
        project, owner, editor, *_ = board
        task = Task(title='T', project_id=project.id, created_by=owner.id)
        db.session.add(task)
        db.session.commit()

        grant = authorize_task(editor.id, task.id, Role.EDITOR)
        with pytest.raises(AdminOnlyError) as exc:
            require_admin_to_delete(grant)

        body = exc.value.to_dict()
        assert body['reason'] == 'admin_only'
        assert body['actual_role'] == 'editor'
        assert 'archive' in body['message']

    def test_admin_passes_second_stage(self, board):
        project, owner, *_ = board
        task = Task(title='T', project_id=project.id, created_by=owner.id)
        db.session.add(task)
        db.session.commit()

        grant = authorize_task(owner.id, task.id, Role.EDITOR)
        assert require_admin_to_delete(grant) is grant
