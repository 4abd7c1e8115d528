# tests/test_rbac.py
import pytest

from voteguard.authentication.rbac import Actor, Permission, RBACService, UserRole
from voteguard.errors import PermissionDeniedError


@pytest.fixture
def service():
    return RBACService()


def test_voter_permissions(service):
    assert service.has_permission(UserRole.VOTER, Permission.VOTE)
    assert service.has_permission('voter', 'view_results')
    assert not service.has_permission(UserRole.VOTER, Permission.GENERATE_CODES)
    assert not service.has_permission(UserRole.VOTER, Permission.PUBLISH_RESULTS)


def test_officer_cannot_override_phases(service):
    assert service.has_permission(UserRole.ELECTION_OFFICER, Permission.GENERATE_CODES)
    assert not service.has_permission(UserRole.ELECTION_OFFICER, Permission.OVERRIDE_PHASE)
    assert not service.has_permission(UserRole.ELECTION_OFFICER, Permission.VOTE)


def test_administrator_has_every_permission_but_vote(service):
    granted = set(service.get_permissions('administrator'))
    assert granted == set(Permission) - {Permission.VOTE}


def test_unknown_role_has_nothing(service):
    assert not service.has_permission('superuser', Permission.VIEW_PHASE)


def test_require(service):
    actor = Actor('admin-1', 'administrator')
    assert service.require(actor, Permission.RECOUNT_VOTES) is actor
    with pytest.raises(PermissionDeniedError) as exc:
        service.require(Actor('voter-1', 'voter'), Permission.RECOUNT_VOTES)
    assert exc.value.details == {'permission': 'recount_votes'}
    with pytest.raises(PermissionDeniedError):
        service.require(None, Permission.VIEW_PHASE)
