# voteguard/authentication/rbac.py

from collections import namedtuple
from enum import Enum
from functools import wraps
import logging

from flask import g
from flask_jwt_extended import get_jwt, get_jwt_identity, verify_jwt_in_request

from voteguard.errors import PermissionDeniedError

logger = logging.getLogger(__name__)

# Role-Based Access Control for privileged voting operations.
# Identity arrives as a verified (user_id, role) pair; this module only decides.


class UserRole(Enum):
    VOTER = "voter"
    ELECTION_OFFICER = "election_officer"
    ADMINISTRATOR = "administrator"


class Permission(Enum):
    VOTE = "vote"
    VIEW_PHASE = "view_phase"
    VIEW_RESULTS = "view_results"
    GENERATE_CODES = "generate_codes"
    MANAGE_CODES = "manage_codes"
    MANAGE_ELIGIBILITY = "manage_eligibility"
    MANAGE_ELECTIONS = "manage_elections"
    OVERRIDE_PHASE = "override_phase"
    CALCULATE_RESULTS = "calculate_results"
    PUBLISH_RESULTS = "publish_results"
    RECOUNT_VOTES = "recount_votes"
    MANAGE_VOTES = "manage_votes"


# Role -> Permissions mapping
ROLE_PERMISSIONS = {
    UserRole.VOTER: [
        Permission.VOTE,
        Permission.VIEW_PHASE,
        Permission.VIEW_RESULTS,
    ],
    UserRole.ELECTION_OFFICER: [
        Permission.VIEW_PHASE,
        Permission.VIEW_RESULTS,
        Permission.GENERATE_CODES,
        Permission.MANAGE_CODES,
        Permission.MANAGE_ELIGIBILITY,
        Permission.CALCULATE_RESULTS,
    ],
    UserRole.ADMINISTRATOR: [
        Permission.VIEW_PHASE,
        Permission.VIEW_RESULTS,
        Permission.GENERATE_CODES,
        Permission.MANAGE_CODES,
        Permission.MANAGE_ELIGIBILITY,
        Permission.MANAGE_ELECTIONS,
        Permission.OVERRIDE_PHASE,
        Permission.CALCULATE_RESULTS,
        Permission.PUBLISH_RESULTS,
        Permission.RECOUNT_VOTES,
        Permission.MANAGE_VOTES,
    ],
}

Actor = namedtuple('Actor', ['user_id', 'role'])


class RBACService:
    def has_permission(self, user_role, permission):
        if isinstance(user_role, str):
            try:
                user_role = UserRole(user_role)
            except ValueError:
                return False
        if isinstance(permission, str):
            permission = Permission(permission)
        return permission in ROLE_PERMISSIONS.get(user_role, [])

    def get_permissions(self, user_role):
        if isinstance(user_role, str):
            user_role = UserRole(user_role)
        return ROLE_PERMISSIONS.get(user_role, [])

    def require(self, actor, permission):
        """Raise PermissionDeniedError unless the actor's role grants the permission."""
        if actor is None or not self.has_permission(actor.role, permission):
            perm_str = permission.value if isinstance(permission, Enum) else str(permission)
            logger.warning(f"Permission {perm_str} denied for {getattr(actor, 'user_id', None)}")
            raise PermissionDeniedError(f"Permission denied: {perm_str}", permission=perm_str)
        return actor


rbac = RBACService()


def current_actor():
    """Actor from the verified JWT of the current request."""
    claims = get_jwt()
    return Actor(str(get_jwt_identity()), claims.get('role'))


# Decorator for required permission; the resolved actor is placed on flask.g
def require_permission(permission):
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            verify_jwt_in_request()
            actor = current_actor()
            rbac.require(actor, permission)
            g.actor = actor
            return func(*args, **kwargs)
        return wrapper
    return decorator
