# voteguard/errors.py
"""Typed errors raised by the voting core.

Every error carries a stable ``code`` and an ``http_status`` so the HTTP layer
can map it without inspecting messages. ``details`` holds the client-safe
context (retry-after, current phase, remaining attempts); it never includes
other voters' state.

Exception hierarchy:
- VoteGuardError
  - ValidationError: malformed input
  - NotFoundError: voter, code, election, position or vote absent
  - ConflictError: duplicate code, illegal state transition
    - AlreadyVotedError: the position was already voted
  - LockedError: brute-force lockout in effect
  - PhaseError: operation illegal in the current election phase
  - SecurityError: suspicious activity
    - IntegrityViolationError: persisted vote failed hash/signature checks
  - PermissionDeniedError: actor role lacks the permission
  - InternalError: persistence or unexpected failure
  - DeactivatedError, InvalidCodeError, NotEligibleError: code/eligibility refusals
"""


class VoteGuardError(Exception):
    code = 'VOTEGUARD_ERROR'
    http_status = 500

    def __init__(self, message=None, **details):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details

    def to_dict(self):
        payload = {'error': self.code, 'message': self.message}
        if self.details:
            payload['details'] = self.details
        return payload


class ValidationError(VoteGuardError):
    code = 'VALIDATION_ERROR'
    http_status = 400


class NotFoundError(VoteGuardError):
    code = 'NOT_FOUND'
    http_status = 404


class ConflictError(VoteGuardError):
    code = 'CONFLICT'
    http_status = 409


class AlreadyVotedError(ConflictError):
    code = 'ALREADY_VOTED'


class LockedError(VoteGuardError):
    code = 'CODE_LOCKED'
    http_status = 423

    def __init__(self, message=None, retry_after=0, locked_until=None):
        details = {'retry_after': int(retry_after)}
        if locked_until is not None:
            details['locked_until'] = locked_until.isoformat()
        super().__init__(message or 'Secret code is temporarily locked', **details)
        self.retry_after = int(retry_after)


class PhaseError(VoteGuardError):
    code = 'PHASE_VIOLATION'
    http_status = 409

    def __init__(self, message=None, current_phase=None, status=None):
        super().__init__(message or 'Operation not allowed in the current election phase',
                         current_phase=current_phase, status=status)
        self.current_phase = current_phase


class SecurityError(VoteGuardError):
    code = 'SECURITY_VIOLATION'
    http_status = 403


class IntegrityViolationError(SecurityError):
    code = 'INTEGRITY_VIOLATION'


class PermissionDeniedError(VoteGuardError):
    code = 'PERMISSION_DENIED'
    http_status = 403


class InternalError(VoteGuardError):
    code = 'INTERNAL_ERROR'
    http_status = 500


class DeactivatedError(VoteGuardError):
    code = 'CODE_DEACTIVATED'
    http_status = 403


class InvalidCodeError(VoteGuardError):
    code = 'INVALID_CODE'
    http_status = 401

    def __init__(self, message=None, remaining_attempts=0):
        super().__init__(message or 'Invalid secret code', remaining_attempts=remaining_attempts)
        self.remaining_attempts = remaining_attempts


class NotEligibleError(VoteGuardError):
    code = 'NOT_ELIGIBLE'
    http_status = 403
