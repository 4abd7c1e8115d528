# voteguard/routes.py

# HTTP surface over the voting core. Identity comes from the JWT; every
# domain error is turned into JSON by a single error handler.

from flask import g, jsonify, request

from voteguard import app, limiter
from voteguard.authentication.rbac import Permission, rbac, require_permission
from voteguard.errors import LockedError, ValidationError, VoteGuardError
from voteguard.services import build_services

services = build_services()
validator = services.validator


@app.errorhandler(VoteGuardError)
def handle_voteguard_error(error):
    response = jsonify(error.to_dict())
    response.status_code = error.http_status
    if isinstance(error, LockedError):
        response.headers['Retry-After'] = str(error.retry_after)
    return response


def _json_body():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def _required(payload, field):
    value = payload.get(field)
    if value is None:
        raise ValidationError(f"Missing required field: {field}", field=field)
    return validator.validate_identifier(value, field=field)


# --- Voter surface ---

@app.route('/api/elections/<election_id>/validate-code', methods=['POST'])
@limiter.limit("10/minute")
@require_permission(Permission.VOTE)
def validate_code(election_id):
    payload = _json_body()
    position_id = _required(payload, 'position_id')
    code = validator.normalize_code(payload.get('secret_code'))
    result = services.codes.validate(g.actor.user_id, election_id, position_id, code)
    return jsonify({'ok': result.ok, 'remaining_attempts': result.record.remaining_attempts})


@app.route('/api/elections/<election_id>/votes', methods=['POST'])
@limiter.limit("30/minute")
@require_permission(Permission.VOTE)
def submit_vote(election_id):
    vote = validator.validate_vote_request(dict(_json_body(), voter_id=g.actor.user_id))
    receipt = services.recorder.submit_vote(
        vote['voter_id'], election_id, vote['position_id'], vote['candidate_id'], vote['secret_code'],
        is_abstention=vote['is_abstention'], abstention_reason=vote['abstention_reason'])
    return jsonify(receipt.to_dict()), 201


@app.route('/api/elections/<election_id>/progress', methods=['GET'])
@require_permission(Permission.VOTE)
def my_progress(election_id):
    access = services.eligibility.require_access(g.actor.user_id, election_id)
    return jsonify(services.eligibility.summary(access))


@app.route('/api/elections/<election_id>/phase', methods=['GET'])
@require_permission(Permission.VIEW_PHASE)
def election_phase(election_id):
    return jsonify(services.phases.status_report(election_id))


@app.route('/api/elections/<election_id>/results', methods=['GET', 'POST'])
@require_permission(Permission.VIEW_RESULTS)
def results(election_id):
    if request.method == 'POST':
        rbac.require(g.actor, Permission.CALCULATE_RESULTS)
        return jsonify(services.results.calculate(election_id, calculated_by=g.actor.user_id, use_cache=False))
    return jsonify(services.results.get(election_id))


@app.route('/api/receipts/<receipt_hash>', methods=['GET'])
@require_permission(Permission.VIEW_RESULTS)
def lookup_receipt(receipt_hash):
    return jsonify(services.recorder.find_by_receipt(receipt_hash).summary())


# --- Administration ---

@app.route('/api/elections/<election_id>/codes', methods=['POST'])
@require_permission(Permission.GENERATE_CODES)
def issue_code(election_id):
    voter_id = _required(_json_body(), 'voter_id')
    issued = services.codes.generate(voter_id, election_id, g.actor)
    return jsonify({'secret_code_id': issued.record.id, 'voter_id': voter_id, 'code': issued.plaintext}), 201


@app.route('/api/codes/<code_id>/deactivate', methods=['POST'])
@require_permission(Permission.MANAGE_CODES)
def deactivate_code(code_id):
    reason = validator.validate_reason(_json_body().get('reason'))
    record = services.codes.deactivate(code_id, g.actor, reason)
    return jsonify(services.codes.summary(record))


@app.route('/api/codes/<code_id>/reactivate', methods=['POST'])
@require_permission(Permission.MANAGE_CODES)
def reactivate_code(code_id):
    record = services.codes.reactivate(code_id, g.actor)
    return jsonify(services.codes.summary(record))


@app.route('/api/elections/<election_id>/codes/statistics', methods=['GET'])
@require_permission(Permission.MANAGE_CODES)
def code_statistics(election_id):
    stats = services.codes.statistics(election_id)
    stats['suspicious'] = [services.codes.summary(c) for c in services.codes.find_suspicious(election_id)]
    return jsonify(stats)


@app.route('/api/elections/<election_id>/eligibility', methods=['POST'])
@require_permission(Permission.MANAGE_ELIGIBILITY)
def grant_eligibility(election_id):
    payload = _json_body()
    access = services.eligibility.grant_eligibility(
        _required(payload, 'voter_id'), election_id, _required(payload, 'position_id'),
        validator.validate_reason(payload.get('reason'), required=False), g.actor)
    return jsonify(services.eligibility.summary(access))


@app.route('/api/elections/<election_id>/access/<voter_id>/<action>', methods=['POST'])
@require_permission(Permission.MANAGE_ELIGIBILITY)
def change_access(election_id, voter_id, action):
    payload = request.get_json(silent=True) or {}
    tracker = services.eligibility
    if action == 'suspend':
        access = tracker.suspend(voter_id, election_id, g.actor, validator.validate_reason(payload.get('reason')))
    elif action == 'reactivate':
        access = tracker.reactivate(voter_id, election_id, g.actor)
    elif action == 'revoke':
        access = tracker.revoke(voter_id, election_id, g.actor, validator.validate_reason(payload.get('reason')))
    else:
        raise ValidationError(f"Unknown access action: {action}", field='action')
    return jsonify(tracker.summary(access))


@app.route('/api/elections/<election_id>/access/statistics', methods=['GET'])
@require_permission(Permission.MANAGE_ELIGIBILITY)
def access_statistics(election_id):
    return jsonify(services.eligibility.statistics(election_id))


@app.route('/api/elections/<election_id>/status', methods=['POST'])
@require_permission(Permission.MANAGE_ELECTIONS)
def change_election_status(election_id):
    payload = _json_body()
    action = payload.get('action')
    reason = validator.validate_reason(payload.get('reason'), required=action in ('cancel', 'freeze'))
    phases = services.phases
    if action == 'schedule':
        election = phases.schedule(election_id, g.actor)
    elif action == 'activate':
        election = phases.activate(election_id, g.actor, reason)
    elif action == 'complete':
        election = phases.complete(election_id, g.actor, reason)
    elif action == 'cancel':
        election = phases.cancel(election_id, g.actor, reason)
    elif action == 'freeze':
        election = phases.freeze(election_id, g.actor, reason)
    else:
        raise ValidationError(f"Unknown election action: {action}", field='action')
    return jsonify(election.to_dict())


@app.route('/api/elections/<election_id>/results/status', methods=['POST'])
@require_permission(Permission.PUBLISH_RESULTS)
def promote_results(election_id):
    payload = _json_body()
    status = payload.get('status')
    if not isinstance(status, str):
        raise ValidationError("Missing required field: status", field='status')
    notes = validator.validate_reason(payload.get('notes'), field='notes', required=False, max_length=500)
    return jsonify(services.results.promote(election_id, status.upper(), g.actor, notes))


@app.route('/api/elections/<election_id>/results/finalize', methods=['POST'])
@require_permission(Permission.PUBLISH_RESULTS)
def finalize_results(election_id):
    payload = request.get_json(silent=True) or {}
    notes = validator.validate_reason(payload.get('notes'), field='notes', required=False, max_length=500)
    return jsonify(services.results.finalize(election_id, g.actor, notes))


@app.route('/api/elections/<election_id>/recount', methods=['POST'])
@require_permission(Permission.RECOUNT_VOTES)
def recount(election_id):
    return jsonify(services.results.recount(election_id, g.actor))


@app.route('/api/votes/<vote_id>/<action>', methods=['POST'])
@require_permission(Permission.MANAGE_VOTES)
def change_vote(vote_id, action):
    payload = request.get_json(silent=True) or {}
    recorder = services.recorder
    if action == 'verify':
        vote = recorder.verify_vote(vote_id, g.actor)
    elif action == 'invalidate':
        vote = recorder.invalidate_vote(vote_id, g.actor, validator.validate_reason(payload.get('reason')))
    elif action == 'dispute':
        vote = recorder.dispute_vote(vote_id, g.actor, validator.validate_reason(payload.get('reason')))
    else:
        raise ValidationError(f"Unknown vote action: {action}", field='action')
    return jsonify(vote.summary())
