# voteguard/cli.py

# Operator commands: flask --app voteguard <command>

from datetime import datetime

import click

from voteguard import app
from voteguard.authentication.rbac import Actor, UserRole
from voteguard.config import Config
from voteguard.errors import VoteGuardError
from voteguard.operations.phase_sweeper import PhaseSweeper
from voteguard.routes import services
from voteguard.security.token_manager import TokenManager


@app.cli.command('issue-code')
@click.argument('election_id')
@click.argument('voter_id')
@click.option('--issued-by', default='cli', help='Operator id recorded on the code')
def issue_code(election_id, voter_id, issued_by):
    """Issue a secret code and print it once."""
    try:
        issued = services.codes.generate(voter_id, election_id, Actor(issued_by, UserRole.ADMINISTRATOR.value))
    except VoteGuardError as e:
        raise click.ClickException(e.message)
    click.echo(f"Secret code for voter {voter_id}: {issued.plaintext}")
    click.echo(f"Record id: {issued.record.id}")


@app.cli.command('issue-token')
@click.argument('user_id')
@click.argument('role', type=click.Choice([role.value for role in UserRole]))
@click.option('--expires-in', type=int, default=3600, help='Token lifetime in seconds')
def issue_token(user_id, role, expires_in):
    """Issue a bearer token for the HTTP API and print it once."""
    tokens = TokenManager()
    token = tokens.generate_token(user_id, role, expires_in=expires_in)
    claims = tokens.decode(token)
    if claims is None:
        raise click.ClickException("Issued token does not validate; check JWT_SECRET_KEY")
    click.echo(token)
    click.echo(f"Expires: {datetime.utcfromtimestamp(claims['exp']).isoformat()}Z")


@app.cli.command('sweep-phases')
def sweep_phases():
    """Run one phase sweep over all open elections."""
    changes = PhaseSweeper(app, services.phases, services.results).run_once()
    for change in changes:
        click.echo(f"{change.election_id}: {change.previous_phase}/{change.previous_status} "
                   f"-> {change.phase}/{change.status}")
    click.echo(f"{len(changes)} election(s) updated")


@app.cli.command('verify-audit-log')
@click.option('--public-key', type=click.File('r'), default=None, help='PEM public key of the signer')
def verify_audit_log(public_key):
    """Check the hash chain and signatures of the audit log."""
    pem = public_key.read() if public_key else None
    if services.audit_logger.verify_log_integrity(pem):
        click.echo("Audit log integrity verified")
    else:
        raise click.ClickException("Audit log integrity check FAILED")


@app.cli.command('run-phase-sweeper')
@click.option('--interval', type=int, default=None, help='Seconds between sweeps')
def run_phase_sweeper(interval):
    """Sweep phases periodically until interrupted."""
    sweeper = PhaseSweeper(app, services.phases, services.results, interval or Config.PHASE_SWEEP_INTERVAL)
    click.echo(f"Sweeping every {sweeper.interval}s")
    try:
        sweeper.run_forever()
    except KeyboardInterrupt:
        sweeper.stop()
