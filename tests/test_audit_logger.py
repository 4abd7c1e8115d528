# tests/test_audit_logger.py
import os
import json
import base64
import threading

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives import serialization

from voteguard.audit.audit_logger import AuditLogger


def read_entries(audit_logger):
    with open(audit_logger.log_file, 'r') as f:
        return [json.loads(line) for line in f if line.strip()]


def rewrite(audit_logger, entries):
    with open(audit_logger.log_file, 'w') as f:
        for entry in entries:
            f.write(json.dumps(entry) + "\n")


def test_missing_directory_is_created(tmp_path):
    target = tmp_path / 'nested' / 'audit'
    AuditLogger(log_dir=str(target))
    assert target.is_dir()


def test_lockout_events_are_chained(audit_logger):
    """Failed attempts followed by the lock form one unbroken chain."""
    for remaining in (2, 1, 0):
        audit_logger.log_security_event('CODE_BRUTE_FORCE', {
            'voter_id': 'voter-1', 'election_id': 'election-1', 'remaining': remaining,
        }, user_id='voter-1')
    audit_logger.log_security_event('SECRET_CODE_LOCKED', {'voter_id': 'voter-1'}, user_id='voter-1')

    entries = read_entries(audit_logger)
    assert [e['event_type'] for e in entries] == ['CODE_BRUTE_FORCE'] * 3 + ['SECRET_CODE_LOCKED']
    assert entries[0]['previous_hash'] is None
    for earlier, later in zip(entries, entries[1:]):
        assert later['previous_hash'] == earlier['hash']
    assert {e['severity'] for e in entries} == {'HIGH'}
    assert audit_logger.previous_hash == entries[-1]['hash']
    assert audit_logger.verify_log_integrity() is True


def test_entry_signature_covers_payload(audit_logger):
    audit_logger.log_event('VOTE_CAST', {'vote_id': 'v1', 'position_id': 'president'}, user_id='voter-1')

    entry = read_entries(audit_logger)[0]
    signature = base64.b64decode(entry.pop('signature'))
    entry.pop('hash')
    payload = json.dumps(entry, sort_keys=True).encode()

    # verify() raises InvalidSignature on mismatch
    audit_logger.signing_key.public_key().verify(signature, payload)
    assert entry['severity'] == 'INFO'
    assert entry['user_id'] == 'voter-1'


def test_reopened_log_continues_chain(audit_logger):
    first = audit_logger.log_event('SECRET_CODE_GENERATED', {'voter_id': 'voter-1'})

    reopened = AuditLogger(log_dir=audit_logger.log_dir, signing_key_pem=None)
    assert reopened.previous_hash == first

    reopened.log_event('SECRET_CODE_VALIDATED', {'voter_id': 'voter-1'})
    assert read_entries(reopened)[1]['previous_hash'] == first


def test_edited_vote_entry_is_detected(audit_logger):
    audit_logger.log_event('VOTE_CAST', {'vote_id': 'v1', 'candidate_id': 'alice'})
    audit_logger.log_event('VOTE_CAST', {'vote_id': 'v2', 'candidate_id': 'bob'})

    entries = read_entries(audit_logger)
    entries[1]['data']['candidate_id'] = 'alice'
    rewrite(audit_logger, entries)

    assert audit_logger.verify_log_integrity() is False


def test_removed_entry_breaks_chain(audit_logger):
    for n in range(3):
        audit_logger.log_event('VOTE_CAST', {'vote_id': f'v{n}'})

    entries = read_entries(audit_logger)
    rewrite(audit_logger, [entries[0], entries[2]])

    assert audit_logger.verify_log_integrity() is False


def test_unreadable_tail_starts_new_segment(audit_logger):
    audit_logger.log_event('VOTE_CAST', {'vote_id': 'v1'})
    with open(audit_logger.log_file, 'a') as f:
        f.write("{not json\n")

    reopened = AuditLogger(log_dir=audit_logger.log_dir)
    assert reopened.previous_hash is None
    assert reopened.verify_log_integrity() is False


def test_empty_log_verifies(audit_logger):
    assert not os.path.exists(audit_logger.log_file)
    assert audit_logger.verify_log_integrity() is True


def test_configured_key_verifies_from_public_pem(tmp_path):
    pem = Ed25519PrivateKey.generate().private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()).decode()
    writer = AuditLogger(log_dir=str(tmp_path), signing_key_pem=pem)
    writer.log_event('RESULTS_STATUS_CHANGED', {'election_id': 'election-1', 'status': 'FINAL'})

    # A reader with its own ephemeral key needs the writer's public key
    reader = AuditLogger(log_dir=str(tmp_path))
    assert reader.verify_log_integrity() is False
    assert reader.verify_log_integrity(writer.public_key_pem()) is True


def test_concurrent_writers_keep_chain_intact(audit_logger):
    def write(voter_id):
        for n in range(10):
            audit_logger.log_event('SECRET_CODE_VALIDATED', {'voter_id': voter_id, 'n': n})

    threads = [threading.Thread(target=write, args=(f'voter-{i}',)) for i in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(read_entries(audit_logger)) == 40
    assert audit_logger.verify_log_integrity() is True


def test_sink_failure_is_swallowed(audit_logger, monkeypatch):
    def refuse(*args, **kwargs):
        raise PermissionError("read-only filesystem")

    monkeypatch.setattr("builtins.open", refuse)

    assert audit_logger.log_event('VOTE_CAST', {'vote_id': 'v1'}) is None
    assert audit_logger.previous_hash is None
