# tests/test_services.py
import pytest

from voteguard.config import Config
from voteguard.errors import InternalError
from voteguard.notifications.dispatcher import NotificationDispatcher
from voteguard.services import build_services


def test_missing_signing_key_refuses_to_start(db_session, audit_logger, monkeypatch):
    monkeypatch.setattr(Config, 'VOTE_SIGNING_KEY', '')
    monkeypatch.setattr(Config, 'TESTING', False)

    with pytest.raises(InternalError):
        build_services(audit_logger=audit_logger, notifier=NotificationDispatcher(start_worker=False))


def test_missing_signing_key_allowed_when_testing(db_session, audit_logger, monkeypatch):
    monkeypatch.setattr(Config, 'VOTE_SIGNING_KEY', '')
    monkeypatch.setattr(Config, 'TESTING', True)

    services = build_services(audit_logger=audit_logger, notifier=NotificationDispatcher(start_worker=False))
    assert services.signer is not None


def test_code_checks_and_vote_inserts_share_locks(services):
    assert services.codes.locks is services.recorder.locks
