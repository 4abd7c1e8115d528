# tests/test_notifications.py
import logging
from unittest.mock import MagicMock

import requests

from voteguard.notifications.dispatcher import NotificationDispatcher


def make_dispatcher(**kwargs):
    session = MagicMock()
    dispatcher = NotificationDispatcher(webhook_url='https://notify.example/hook', start_worker=False,
                                        session=session, **kwargs)
    return dispatcher, session


def test_deliver_code_posts_to_webhook():
    dispatcher, session = make_dispatcher()
    assert dispatcher.deliver_code('voter-1', 'election-1', 'AB1234') is True

    assert dispatcher.process_pending() == 1
    args, kwargs = session.post.call_args
    assert args == ('https://notify.example/hook',)
    assert kwargs['json']['type'] == 'SECRET_CODE'
    assert kwargs['json']['payload'] == {'election_id': 'election-1', 'code': 'AB1234'}
    assert kwargs['timeout'] == 5.0
    assert dispatcher.get_metrics()['delivered'] == 1


def test_receipt_payload():
    dispatcher, session = make_dispatcher()
    dispatcher.deliver_receipt('voter-1', 'election-1', {'vote_id': 'v1', 'receipt_hash': 'ABCDEF0123456789'})
    dispatcher.process_pending()

    message = session.post.call_args[1]['json']
    assert message['type'] == 'VOTE_RECEIPT'
    assert message['payload'] == {'vote_id': 'v1', 'receipt_hash': 'ABCDEF0123456789', 'election_id': 'election-1'}


def test_failed_delivery_is_counted():
    dispatcher, session = make_dispatcher()
    session.post.side_effect = requests.ConnectionError("unreachable")
    dispatcher.deliver_code('voter-1', 'election-1', 'AB1234')

    assert dispatcher.process_pending() == 0
    metrics = dispatcher.get_metrics()
    assert metrics['failed'] == 1
    assert metrics['queue_size'] == 0


def test_http_error_is_a_failure():
    dispatcher, session = make_dispatcher()
    session.post.return_value.raise_for_status.side_effect = requests.HTTPError("503")
    dispatcher.deliver_code('voter-1', 'election-1', 'AB1234')
    assert dispatcher.process_pending() == 0


def test_full_queue_drops():
    dispatcher, _ = make_dispatcher(max_queue_size=1)
    assert dispatcher.deliver_code('voter-1', 'election-1', 'AB1234') is True
    assert dispatcher.deliver_code('voter-2', 'election-1', 'CD5678') is False
    assert dispatcher.get_metrics()['dropped'] == 1


def test_without_webhook_code_is_not_logged(caplog):
    dispatcher = NotificationDispatcher(start_worker=False)
    dispatcher.deliver_code('voter-1', 'election-1', 'AB1234')

    with caplog.at_level(logging.INFO):
        assert dispatcher.process_pending() == 1
    assert 'voter-1' in caplog.text
    assert 'AB1234' not in caplog.text


def test_worker_drains_queue():
    session = MagicMock()
    dispatcher = NotificationDispatcher(webhook_url='https://notify.example/hook', session=session)
    dispatcher.deliver_code('voter-1', 'election-1', 'AB1234')
    dispatcher.shutdown()

    assert session.post.called
    assert dispatcher.get_metrics()['delivered'] == 1
