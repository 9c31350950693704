"""
Tests for RESTEffector

Uses a mocked requests session; no network access.
"""

import pytest
import requests
from unittest.mock import MagicMock

from changegate.effectors import DryRunEffector, RESTEffector
from changegate.errors import FatalEffectorError, RetryableEffectorError


def make_response(status_code, json_body=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    response.content = b"{}" if json_body is not None else b""
    response.json.return_value = json_body
    return response


@pytest.fixture
def session():
    session = MagicMock()
    session.headers = {}
    return session


class TestRESTEffector:
    """Test HTTP effector behaviour"""

    def test_apply_returns_snapshot(self, session):
        session.post.return_value = make_response(200, {'snapshot': {'field': {'label': 'Old'}}})
        effector = RESTEffector("https://platform.example.com/api/", api_token="s3cret", session=session)

        snapshot = effector.apply({'field_id': 'fld-1', 'label': 'New'})

        assert snapshot == {'field': {'label': 'Old'}}
        session.post.assert_called_once_with(
            "https://platform.example.com/api/mutations",
            json={'field_id': 'fld-1', 'label': 'New'},
            timeout=30.0
        )
        assert session.headers['Authorization'] == "Bearer s3cret"

    def test_apply_without_snapshot_key(self, session):
        session.post.return_value = make_response(200, {'table_id': 'tbl-1'})
        effector = RESTEffector("https://platform.example.com/api", session=session)

        assert effector.apply({'name': 'Orders'}) == {'table_id': 'tbl-1'}

    def test_empty_body(self, session):
        session.post.return_value = make_response(204)
        effector = RESTEffector("https://platform.example.com/api", session=session)

        assert effector.apply({'name': 'Orders'}) is None

    def test_revert_posts_snapshot(self, session):
        session.post.return_value = make_response(204)
        effector = RESTEffector("https://platform.example.com/api", session=session)

        effector.revert({'table_id': 'tbl-1'})

        args, kwargs = session.post.call_args
        assert args[0].endswith("/mutations/revert")
        assert kwargs['json'] == {'snapshot': {'table_id': 'tbl-1'}}

    @pytest.mark.parametrize("status", [500, 503, 429, 408])
    def test_retryable_status(self, session, status):
        session.post.return_value = make_response(status, text="busy")
        effector = RESTEffector("https://platform.example.com/api", session=session)

        with pytest.raises(RetryableEffectorError):
            effector.apply({'name': 'Orders'})

    @pytest.mark.parametrize("status", [400, 404, 409])
    def test_fatal_status(self, session, status):
        session.post.return_value = make_response(status, text="refused")
        effector = RESTEffector("https://platform.example.com/api", session=session)

        with pytest.raises(FatalEffectorError):
            effector.apply({'name': 'Orders'})

    def test_timeout_is_retryable(self, session):
        session.post.side_effect = requests.exceptions.Timeout()
        effector = RESTEffector("https://platform.example.com/api", session=session)

        with pytest.raises(RetryableEffectorError):
            effector.apply({'name': 'Orders'})

    def test_connection_error_is_retryable(self, session):
        session.post.side_effect = requests.exceptions.ConnectionError("refused")
        effector = RESTEffector("https://platform.example.com/api", session=session)

        with pytest.raises(RetryableEffectorError):
            effector.revert({})


def test_dry_run_effector():
    effector = DryRunEffector()

    snapshot = effector.apply({'name': 'Orders'})
    effector.revert(snapshot)

    assert list(effector.applied) == [{'name': 'Orders'}]
    assert list(effector.reverted) == [snapshot]
    assert snapshot['dry_run'] is True


def test_dry_run_history_is_bounded():
    effector = DryRunEffector(history_size=2)

    for n in range(5):
        effector.revert(effector.apply({'name': f"Table{n}"}))

    assert list(effector.applied) == [{'name': 'Table3'}, {'name': 'Table4'}]
    assert len(effector.reverted) == 2
