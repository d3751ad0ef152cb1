"""Helpers for faking registry HTTP answers on a mocked requests session."""

from unittest.mock import Mock

import requests


def mock_response(status_code, payload=None):
    """Response double; ``payload=None`` means a body that is not JSON."""
    response = Mock(spec=requests.Response)
    response.status_code = status_code
    if payload is None:
        response.json.side_effect = ValueError("No JSON object could be decoded")
    else:
        response.json.return_value = payload
    return response


def mock_session(*responses):
    """Session whose ``request`` answers with ``responses`` in order."""
    session = Mock(spec=requests.Session)
    session.request.side_effect = list(responses)
    return session
