from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest


def _make_response(status=200, payload=None, text=None, url="http://api.test"):
    resp = MagicMock()
    resp.status_code = status
    resp.url = url
    if text is not None:
        resp.content = text.encode()
        resp.json.side_effect = ValueError("not json")
    elif payload is None:
        resp.content = b""
        resp.json.side_effect = ValueError("empty")
    else:
        resp.content = json.dumps(payload).encode()
        resp.json.return_value = payload
    return resp


@pytest.fixture
def make_response():
    return _make_response
