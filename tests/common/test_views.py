import uuid
from unittest.mock import MagicMock

import pytest
from fastapi import HTTPException, Request

from rebound_relay.common.views import get_session_user_id


def _request(user_id) -> MagicMock:
    request = MagicMock(spec=Request)
    request.state.session.user_id = user_id
    return request


def test_session_user_id_is_a_uuid():
    user_id = uuid.uuid4()

    assert get_session_user_id(_request(str(user_id))) == user_id


@pytest.mark.parametrize("user_id", [None, "", "not-a-uuid"])
def test_missing_or_malformed_user_is_401(user_id):
    with pytest.raises(HTTPException) as exc_info:
        get_session_user_id(_request(user_id))

    assert exc_info.value.status_code == 401
