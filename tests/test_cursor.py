from __future__ import annotations

import pytest

from agent_hub.api.errors import APIError
from agent_hub.api.pagination import Cursor, CursorError, cursor_param, decode_cursor, encode_cursor, encode_page


def test_cursor_roundtrip() -> None:
    c = Cursor(created_at=123.456, item_id="job_abc")
    decoded = decode_cursor(encode_cursor(c))
    assert decoded.created_at == pytest.approx(c.created_at)
    assert decoded.item_id == c.item_id


def test_cursor_invalid() -> None:
    with pytest.raises(CursorError):
        decode_cursor("not-a-valid-cursor")
    with pytest.raises(CursorError):
        decode_cursor("  ")


def test_cursor_param_maps_errors_to_400() -> None:
    assert cursor_param(None) is None
    assert cursor_param(encode_cursor(Cursor(created_at=1.5, item_id="job_x"))) == (1.5, "job_x")
    with pytest.raises(APIError) as e:
        cursor_param("garbage!")
    assert e.value.status_code == 400
    assert e.value.code == "invalid_argument"


def test_encode_page_replaces_tuple_cursor() -> None:
    page = encode_page({"items": [], "has_more": True, "next_cursor": (2.0, "job_y")})
    assert decode_cursor(page["next_cursor"]).item_id == "job_y"
    assert encode_page({"items": [], "has_more": False, "next_cursor": None})["next_cursor"] is None
