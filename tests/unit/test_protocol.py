"""Tests for the worker wire protocol records."""

import json

import pytest

from sql_bridge.ipc.protocol import (
    CHANNEL_FAULT,
    BridgeError,
    ChannelFault,
    QueryRequest,
    QueryResponse,
    is_handshake,
    unwrap_result,
)


class TestQueryRequest:
    def test_line_uses_wire_field_names(self):
        line = QueryRequest(msg_id=7, sql="select 1", sent_time=1633027200000).to_line()
        assert json.loads(line) == {
            "msgId": 7,
            "sql": "select 1",
            "sentTime": 1633027200000,
        }

    def test_embedded_newline_stays_on_one_line(self):
        sql = "select *\nfrom users\r\nwhere id = 1"
        line = QueryRequest(msg_id=1, sql=sql, sent_time=0).to_line()
        assert "\n" not in line
        assert "\r" not in line
        assert "\\n" in line
        assert json.loads(line)["sql"] == sql

    def test_non_ascii_sql_is_escaped(self):
        line = QueryRequest(msg_id=1, sql="select 'héllo'", sent_time=0).to_line()
        assert line.isascii()
        assert json.loads(line)["sql"] == "select 'héllo'"


class TestQueryResponseParse:
    def test_full_message(self):
        response = QueryResponse.parse({
            "msgId": 3,
            "result": [[{"a": 1}]],
            "javaStartTime": 100,
            "javaEndTime": 140,
        })
        assert response.msg_id == 3
        assert response.result == [[{"a": 1}]]
        assert response.error is None
        assert response.db_time_ms == 40

    def test_error_field_is_text(self):
        response = QueryResponse.parse({"msgId": 1, "error": 42})
        assert response.error == "42"

    def test_null_error_still_fails(self):
        response = QueryResponse.parse({"msgId": 1, "result": [], "error": None})
        assert response.error == "null"

    def test_missing_fields_default(self):
        response = QueryResponse.parse({"msgId": 5})
        assert response.result is None
        assert response.java_start_time is None
        assert response.db_time_ms is None

    def test_integral_float_id_accepted(self):
        assert QueryResponse.parse({"msgId": 2.0}).msg_id == 2

    @pytest.mark.parametrize("value", [
        None,
        "connected",
        [1, 2],
        {},
        {"msgId": "1"},
        {"msgId": True},
        {"msgId": 1.5},
        {"result": []},
    ])
    def test_uncorrelatable_values_rejected(self, value):
        assert QueryResponse.parse(value) is None

    def test_non_numeric_times_ignored(self):
        response = QueryResponse.parse({"msgId": 1, "javaStartTime": "x", "javaEndTime": 5})
        assert response.java_start_time is None
        assert response.java_end_time == 5
        assert response.db_time_ms is None


class TestUnwrapResult:
    def test_single_result_set_unwrapped(self):
        assert unwrap_result([[{"a": 1}]]) == [{"a": 1}]

    def test_multiple_result_sets_kept_in_order(self):
        sets = [[{"a": 1}], [{"b": 2}], []]
        assert unwrap_result(sets) == sets

    def test_empty_and_non_list_pass_through(self):
        assert unwrap_result([]) == []
        assert unwrap_result(None) is None
        assert unwrap_result({"rows": 1}) == {"rows": 1}


class TestErrors:
    def test_bridge_error_carries_code(self):
        err = BridgeError("NOT_CONNECTED", "Database isn't connected.")
        assert err.code == "NOT_CONNECTED"
        assert err.message == "Database isn't connected."
        assert str(err) == "[NOT_CONNECTED] Database isn't connected."

    def test_channel_fault_becomes_error(self):
        err = ChannelFault("java.sql.SQLException: gone").to_error()
        assert err.code == CHANNEL_FAULT
        assert "gone" in err.message


class TestHandshakeToken:
    def test_exact_token_with_whitespace(self):
        assert is_handshake("connected")
        assert is_handshake("  connected\r\n")

    @pytest.mark.parametrize("line", ["Connected", "connected!", "boom", ""])
    def test_anything_else_rejected(self, line):
        assert not is_handshake(line)
