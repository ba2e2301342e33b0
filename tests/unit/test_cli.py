"""Tests for the sql-bridge command line."""

import asyncio
import io
import json

import pytest

from fixtures.fake_channel import FakeChannel, FakeChannelFactory
from sql_bridge import cli
from sql_bridge.client import SqlBridge
from sql_bridge.ipc.protocol import HANDSHAKE_FAILED, BridgeError
from sql_bridge.settings import BridgeSettings


class EchoChannel(FakeChannel):
    """Answers every query on the next loop turn; ``fail`` text gets an error."""

    def write_line(self, line):
        super().write_line(line)
        request = json.loads(line)
        if request["sql"].startswith("fail"):
            answer = {"msgId": request["msgId"], "error": "syntax error"}
        else:
            answer = {"msgId": request["msgId"], "result": [[{"sql": request["sql"]}]]}
        asyncio.get_running_loop().call_soon(self.send, answer)


class EchoFactory(FakeChannelFactory):
    def __call__(self, command, settings, logger):
        channel = EchoChannel(list(command), **self.channel_kwargs)
        self.channels.append(channel)
        return channel


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("SQL_BRIDGE_HOST", raising=False)


class TestParser:
    def test_statements_and_options(self):
        args = cli.build_parser().parse_args(
            ["--host", "db1", "--port", "4100", "--timeout", "2.5", "select 1", "select 2"]
        )
        assert args.sql == ["select 1", "select 2"]
        assert args.host == "db1"
        assert args.port == 4100
        assert args.timeout == 2.5

    def test_settings_only_from_given_options(self, monkeypatch):
        monkeypatch.setenv("SQL_BRIDGE_HOST", "from-env")
        args = cli.build_parser().parse_args(["--database", "prod", "--log-timing"])
        settings = cli.settings_from_args(args)
        assert settings.host == "from-env"
        assert settings.database == "prod"
        assert settings.log_timing is True
        assert settings.logs is False
        assert settings.json_logs is True

    def test_console_logs(self):
        args = cli.build_parser().parse_args(["--console-logs"])
        assert cli.settings_from_args(args).json_logs is False

    def test_invalid_settings_exit_code(self, capsys):
        assert cli.main(["--encoding", "no-such-codec", "select 1"]) == 2
        assert "invalid settings" in capsys.readouterr().err


class TestStatements:
    def test_arguments_take_precedence(self):
        stdin = io.StringIO("ignored\n")
        assert list(cli.iter_statements(["select 1"], stdin)) == ["select 1"]

    def test_stdin_lines_skip_blanks(self):
        stdin = io.StringIO("select 1\n\n  select 2  \n")
        assert list(cli.iter_statements([], stdin)) == ["select 1", "select 2"]


class TestRun:
    async def test_prints_one_json_document_per_result(self, mock_logger):
        out = io.StringIO()
        bridge = SqlBridge(BridgeSettings(), logger=mock_logger, channel_factory=EchoFactory())
        code = await cli.run(bridge.settings, ["select 1", "select 2"], out=out, bridge=bridge)
        assert code == 0
        lines = out.getvalue().splitlines()
        assert [json.loads(line) for line in lines] == [[{"sql": "select 1"}], [{"sql": "select 2"}]]
        assert not bridge.is_connected()

    async def test_query_error_sets_exit_code_and_continues(self, mock_logger, capsys):
        out = io.StringIO()
        bridge = SqlBridge(BridgeSettings(), logger=mock_logger, channel_factory=EchoFactory())
        code = await cli.run(bridge.settings, ["fail here", "select 2"], out=out, bridge=bridge)
        assert code == 1
        assert json.loads(out.getvalue()) == [{"sql": "select 2"}]
        assert "syntax error" in capsys.readouterr().err

    async def test_connect_failure(self, mock_logger, capsys):
        factory = FakeChannelFactory(
            handshake_error=BridgeError(HANDSHAKE_FAILED, "Login failed"),
        )
        bridge = SqlBridge(BridgeSettings(), logger=mock_logger, channel_factory=factory)
        code = await cli.run(bridge.settings, ["select 1"], out=io.StringIO(), bridge=bridge)
        assert code == 1
        assert "Login failed" in capsys.readouterr().err
