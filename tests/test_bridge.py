import asyncio
import json
import signal

from websockets.exceptions import ConnectionClosedError

from loxone_influx import bridge as bridge_module
from loxone_influx.bridge import EXIT_FATAL, EXIT_OK, LoxoneInfluxBridge, cli, parse_args
from loxone_influx.connection import ConnectionState

from conftest import (
    HUMIDITY_UUID,
    TEMP_UUID,
    UNKNOWN_UUID,
    FakeWebSocket,
    RecordingWriter,
    config_dict,
    hash_handshake,
    header,
    make_connector,
    value_table,
    wait_until,
)


def test_events_flow_from_miniserver_to_writer(bridge_config) -> None:
    async def scenario():
        ws = FakeWebSocket(replies=hash_handshake())
        writer = RecordingWriter()
        bridge = LoxoneInfluxBridge(bridge_config, writer=writer, connector=make_connector(ws))
        run_task = asyncio.create_task(bridge.run())

        payload = value_table((TEMP_UUID, 21.5), (UNKNOWN_UUID, 1.0), (HUMIDITY_UUID, 55.0))
        ws.push(header(2, len(payload)), payload)
        dispatcher = bridge.dispatcher
        await wait_until(lambda: dispatcher.dispatched + dispatcher.ignored == 3)

        await bridge.connection.abort()
        code = await asyncio.wait_for(run_task, timeout=1)
        return code, writer

    code, writer = asyncio.run(scenario())
    assert code == EXIT_OK
    assert writer.started and writer.stopped
    assert [(r.measurement, r.tags, r.fields) for r in writer.requests] == [
        ("temperature", {"room": "Kitchen", "uuid": TEMP_UUID, "src": "ws"}, {"value": 21.5}),
        ("humidity", {"room": "Kitchen", "src": "ws", "uuid": HUMIDITY_UUID}, {"value": 55.0}),
    ]


def test_transport_abort_terminates_with_error_code(bridge_config) -> None:
    async def scenario():
        ws = FakeWebSocket(replies=hash_handshake())
        writer = RecordingWriter()
        bridge = LoxoneInfluxBridge(bridge_config, writer=writer, connector=make_connector(ws))
        run_task = asyncio.create_task(bridge.run())
        await wait_until(lambda: bridge.connection.state is ConnectionState.AUTHORIZED)

        ws.finish(ConnectionClosedError(None, None))
        code = await asyncio.wait_for(run_task, timeout=1)
        return code, writer, bridge

    code, writer, bridge = asyncio.run(scenario())
    assert code == EXIT_FATAL
    assert writer.requests == []
    assert bridge.connection.state is ConnectionState.ABORTED


def test_connect_failure_idles_until_interrupt(bridge_config) -> None:
    async def scenario():
        writer = RecordingWriter()
        bridge = LoxoneInfluxBridge(
            bridge_config, writer=writer, connector=make_connector(error=OSError("refused"))
        )
        run_task = asyncio.create_task(bridge.run())
        await wait_until(lambda: bridge.connection.state is ConnectionState.FAILED)
        await asyncio.sleep(0.02)
        still_running = not run_task.done()

        await bridge.connection.abort()
        code = await asyncio.wait_for(run_task, timeout=1)
        return still_running, code

    still_running, code = asyncio.run(scenario())
    assert still_running
    assert code == EXIT_OK


def test_queued_events_are_dropped_after_fatal_transition(bridge_config) -> None:
    async def scenario():
        ws = FakeWebSocket(replies=hash_handshake())
        writer = RecordingWriter()
        bridge = LoxoneInfluxBridge(bridge_config, writer=writer, connector=make_connector(ws))
        run_task = asyncio.create_task(bridge.run())
        await wait_until(lambda: bridge.connection.state is ConnectionState.AUTHORIZED)

        payload = value_table((TEMP_UUID, 1.0))
        # value table and abnormal close land in the same reader turn
        ws.push(header(2, len(payload)), payload)
        ws.finish(ConnectionClosedError(None, None))
        code = await asyncio.wait_for(run_task, timeout=1)
        return code, writer, bridge

    code, writer, bridge = asyncio.run(scenario())
    assert code == EXIT_FATAL
    assert bridge.connection.fatal
    assert writer.requests == []
    assert bridge.events.empty()


def test_signal_aborts_bridge_during_slow_connect(bridge_config) -> None:
    async def slow_connector(url, **kwargs):
        await asyncio.sleep(30)

    async def scenario():
        writer = RecordingWriter()
        bridge = LoxoneInfluxBridge(bridge_config, writer=writer, connector=slow_connector)
        bridge.install_signal_handlers()
        run_task = asyncio.create_task(bridge.run())
        await wait_until(lambda: bridge.connection.state is ConnectionState.CONNECTING)

        signal.raise_signal(signal.SIGTERM)
        code = await asyncio.wait_for(run_task, timeout=0.5)
        await wait_until(lambda: not bridge._abort_tasks)
        return code, writer, bridge

    code, writer, bridge = asyncio.run(scenario())
    assert code == EXIT_OK
    assert writer.stopped
    assert bridge.connection.state is ConnectionState.ABORTED
    assert bridge.connection.operator_abort is True


def test_cli_reports_bad_config(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(bridge_module, "configure_logging", lambda *args, **kwargs: None)

    assert cli(["--config", str(tmp_path / "missing.json")]) == EXIT_FATAL


def test_cli_runs_bridge_with_loaded_config(tmp_path, monkeypatch) -> None:
    path = tmp_path / "c.json"
    path.write_text(json.dumps(config_dict()))
    seen = {}

    async def fake_main(config):
        seen["config"] = config
        return EXIT_OK

    monkeypatch.setattr(bridge_module, "configure_logging", lambda *args, **kwargs: None)
    monkeypatch.setattr(bridge_module, "main", fake_main)

    assert cli(["--config", str(path)]) == EXIT_OK
    assert TEMP_UUID in seen["config"].uuids


def test_parse_args_defaults_from_settings(monkeypatch) -> None:
    monkeypatch.setenv("BRIDGE_CONFIG", "/etc/loxone.json")
    monkeypatch.delenv("DEBUG", raising=False)

    args = parse_args([])

    assert args.config == "/etc/loxone.json"
    assert args.debug is False
    assert parse_args(["--debug"]).debug is True
