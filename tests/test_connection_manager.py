import asyncio
import logging
from datetime import datetime, timedelta

import pytest

from doorbell_core.connection_manager import (
    TIMESTAMP_FORMAT,
    ConnectionManager,
    LinkState,
)
from doorbell_core.core_types import DisconnectPolicy, ExitCode, PowerState
from doorbell_core.errors import AdapterError
from doorbell_core.gatt import LOCALTIME_CHAR_UUID, device_label
from tests.helpers.fakes_ble import (
    DOORBELL_ADDRESS,
    FakeBleAdapter,
    doorbell_characteristics,
)
from tests.helpers.util import settle, wait_for

FAILURE_EVENT = "doorbell_failure"


def make_manager(adapter, dispatcher, halt, **kwargs):
    kwargs.setdefault("failure_event", FAILURE_EVENT)
    kwargs.setdefault("connection_timeout_s", 5.0)
    return ConnectionManager(
        adapter,
        dispatcher,
        device_address=DOORBELL_ADDRESS,
        doorbell_event="doorbell",
        halt=halt,
        **kwargs,
    )


async def start_scanning(manager, adapter):
    manager.start()
    adapter.emit_power(PowerState.POWERED_ON)
    await wait_for(lambda: adapter.scanning)


async def subscribe(manager, adapter):
    await start_scanning(manager, adapter)
    adapter.emit_advertisement()
    await wait_for(lambda: manager.state is LinkState.SUBSCRIBED)


class TestDiscovery:
    @pytest.mark.asyncio
    async def test_power_on_starts_filtered_scan(self, adapter, dispatcher, halt):
        m = make_manager(adapter, dispatcher, halt)
        await start_scanning(m, adapter)
        assert m.state is LinkState.SCANNING
        assert adapter.calls[0] == (
            "start_scan",
            ["451e0001-dd1c-4f20-a42e-ff91a53d2992"],
        )

    @pytest.mark.asyncio
    async def test_other_addresses_never_connect(self, adapter, dispatcher, halt):
        m = make_manager(adapter, dispatcher, halt)
        await start_scanning(m, adapter)
        adapter.emit_advertisement("aa:bb:cc:dd:ee:ff")
        adapter.emit_advertisement("f3:23:0d:4c:ce:1c")
        adapter.emit_advertisement("not-an-address")
        await settle()
        assert adapter.count("connect") == 0
        assert m.state is LinkState.SCANNING

    @pytest.mark.asyncio
    async def test_address_match_ignores_case_and_separator(
        self, adapter, dispatcher, halt
    ):
        m = make_manager(adapter, dispatcher, halt)
        await start_scanning(m, adapter)
        adapter.emit_advertisement("F3-23-0D-4C-CE-1B")
        await wait_for(lambda: m.state is LinkState.SUBSCRIBED)
        assert adapter.count("connect") == 1

    @pytest.mark.asyncio
    async def test_repeated_matches_connect_once(self, adapter, dispatcher, halt):
        m = make_manager(adapter, dispatcher, halt)
        await start_scanning(m, adapter)
        for _ in range(3):
            adapter.emit_advertisement()
        await wait_for(lambda: m.state is LinkState.SUBSCRIBED)
        assert adapter.count("connect") == 1
        assert m.connect_attempts == 1

    @pytest.mark.asyncio
    async def test_scan_stops_before_connect(self, adapter, dispatcher, halt):
        m = make_manager(adapter, dispatcher, halt)
        await subscribe(m, adapter)
        names = [call[0] for call in adapter.calls]
        assert names.index("stop_scan") < names.index("connect")
        assert adapter.scanning is False

    @pytest.mark.asyncio
    async def test_power_off_stops_scan_and_power_on_resumes(
        self, adapter, dispatcher, halt
    ):
        m = make_manager(adapter, dispatcher, halt)
        await start_scanning(m, adapter)
        adapter.emit_power(PowerState.POWERED_OFF)
        await wait_for(lambda: not adapter.scanning)
        assert m.state is LinkState.IDLE

        adapter.emit_power(PowerState.POWERED_ON)
        await wait_for(lambda: adapter.scanning)
        assert m.state is LinkState.SCANNING
        assert adapter.count("start_scan") == 2

    @pytest.mark.asyncio
    async def test_scan_start_failure_returns_to_idle(self, adapter, dispatcher, halt):
        adapter.failures["start_scan"] = AdapterError("adapter busy")
        m = make_manager(adapter, dispatcher, halt)
        m.start()
        adapter.emit_power(PowerState.POWERED_ON)
        await wait_for(lambda: m.state is LinkState.IDLE)
        assert halt.calls == []

        del adapter.failures["start_scan"]
        adapter.emit_power(PowerState.POWERED_ON)
        await wait_for(lambda: adapter.scanning)


class TestSubscription:
    @pytest.mark.asyncio
    async def test_subscribe_disarms_timer_exactly_once(
        self, adapter, dispatcher, halt
    ):
        m = make_manager(adapter, dispatcher, halt)
        await subscribe(m, adapter)
        assert m.subscribed is True
        assert m.timer.active is False
        assert m.timer.arm_count == 1
        assert m.timer.disarm_count == 1
        assert m.handles.alarm is not None
        assert m.handles.local_time is not None

    @pytest.mark.asyncio
    async def test_device_clock_read_after_subscribe(self, adapter, dispatcher, halt):
        m = make_manager(adapter, dispatcher, halt)
        await subscribe(m, adapter)
        await wait_for(lambda: adapter.count("read") == 1)
        assert ("read", LOCALTIME_CHAR_UUID) in adapter.calls

    @pytest.mark.asyncio
    async def test_missing_local_time_halts_without_subscribe(self, dispatcher, halt):
        adapter = FakeBleAdapter(
            characteristics=doorbell_characteristics(local_time=False)
        )
        m = make_manager(adapter, dispatcher, halt)
        await start_scanning(m, adapter)
        adapter.emit_advertisement()
        await wait_for(lambda: halt.calls)
        assert halt.code == ExitCode.GATT_ERROR
        assert adapter.count("subscribe") == 0
        assert m.halted
        assert m.timer.active is False

    @pytest.mark.asyncio
    async def test_missing_service_halts(self, dispatcher, halt):
        adapter = FakeBleAdapter(services=[])
        m = make_manager(adapter, dispatcher, halt)
        await start_scanning(m, adapter)
        adapter.emit_advertisement()
        await wait_for(lambda: halt.calls)
        assert halt.calls == [(int(ExitCode.GATT_ERROR), "service_missing")]
        assert adapter.count("discover_characteristics") == 0

    @pytest.mark.asyncio
    async def test_discovery_error_halts(self, adapter, dispatcher, halt):
        adapter.failures["discover_services"] = AdapterError("att error")
        m = make_manager(adapter, dispatcher, halt)
        await start_scanning(m, adapter)
        adapter.emit_advertisement()
        await wait_for(lambda: halt.calls)
        assert halt.code == ExitCode.GATT_ERROR

    @pytest.mark.asyncio
    async def test_subscribe_failure_disconnects_and_rescans(
        self, adapter, dispatcher, halt
    ):
        adapter.failures["subscribe"] = AdapterError("cccd write failed")
        m = make_manager(adapter, dispatcher, halt)
        await start_scanning(m, adapter)
        adapter.emit_advertisement()
        await wait_for(lambda: adapter.count("disconnect") == 1)
        await wait_for(lambda: adapter.scanning)
        assert m.state is LinkState.SCANNING
        assert m.subscribed is False
        assert m.timer.active is True
        assert halt.calls == []
        assert m.timer.arm_count == 1

    @pytest.mark.asyncio
    async def test_subscribe_failure_with_halt_policy(self, adapter, dispatcher, halt):
        adapter.failures["subscribe"] = AdapterError("cccd write failed")
        m = make_manager(
            adapter, dispatcher, halt, disconnect_policy=DisconnectPolicy.HALT
        )
        await start_scanning(m, adapter)
        adapter.emit_advertisement()
        await wait_for(lambda: halt.calls)
        assert halt.code == ExitCode.DISCONNECTED

    @pytest.mark.asyncio
    async def test_connect_failure_rescans(self, adapter, dispatcher, halt):
        adapter.failures["connect"] = AdapterError("le-connection-abort-by-local")
        m = make_manager(adapter, dispatcher, halt)
        await start_scanning(m, adapter)
        adapter.emit_advertisement()
        await wait_for(lambda: adapter.count("start_scan") == 2 and adapter.scanning)
        assert m.state is LinkState.SCANNING
        assert m.timer.active is True
        assert m.handles.peripheral is None

        del adapter.failures["connect"]
        adapter.emit_advertisement()
        await wait_for(lambda: m.state is LinkState.SUBSCRIBED)
        assert m.connect_attempts == 2
        assert halt.calls == []


class TestAlarms:
    @pytest.mark.asyncio
    async def test_each_alarm_dispatches_one_event(self, adapter, dispatcher, halt):
        start = datetime(2024, 1, 1, 10, 0, 0)
        ticks = iter(start + timedelta(seconds=i) for i in range(100))
        m = make_manager(adapter, dispatcher, halt, clock=lambda: next(ticks))
        await subscribe(m, adapter)

        for _ in range(3):
            adapter.notify()
        await wait_for(lambda: len(dispatcher.calls) == 3)

        expected = [
            (start + timedelta(seconds=i)).strftime(TIMESTAMP_FORMAT) for i in range(3)
        ]
        assert dispatcher.calls == [("doorbell", ts, "", "") for ts in expected]
        assert len(set(expected)) == 3
        assert m.alarms_received == 3

    @pytest.mark.asyncio
    async def test_alarm_ignored_when_not_subscribed(self, adapter, dispatcher, halt):
        m = make_manager(adapter, dispatcher, halt)
        await start_scanning(m, adapter)
        m.on_alarm(b"\x01\x00\x00\x00")
        await settle()
        assert dispatcher.calls == []

    @pytest.mark.asyncio
    async def test_failed_dispatch_is_logged_and_link_kept(
        self, adapter, dispatcher, halt, caplog
    ):
        async def broken_dispatch(event, value1, value2="", value3=""):
            raise ValueError("bad host")

        caplog.set_level(logging.ERROR, logger="doorbell_core")
        dispatcher.dispatch = broken_dispatch
        m = make_manager(adapter, dispatcher, halt)
        await subscribe(m, adapter)

        adapter.notify()
        await wait_for(lambda: any(
            isinstance(r.msg, dict) and r.msg.get("event") == "task_failed"
            for r in caplog.records
        ))
        failed = [
            r.msg for r in caplog.records
            if isinstance(r.msg, dict) and r.msg.get("event") == "task_failed"
        ]
        assert "bad host" in failed[0]["error"]
        assert m.state is LinkState.SUBSCRIBED
        assert halt.calls == []


class TestConnectionTimeout:
    @pytest.mark.asyncio
    async def test_failure_dispatched_once_then_halt(self, adapter, dispatcher):
        halted = []

        def halt_cb(code, reason):
            halted.append((code, reason, len(dispatcher.calls)))

        m = make_manager(adapter, dispatcher, halt_cb, connection_timeout_s=0.05)
        m.start()
        await wait_for(lambda: halted)
        assert dispatcher.calls == [
            (FAILURE_EVENT, device_label(DOORBELL_ADDRESS), "", "")
        ]
        assert DOORBELL_ADDRESS in dispatcher.calls[0][1]
        # failure sent before the halt
        assert halted == [(int(ExitCode.CONNECTION_TIMEOUT), "connection timeout", 1)]

        await asyncio.sleep(0.1)
        assert len(dispatcher.calls) == 1
        assert len(halted) == 1

    @pytest.mark.asyncio
    async def test_without_failure_event_only_halts(self, adapter, dispatcher, halt):
        m = make_manager(
            adapter,
            dispatcher,
            halt,
            failure_event=None,
            disconnect_policy=DisconnectPolicy.HALT,
            connection_timeout_s=0.05,
        )
        m.start()
        await wait_for(lambda: halt.calls)
        assert halt.code == ExitCode.CONNECTION_TIMEOUT
        assert dispatcher.calls == []

    @pytest.mark.asyncio
    async def test_expiry_ignored_once_subscribed(self, adapter, dispatcher, halt):
        m = make_manager(adapter, dispatcher, halt)
        await subscribe(m, adapter)
        m._on_connection_timeout()
        await settle()
        assert dispatcher.calls == []
        assert halt.calls == []

    @pytest.mark.asyncio
    async def test_scaled_happy_path_beats_timeout(self, adapter, dispatcher, halt):
        adapter.delays.update(
            {
                "connect": 0.01,
                "discover_services": 0.005,
                "discover_characteristics": 0.005,
                "subscribe": 0.01,
            }
        )
        m = make_manager(adapter, dispatcher, halt, connection_timeout_s=0.5)
        loop = asyncio.get_running_loop()
        started = loop.time()
        await subscribe(m, adapter)
        assert loop.time() - started < 0.5
        assert m.timer.active is False

        await asyncio.sleep(0.6)
        assert dispatcher.calls == []
        assert halt.calls == []

    @pytest.mark.asyncio
    async def test_scaled_subscribe_never_completes(self, adapter, dispatcher, halt):
        gate = asyncio.Event()
        adapter.gates["subscribe"] = gate
        m = make_manager(adapter, dispatcher, halt, connection_timeout_s=0.2)
        loop = asyncio.get_running_loop()
        started = loop.time()
        await start_scanning(m, adapter)
        adapter.emit_advertisement()
        await wait_for(lambda: m.state is LinkState.SUBSCRIBING)

        await wait_for(lambda: halt.calls, timeout=1.0)
        assert loop.time() - started >= 0.19
        assert dispatcher.events() == [FAILURE_EVENT]
        assert halt.code == ExitCode.CONNECTION_TIMEOUT

        # a late subscribe success changes nothing
        gate.set()
        await settle()
        assert m.subscribed is False
        assert m.halted


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_rearm_resets_link_and_timer(self, adapter, dispatcher, halt):
        m = make_manager(adapter, dispatcher, halt, connection_timeout_s=5.0)
        await subscribe(m, adapter)

        adapter.trigger_disconnect()
        assert m.subscribed is False
        assert m.handles.peripheral is None
        assert m.handles.alarm is None
        assert m.timer.active is True
        assert m.timer.arm_count == 2
        assert m.timer.remaining() > 4.9

        await wait_for(lambda: adapter.scanning)
        assert m.state is LinkState.SCANNING
        adapter.emit_advertisement()
        await wait_for(lambda: m.state is LinkState.SUBSCRIBED)
        assert adapter.count("connect") == 2
        assert halt.calls == []

    @pytest.mark.asyncio
    async def test_halt_policy_terminates(self, adapter, dispatcher, halt):
        m = make_manager(
            adapter, dispatcher, halt, disconnect_policy=DisconnectPolicy.HALT
        )
        await subscribe(m, adapter)
        adapter.trigger_disconnect()
        assert halt.calls == [(int(ExitCode.DISCONNECTED), "peripheral disconnected")]
        await settle()
        assert adapter.count("start_scan") == 1

    @pytest.mark.asyncio
    async def test_disconnect_during_discovery_cancels_pipeline(
        self, adapter, dispatcher, halt
    ):
        gate = asyncio.Event()
        adapter.gates["discover_characteristics"] = gate
        m = make_manager(adapter, dispatcher, halt)
        await start_scanning(m, adapter)
        adapter.emit_advertisement()
        await wait_for(lambda: m.state is LinkState.DISCOVERING_CHARACTERISTICS)

        adapter.trigger_disconnect()
        await wait_for(lambda: adapter.scanning)
        gate.set()
        await settle()
        assert adapter.count("subscribe") == 0
        assert m.state is LinkState.SCANNING
        assert m.timer.active is True
        assert m.timer.arm_count == 1
        assert halt.calls == []

    @pytest.mark.asyncio
    async def test_stale_disconnect_is_ignored(self, adapter, dispatcher, halt):
        m = make_manager(adapter, dispatcher, halt)
        await subscribe(m, adapter)
        first_link = m._link_id
        adapter.trigger_disconnect()
        await wait_for(lambda: adapter.scanning)
        adapter.emit_advertisement()
        await wait_for(lambda: m.state is LinkState.SUBSCRIBED)

        m.on_disconnected(first_link)
        assert m.state is LinkState.SUBSCRIBED
        assert m.subscribed is True


class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_releases_link(self, adapter, dispatcher, halt):
        m = make_manager(adapter, dispatcher, halt)
        await subscribe(m, adapter)
        await m.shutdown()
        assert adapter.count("disconnect") == 1
        assert m.timer.active is False

        adapter.emit_power(PowerState.POWERED_ON)
        adapter.emit_advertisement()
        await settle()
        assert adapter.count("connect") == 1
        assert halt.calls == []

    @pytest.mark.asyncio
    async def test_events_after_halt_are_ignored(self, dispatcher, halt):
        adapter = FakeBleAdapter(services=[])
        m = make_manager(adapter, dispatcher, halt)
        await start_scanning(m, adapter)
        adapter.emit_advertisement()
        await wait_for(lambda: halt.calls)

        adapter.emit_power(PowerState.POWERED_ON)
        adapter.emit_advertisement()
        m._on_connection_timeout()
        await settle()
        assert len(halt.calls) == 1
        assert adapter.count("connect") == 1
        assert dispatcher.calls == []
