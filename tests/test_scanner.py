import pytest

from ecmodbus import coordinator
from ecmodbus import events
from ecmodbus import framing
from ecmodbus import scanner
from simulate import sim_fan


@pytest.fixture
def bus():
    return sim_fan.SimBus(fans=[sim_fan.SimECFan(modbus_address=1), sim_fan.SimECFan(modbus_address=3)])


@pytest.fixture
def conn(bus):
    return coordinator.RequestCoordinator(simulator=bus, response_timeout=0.1)


def test_scan_finds_fans(conn):
    s = scanner.Scanner(coordinator=conn, scan_delay=0.0)
    seen = []
    s.add_listener(lambda event, **d: seen.append((event, d)))
    session = s.scan(1, 5)
    assert session.found == [1, 3]
    assert not session.cancelled
    assert not s.scanning
    assert [d['slave_id'] for e, d in seen if e == events.SCAN_FOUND] == [1, 3]
    progress = [d['progress'] for e, d in seen if e == events.SCAN_PROGRESS]
    assert len(progress) == 5
    assert progress[-1] == 100.0
    assert seen[0][0] == events.SCAN_STARTED
    assert seen[-1] == (events.SCAN_COMPLETED, {'found':[1, 3]})


def test_scan_single_address(conn):
    assert scanner.Scanner(coordinator=conn, scan_delay=0.0).scan(3, 3).found == [3]


def test_disabled_fan_not_found(conn, bus):
    bus.fans[3].enabled = False
    assert scanner.Scanner(coordinator=conn, scan_delay=0.0).scan(1, 4).found == [1]


def test_cancel_keeps_found(conn):
    s = scanner.Scanner(coordinator=conn, scan_delay=0.0)

    def cancel_on_first(event, **details):
        if event == events.SCAN_FOUND:
            s.cancel()

    seen = []
    s.add_listener(cancel_on_first)
    s.add_listener(lambda event, **d: seen.append(event))
    session = s.scan(1, 10)
    assert session.cancelled
    assert session.found == [1]
    assert session.current_id == 1
    assert seen[-1] == events.SCAN_ABORTED


@pytest.mark.parametrize('start, end', [(0, 5), (5, 4), (1, 248)])
def test_invalid_range(conn, start, end):
    with pytest.raises(ValueError):
        scanner.Scanner(coordinator=conn).scan(start, end)


def test_scan_not_connected(fake_transport, wired):
    fake_transport.connected = False
    session = scanner.Scanner(coordinator=wired, scan_delay=0.0).scan(1, 3)
    assert session.cancelled
    assert session.error == 'Not connected'
    assert session.found == []


def test_empty_reply_not_found(fake_transport, wired):
    fake_transport.replies.append((framing.build_frame(1, 0x03, [0]), 0.01))
    fake_transport.replies.append((framing.build_frame(2, 0x03, [2, 0x00, 0x01]), 0.01))
    seen = []
    s = scanner.Scanner(coordinator=wired, scan_delay=0.0)
    s.add_listener(lambda event, **d: seen.append((event, d)))
    session = s.scan(1, 2)
    assert session.found == [2]
    assert not session.cancelled
    assert [d['value'] for e, d in seen if e == events.SCAN_FOUND] == [1]
