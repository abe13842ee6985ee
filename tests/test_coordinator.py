import threading
import time

import pytest

from ecmodbus import coordinator
from ecmodbus import events
from ecmodbus import framing
from ecmodbus import transport
from ecmodbus.errors import NotConnected, InvalidCRC, ModbusException


def corrupt(frame):
    return frame[:-1] + bytes([frame[-1] ^ 0xFF])


def test_write_echo(wired, fake_transport):
    request = framing.build_write_single_register(1, 0xD001, 1)
    fake_transport.replies.append((request, 0.01))
    result = wired.send_and_wait(request)
    assert result.success
    assert result.frame == request
    assert result.parsed.address == 0xD001
    assert result.parsed.value == 1
    assert fake_transport.sent == [request]


def test_read_reply(wired, fake_transport):
    fake_transport.replies.append((framing.build_frame(1, 0x03, [2, 0x0B, 0xB8]), 0.01))
    assert wired.read_holding_registers(1, 0xD001) == [3000]


def test_timeout(wired):
    start = time.time()
    result = wired.send_and_wait(framing.build_read_holding_registers(1, 0xD001, 1), timeout=0.1)
    elapsed = time.time() - start
    assert not result.success
    assert result.error == coordinator.ERROR_TIMEOUT
    assert 0.09 <= elapsed < 0.5
    assert wired.pending is None


def test_late_reply_dropped(wired, fake_transport):
    first = framing.build_read_holding_registers(1, 0xD001, 1)
    fake_transport.replies.append((framing.build_frame(1, 0x03, [2, 0x11, 0x11]), 0.25))
    result = wired.send_and_wait(first, timeout=0.1)
    assert result.error == coordinator.ERROR_TIMEOUT
    time.sleep(0.3)   # The late reply arrives with nothing waiting for it

    fake_transport.replies.append((framing.build_frame(1, 0x03, [2, 0x22, 0x22]), 0.01))
    result = wired.send_and_wait(first, timeout=0.5)
    assert result.success
    assert result.parsed.data == [0x2222]
    assert result.error is None


def test_superseded(wired, fake_transport):
    results = {}

    def first():
        results['first'] = wired.send_and_wait(framing.build_read_holding_registers(1, 0xD001, 1), timeout=2.0)

    t = threading.Thread(target=first)
    t.start()
    time.sleep(0.05)
    fake_transport.replies.append((framing.build_frame(2, 0x03, [2, 0x00, 0x07]), 0.02))
    second = wired.send_and_wait(framing.build_read_holding_registers(2, 0xD001, 1), timeout=1.0)
    t.join(timeout=2.0)

    assert results['first'].error == coordinator.ERROR_SUPERSEDED
    assert results['first'].frame is None
    assert second.success
    assert second.parsed.data == [7]


def test_superseded_caller_returns_promptly(wired):
    results = {}

    def first():
        results['first'] = wired.send_and_wait(framing.build_read_holding_registers(1, 0xD001, 1), timeout=5.0)

    t = threading.Thread(target=first)
    t.start()
    time.sleep(0.05)
    wired.send_and_wait(framing.build_read_holding_registers(2, 0xD001, 1), timeout=0.05)
    t.join(timeout=1.0)
    assert not t.is_alive()
    assert results['first'].elapsed < 1.0


def test_bad_crc(wired, fake_transport):
    fake_transport.replies.append((corrupt(framing.build_frame(1, 0x03, [2, 0x0B, 0xB8])), 0.01))
    result = wired.send_and_wait(framing.build_read_holding_registers(1, 0xD001, 1))
    assert not result.success
    assert isinstance(result.exception, InvalidCRC)
    with pytest.raises(IOError):
        fake_transport.replies.append((corrupt(framing.build_frame(1, 0x03, [2, 0x0B, 0xB8])), 0.01))
        wired.read_holding_registers(1, 0xD001)


def test_exception_reply(wired, fake_transport):
    fake_transport.replies.append((framing.build_frame(1, 0x83, [0x02]), 0.01))
    result = wired.send_and_wait(framing.build_read_holding_registers(1, 0x0000, 1))
    assert not result.success
    assert isinstance(result.exception, ModbusException)
    assert result.exception.name == 'Illegal Data Address'


def test_empty_read_reply_fails(wired, fake_transport):
    fake_transport.replies.append((framing.build_frame(1, 0x03, [0]), 0.01))
    result = wired.send_and_wait(framing.build_read_holding_registers(1, 0xD011, 1))
    assert not result.success
    assert isinstance(result.exception, ValueError)
    assert result.parsed is None


def test_read_reply_wrong_count_fails(wired, fake_transport):
    fake_transport.replies.append((framing.build_frame(1, 0x03, [4, 0x0B, 0xB8, 0x00, 0x01]), 0.01))
    result = wired.send_and_wait(framing.build_read_holding_registers(1, 0xD001, 1))
    assert not result.success
    assert 'Asked for 1' in result.error

    fake_transport.replies.append((framing.build_frame(1, 0x04, [2, 0x42, 0x42]), 0.01))
    with pytest.raises(ValueError):
        wired.read_input_registers(1, 0xD000, quantity=2)


def test_coil_reply_too_short_fails(wired, fake_transport):
    fake_transport.replies.append((framing.build_frame(1, 0x01, [1, 0xFF]), 0.01))
    result = wired.send_modbus_request(1, framing.READ_COILS, 0, quantity=10)
    assert not result.success

    fake_transport.replies.append((framing.build_frame(1, 0x01, [1, 0x05]), 0.01))
    assert wired.read_coils(1, 0, 3) == [True, False, True]


def test_wrong_slave(wired, fake_transport):
    fake_transport.replies.append((framing.build_frame(3, 0x03, [2, 0x0B, 0xB8]), 0.01))
    result = wired.send_and_wait(framing.build_read_holding_registers(1, 0xD001, 1))
    assert not result.success
    assert 'station 3' in result.error


def test_not_connected(wired, fake_transport):
    fake_transport.connected = False
    with pytest.raises(NotConnected):
        wired.send_and_wait(framing.build_read_holding_registers(1, 0xD001, 1))
    assert wired.pending is None


def test_disconnect_resolves_pending(wired, fake_transport):
    timer = threading.Timer(0.05, fake_transport.drop)
    timer.start()
    start = time.time()
    result = wired.send_and_wait(framing.build_read_holding_registers(1, 0xD001, 1), timeout=2.0)
    assert result.error == coordinator.ERROR_DISCONNECTED
    assert time.time() - start < 1.0
    assert not wired.connected


def test_events(wired, fake_transport):
    seen = []
    wired.add_listener(lambda event, **details: seen.append(event))
    request = framing.build_write_single_register(1, 0xD001, 5)
    fake_transport.replies.append((request, 0.01))
    wired.send_and_wait(request)
    wired.send_and_wait(request, timeout=0.05)
    assert seen == [events.FRAME_SENT, events.FRAME_RECEIVED, events.FRAME_SENT, events.FRAME_TIMEOUT]


def test_listener_exception_is_contained(wired, fake_transport):
    def bad_listener(event, **details):
        raise RuntimeError('oops')

    wired.add_listener(bad_listener)
    request = framing.build_write_single_register(1, 0xD001, 5)
    fake_transport.replies.append((request, 0.01))
    assert wired.send_and_wait(request).success


def test_simulator_reply(simulated):
    assert simulated.read_holding_registers(1, 0xD001) == [3000]
    assert simulated.read_input_registers(1, 0xD000) == [0x4242]
    assert simulated.write_single_register(1, 0xD001, 1500)
    assert simulated.read_holding_registers(1, 0xD001) == [1500]


def test_simulator_coils(simulated):
    assert simulated.write_multiple_coils(1, 0, [False, True, False])
    assert simulated.read_coils(1, 0, 3) == [False, True, False]
    assert simulated.write_single_coil(1, 2, True)
    assert simulated.read_coils(1, 0, 4) == [False, True, True, False]


def test_simulator_exception(simulated):
    with pytest.raises(ModbusException) as excinfo:
        simulated.read_holding_registers(1, 0xFFFF, 2)
    assert excinfo.value.code == 0x02


def test_simulator_silent_is_timeout(simulated, simfan):
    simfan.enabled = False
    result = simulated.send_and_wait(framing.build_read_holding_registers(1, 0xD001, 1))
    assert result.error == coordinator.ERROR_TIMEOUT


def test_simulator_wrong_address_is_timeout(simulated):
    result = simulated.send_modbus_request(9, framing.READ_HOLDING_REGISTERS, 0xD001)
    assert result.error == coordinator.ERROR_TIMEOUT


def test_enable_disable_simulator(wired, simfan):
    wired.enable_simulator(simfan)
    assert wired.read_input_registers(1, 0xD000) == [0x4242]
    wired.disable_simulator()
    result = wired.send_and_wait(framing.build_read_input_registers(1, 0xD000, 1), timeout=0.05)
    assert result.error == coordinator.ERROR_TIMEOUT


def test_loopback_transport():
    # On a loopback port the request comes straight back, which is exactly what a successful FC06 write looks like
    t = transport.Transport(devicename='loop://', frame_timeout=0.02)
    conn = coordinator.RequestCoordinator(transport=t, response_timeout=1.0)
    t.open()
    try:
        assert conn.connected
        assert conn.write_single_register(1, 0xD001, 1)
    finally:
        t.close()
    assert not conn.connected
    with pytest.raises(NotConnected):
        conn.send_and_wait(framing.build_write_single_register(1, 0xD001, 1))


def test_transport_open_without_endpoint():
    t = transport.Transport()
    with pytest.raises(NotConnected):
        t.open()
    with pytest.raises(NotConnected):
        t.write(b'\x01')


def test_fire_and_forget(wired, fake_transport):
    request = framing.build_write_single_register(0, 0xD001, 0)   # Broadcast, no reply expected
    wired.send_fire_and_forget(request)
    assert fake_transport.sent == [request]
    assert wired.pending is None
    fake_transport.deliver(request)   # A stray reply is just dropped
    time.sleep(0.05)
    assert wired.pending is None


def test_fire_and_forget_simulator(simulated, simfan):
    simulated.send_fire_and_forget(framing.build_write_single_register(1, 0xD001, 42))
    assert simfan.holding_registers[0xD001] == 42
