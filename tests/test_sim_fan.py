from ecmodbus import fan
from ecmodbus import framing
from simulate import sim_fan


def test_known_requests(simfan):
    reply = simfan.process_request(bytes.fromhex('0103D0010001ED0A'))
    assert framing.parse_response(reply).data == [3000]
    reply = simfan.process_request(bytes.fromhex('0104D0000001090A'))
    assert framing.parse_response(reply).data == [0x4242]
    request = bytes.fromhex('0106D0010001210A')
    assert simfan.process_request(request) == request


def test_ignored_requests(simfan):
    request = framing.build_read_holding_registers(1, fan.SETPOINT, 1)
    assert simfan.process_request(request[:-1] + b'\x00') is None
    assert simfan.process_request(framing.build_read_holding_registers(2, fan.SETPOINT, 1)) is None
    simfan.silent = True
    assert simfan.process_request(request) is None
    assert simfan.requests_handled == 1


def test_illegal_function(simfan):
    reply = simfan.process_request(framing.build_frame(1, 0x07, []))
    assert reply[1] == 0x87
    assert reply[2] == 0x01


def test_multiple_registers(simfan):
    simfan.process_request(framing.build_write_multiple_registers(1, 0x0100, [1, 2, 3]))
    reply = simfan.process_request(framing.build_read_holding_registers(1, 0x0100, 3))
    assert framing.parse_response(reply).data == [1, 2, 3]


def test_firmware_sequence(simfan, monkeypatch):
    monkeypatch.setattr(sim_fan, 'ERASE_TIME', 0.0)
    reply = simfan.process_request(framing.build_firmware_init(1, 4))
    assert framing.parse_firmware_response(reply).success
    assert len(reply) == 7   # No CRC on firmware replies
    reply = simfan.process_request(framing.build_firmware_erase_confirm(1))
    assert framing.parse_firmware_response(reply).status == framing.ERASE_COMPLETE
    reply = simfan.process_request(framing.build_firmware_data(1, b'\x01\x02\x03\x04'))
    assert framing.parse_firmware_response(reply).total_received == 4
    reply = simfan.process_request(framing.build_firmware_done(1))
    assert framing.parse_firmware_response(reply).opcode == framing.FW_ACK
    assert simfan.fw.image == b'\x01\x02\x03\x04'


def test_data_before_erase_rejected(simfan, monkeypatch):
    monkeypatch.setattr(sim_fan, 'ERASE_TIME', 60.0)
    simfan.process_request(framing.build_firmware_init(1, 4))
    reply = simfan.process_request(framing.build_firmware_erase_confirm(1))
    assert not framing.parse_firmware_response(reply).success
    reply = simfan.process_request(framing.build_firmware_data(1, b'\x01\x02\x03\x04'))
    assert framing.parse_firmware_response(reply).opcode == framing.FW_ERROR


def test_bus_routing():
    bus = sim_fan.SimBus(fans=[sim_fan.SimECFan(modbus_address=1), sim_fan.SimECFan(modbus_address=3)])
    assert bus.process_request(framing.build_read_holding_registers(3, fan.MOTOR_STATUS, 1))[0] == 3
    assert bus.process_request(framing.build_read_holding_registers(2, fan.MOTOR_STATUS, 1)) is None
