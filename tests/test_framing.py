import pytest

from ecmodbus import framing
from ecmodbus.errors import InvalidCRC, ModbusException, UnknownOpCode


def test_crc_known_frames():
    assert framing.build_read_holding_registers(1, 0xD001, 1) == bytes.fromhex('0103D0010001ED0A')
    assert framing.build_read_input_registers(1, 0xD000, 1) == bytes.fromhex('0104D0000001090A')
    assert framing.build_write_single_register(1, 0xD001, 1) == bytes.fromhex('0106D0010001210A')


def test_crc_low_byte_first():
    assert framing.crc16(bytes.fromhex('0103D0010001')) == 0x0AED
    assert framing.getcrc(list(bytes.fromhex('0103D0010001'))) == [0xED, 0x0A]


def test_verify():
    frame = bytes.fromhex('0103D0010001ED0A')
    assert framing.verify(frame)
    assert not framing.verify(frame[:-1] + b'\x0B')
    assert not framing.verify(b'\x01\x03')
    assert not framing.verify(None)


def test_to_hex():
    assert framing.to_hex(bytes.fromhex('0103D0010001ED0A')) == '01 03 D0 01 00 01 ED 0A'
    assert framing.to_hex(b'') == ''


def test_ntobytes():
    assert framing.NtoBytes(0xD001, 2) == [0xD0, 0x01]
    assert framing.NtoBytes(1000, 4) == [0, 0, 0x03, 0xE8]
    assert framing.bytestoN([0, 0, 0x03, 0xE8]) == 1000
    with pytest.raises(ValueError):
        framing.NtoBytes(70000, 2)
    with pytest.raises(ValueError):
        framing.NtoBytes(1, 3)


@pytest.mark.parametrize('args', [(248, 0, 1), (1, -1, 1), (1, 0x10000, 1), (1, 0, 0), (1, 0, 126)])
def test_read_registers_rejects_bad_arguments(args):
    with pytest.raises(ValueError):
        framing.build_read_holding_registers(*args)


def test_read_coils_limit():
    assert len(framing.build_read_coils(1, 0, 2000)) == 8
    with pytest.raises(ValueError):
        framing.build_read_coils(1, 0, 2001)


def test_write_single_coil():
    assert framing.build_write_single_coil(1, 0x0010, True)[4:6] == b'\xFF\x00'
    assert framing.build_write_single_coil(1, 0x0010, 0)[4:6] == b'\x00\x00'


def test_write_multiple_coils():
    frame = framing.build_write_multiple_coils(1, 0x0013, [True, False, True, True, False, False, True, True, True, False])
    # address, quantity=10, byte count=2, then 0xCD 0x01
    assert frame[:9] == bytes([1, 0x0F, 0x00, 0x13, 0x00, 0x0A, 0x02, 0xCD, 0x01])
    assert framing.verify(frame)
    with pytest.raises(ValueError):
        framing.build_write_multiple_coils(1, 0, [])


def test_write_multiple_registers():
    frame = framing.build_write_multiple_registers(1, 0x0001, [0x000A, 0x0102])
    assert frame[:11] == bytes([1, 0x10, 0x00, 0x01, 0x00, 0x02, 0x04, 0x00, 0x0A, 0x01, 0x02])
    with pytest.raises(ValueError):
        framing.build_write_multiple_registers(1, 0, [0] * 124)
    with pytest.raises(ValueError):
        framing.build_write_multiple_registers(1, 0, [0x10000])


def test_build_request_dispatch():
    assert framing.build_request(1, 3, 0xD001) == framing.build_read_holding_registers(1, 0xD001, 1)
    assert framing.build_request(1, 6, 0xD001, value=1) == framing.build_write_single_register(1, 0xD001, 1)
    with pytest.raises(ValueError):
        framing.build_request(1, 0x07, 0)


def test_pack_unpack_bits():
    assert framing.pack_bits([True, False, True]) == [0x05]
    assert framing.unpack_bits([0x05], count=3) == [True, False, True]
    assert len(framing.unpack_bits([0x05])) == 8


def test_parse_holding_registers():
    reply = framing.build_frame(1, 0x03, [4, 0x0B, 0xB8, 0x00, 0x01])
    parsed = framing.parse_response(reply)
    assert parsed.slave_id == 1
    assert parsed.function_code == 0x03
    assert parsed.data == [3000, 1]


def test_parse_coils_strips_padding():
    reply = framing.build_frame(1, 0x01, [1, 0x05])
    assert framing.parse_response(reply, quantity=3).data == [True, False, True]


def test_parse_write_echo():
    parsed = framing.parse_response(bytes.fromhex('0106D0010001210A'))
    assert parsed.address == 0xD001
    assert parsed.value == 1
    assert parsed.data == [1]


def test_parse_coil_write_echo():
    parsed = framing.parse_response(framing.build_write_single_coil(2, 5, True))
    assert parsed.data == [True]
    assert parsed.value == 0xFF00


def test_parse_exception_reply():
    with pytest.raises(ModbusException) as excinfo:
        framing.parse_response(framing.build_frame(1, 0x83, [0x02]))
    assert excinfo.value.code == 2
    assert excinfo.value.name == 'Illegal Data Address'
    assert excinfo.value.function_code == 0x03
    assert isinstance(excinfo.value, ValueError)


def test_parse_bad_crc():
    good = framing.build_frame(1, 0x03, [2, 0x0B, 0xB8])
    with pytest.raises(InvalidCRC):
        framing.parse_response(good[:-1] + bytes([good[-1] ^ 0xFF]))


def test_parse_short_read():
    with pytest.raises(ValueError):
        framing.parse_response(framing.build_frame(1, 0x03, [4, 0x0B, 0xB8]))


def test_parse_empty_read():
    with pytest.raises(ValueError):
        framing.parse_response(framing.build_frame(1, 0x03, [0]))
    with pytest.raises(ValueError):
        framing.parse_response(framing.build_frame(1, 0x04, [0]))
    with pytest.raises(ValueError):
        framing.parse_response(framing.build_frame(1, 0x01, [0]))


def test_parse_odd_register_bytecount():
    with pytest.raises(ValueError):
        framing.parse_response(framing.build_frame(1, 0x03, [1, 0x0B]))
    with pytest.raises(ValueError):
        framing.parse_response(framing.build_frame(1, 0x04, [3, 0x0B, 0xB8, 0x00]))


def test_firmware_requests():
    assert framing.build_firmware_init(1, 1000)[:7] == bytes([1, 0x66, 0x90, 0x00, 0x00, 0x03, 0xE8])
    assert framing.build_firmware_erase_confirm(1)[:7] == bytes([1, 0x66, 0x91, 0x55, 0x55, 0x55, 0x55])
    assert framing.build_firmware_data(1, b'\xAA\xBB')[:6] == bytes([1, 0x66, 0x03, 2, 0xAA, 0xBB])
    assert framing.build_firmware_done(1)[:3] == bytes([1, 0x66, 0x99])
    assert framing.verify(framing.build_firmware_done(1))
    with pytest.raises(ValueError):
        framing.build_firmware_data(1, b'\x00' * 256)


def test_firmware_replies_have_no_crc():
    parsed = framing.parse_firmware_response(bytes([1, 0x66, 0x90, 0x00, 0x00, 0x03, 0xE8]))
    assert parsed.success
    assert parsed.opcode == framing.FW_INIT


def test_firmware_erase_status():
    done = framing.parse_firmware_response(bytes([1, 0x66, 0x91, 0xFF, 0xFF, 0xFF, 0xFF]))
    assert done.success
    assert done.status == 0xFFFFFFFF
    busy = framing.parse_firmware_response(bytes([1, 0x66, 0x91, 0x00, 0x00, 0x00, 0x00]))
    assert not busy.success
    assert busy.status == 0


def test_firmware_ack_and_error():
    ack = framing.parse_firmware_response(bytes([1, 0x66, 0x04, 0x00, 0x00, 0x00, 0x3C]))
    assert ack.success
    assert ack.total_received == 60
    assert framing.parse_firmware_response(bytes([1, 0x66, 0x04])).total_received is None
    err = framing.parse_firmware_response(bytes([1, 0x66, 0x05]))
    assert not err.success
    assert err.error


def test_firmware_unknown_opcode():
    with pytest.raises(UnknownOpCode):
        framing.parse_firmware_response(bytes([1, 0x66, 0x42]))


def test_is_firmware_frame():
    assert framing.is_firmware_frame(framing.build_firmware_done(1))
    assert not framing.is_firmware_frame(framing.build_read_holding_registers(1, 0, 1))
