#!/usr/bin/env python

"""Modbus-RTU frame construction and parsing.

   Everything in here is a pure function - no I/O and no state. Frames are bytes() objects laid out as:

       [slave_id, function_code, data..., crc_low, crc_high]

   Multi-byte protocol fields (addresses, quantities, register values) are big-endian, the CRC-16 is sent low
   byte first.

   The vendor-specific firmware update sub-protocol uses function code 0x66, with an opcode in the first data byte.
   Requests carry a normal CRC, but the replies from the device do not, so they are parsed by parse_firmware_response()
   without checking the CRC.
"""

from ecmodbus.errors import InvalidCRC, ModbusException, UnknownOpCode

READ_COILS = 0x01
READ_DISCRETE_INPUTS = 0x02
READ_HOLDING_REGISTERS = 0x03
READ_INPUT_REGISTERS = 0x04
WRITE_SINGLE_COIL = 0x05
WRITE_SINGLE_REGISTER = 0x06
WRITE_MULTIPLE_COILS = 0x0F
WRITE_MULTIPLE_REGISTERS = 0x10
FIRMWARE_UPDATE = 0x66    # Vendor specific, firmware update sub-protocol

FUNCTION_NAMES = {READ_COILS:'Read Coils',
                  READ_DISCRETE_INPUTS:'Read Discrete Inputs',
                  READ_HOLDING_REGISTERS:'Read Holding Registers',
                  READ_INPUT_REGISTERS:'Read Input Registers',
                  WRITE_SINGLE_COIL:'Write Single Coil',
                  WRITE_SINGLE_REGISTER:'Write Single Register',
                  WRITE_MULTIPLE_COILS:'Write Multiple Coils',
                  WRITE_MULTIPLE_REGISTERS:'Write Multiple Registers',
                  FIRMWARE_UPDATE:'Firmware Update'}

EXCEPTION_FLAG = 0x80

# Firmware sub-protocol opcodes
FW_INIT = 0x90           # Request: 4-byte file size. Reply: echo
FW_ERASE_CONFIRM = 0x91  # Request: 0x55555555. Reply: 4-byte status, 0xFFFFFFFF when the flash is erased
FW_DATA = 0x03           # Request: 1-byte length, then that many bytes of firmware
FW_ACK = 0x04            # Reply: 4-byte total number of bytes received so far
FW_ERROR = 0x05          # Reply: the device reported an error
FW_DONE = 0x99           # Request: no payload. Finish the update and re-lock the flash

ERASE_CONFIRM_KEY = 0x55555555
ERASE_COMPLETE = 0xFFFFFFFF

MAX_READ_BITS = 2000
MAX_READ_REGISTERS = 125
MAX_WRITE_COILS = 1968
MAX_WRITE_REGISTERS = 123
MAX_FIRMWARE_CHUNK = 255


def crc16(data):
    """
    Calculate the Modbus CRC-16 of 'data'.

    :param data: A bytes() object, or a list of integers, each in the range 0-255
    :return: The CRC as an integer, 0-65535
    """
    crc = 0xFFFF
    for byte in data:
        crc ^= byte
        for bit in range(8):
            if crc & 0x0001:
                crc = (crc >> 1) ^ 0xA001
            else:
                crc >>= 1
    return crc


def getcrc(message=None):
    """
    Calculate and returns the CRC bytes required for 'message' (a list of bytes), in the order they go on the wire.

    :param message: A list of bytes, each in the range 0-255
    :return: A list of two integers, each in the range 0-255, low byte first
    """
    crc = crc16(message or [])
    return [(crc & 0x00FF), ((crc >> 8) & 0x00FF)]


def verify(frame):
    """
    Return True if the last two bytes of 'frame' are a valid CRC for the rest of it.

    :param frame: A bytes() object, or list of integers
    :return: True if the CRC is correct, False if it isn't, or the frame is too short to hold one.
    """
    if (frame is None) or (len(frame) < 4):
        return False
    return getcrc(frame[:-2]) == list(frame[-2:])


def NtoBytes(value, nbytes=2):
    """
    Given an integer value 'value' and a word length 'nbytes',
    convert 'value' into a list of integers from 0-255,  with MSB first
    and LSB last.

    :param value: An integer small enough to fit into the given word length
    :param nbytes: The word length to return
    :return: a list of integers, each in the range 0-255
    """
    if nbytes not in [1, 2, 4]:
        raise ValueError('Word length must be 1, 2 or 4 bytes, not %s' % nbytes)
    if not (0 <= value < (256 ** nbytes)):
        raise ValueError('Value %s does not fit in %d byte/s' % (value, nbytes))
    return [(value >> (8 * (nbytes - i - 1))) & 0xFF for i in range(nbytes)]


def bytestoN(valuelist):
    """
    Given a list of integers in network order (MSB first), convert to an integer.

    :param valuelist: A list (or bytes() object) of integers, each 0-255
    :return: An integer
    """
    result = 0
    for value in valuelist:
        result = (result << 8) | value
    return result


def to_hex(data):
    """
    Format a frame for logging, eg '01 03 D0 01 00 01 ED 0A'

    :param data: A bytes() object, or list of integers
    :return: A string
    """
    if not data:
        return ''
    return ' '.join(['%02X' % v for v in data])


def _check_slave(slave_id):
    if not (0 <= slave_id <= 247):
        raise ValueError('Slave ID must be 0-247, not %s' % slave_id)


def _check_range(name, value, low, high):
    if not (low <= value <= high):
        raise ValueError('%s must be %d-%d, not %s' % (name, low, high, value))


def build_frame(slave_id, function_code, data=b''):
    """
    Assemble a complete frame - slave ID, function code, data, then the CRC (low byte first).

    :param slave_id: Modbus station address, 0-247
    :param function_code: Modbus function code, 0-255
    :param data: Payload, as bytes() or a list of integers
    :return: A bytes() object
    """
    message = [slave_id, function_code] + list(data)
    return bytes(message + getcrc(message))


def _build_read(slave_id, function_code, address, quantity, maxquantity):
    _check_slave(slave_id)
    _check_range('Address', address, 0, 0xFFFF)
    _check_range('Quantity', quantity, 1, maxquantity)
    return build_frame(slave_id, function_code, NtoBytes(address, 2) + NtoBytes(quantity, 2))


def build_read_coils(slave_id, address, quantity=1):
    return _build_read(slave_id, READ_COILS, address, quantity, MAX_READ_BITS)


def build_read_discrete_inputs(slave_id, address, quantity=1):
    return _build_read(slave_id, READ_DISCRETE_INPUTS, address, quantity, MAX_READ_BITS)


def build_read_holding_registers(slave_id, address, quantity=1):
    """
    Build a 0x03 request, eg build_read_holding_registers(1, 0xD001, 1) gives 01 03 D0 01 00 01 ED 0A

    :param slave_id: Modbus station address
    :param address: Starting register address, 0-65535 (the address on the wire, not a 4xxxx register number)
    :param quantity: Number of registers to read, 1-125
    :return: A bytes() object
    """
    return _build_read(slave_id, READ_HOLDING_REGISTERS, address, quantity, MAX_READ_REGISTERS)


def build_read_input_registers(slave_id, address, quantity=1):
    return _build_read(slave_id, READ_INPUT_REGISTERS, address, quantity, MAX_READ_REGISTERS)


def build_write_single_coil(slave_id, address, value):
    """
    Build a 0x05 request. Any true value turns the coil on (0xFF00), any false value turns it off (0x0000).
    """
    _check_slave(slave_id)
    _check_range('Address', address, 0, 0xFFFF)
    if value:
        payload = [0xFF, 0x00]
    else:
        payload = [0x00, 0x00]
    return build_frame(slave_id, WRITE_SINGLE_COIL, NtoBytes(address, 2) + payload)


def build_write_single_register(slave_id, address, value):
    _check_slave(slave_id)
    _check_range('Address', address, 0, 0xFFFF)
    _check_range('Value', value, 0, 0xFFFF)
    return build_frame(slave_id, WRITE_SINGLE_REGISTER, NtoBytes(address, 2) + NtoBytes(value, 2))


def pack_bits(values):
    """
    Pack a list of booleans into bytes, LSB first within each byte, as used for coils and discrete inputs.

    :param values: A list of booleans (or anything with a truth value)
    :return: A list of integers, each 0-255
    """
    packed = [0] * ((len(values) + 7) // 8)
    for i, value in enumerate(values):
        if value:
            packed[i // 8] |= (1 << (i % 8))
    return packed


def unpack_bits(data, count=None):
    """
    Unpack bytes into a list of booleans, LSB first within each byte.

    :param data: A bytes() object or list of integers
    :param count: If given, only return this many bits
    :return: A list of booleans
    """
    bits = []
    for byte in data:
        for bit in range(8):
            bits.append(bool(byte & (1 << bit)))
    if count is not None:
        bits = bits[:count]
    return bits


def build_write_multiple_coils(slave_id, address, values):
    _check_slave(slave_id)
    _check_range('Address', address, 0, 0xFFFF)
    _check_range('Number of coils', len(values), 1, MAX_WRITE_COILS)
    packed = pack_bits(values)
    data = NtoBytes(address, 2) + NtoBytes(len(values), 2) + [len(packed)] + packed
    return build_frame(slave_id, WRITE_MULTIPLE_COILS, data)


def build_write_multiple_registers(slave_id, address, values):
    """
    Build a 0x10 request, to write each of the integers in 'values' to consecutive registers starting at 'address'.

    :param slave_id: Modbus station address
    :param address: First register address, 0-65535
    :param values: A list of register values, each 0-65535
    :return: A bytes() object
    """
    _check_slave(slave_id)
    _check_range('Address', address, 0, 0xFFFF)
    _check_range('Number of registers', len(values), 1, MAX_WRITE_REGISTERS)
    words = []
    for value in values:
        _check_range('Value', value, 0, 0xFFFF)
        words += NtoBytes(value, 2)
    data = NtoBytes(address, 2) + NtoBytes(len(values), 2) + [len(words)] + words
    return build_frame(slave_id, WRITE_MULTIPLE_REGISTERS, data)


def build_request(slave_id, function_code, address, quantity=1, value=None, values=None):
    """
    Build any of the eight standard requests, given the function code. Used by the command line tools and test
    procedures, where the function code comes from the user.

    :param slave_id: Modbus station address
    :param function_code: One of 0x01-0x06, 0x0F or 0x10
    :param address: Starting address
    :param quantity: Number of items to read (read functions only)
    :param value: Value to write (single write functions only)
    :param values: List of values to write (multiple write functions only)
    :return: A bytes() object
    """
    if function_code == READ_COILS:
        return build_read_coils(slave_id, address, quantity)
    elif function_code == READ_DISCRETE_INPUTS:
        return build_read_discrete_inputs(slave_id, address, quantity)
    elif function_code == READ_HOLDING_REGISTERS:
        return build_read_holding_registers(slave_id, address, quantity)
    elif function_code == READ_INPUT_REGISTERS:
        return build_read_input_registers(slave_id, address, quantity)
    elif function_code == WRITE_SINGLE_COIL:
        return build_write_single_coil(slave_id, address, value)
    elif function_code == WRITE_SINGLE_REGISTER:
        return build_write_single_register(slave_id, address, value)
    elif function_code == WRITE_MULTIPLE_COILS:
        return build_write_multiple_coils(slave_id, address, values)
    elif function_code == WRITE_MULTIPLE_REGISTERS:
        return build_write_multiple_registers(slave_id, address, values)
    else:
        raise ValueError('Invalid function code 0x%02X' % function_code)


class ParsedResponse(object):
    """
    The contents of a valid (non-exception) reply.

    Attributes are:
    slave_id: Modbus station address the reply came from
    function_code: Function code of the reply
    data: For read replies, a list of booleans (coils and discrete inputs) or integers (registers). For write
          acknowledgements, a one-element list with the value (or quantity) echoed back.
    address: Starting address echoed back in a write acknowledgement, otherwise None
    value: Value (single writes) or quantity (multiple writes) echoed back in a write acknowledgement, otherwise None
    """
    def __init__(self, slave_id, function_code, data=None, address=None, value=None):
        self.slave_id = slave_id
        self.function_code = function_code
        self.data = data or []
        self.address = address
        self.value = value

    def __repr__(self):
        return ('ParsedResponse(slave_id=%s, function_code=0x%02X, data=%s, address=%s, value=%s)' %
                (self.slave_id, self.function_code, self.data, self.address, self.value))

    def __eq__(self, other):
        return isinstance(other, ParsedResponse) and (self.__dict__ == other.__dict__)


def parse_response(frame, quantity=None):
    """
    Check the CRC on a reply and decode it.

    Raises InvalidCRC if the frame is too short or the CRC doesn't match, and ModbusException if the device sent an
    exception reply. Raises ValueError if the reply is truncated, has an empty (or, for registers, odd) byte count,
    or for function codes we don't handle.

    :param frame: A bytes() object containing the whole reply, including the CRC
    :param quantity: For coil and discrete input reads, the number of bits requested, used to strip the padding
                     bits in the last byte. If None, all bits in the data bytes are returned.
    :return: An instance of ParsedResponse
    """
    if not verify(frame):
        raise InvalidCRC('Invalid CRC in frame: %s' % to_hex(frame))

    slave_id = frame[0]
    function_code = frame[1]
    if function_code & EXCEPTION_FLAG:
        raise ModbusException(frame[2], function_code=function_code & 0x7F)

    if function_code in (READ_COILS, READ_DISCRETE_INPUTS, READ_HOLDING_REGISTERS, READ_INPUT_REGISTERS):
        bytecount = frame[2]
        if len(frame) < 3 + bytecount + 2:
            raise ValueError('Short reply, byte count %d but only %d bytes of data' % (bytecount, len(frame) - 5))
        if bytecount == 0:
            raise ValueError('Reply with no data: %s' % to_hex(frame))
        payload = frame[3:3 + bytecount]
        if function_code in (READ_COILS, READ_DISCRETE_INPUTS):
            data = unpack_bits(payload, count=quantity)
        else:
            if bytecount % 2:
                raise ValueError('Odd byte count %d in register reply' % bytecount)
            data = [bytestoN(payload[i:i + 2]) for i in range(0, bytecount, 2)]
        return ParsedResponse(slave_id, function_code, data=data)

    elif function_code in (WRITE_SINGLE_COIL, WRITE_SINGLE_REGISTER, WRITE_MULTIPLE_COILS, WRITE_MULTIPLE_REGISTERS):
        if len(frame) < 8:
            raise ValueError('Short write acknowledgement: %s' % to_hex(frame))
        address = bytestoN(frame[2:4])
        value = bytestoN(frame[4:6])
        if function_code == WRITE_SINGLE_COIL:
            data = [value == 0xFF00]
        else:
            data = [value]
        return ParsedResponse(slave_id, function_code, data=data, address=address, value=value)

    else:
        raise ValueError('Unsupported function code 0x%02X' % function_code)


#############################################
# Firmware update sub-protocol (function 0x66)
#

def build_firmware_init(slave_id, file_size):
    """
    OpCode 0x90 - unlock the flash, and tell the device how many bytes are coming.

    :param slave_id: Modbus station address
    :param file_size: Size of the firmware image in bytes
    :return: A bytes() object
    """
    _check_slave(slave_id)
    return build_frame(slave_id, FIRMWARE_UPDATE, [FW_INIT] + NtoBytes(file_size, 4))


def build_firmware_erase_confirm(slave_id):
    _check_slave(slave_id)
    return build_frame(slave_id, FIRMWARE_UPDATE, [FW_ERASE_CONFIRM] + NtoBytes(ERASE_CONFIRM_KEY, 4))


def build_firmware_data(slave_id, chunk):
    """
    OpCode 0x03 - one chunk of the firmware image, preceded by its length.

    :param slave_id: Modbus station address
    :param chunk: A bytes() object, 1-255 bytes long
    :return: A bytes() object
    """
    _check_slave(slave_id)
    _check_range('Chunk length', len(chunk), 1, MAX_FIRMWARE_CHUNK)
    return build_frame(slave_id, FIRMWARE_UPDATE, [FW_DATA, len(chunk)] + list(chunk))


def build_firmware_done(slave_id):
    _check_slave(slave_id)
    return build_frame(slave_id, FIRMWARE_UPDATE, [FW_DONE])


def is_firmware_frame(frame):
    """True if 'frame' is a firmware sub-protocol request (or reply)."""
    return (frame is not None) and (len(frame) >= 2) and ((frame[1] & 0x7F) == FIRMWARE_UPDATE)


class FirmwareResponse(object):
    """
    The contents of a firmware sub-protocol reply.

    Attributes are:
    slave_id: Modbus station address the reply came from
    function_code: Always 0x66
    opcode: Reply opcode (0x90, 0x91, 0x04 or 0x05)
    success: True if the reply means the step worked (for 0x91, only once the flash is fully erased)
    status: For 0x91 replies, the 4-byte erase status, otherwise None
    total_received: For 0x04 replies that carry it, the total number of bytes received by the device so far
    error: Error message, for failed replies
    """
    def __init__(self, slave_id, function_code, opcode, success=False, status=None, total_received=None, error=None):
        self.slave_id = slave_id
        self.function_code = function_code
        self.opcode = opcode
        self.success = success
        self.status = status
        self.total_received = total_received
        self.error = error

    def __repr__(self):
        return ('FirmwareResponse(slave_id=%s, opcode=0x%02X, success=%s, status=%s, total_received=%s, error=%s)' %
                (self.slave_id, self.opcode, self.success, self.status, self.total_received, self.error))


def parse_firmware_response(frame):
    """
    Decode a firmware sub-protocol reply. These replies have no CRC, so it isn't checked, and any trailing bytes
    past the fields we need are ignored.

    Raises ModbusException for an exception reply, ValueError if the function code isn't 0x66 or the frame is too
    short, and UnknownOpCode for an opcode we don't recognise.

    :param frame: A bytes() object
    :return: An instance of FirmwareResponse
    """
    if (frame is None) or (len(frame) < 3):
        raise ValueError('Short firmware reply: %s' % to_hex(frame))

    slave_id = frame[0]
    function_code = frame[1]
    if function_code & EXCEPTION_FLAG:
        raise ModbusException(frame[2], function_code=function_code & 0x7F)
    if function_code != FIRMWARE_UPDATE:
        raise ValueError('Unexpected function code 0x%02X in firmware reply' % function_code)

    opcode = frame[2]
    result = FirmwareResponse(slave_id, function_code, opcode)
    if opcode == FW_INIT:
        result.success = True
    elif opcode == FW_ERASE_CONFIRM:
        if len(frame) >= 7:
            result.status = bytestoN(frame[3:7])
            result.success = (result.status == ERASE_COMPLETE)
        else:
            result.error = 'No erase status in reply'
    elif opcode == FW_ACK:
        result.success = True
        if len(frame) >= 7:
            result.total_received = bytestoN(frame[3:7])
    elif opcode == FW_ERROR:
        result.error = 'Slave reported error'
    else:
        raise UnknownOpCode(opcode)
    return result
