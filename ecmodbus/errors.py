"""
Exception classes used by the ecmodbus module.

Communications problems (no endpoint, link dropped, corrupted or missing reply) are subclasses of IOError, and
problems with the packet contents as parsed by the remote device are subclasses of ValueError, so that calling code
can keep catching IOError and ValueError the same way it always has.
"""

# Modbus exception code, as returned in byte 2 of an exception reply, mapped to a description.
EXCEPTION_CODES = {0x01:'Illegal Function',
                   0x02:'Illegal Data Address',
                   0x03:'Illegal Data Value',
                   0x04:'Slave Device Failure',
                   0x05:'Acknowledge',
                   0x06:'Slave Device Busy',
                   0x08:'Memory Parity Error',
                   0x0A:'Gateway Path Unavailable',
                   0x0B:'Gateway Target Device Failed to Respond'}


def exception_message(code):
    """
    Return the description for a Modbus exception code.

    :param code: Exception code, 0-255
    :return: A string, eg 'Illegal Data Address'
    """
    return EXCEPTION_CODES.get(code, 'Unknown Exception')


class ModbusError(Exception):
    """Base class for every error raised by this module."""
    pass


class NotConnected(ModbusError, IOError):
    """Raised when trying to send with no open serial port, socket or simulator."""
    def __init__(self, message='Not connected'):
        ModbusError.__init__(self, message)


class Disconnected(ModbusError, IOError):
    """The connection was closed (or died) while an exchange was waiting for a reply."""
    def __init__(self, message='Disconnected'):
        ModbusError.__init__(self, message)


class InvalidCRC(ModbusError, IOError):
    def __init__(self, message='CRC error'):
        ModbusError.__init__(self, message)


class Timeout(ModbusError, IOError):
    def __init__(self, message='timeout'):
        ModbusError.__init__(self, message)


class ModbusException(ModbusError, ValueError):
    """
    The remote device replied with an exception packet (function code with bit 7 set).

    Attributes are:
    code: Modbus exception code (eg 2)
    name: Description of that code (eg 'Illegal Data Address')
    function_code: The function code from the request, without the exception bit, if known
    """
    def __init__(self, code, function_code=None):
        self.code = code
        self.name = exception_message(code)
        self.function_code = function_code
        ModbusError.__init__(self, 'Modbus exception 0x%02X: %s' % (code, self.name))


class UnknownOpCode(ModbusError, ValueError):
    """A firmware sub-protocol reply contained an opcode we don't understand."""
    def __init__(self, opcode):
        self.opcode = opcode
        ModbusError.__init__(self, 'Unknown firmware opcode 0x%02X' % opcode)


class FirmwareError(ModbusError):
    """
    Base class for firmware upload failures. Each subclass names the step that failed.
    """
    step = None

    def __init__(self, message=None):
        if message is None:
            message = self.__class__.__name__
        ModbusError.__init__(self, message)


class InitFailed(FirmwareError):
    step = 'INIT'


class EraseTimeout(FirmwareError):
    step = 'ERASE_CONFIRM'


class DataTransferFailed(FirmwareError):
    step = 'DATA_TRANSFER'

    def __init__(self, offset, message=None):
        self.offset = offset   # Byte offset in the firmware image of the chunk that failed
        if message is None:
            message = 'Data transfer failed at offset %d' % offset
        FirmwareError.__init__(self, message)


class FinalizeFailed(FirmwareError):
    step = 'DONE'


class Cancelled(FirmwareError):
    """Not really a failure - the upload or scan was cancelled by the caller."""
    pass
