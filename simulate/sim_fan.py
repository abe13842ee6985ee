#!/usr/bin/env python

"""
Simulates an EC fan, acting as a Modbus slave and responding to the standard 0x01-0x06, 0x0F and 0x10 commands,
and the 0x66 firmware update sub-protocol. Used for testing the ecmodbus code without hardware.

A SimECFan can be used two ways - passed directly to a coordinator.RequestCoordinator (as the 'simulator'), which
calls .process_request() for every request, or attached to a transport.Transport with .listen(), so that it answers
requests coming in over a real (or pyserial 'loop://') serial line.
"""

import logging
import random
import threading
import time

from ecmodbus import fan
from ecmodbus import framing

ERASE_TIME = 0.3   # Seconds the simulated flash erase takes
RETURN_BIAS = 0.05

STATUS_STRING = """\
Simulated EC fan at address: %(modbus_address)s:
    Enabled: %(enabled)s
    Motor status: %(motor_status)s (%(status)s)
    Setpoint: %(setpoint)s
    Actual RPM: %(rpm)s
    Operation mode: %(operation_mode)s
    Requests handled: %(requests_handled)s
    Firmware update: %(fw_state)s
"""


def random_walk(current_value, mean, scale=1.0, return_bias=RETURN_BIAS):
    """
    Take the current and desired mean values of a simulated sensor value, and generate the next value,
    to simulate a random walk around the mean value, with a bias towards returning to the mean.

    :param current_value: Current sensor value, arbitrary units
    :param mean: Desired mean value
    :param scale: Scale factor for variations - a scale of one means jumps of -1.0 to +1.0 every time step
    :param return_bias: Dimensionless factor - increase this to reduce long-term variation around the mean
    :return: Next value for the sensor reading
    """
    return current_value + scale * 2.0 * ((return_bias * (mean - current_value)) + (random.random() - 0.5))


class FirmwareState(object):
    """State of a simulated firmware update."""
    def __init__(self):
        self.active = False
        self.file_size = 0
        self.received = 0
        self.erase_start = None
        self.done = False
        self.image = b''

    def __str__(self):
        if not self.active:
            return 'idle'
        return '%d / %d bytes' % (self.received, self.file_size)

    @property
    def erased(self):
        return self.active and (self.erase_start is not None) and (time.time() - self.erase_start >= ERASE_TIME)


class SimECFan(fan.ECFan):
    """
    An instance of this class simulates a single EC fan, acting as a Modbus slave.

    Registers are held in dictionaries with register address as key - addresses that have never been written read
    as zero, the same as on the real controller.
    """
    def __init__(self, modbus_address=1, response_delay=0.0, logger=None):
        # Inherited from the controller code in ecmodbus/fan.py
        if logger is None:
            logger = logging.getLogger('SIM:%d' % modbus_address)
        fan.ECFan.__init__(self, coordinator=None, modbus_address=modbus_address, logger=logger)
        self.enabled = True   # If False, ignore all requests, like a fan with no power
        self.silent = False   # If True, process requests but never reply
        self.response_delay = response_delay   # Seconds to wait before replying
        self.requests_handled = 0
        self.wants_exit = False   # Set to True externally to kill self.sim_loop
        self.transport = None     # transport.Transport we are listening on, if any
        self.lock = threading.RLock()
        self.fw = FirmwareState()
        self.reset_registers()

    def __str__(self):
        tmpdict = self.__dict__.copy()
        tmpdict['setpoint'] = self.holding_registers.get(fan.SETPOINT, 0)
        tmpdict['rpm'] = self.holding_registers.get(0xD002, 0)
        tmpdict['operation_mode'] = self.holding_registers.get(fan.OPERATION_MODE, 0)
        tmpdict['motor_status'] = self.holding_registers.get(fan.MOTOR_STATUS, 0)
        tmpdict['status'] = fan.STATUS_CODES.get(tmpdict['motor_status'], 'UNKNOWN')
        tmpdict['fw_state'] = str(self.fw)
        return STATUS_STRING % tmpdict

    def reset_registers(self):
        """
        Set all registers back to their power-on values.
        """
        with self.lock:
            self.coils = {0:True, 1:False, 2:True, 3:False}   # Running, alarm, ready, error
            self.discrete_inputs = {}
            self.holding_registers = {0:2350,   # Temperature (0.01 deg C)
                                      1:6520,   # Humidity (0.01 %)
                                      2:10132,  # Pressure (0.1 hPa)
                                      3:2205,   # Voltage (0.1 V)
                                      4:5000,   # Current (0.01 A)
                                      5:6000,   # Speed (RPM)
                                      10:100,   # Status
                                      11:255,   # Control
                                      fan.SETPOINT:3000,
                                      0xD002:2500,   # Actual RPM
                                      0xD003:4500,   # Motor current
                                      0xD004:2200,   # Voltage
                                      fan.MOTOR_STATUS:fan.STATUS_RUNNING,
                                      fan.OPERATION_MODE:fan.MODE_SPEED}
            self.input_registers = {0:2500,   # External temperature
                                    1:5000,   # External humidity
                                    2:1000,   # Analog input 1
                                    3:2000,   # Analog input 2
                                    fan.IDENTIFICATION:0x4242}
            self.fw = FirmwareState()

    def poll_data(self, timeout=None):
        """
        Stub, not needed for simulated fan
        """
        pass

    def process_request(self, frame):
        """
        Handle one request frame, and return the reply.

        :param frame: A bytes() object containing the whole request, including CRC
        :return: A bytes() object containing the reply, or None if there is no reply (wrong address, simulator
                 disabled or silent, or a corrupted request)
        """
        if (not self.enabled) or (frame is None) or (len(frame) < 4):
            return None
        if frame[0] != self.modbus_address:
            return None
        if not framing.verify(frame):
            self.logger.warning('Request with bad CRC ignored: %s' % framing.to_hex(frame))
            return None

        if self.response_delay:
            time.sleep(self.response_delay)

        with self.lock:
            self.requests_handled += 1
            self.readtime = time.time()
            try:
                reply = self.handle_function(bytes(frame[:-2]))
            except (IndexError, ValueError):
                self.logger.exception('Error handling request %s' % framing.to_hex(frame))
                reply = self.exception_reply(frame[1], 0x04)   # Slave Device Failure

        if self.silent:
            return None
        self.logger.debug('Sim reply: %s' % framing.to_hex(reply))
        return reply

    def exception_reply(self, function_code, code):
        return framing.build_frame(self.modbus_address, function_code | framing.EXCEPTION_FLAG, [code])

    def handle_function(self, msg):
        """
        Handle a request (without its CRC), and return the complete reply frame.
        """
        function_code = msg[1]
        if function_code == framing.FIRMWARE_UPDATE:
            return self.handle_firmware(msg)
        if function_code not in framing.FUNCTION_NAMES:
            return self.exception_reply(function_code, 0x01)   # Illegal Function

        address = framing.bytestoN(msg[2:4])
        quantity = framing.bytestoN(msg[4:6])

        if function_code in (framing.READ_COILS, framing.READ_DISCRETE_INPUTS):
            if not (1 <= quantity <= framing.MAX_READ_BITS):
                return self.exception_reply(function_code, 0x03)
            if address + quantity > 65536:
                return self.exception_reply(function_code, 0x02)
            if function_code == framing.READ_COILS:
                table = self.coils
            else:
                table = self.discrete_inputs
            packed = framing.pack_bits([table.get(a, False) for a in range(address, address + quantity)])
            return framing.build_frame(self.modbus_address, function_code, [len(packed)] + packed)

        elif function_code in (framing.READ_HOLDING_REGISTERS, framing.READ_INPUT_REGISTERS):
            if not (1 <= quantity <= framing.MAX_READ_REGISTERS):
                return self.exception_reply(function_code, 0x03)
            if address + quantity > 65536:
                return self.exception_reply(function_code, 0x02)
            if function_code == framing.READ_HOLDING_REGISTERS:
                table = self.holding_registers
            else:
                table = self.input_registers
            data = []
            for a in range(address, address + quantity):
                data += framing.NtoBytes(table.get(a, 0), 2)
            return framing.build_frame(self.modbus_address, function_code, [len(data)] + data)

        elif function_code == framing.WRITE_SINGLE_COIL:
            if quantity not in (0xFF00, 0x0000):
                return self.exception_reply(function_code, 0x03)
            self.coils[address] = (quantity == 0xFF00)
            return framing.build_frame(self.modbus_address, function_code, msg[2:6])

        elif function_code == framing.WRITE_SINGLE_REGISTER:
            self.write_holding(address, quantity)
            return framing.build_frame(self.modbus_address, function_code, msg[2:6])

        elif function_code == framing.WRITE_MULTIPLE_COILS:
            bytecount = msg[6]
            if (not (1 <= quantity <= framing.MAX_WRITE_COILS)) or (bytecount != (quantity + 7) // 8):
                return self.exception_reply(function_code, 0x03)
            if address + quantity > 65536:
                return self.exception_reply(function_code, 0x02)
            bits = framing.unpack_bits(msg[7:7 + bytecount], count=quantity)
            for i, bit in enumerate(bits):
                self.coils[address + i] = bit
            return framing.build_frame(self.modbus_address, function_code, msg[2:6])

        elif function_code == framing.WRITE_MULTIPLE_REGISTERS:
            bytecount = msg[6]
            if (not (1 <= quantity <= framing.MAX_WRITE_REGISTERS)) or (bytecount != quantity * 2):
                return self.exception_reply(function_code, 0x03)
            if address + quantity > 65536:
                return self.exception_reply(function_code, 0x02)
            for i in range(quantity):
                self.write_holding(address + i, framing.bytestoN(msg[7 + 2 * i:9 + 2 * i]))
            return framing.build_frame(self.modbus_address, function_code, msg[2:6])

    def write_holding(self, address, value):
        """
        Write a holding register, with the side effects a real fan would have.
        """
        self.holding_registers[address] = value
        if address == fan.SETPOINT:
            if value:
                self.holding_registers[fan.MOTOR_STATUS] = fan.STATUS_RUNNING
            else:
                self.holding_registers[fan.MOTOR_STATUS] = fan.STATUS_STOPPED

    def fw_reply(self, opcode, data=None):
        """Firmware sub-protocol replies have no CRC."""
        return bytes([self.modbus_address, framing.FIRMWARE_UPDATE, opcode] + list(data or []))

    def handle_firmware(self, msg):
        opcode = msg[2]
        if opcode == framing.FW_INIT:
            self.fw = FirmwareState()
            self.fw.active = True
            self.fw.file_size = framing.bytestoN(msg[3:7])
            self.fw.erase_start = time.time()
            self.logger.info('FW init: %d bytes, flash unlocked' % self.fw.file_size)
            return self.fw_reply(framing.FW_INIT, msg[3:7])

        elif opcode == framing.FW_ERASE_CONFIRM:
            if framing.bytestoN(msg[3:7]) != framing.ERASE_CONFIRM_KEY:
                return self.fw_reply(framing.FW_ERROR)
            if self.fw.erased:
                return self.fw_reply(framing.FW_ERASE_CONFIRM, framing.NtoBytes(framing.ERASE_COMPLETE, 4))
            return self.fw_reply(framing.FW_ERASE_CONFIRM, [0, 0, 0, 0])

        elif opcode == framing.FW_DATA:
            if not self.fw.erased:
                return self.fw_reply(framing.FW_ERROR)
            length = msg[3]
            self.fw.image += msg[4:4 + length]
            self.fw.received += length
            if self.fw.received >= self.fw.file_size:
                self.fw.done = True
            return self.fw_reply(framing.FW_ACK, framing.NtoBytes(self.fw.received, 4))

        elif opcode == framing.FW_DONE:
            if not (self.fw.active and self.fw.done):
                self.logger.warning('FW done before all data received')
                return self.fw_reply(framing.FW_ERROR)
            self.logger.info('FW update complete, %d bytes received' % self.fw.received)
            self.fw.active = False
            return self.fw_reply(framing.FW_ACK)

        return self.fw_reply(framing.FW_ERROR)

    def listen(self, transport):
        """
        Answer requests arriving on 'transport' (an open transport.Transport), from its reader thread.
        """
        self.transport = transport
        transport.frame_handler = self.handle_wire_frame
        self.logger.info('Listening for requests on %s' % transport)

    def handle_wire_frame(self, frame):
        if not framing.verify(frame):
            self.logger.warning('Corrupted request dropped: %s' % framing.to_hex(frame))
            return
        reply = self.process_request(frame)
        if reply is not None:
            self.transport.write(reply)

    def sim_loop(self):
        """
        Runs continuously, simulating the motor speed following the setpoint, until .wants_exit is set.

        :return: None
        """
        self.logger.info('Started simulation loop for fan %d' % self.modbus_address)
        while not self.wants_exit:
            time.sleep(0.1)
            with self.lock:
                setpoint = self.holding_registers.get(fan.SETPOINT, 0)
                rpm = self.holding_registers.get(0xD002, 0)
                rpm = int(max(0, min(6000, random_walk(rpm + (setpoint - rpm) * 0.1, rpm, scale=25.0))))
                self.holding_registers[0xD002] = rpm
                self.holding_registers[0xD003] = int(rpm * 0.8 + random.random() * 200)
                voltage = random_walk(self.holding_registers.get(0xD004, 2200), 2200, scale=10.0)
                self.holding_registers[0xD004] = int(max(2100, min(2300, voltage)))


class SimBus(object):
    """
    A simulated multi-drop bus with several fans on it. Requests are routed by address, and addresses with no fan
    don't reply, just like a real RS-485 bus.
    """
    def __init__(self, fans=None):
        self.fans = {}
        for f in (fans or []):
            self.add(f)

    def __repr__(self):
        return 'SimBus(%s)' % sorted(self.fans.keys())

    def add(self, simfan):
        self.fans[simfan.modbus_address] = simfan

    def process_request(self, frame):
        if (frame is None) or (len(frame) < 4):
            return None
        simfan = self.fans.get(frame[0])
        if simfan is None:
            return None
        return simfan.process_request(frame)
