#!/usr/bin/env python

"""Classes to handle communications with an EC fan controller, any number of which can share one RS-485 bus.

   This code runs on the master side, and talks to the physical fans (or a simulated fan, see simulate/sim_fan.py)
   through a coordinator.RequestCoordinator instance.
"""

import logging
import threading
import time

from ecmodbus import events
from ecmodbus import framing

# Register map, as a dictionary with register name as key, and a tuple of (register_address, number_of_registers,
# description, register_type) as value. register_type is 'holding' or 'input'.
FAN_REGISTERS = {'IDENTIFICATION': (0xD000, 1, 'Identification code', 'input'),
                 'SETPOINT':       (0xD001, 1, 'Setpoint, RPM in speed control mode or % in open-loop mode', 'holding'),
                 'MOTOR_STATUS':   (0xD011, 1, 'Motor status', 'holding'),
                 'OPERATION_MODE': (0xD106, 1, 'Operating mode, 0=speed control, 2=open-loop control', 'holding')}

SETPOINT = FAN_REGISTERS['SETPOINT'][0]
MOTOR_STATUS = FAN_REGISTERS['MOTOR_STATUS'][0]
OPERATION_MODE = FAN_REGISTERS['OPERATION_MODE'][0]
IDENTIFICATION = FAN_REGISTERS['IDENTIFICATION'][0]

STATUS_UNKNOWN = -1    # No contact with hardware yet, we don't know the status code
STATUS_STOPPED = 0
STATUS_RUNNING = 1
STATUS_ERROR = 2
STATUS_STARTING = 3
STATUS_STOPPING = 4
STATUS_CODES = {-1:'UNKNOWN',
                0:'STOPPED',
                1:'RUNNING',
                2:'ERROR',
                3:'STARTING',
                4:'STOPPING'}

MODE_SPEED = 0      # Setpoint is in RPM
MODE_OPEN_LOOP = 2  # Setpoint is in percent
MODE_CODES = {MODE_SPEED:'SPEED', MODE_OPEN_LOOP:'OPEN_LOOP'}

POLL_INTERVAL = 0.05   # Pause between polls, in seconds
POLL_TIMEOUT = 0.2     # Reply timeout for each poll, in seconds

STATUS_STRING = """\
EC fan at address: %(modbus_address)s as of %(status_age)1.1f seconds ago:
    Online: %(online)s
    Motor status: %(motor_status)s (%(status)s)
    Setpoint: %(setpoint)s
    Operation mode: %(operation_mode)s
    Requests: %(requests)d, OK: %(success)d, errors: %(errors)d (%(rate)3.1f%% OK)
"""


class FanStats(object):
    """Request counts for one device."""
    def __init__(self):
        self.requests = 0
        self.success = 0
        self.errors = 0
        self.last_error = None

    def record(self, ok, error=None):
        self.requests += 1
        if ok:
            self.success += 1
        else:
            self.errors += 1
            self.last_error = error

    @property
    def rate(self):
        """Percentage of requests that succeeded."""
        if not self.requests:
            return 0.0
        return 100.0 * self.success / self.requests

    def reset(self):
        self.__init__()


class ECFan(events.EventSource):
    """
    ECFan class, instances of which represent one fan controller on the bus.

    Attributes are:
    modbus_address: Modbus address of this fan (1-247)
    name: Human readable name
    motor_status: Last motor status code read, one of the STATUS_* globals
    status: Status string, obtained from STATUS_CODES global (eg 'RUNNING')
    setpoint: Last setpoint read or written, or None
    operation_mode: Last operation mode read or written (MODE_SPEED or MODE_OPEN_LOOP), or None
    online: True if the last poll got a reply
    readtime: Unix timestamp for the last successful poll
    stats: FanStats instance, counting requests, successes and errors
    """
    def __init__(self, coordinator=None, modbus_address=None, name=None, logger=None):
        """
        This initialisation function doesn't communicate with the fan hardware, it just sets up the data structures.

        :param coordinator: An instance of coordinator.RequestCoordinator
        :param modbus_address: The modbus station address (1-247) for this fan
        :param name: Optional name for this fan
        :param logger: A logging.Logger instance, or None to use 'FAN:<address>'
        """
        self.coordinator = coordinator
        self.modbus_address = modbus_address
        if name is None:
            name = 'Fan %d' % modbus_address
        self.name = name
        if logger is None:
            self.logger = logging.getLogger('FAN:%d' % modbus_address)
        else:
            self.logger = logger

        self.motor_status = STATUS_UNKNOWN
        self.status = 'UNKNOWN'
        self.setpoint = None
        self.operation_mode = None
        self.online = False
        self.readtime = 0
        self.stats = FanStats()

    def __str__(self):
        tmpdict = self.__dict__.copy()
        tmpdict['status_age'] = time.time() - self.readtime
        tmpdict['requests'] = self.stats.requests
        tmpdict['success'] = self.stats.success
        tmpdict['errors'] = self.stats.errors
        tmpdict['rate'] = self.stats.rate
        return STATUS_STRING % tmpdict

    def __repr__(self):
        return str(self)

    def _exchange(self, frame, timeout=None):
        result = self.coordinator.send_and_wait(frame, timeout=timeout)
        self.stats.record(result.success, result.error)
        return result

    def poll_data(self, timeout=POLL_TIMEOUT):
        """
        Read the motor status register, and update the instance data.

        :param timeout: Reply timeout in seconds
        :return: True for success, None if there was no valid reply.
        """
        frame = framing.build_read_holding_registers(self.modbus_address, MOTOR_STATUS, 1)
        result = self._exchange(frame, timeout=timeout)
        if not result.success:
            if self.online:
                self.logger.warning('Fan %d went offline: %s' % (self.modbus_address, result.error))
                self._notify(events.DEVICE_OFFLINE, slave_id=self.modbus_address, error=result.error)
            self.online = False
            return None

        self.motor_status = result.parsed.data[0]
        self.status = STATUS_CODES.get(self.motor_status, 'UNKNOWN')
        self.online = True
        self.readtime = time.time()
        self._notify(events.DEVICE_DATA, slave_id=self.modbus_address, motor_status=self.motor_status)
        return True

    def read_register(self, address, register_type='holding', timeout=None):
        """
        Read a single register.

        :param address: Register address, eg 0xD001
        :param register_type: 'holding' (function 0x03) or 'input' (function 0x04)
        :param timeout: Reply timeout in seconds, or None for the coordinator default
        :return: The register value (0-65535), or None if there was no valid reply
        """
        if register_type == 'input':
            frame = framing.build_read_input_registers(self.modbus_address, address, 1)
        else:
            frame = framing.build_read_holding_registers(self.modbus_address, address, 1)
        result = self._exchange(frame, timeout=timeout)
        if not result.success:
            self.logger.error('Error reading register 0x%04X on fan %d: %s' % (address, self.modbus_address,
                                                                               result.error))
            return None
        return result.parsed.data[0]

    def write_register(self, address, value, timeout=None):
        """
        Write a single holding register (function 0x06).

        :param address: Register address
        :param value: Value to write, 0-65535
        :param timeout: Reply timeout in seconds, or None for the coordinator default
        :return: True if the device echoed the write back, False otherwise
        """
        frame = framing.build_write_single_register(self.modbus_address, address, value)
        result = self._exchange(frame, timeout=timeout)
        if not result.success:
            self.logger.error('Error writing %d to register 0x%04X on fan %d: %s' % (value, address,
                                                                                     self.modbus_address,
                                                                                     result.error))
            return False
        if (result.parsed.address != address) or (result.parsed.value != value):
            self.logger.error('Write echo mismatch on fan %d: %s' % (self.modbus_address, result.parsed))
            return False
        return True

    def read_settings(self):
        """
        Read the setpoint and operation mode registers.

        :return: True for success, None if either read failed.
        """
        setpoint = self.read_register(SETPOINT)
        mode = self.read_register(OPERATION_MODE)
        if (setpoint is None) or (mode is None):
            return None
        self.setpoint = setpoint
        self.operation_mode = mode
        return True

    def set_setpoint(self, value):
        ok = self.write_register(SETPOINT, value)
        if ok:
            self.setpoint = value
        return ok

    def set_operation_mode(self, mode):
        if mode not in MODE_CODES:
            raise ValueError('Operation mode must be one of %s, not %s' % (list(MODE_CODES.keys()), mode))
        ok = self.write_register(OPERATION_MODE, mode)
        if ok:
            self.operation_mode = mode
        return ok


class Poller(object):
    """
    Polls a list of fans one at a time, round-robin, in a background thread. Polling pauses while a scan or a firmware
    upload is running on the same bus.
    """
    def __init__(self, fans=None, scanner=None, uploader=None, interval=POLL_INTERVAL, timeout=POLL_TIMEOUT,
                 logger=None):
        """
        :param fans: A list of ECFan instances
        :param scanner: Optional scanner.Scanner instance sharing the same bus
        :param uploader: Optional firmware_upload.FirmwareUploader instance sharing the same bus
        :param interval: Pause after each poll, in seconds
        :param timeout: Reply timeout for each poll, in seconds
        :param logger: A logging.Logger instance, or None to use the 'POLL' logger
        """
        self.fans = list(fans or [])
        self.scanner = scanner
        self.uploader = uploader
        self.interval = interval
        self.timeout = timeout
        if logger is None:
            self.logger = logging.getLogger('POLL')
        else:
            self.logger = logger
        self.wants_exit = threading.Event()
        self.thread = None
        self.cycles = 0   # Number of complete passes through the fan list

    @property
    def running(self):
        return (self.thread is not None) and self.thread.is_alive()

    @property
    def paused(self):
        """True while a scan or firmware upload owns the bus."""
        if (self.scanner is not None) and self.scanner.scanning:
            return True
        return (self.uploader is not None) and self.uploader.active

    def start(self):
        if self.running:
            return
        self.wants_exit.clear()
        self.thread = threading.Thread(target=self.poll_loop, daemon=True, name='Poller')
        self.thread.start()
        self.logger.info('Polling started for %d fan/s' % len(self.fans))

    def stop(self):
        self.wants_exit.set()
        if self.running and (self.thread is not threading.current_thread()):
            self.thread.join(timeout=max(1.0, self.timeout * 2))
        self.thread = None
        self.logger.info('Polling stopped')

    def poll_loop(self):
        """
        Runs until .stop() is called, polling each fan in turn, one exchange at a time.
        """
        index = 0
        while not self.wants_exit.is_set():
            if (not self.fans) or self.paused:
                self.wants_exit.wait(self.interval)
                continue
            if index >= len(self.fans):
                index = 0
                self.cycles += 1
            fan = self.fans[index]
            index += 1
            try:
                fan.poll_data(timeout=self.timeout)
            except IOError:
                self.logger.exception('Communications error polling fan %d' % fan.modbus_address)
            self.wants_exit.wait(self.interval)
