#!/usr/bin/env python

"""
Look for devices on the bus, by reading one holding register from every address in a range, and noting which
addresses reply.
"""

import logging
import threading

from ecmodbus import events
from ecmodbus import framing
from ecmodbus.errors import NotConnected

SCAN_REGISTER = 0xD011   # Motor status register, present on every EC fan
SCAN_TIMEOUT = 0.2       # Reply timeout for each probe, in seconds
SCAN_DELAY = 0.05        # Pause after each probe, in seconds
RANGE_START = 1
RANGE_END = 10


class ScanSession(object):
    """
    The state of one scan.

    Attributes are:
    range_start, range_end: First and last Modbus address to probe
    current_id: Address being probed, or the last one probed
    found_ids: Set of addresses that replied
    cancelled: True if the scan was cancelled before it finished
    error: Error message if the scan stopped because of a problem, otherwise None
    """
    def __init__(self, range_start, range_end):
        self.range_start = range_start
        self.range_end = range_end
        self.current_id = None
        self.found_ids = set()
        self.cancelled = False
        self.error = None

    def __repr__(self):
        return 'ScanSession(%d-%d, found=%s, cancelled=%s)' % (self.range_start, self.range_end,
                                                               sorted(self.found_ids), self.cancelled)

    @property
    def found(self):
        """Sorted list of addresses that replied."""
        return sorted(self.found_ids)


class Scanner(events.EventSource):
    def __init__(self, coordinator, register=SCAN_REGISTER, timeout=SCAN_TIMEOUT, scan_delay=SCAN_DELAY, logger=None):
        """
        :param coordinator: An instance of coordinator.RequestCoordinator
        :param register: Holding register address to read from each device
        :param timeout: Reply timeout for each probe, in seconds
        :param scan_delay: Pause after each probe, in seconds
        :param logger: A logging.Logger instance, or None to use the 'SCAN' logger
        """
        self.coordinator = coordinator
        self.register = register
        self.timeout = timeout
        self.scan_delay = scan_delay
        if logger is None:
            self.logger = logging.getLogger('SCAN')
        else:
            self.logger = logger
        self.lock = threading.Lock()
        self.session = None
        self.cancel_event = threading.Event()

    @property
    def scanning(self):
        return self.session is not None

    def cancel(self):
        with self.lock:
            if self.session is not None:
                self.session.cancelled = True
                self.cancel_event.set()

    def scan(self, range_start=RANGE_START, range_end=RANGE_END):
        """
        Probe every address from range_start to range_end (inclusive), and return when finished or cancelled.

        :param range_start: First Modbus address, 1-247
        :param range_end: Last Modbus address, range_start-247
        :return: An instance of ScanSession, with the addresses that replied in .found_ids
        """
        if not (1 <= range_start <= range_end <= 247):
            raise ValueError('Invalid scan range %s-%s, must be within 1-247' % (range_start, range_end))
        with self.lock:
            if self.session is not None:
                raise RuntimeError('Scan already in progress')
            session = self.session = ScanSession(range_start, range_end)
            self.cancel_event.clear()

        total = range_end - range_start + 1
        self.logger.info('Scanning addresses %d-%d' % (range_start, range_end))
        self._notify(events.SCAN_STARTED, range_start=range_start, range_end=range_end)
        try:
            for slave_id in range(range_start, range_end + 1):
                if session.cancelled:
                    break
                session.current_id = slave_id
                frame = framing.build_read_holding_registers(slave_id, self.register, 1)
                try:
                    result = self.coordinator.send_and_wait(frame, timeout=self.timeout)
                except NotConnected:
                    self.logger.error('Not connected, scan stopped at address %d' % slave_id)
                    session.error = 'Not connected'
                    session.cancelled = True
                    break

                if self.scan_delay > 0:
                    self.cancel_event.wait(self.scan_delay)

                if result.success:
                    session.found_ids.add(slave_id)
                    self.logger.info('Found device at address %d' % slave_id)
                    self._notify(events.SCAN_FOUND, slave_id=slave_id, value=result.parsed.data[0])
                self._notify(events.SCAN_PROGRESS,
                             current_id=slave_id,
                             progress=100.0 * (slave_id - range_start + 1) / total,
                             found=session.found)
        finally:
            with self.lock:
                self.session = None

        if session.cancelled:
            self.logger.warning('Scan aborted at address %s, found %s' % (session.current_id, session.found))
            self._notify(events.SCAN_ABORTED, found=session.found, error=session.error)
        else:
            self.logger.info('Scan complete, found %s' % session.found)
            self._notify(events.SCAN_COMPLETED, found=session.found)
        return session
