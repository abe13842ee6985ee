#!/usr/bin/env python

"""
Firmware upload to an EC fan, using the vendor-specific function code 0x66.

The upload has four steps, always in this order:

    INIT (0x90) - send the image size, the device unlocks its flash and starts erasing it.
    ERASE_CONFIRM (0x91) - poll until the device reports the flash is erased (status 0xFFFFFFFF), or give up after
                           erase_timeout seconds.
    DATA_TRANSFER (0x03) - send the image in packet_size chunks, each acknowledged by the device (opcode 0x04).
    DONE (0x99) - tell the device the image is complete, so it re-locks the flash.

Replies to these requests carry no CRC. A failure at any step ends the upload - nothing is retried, apart from the
polling in ERASE_CONFIRM. Calling .cancel() stops the upload before the next frame is sent.
"""

import logging
import os
import threading
import time

from intelhex import IntelHex

from ecmodbus import events
from ecmodbus import framing
from ecmodbus.errors import (NotConnected, FirmwareError, InitFailed, EraseTimeout, DataTransferFailed,
                             FinalizeFailed, Cancelled)

PACKET_SIZE = 60        # Bytes of firmware per data packet
PACKET_DELAY = 0.02     # Pause after each data packet, in seconds, to let the device write it to flash
ERASE_TIMEOUT = 5.0     # Give up waiting for the flash erase after this many seconds
POLL_INTERVAL = 0.2     # Time between erase status polls, in seconds
RESPONSE_TIMEOUT = 1.0  # Reply timeout for each firmware request, in seconds
PROGRESS_RANGE = (10.0, 95.0)   # Range of overall progress (in percent) covered by the data transfer step

STEP_IDLE = 'IDLE'
STEP_INIT = 'INIT'
STEP_ERASE_CONFIRM = 'ERASE_CONFIRM'
STEP_DATA_TRANSFER = 'DATA_TRANSFER'
STEP_DONE = 'DONE'
STEP_FAILED = 'FAILED'
STEP_CANCELLED = 'CANCELLED'

FIRMWARE_EXTENSIONS = ['.bin', '.fw', '.hex']


def load_firmware(filename):
    """
    Read a firmware image from disk. Binary (.bin, .fw) files are returned as-is, Intel HEX (.hex) files are
    converted to a binary image.

    :param filename: Name of the firmware file
    :return: A bytes() object containing the image
    """
    ext = os.path.splitext(filename)[1].lower()
    if ext == '.hex':
        ih = IntelHex(filename)
        return ih.tobinstr()
    elif ext in ('.bin', '.fw'):
        with open(filename, 'rb') as f:
            return f.read()
    else:
        raise ValueError('Firmware file must be one of %s, not %s' % (FIRMWARE_EXTENSIONS, filename))


class FirmwareSession(object):
    """
    The state of one firmware upload.

    Attributes are:
    data: The firmware image (bytes)
    slave_id: Modbus address of the device being updated
    step: One of the STEP_* globals
    bytes_sent: Number of image bytes acknowledged by the device so far
    progress: Overall progress, 0-100 percent
    cancelled: True if .cancel() was called on the uploader
    error: The FirmwareError instance that ended the upload, or None
    failed_step: The step that was running when the upload failed, or None
    start_time: Unix timestamp when the upload started
    end_time: Unix timestamp when the upload finished (successfully or not)
    """
    def __init__(self, data, slave_id):
        self.data = data
        self.slave_id = slave_id
        self.step = STEP_IDLE
        self.bytes_sent = 0
        self.progress = 0.0
        self.cancelled = False
        self.error = None
        self.failed_step = None
        self.start_time = time.time()
        self.end_time = None

    def __repr__(self):
        return ('FirmwareSession(slave_id=%d, step=%s, bytes_sent=%d/%d, progress=%3.1f%%, error=%s)' %
                (self.slave_id, self.step, self.bytes_sent, len(self.data), self.progress, self.error))

    @property
    def success(self):
        return self.step == STEP_DONE


class FirmwareUploader(events.EventSource):
    """
    Uploads firmware images through a coordinator.RequestCoordinator. Only one upload at a time can run in an
    instance of this class.
    """
    def __init__(self, coordinator, packet_size=PACKET_SIZE, packet_delay=PACKET_DELAY, erase_timeout=ERASE_TIMEOUT,
                 poll_interval=POLL_INTERVAL, response_timeout=RESPONSE_TIMEOUT, progress_range=PROGRESS_RANGE,
                 logger=None):
        """
        :param coordinator: An instance of coordinator.RequestCoordinator
        :param packet_size: Bytes of firmware in each data packet, 1-255
        :param packet_delay: Pause after each data packet, in seconds
        :param erase_timeout: Maximum time to wait for the flash to be erased, in seconds
        :param poll_interval: Time between erase status polls, in seconds
        :param response_timeout: Reply timeout for each request, in seconds
        :param progress_range: Tuple of (start, end) overall progress percentages for the data transfer step
        :param logger: A logging.Logger instance, or None to use the 'FW' logger
        """
        if not (1 <= packet_size <= framing.MAX_FIRMWARE_CHUNK):
            raise ValueError('Packet size must be 1-%d, not %s' % (framing.MAX_FIRMWARE_CHUNK, packet_size))
        self.coordinator = coordinator
        self.packet_size = packet_size
        self.packet_delay = packet_delay
        self.erase_timeout = erase_timeout
        self.poll_interval = poll_interval
        self.response_timeout = response_timeout
        self.progress_range = progress_range
        if logger is None:
            self.logger = logging.getLogger('FW')
        else:
            self.logger = logger
        self.lock = threading.Lock()
        self.session = None   # The FirmwareSession currently running, or None
        self.cancel_event = threading.Event()

    @property
    def active(self):
        return self.session is not None

    def cancel(self):
        """
        Ask the running upload to stop. It will finish with step=CANCELLED, without sending any more frames.
        """
        with self.lock:
            if self.session is not None:
                self.session.cancelled = True
                self.cancel_event.set()
                self.logger.info('Firmware upload cancel requested')

    def upload(self, data, slave_id):
        """
        Upload the firmware image 'data' to the device at 'slave_id', and return when it has finished, failed or
        been cancelled. Protocol failures don't raise - check the .step, .error and .failed_step attributes of the
        returned session.

        :param data: The firmware image, as bytes()
        :param slave_id: Modbus address of the device, 1-247
        :return: An instance of FirmwareSession
        """
        if not data:
            raise ValueError('Empty firmware image')
        data = bytes(data)
        with self.lock:
            if self.session is not None:
                raise RuntimeError('Firmware upload already in progress to slave %d' % self.session.slave_id)
            session = self.session = FirmwareSession(data, slave_id)
            self.cancel_event.clear()

        self.logger.info('Starting firmware upload of %d bytes to slave %d' % (len(data), slave_id))
        self._notify(events.FIRMWARE_STARTED, slave_id=slave_id, size=len(data))
        try:
            self._check_cancel(session)
            self._init(session)
            self._check_cancel(session)
            self._erase(session)
            self._check_cancel(session)
            self._transfer(session)
            self._check_cancel(session)
            self._done(session)
        except Cancelled:
            session.step = STEP_CANCELLED
            self.logger.warning('Firmware upload to slave %d cancelled after %d bytes' % (slave_id, session.bytes_sent))
            self._notify(events.FIRMWARE_CANCELLED, slave_id=slave_id, bytes_sent=session.bytes_sent)
        except FirmwareError as e:
            session.failed_step = e.step
            session.error = e
            session.step = STEP_FAILED
            self.logger.error('Firmware upload to slave %d failed in step %s: %s' % (slave_id, e.step, e))
            self._notify(events.FIRMWARE_ERROR, slave_id=slave_id, step=e.step, error=str(e))
        else:
            self.logger.info('Firmware upload to slave %d complete, %d bytes in %4.1f seconds' %
                             (slave_id, len(data), time.time() - session.start_time))
            self._notify(events.FIRMWARE_COMPLETE, slave_id=slave_id, size=len(data))
        finally:
            session.end_time = time.time()
            with self.lock:
                self.session = None
        return session

    def upload_interruptible(self, data, slave_id, poll=0.1):
        """
        Run upload() in a background thread, and wait for it to finish. If the wait is interrupted with Ctrl-C
        (KeyboardInterrupt), the upload is cancelled cleanly, without sending any more frames, and the cancelled
        session is returned. Used by the command line tools.

        :param data: The firmware image, as bytes()
        :param slave_id: Modbus address of the device, 1-247
        :param poll: How often to wake up and check for Ctrl-C, in seconds
        :return: An instance of FirmwareSession
        """
        outcome = {}

        def runner():
            try:
                outcome['session'] = self.upload(data, slave_id)
            except Exception as e:
                outcome['exception'] = e

        thread = threading.Thread(target=runner, daemon=True, name='FW:%d' % slave_id)
        thread.start()
        try:
            while thread.is_alive():
                thread.join(poll)
        except KeyboardInterrupt:
            self.logger.warning('Interrupted, cancelling firmware upload to slave %d' % slave_id)
            while thread.is_alive():
                self.cancel()   # The session may not exist yet on the first pass
                thread.join(poll)

        if 'exception' in outcome:
            raise outcome['exception']
        return outcome['session']

    def _check_cancel(self, session):
        if session.cancelled:
            raise Cancelled()

    def _pause(self, session, delay):
        """Sleep for 'delay' seconds, returning early if the upload is cancelled."""
        if delay > 0:
            self.cancel_event.wait(delay)
        self._check_cancel(session)

    def _set_progress(self, session, progress, message=''):
        session.progress = progress
        self._notify(events.FIRMWARE_PROGRESS,
                     slave_id=session.slave_id,
                     step=session.step,
                     progress=progress,
                     bytes_sent=session.bytes_sent,
                     message=message)

    def _exchange(self, frame, timeout=None):
        """
        Send one firmware request and return the decoded reply, or None if there wasn't a usable one.

        :return: A tuple of (framing.FirmwareResponse or None, error string or None)
        """
        if timeout is None:
            timeout = self.response_timeout
        try:
            result = self.coordinator.send_and_wait(frame, timeout=timeout)
        except NotConnected as e:
            return None, str(e)
        if not result.success:
            return None, result.error
        if not result.parsed.success:
            return result.parsed, result.parsed.error or 'status 0x%08X' % (result.parsed.status or 0)
        return result.parsed, None

    def _init(self, session):
        session.step = STEP_INIT
        frame = framing.build_firmware_init(session.slave_id, len(session.data))
        self.logger.debug('[0x90] Init, file size %d bytes' % len(session.data))
        parsed, error = self._exchange(frame)
        if error is not None:
            raise InitFailed('Init failed: %s' % error)
        self._set_progress(session, 5.0, 'Flash unlocked')

    def _erase(self, session):
        """
        Poll the erase status until the device reports 0xFFFFFFFF. The timeout for each poll is trimmed so that the
        whole step never runs longer than self.erase_timeout.
        """
        session.step = STEP_ERASE_CONFIRM
        frame = framing.build_firmware_erase_confirm(session.slave_id)
        start = time.time()
        polls = 0
        while True:
            self._check_cancel(session)
            remaining = self.erase_timeout - (time.time() - start)
            if remaining <= 0:
                raise EraseTimeout('Flash not erased after %3.1f seconds (%d polls)' % (self.erase_timeout, polls))
            parsed, error = self._exchange(frame, timeout=min(self.response_timeout, remaining))
            polls += 1
            if error is None:
                break
            self.logger.debug('[0x91] Erase not complete: %s' % error)
            remaining = self.erase_timeout - (time.time() - start)
            if remaining <= 0:
                raise EraseTimeout('Flash not erased after %3.1f seconds (%d polls)' % (self.erase_timeout, polls))
            self._pause(session, min(self.poll_interval, remaining))

        self.logger.debug('[0x91] Flash erased after %4.2f seconds' % (time.time() - start))
        self._set_progress(session, 10.0, 'Flash erased')

    def _transfer(self, session):
        session.step = STEP_DATA_TRANSFER
        total = len(session.data)
        npackets = (total + self.packet_size - 1) // self.packet_size
        low, high = self.progress_range
        self.logger.debug('[0x03] Sending %d bytes in %d packets of up to %d bytes' % (total, npackets, self.packet_size))
        offset = 0
        while offset < total:
            self._check_cancel(session)
            chunk = session.data[offset:offset + self.packet_size]
            parsed, error = self._exchange(framing.build_firmware_data(session.slave_id, chunk))
            if error is not None:
                raise DataTransferFailed(offset, 'Data transfer failed at offset %d: %s' % (offset, error))
            if (parsed.total_received is not None) and (parsed.total_received != offset + len(chunk)):
                self.logger.warning('Device reports %d bytes received, expected %d' % (parsed.total_received,
                                                                                       offset + len(chunk)))
            offset += len(chunk)
            session.bytes_sent = offset
            self._set_progress(session, low + (high - low) * offset / total, '%d / %d bytes' % (offset, total))
            self._pause(session, self.packet_delay)

    def _done(self, session):
        frame = framing.build_firmware_done(session.slave_id)
        parsed, error = self._exchange(frame)
        if error is not None:
            raise FinalizeFailed('Finalize failed: %s' % error)
        session.step = STEP_DONE
        self._set_progress(session, 100.0, 'Flash locked')
