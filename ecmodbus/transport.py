#!/usr/bin/env python

"""Classes to handle the byte-level link to Modbus-RTU devices, either directly via a serial port (or any URL that
   pyserial understands, like 'loop://' or 'socket://host:port'), or over an ethernet-serial bridge.

   Modbus-RTU frames are not self-delimiting - there's no length field or end marker - so the only way to find the
   end of a frame is a gap in the incoming data. A reader thread accumulates incoming bytes, and when nothing new
   has arrived for 'frame_timeout' seconds, the whole buffer is handed to the frame handler as one candidate frame.
   Back-to-back frames closer together than the silence window will be merged, exactly as they would on a real
   RTU bus. The transport doesn't check CRCs - that's up to whoever consumes the frames (coordinator.py).
"""

import logging
import time
import socket
import threading

import serial

from ecmodbus import events
from ecmodbus.errors import NotConnected, Disconnected
from ecmodbus.framing import to_hex

FRAME_TIMEOUT = 0.05   # Silence (in seconds) after the last byte that marks the end of a frame
COMMS_TIMEOUT = 0.001  # Low-level timeout for each call to socket.socket().recv or serial.Serial.read()
MAX_BUFFER = 256       # Largest possible Modbus-RTU frame. Bytes past this are dropped until the buffer is emptied


class Transport(events.EventSource):
    """
    Class to handle the byte stream to and from Modbus-RTU devices connected via an ethernet to serial bridge, or
    directly via a serial port. One instance handles all communications on one RS-485 bus.

    An instance of this class is thread-safe - writes come from whichever thread is talking to the device, while
    incoming data is collected by a background reader thread. An internal lock protects the receive buffer.

    Candidate frames are passed to self.frame_handler (a callable taking one bytes() argument) from the reader
    thread. When the connection closes or dies, self.disconnect_handler (a callable taking no arguments) is called.
    """
    def __init__(self, hostname=None, devicename=None, port=5000, baudrate=9600, bytesize=8, parity='N', stopbits=1,
                 frame_timeout=FRAME_TIMEOUT, logger=None):
        """
        Create a new instance, using either a socket connection to a serial bridge hostname, or a serial port. The
        connection isn't opened until .open() is called.

        :param hostname: Hostname (or IP address as a string) of a remote ethernet-serial bridge
        :param devicename: Device name of serial port, eg '/dev/ttyUSB0', or a pyserial URL, eg 'loop://'
        :param port: Port number for a remote ethernet-serial bridge
        :param baudrate: Connection speed for serial port connection
        :param bytesize: Data bits, 7 or 8
        :param parity: 'N', 'E' or 'O'
        :param stopbits: 1 or 2
        :param frame_timeout: Inter-byte silence, in seconds, that ends a frame
        :param logger: A logging.Logger instance, or None to use the 'T' logger
        """
        self.lock = threading.RLock()
        self.sock = None  # socket.socket() object, for an ethernet-serial bridge, or None
        self.ser = None  # serial.Serial() object, for a serial port, or None
        self.hostname = hostname   # Hostname (or IP address as a string) of a remote ethernet-serial bridge
        self.port = port  # Port number for a remote ethernet-serial bridge
        self.devicename = devicename  # Device name of serial port, eg '/dev/ttyS0'
        self.baudrate = baudrate  # Connection speed for serial port connection
        self.bytesize = bytesize
        self.parity = parity
        self.stopbits = stopbits
        self.frame_timeout = frame_timeout
        if logger is None:
            self.logger = logging.getLogger('T')
        else:
            self.logger = logger

        self.buffer = b''     # Bytes received since the end of the last frame
        self.last_rx = 0.0    # Unix timestamp when the last byte/s arrived
        self.frame_handler = None   # Called with each candidate frame
        self.disconnect_handler = None   # Called when the connection goes away
        self.running = False  # True while the reader thread should keep going
        self.reader = None    # threading.Thread() object for the reader thread

    def __repr__(self):
        if self.hostname:
            return 'Transport(hostname=%s, port=%s)' % (self.hostname, self.port)
        return 'Transport(devicename=%s, baudrate=%s)' % (self.devicename, self.baudrate)

    @property
    def connected(self):
        return (self.sock is not None) or (self.ser is not None)

    def open(self):
        """
        Opens either a socket.socket connection (if hostname is supplied), or a serial connection (if a devicename
        is supplied), and starts the reader thread.

        Raises NotConnected if neither is given, or the connection can't be opened.
        """
        # Not under the lock, the old reader thread needs it to finish
        if self.connected:
            self.close()

        with self.lock:
            if self.hostname:  # We want a Socket.socket() connection
                try:
                    self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM, socket.IPPROTO_TCP)
                    self.sock.settimeout(1.0)
                    self.sock.connect((self.hostname, self.port))
                    self.sock.settimeout(COMMS_TIMEOUT)
                except socket.error:
                    self.logger.exception('Error opening socket to %s' % self.hostname)
                    self.sock = None
                    self._notify(events.SERIAL_ERROR, error='Error opening socket to %s' % self.hostname)
                    raise NotConnected('Error opening socket to %s:%s' % (self.hostname, self.port))
            elif self.devicename is not None:
                try:
                    self.ser = serial.serial_for_url(self.devicename,
                                                     baudrate=self.baudrate,
                                                     bytesize=self.bytesize,
                                                     parity=self.parity,
                                                     stopbits=self.stopbits,
                                                     timeout=COMMS_TIMEOUT)
                except (serial.SerialException, ValueError):
                    self.logger.exception('Error opening serial port to %s' % self.devicename)
                    self.ser = None
                    self._notify(events.SERIAL_ERROR, error='Error opening serial port to %s' % self.devicename)
                    raise NotConnected('Error opening serial port %s' % self.devicename)
            else:
                self.logger.error("No hostname or devicename, can't open socket or serial connection")
                raise NotConnected("No hostname or devicename given")

            self.buffer = b''
            self.running = True
            self.reader = threading.Thread(target=self._reader_loop,
                                           daemon=True,
                                           name=threading.current_thread().name + '-R')
            self.reader.start()

        self.logger.info('Opened %s' % self)
        self._notify(events.SERIAL_CONNECTED, transport=repr(self))

    def close(self):
        """
        Stop the reader thread, close the connection and throw away any partial frame. Calls the disconnect handler,
        so anything waiting for a reply finds out straight away.
        """
        self._shutdown(reason='closed')

    def _shutdown(self, reason):
        with self.lock:
            was_connected = self.connected
            self.running = False
            if self.sock is not None:
                try:
                    self.sock.close()
                except socket.error:
                    self.logger.warning('Error closing socket to %s' % self.hostname)
                self.sock = None
            if self.ser is not None:
                try:
                    self.ser.close()
                except serial.SerialException:
                    self.logger.warning('Error closing serial port %s' % self.devicename)
                self.ser = None
            if self.buffer:
                self.logger.debug('Discarding partial frame: %s' % to_hex(self.buffer))
            self.buffer = b''
            reader = self.reader
            self.reader = None

        if (reader is not None) and (reader is not threading.current_thread()):
            reader.join(timeout=1.0)

        if was_connected:
            self.logger.info('Connection %s: %s' % (reason, self))
            if self.disconnect_handler is not None:
                self.disconnect_handler()
            self._notify(events.SERIAL_DISCONNECTED, reason=reason)

    def _read(self, nbytes=MAX_BUFFER):
        """
        Return whatever bytes have arrived, up to nbytes, waiting at most COMMS_TIMEOUT seconds.

        Raises Disconnected if the remote end of a socket has closed the connection.

        :return: A bytes() object, empty if nothing arrived
        """
        sock, ser = self.sock, self.ser
        if sock is not None:
            try:
                data = sock.recv(nbytes)
            except socket.timeout:
                return b''
            if not data:   # recv() only returns nothing when the other end has gone away
                raise Disconnected('Connection closed by %s' % self.hostname)
            return data
        elif ser is not None:
            return ser.read(nbytes)
        return b''

    def write(self, data):
        """
        Send data to the remote device.

        Raises NotConnected if there's no open connection, or Disconnected if the write fails (the connection is
        closed as well).

        :param data: A bytes() object containing the data to write
        :return: None
        """
        with self.lock:
            if not self.connected:
                raise NotConnected()
            try:
                if self.sock is not None:
                    self.sock.sendall(bytes(data))
                else:
                    self.ser.write(bytes(data))
            except (socket.error, serial.SerialException):
                self.logger.exception('Error writing to %s' % self)
                failed = True
            else:
                failed = False

        if failed:
            self._notify(events.SERIAL_ERROR, error='Write failed')
            self._shutdown(reason='write error')
            raise Disconnected('Write failed')
        self.logger.debug('Sent: %s' % to_hex(data))

    def _reader_loop(self):
        """
        Runs in the reader thread until the connection is closed. Appends incoming bytes to the buffer, and emits
        the buffer as a candidate frame once the line has been quiet for self.frame_timeout seconds.

        Exits as soon as this thread is no longer self.reader, so a reader left over from before a re-open can
        never touch the new connection's buffer.
        """
        me = threading.current_thread()
        while self.running and (self.reader is me):
            try:
                data = self._read()
            except (socket.error, serial.SerialException, Disconnected):
                if self.running and (self.reader is me):
                    self.logger.exception('Error reading from %s' % self)
                    self._notify(events.SERIAL_ERROR, error='Read failed')
                    self._shutdown(reason='read error')
                return

            frame = None
            now = time.time()
            with self.lock:
                if self.reader is not me:
                    return
                if data:
                    room = MAX_BUFFER - len(self.buffer)
                    if len(data) > room:
                        self.logger.warning('Receive buffer full, dropping %d bytes' % (len(data) - room))
                        data = data[:room]
                    self.buffer += data
                    self.last_rx = now
                elif self.buffer and ((now - self.last_rx) >= self.frame_timeout):
                    frame = self.buffer
                    self.buffer = b''

            if frame:
                self._emit(frame)
            elif not data:
                time.sleep(COMMS_TIMEOUT)

    def _emit(self, frame):
        self.logger.debug('Recvd: %s' % to_hex(frame))
        if self.frame_handler is None:
            self.logger.warning('No frame handler, dropping frame: %s' % to_hex(frame))
            return
        try:
            self.frame_handler(frame)
        except Exception:
            self.logger.exception('Exception in frame handler')
