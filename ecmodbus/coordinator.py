#!/usr/bin/env python

"""Request/response handling on top of a Transport (or a simulated device).

   Only one exchange can be outstanding on a bus at a time. RequestCoordinator.send_and_wait() sends a request, then
   waits for the next candidate frame from the transport, or for the timeout, whichever comes first. Exactly one of
   those wins - a reply that turns up after the timeout has fired is logged and dropped. If a second request is sent
   while the first is still waiting, the first caller gets a result with error='superseded' and the reply (if any)
   goes to the second caller.

   Protocol-level problems (no reply, bad CRC, exception replies) never raise out of send_and_wait() - they come
   back as an ExchangeResult with success=False. Only NotConnected is raised, when there's nothing to send to.

   The helper methods (read_holding_registers() and friends) are for interactive use - they either return the data
   from a valid reply, or raise an exception (an IOError for communications problems, or a ValueError for a Modbus
   exception reply).
"""

import logging
import threading
import time

from ecmodbus import events
from ecmodbus import framing
from ecmodbus.errors import NotConnected, Disconnected, Timeout, ModbusError

RESPONSE_TIMEOUT = 1.0   # Wait at most this long for a reply to a modbus message, by default

ERROR_TIMEOUT = 'timeout'
ERROR_SUPERSEDED = 'superseded'
ERROR_DISCONNECTED = 'disconnected'

READ_FUNCTIONS = (framing.READ_COILS, framing.READ_DISCRETE_INPUTS,
                  framing.READ_HOLDING_REGISTERS, framing.READ_INPUT_REGISTERS)


class ExchangeResult(object):
    """
    The outcome of one request/response exchange.

    Attributes are:
    success: True if a valid reply was received and decoded
    frame: The raw reply frame (bytes), if any arrived
    parsed: An instance of framing.ParsedResponse (or framing.FirmwareResponse for 0x66 requests), or None
    error: A short error string if success is False, eg 'timeout'
    exception: The exception instance describing the failure, if there was one
    elapsed: Time in seconds from sending the request to resolution
    """
    def __init__(self, success, frame=None, parsed=None, error=None, exception=None):
        self.success = success
        self.frame = frame
        self.parsed = parsed
        self.error = error
        self.exception = exception
        self.elapsed = None

    def __repr__(self):
        if self.success:
            return 'ExchangeResult(success=True, frame=%s, parsed=%s)' % (framing.to_hex(self.frame), self.parsed)
        return 'ExchangeResult(success=False, error=%s)' % self.error

    def __bool__(self):
        return self.success


class PendingExchange(object):
    """
    A request that has been sent, and is waiting for a reply. Resolved exactly once, by a reply, the deadline,
    a newer request, or the connection going away.

    For read requests, 'quantity' is the number of coils or registers the reply must contain. If it isn't given,
    it's taken from the request itself.
    """
    def __init__(self, request, timeout, quantity=None):
        self.request = request
        if (quantity is None) and (len(request) >= 6) and (request[1] in READ_FUNCTIONS):
            quantity = framing.bytestoN(request[4:6])
        self.quantity = quantity
        self.start_time = time.time()
        self.deadline = self.start_time + timeout
        self.result = None
        self.done = threading.Event()

    def resolve(self, result):
        """
        Set the result, unless this exchange has already been resolved.

        :return: True if this call resolved the exchange, False if it was already resolved
        """
        if self.result is not None:
            return False
        result.elapsed = time.time() - self.start_time
        self.result = result
        self.done.set()
        return True


class RequestCoordinator(events.EventSource):
    """
    Owns the single 'pending exchange' slot for one bus, and correlates each reply with the request that caused it.

    Replies are delivered via the transport's frame_handler callback, from the transport's reader thread. The
    pending exchange is only ever touched with self.lock held.
    """
    def __init__(self, transport=None, simulator=None, response_timeout=RESPONSE_TIMEOUT, logger=None):
        """
        :param transport: An instance of transport.Transport (or anything with the same .connected, .write(),
                          .frame_handler and .disconnect_handler), or None
        :param simulator: An object with a process_request(frame) method returning the reply bytes, or None. If
                          given, requests go to the simulator and the transport is ignored.
        :param response_timeout: Default time to wait for a reply, in seconds
        :param logger: A logging.Logger instance, or None to use the 'C' logger
        """
        self.lock = threading.RLock()
        self.transport = transport
        self.simulator = simulator
        self.response_timeout = response_timeout
        self.pending = None   # The PendingExchange waiting for a reply, or None
        if logger is None:
            self.logger = logging.getLogger('C')
        else:
            self.logger = logger
        if transport is not None:
            transport.frame_handler = self._handle_frame
            transport.disconnect_handler = self._handle_disconnect

    @property
    def connected(self):
        return (self.simulator is not None) or ((self.transport is not None) and self.transport.connected)

    def enable_simulator(self, simulator):
        """Send all further requests to 'simulator' instead of the transport."""
        self.simulator = simulator
        self.logger.info('Simulator enabled: %s' % simulator)

    def disable_simulator(self):
        self.simulator = None
        self.logger.info('Simulator disabled')

    def send_and_wait(self, frame, timeout=None, quantity=None):
        """
        Send a complete request frame (including CRC), and wait for the reply.

        Raises NotConnected if there's no transport connection or simulator. All other failures are returned as a
        result with success=False.

        :param frame: A bytes() object (or list of integers) containing the request, including CRC
        :param timeout: Time to wait for a reply in seconds, or None to use self.response_timeout
        :param quantity: For reads, the number of values requested. Defaults to the quantity in the request frame.
                         A reply with a different number of values is a failed exchange.
        :return: An instance of ExchangeResult
        """
        frame = bytes(frame)
        if timeout is None:
            timeout = self.response_timeout

        if self.simulator is not None:
            return self._send_to_simulator(frame, timeout=timeout, quantity=quantity)

        if not self.connected:
            raise NotConnected()

        exchange = PendingExchange(frame, timeout, quantity=quantity)
        with self.lock:
            old = self.pending
            self.pending = exchange
            if (old is not None) and old.resolve(ExchangeResult(False, error=ERROR_SUPERSEDED)):
                self.logger.warning('Request %s superseded by %s' % (framing.to_hex(old.request),
                                                                      framing.to_hex(frame)))

        try:
            self.transport.write(frame)
        except NotConnected:
            with self.lock:
                if self.pending is exchange:
                    self.pending = None
            raise
        except Disconnected as e:
            with self.lock:
                exchange.resolve(ExchangeResult(False, error=ERROR_DISCONNECTED, exception=e))
                if self.pending is exchange:
                    self.pending = None
            return exchange.result

        self._notify(events.FRAME_SENT, frame=frame)

        exchange.done.wait(max(0.0, exchange.deadline - time.time()))
        timed_out = False
        with self.lock:
            if exchange.resolve(ExchangeResult(False, error=ERROR_TIMEOUT, exception=Timeout())):
                timed_out = True
            if self.pending is exchange:
                self.pending = None

        if timed_out:
            self.logger.warning('No reply after %4.3f seconds to %s' % (timeout, framing.to_hex(frame)))
            self._notify(events.FRAME_TIMEOUT, request=frame, timeout=timeout)
        return exchange.result

    def send_fire_and_forget(self, frame):
        """
        Send a request without waiting for (or expecting) a reply. Any reply that does arrive is dropped by the
        frame handler, because there's no pending exchange for it.

        Raises NotConnected if there's no transport connection or simulator.

        :param frame: A bytes() object containing the request, including CRC
        :return: None
        """
        frame = bytes(frame)
        if self.simulator is not None:
            with self.lock:
                self.simulator.process_request(frame)
            self._notify(events.FRAME_SENT, frame=frame)
            return
        if not self.connected:
            raise NotConnected()
        self.transport.write(frame)
        self._notify(events.FRAME_SENT, frame=frame)

    def _send_to_simulator(self, frame, timeout, quantity=None):
        exchange = PendingExchange(frame, timeout, quantity=quantity)
        with self.lock:
            self._notify(events.FRAME_SENT, frame=frame)
            reply = self.simulator.process_request(frame)
            if reply is None:
                # A silent simulator looks exactly like a silent device
                exchange.resolve(ExchangeResult(False, error=ERROR_TIMEOUT, exception=Timeout()))
            else:
                exchange.resolve(self._decode(exchange, bytes(reply)))

        if exchange.result.error == ERROR_TIMEOUT:
            self.logger.warning('No reply from simulator to %s' % framing.to_hex(frame))
            self._notify(events.FRAME_TIMEOUT, request=frame, timeout=timeout)
        else:
            self._report(exchange.result)
        return exchange.result

    def _decode(self, exchange, frame):
        """
        Check and parse a reply to the given exchange. Never raises - failures come back as an ExchangeResult with
        success=False.

        :param exchange: The PendingExchange this reply belongs to
        :param frame: A bytes() object containing the candidate reply
        :return: An instance of ExchangeResult
        """
        request = exchange.request
        try:
            if framing.is_firmware_frame(request):
                parsed = framing.parse_firmware_response(frame)
            else:
                parsed = framing.parse_response(frame, quantity=exchange.quantity)
        except (ModbusError, ValueError) as e:
            return ExchangeResult(False, frame=frame, error=str(e), exception=e)

        if parsed.slave_id != request[0]:
            msg = 'Sent to station %d, but station %d responded' % (request[0], parsed.slave_id)
            return ExchangeResult(False, frame=frame, error=msg, exception=ValueError(msg))
        if parsed.function_code != request[1]:
            msg = 'Sent function code 0x%02X, but reply has 0x%02X' % (request[1], parsed.function_code)
            return ExchangeResult(False, frame=frame, error=msg, exception=ValueError(msg))
        if (request[1] in READ_FUNCTIONS) and (exchange.quantity is not None) and \
                (len(parsed.data) != exchange.quantity):
            msg = 'Asked for %d values, but reply has %d' % (exchange.quantity, len(parsed.data))
            return ExchangeResult(False, frame=frame, error=msg, exception=ValueError(msg))

        return ExchangeResult(True, frame=frame, parsed=parsed)

    def _handle_frame(self, frame):
        """
        Called by the transport (in its reader thread) for every candidate frame.
        """
        with self.lock:
            exchange = self.pending
            if (exchange is None) or (exchange.result is not None):
                self.logger.warning('Unexpected frame dropped: %s' % framing.to_hex(frame))
                return
            if time.time() > exchange.deadline:
                self.logger.warning('Late reply dropped: %s' % framing.to_hex(frame))
                return
            self.pending = None
            result = self._decode(exchange, frame)
            exchange.resolve(result)

        self._report(result)

    def _handle_disconnect(self):
        with self.lock:
            exchange = self.pending
            self.pending = None
            if exchange is not None:
                exchange.resolve(ExchangeResult(False, error=ERROR_DISCONNECTED, exception=Disconnected()))

    def _report(self, result):
        if result.success:
            self.logger.debug('Reply: %s' % framing.to_hex(result.frame))
            self._notify(events.FRAME_RECEIVED, frame=result.frame, parsed=result.parsed)
        else:
            self.logger.error('Bad reply (%s): %s' % (result.error, framing.to_hex(result.frame)))
            self._notify(events.FRAME_ERROR, frame=result.frame, error=result.error)

    ###################################
    # Helper functions, for each Modbus function code
    #

    def _checked(self, frame, timeout=None, quantity=None):
        """
        Send a request and return the parsed reply, or raise the exception describing why there wasn't one.
        """
        result = self.send_and_wait(frame, timeout=timeout, quantity=quantity)
        if result.success:
            return result.parsed
        if result.exception is not None:
            raise result.exception
        raise IOError(result.error)

    def read_coils(self, modbus_address, address, quantity=1, timeout=None):
        """
        Read one or more coils.

        :param modbus_address: MODBUS station number, 1-247
        :param address: First coil address
        :param quantity: Number of coils to read
        :param timeout: Reply timeout in seconds, or None for the default
        :return: A list of booleans
        """
        frame = framing.build_read_coils(modbus_address, address, quantity)
        return self._checked(frame, timeout=timeout, quantity=quantity).data

    def read_discrete_inputs(self, modbus_address, address, quantity=1, timeout=None):
        frame = framing.build_read_discrete_inputs(modbus_address, address, quantity)
        return self._checked(frame, timeout=timeout, quantity=quantity).data

    def read_holding_registers(self, modbus_address, address, quantity=1, timeout=None):
        """
        Given a register address and the number of registers to read, return the register contents.

        If a validated packet is received, but that packet is a Modbus exception, then ModbusException (a ValueError)
        is raised. If no reply is received, or only a corrupted reply was received, then an IOError is raised.

        :param modbus_address: MODBUS station number, 1-247
        :param address: First register address, eg 0xD001
        :param quantity: Number of registers to read (default 1)
        :param timeout: Reply timeout in seconds, or None for the default
        :return: A list of register values, each an integer 0-65535
        """
        frame = framing.build_read_holding_registers(modbus_address, address, quantity)
        return self._checked(frame, timeout=timeout, quantity=quantity).data

    def read_input_registers(self, modbus_address, address, quantity=1, timeout=None):
        frame = framing.build_read_input_registers(modbus_address, address, quantity)
        return self._checked(frame, timeout=timeout, quantity=quantity).data

    def write_single_coil(self, modbus_address, address, value, timeout=None):
        frame = framing.build_write_single_coil(modbus_address, address, value)
        parsed = self._checked(frame, timeout=timeout)
        return parsed.data[0] == bool(value)

    def write_single_register(self, modbus_address, address, value, timeout=None):
        """
        Write a value to a single register. The device echoes the request back on success.

        :param modbus_address: MODBUS station number, 1-247
        :param address: Register address
        :param value: An integer value to write, 0-65535
        :param timeout: Reply timeout in seconds, or None for the default
        :return: True if the echoed address and value match what was written, False otherwise
        """
        frame = framing.build_write_single_register(modbus_address, address, value)
        parsed = self._checked(frame, timeout=timeout)
        return (parsed.address == address) and (parsed.value == value)

    def write_multiple_coils(self, modbus_address, address, values, timeout=None):
        frame = framing.build_write_multiple_coils(modbus_address, address, values)
        parsed = self._checked(frame, timeout=timeout)
        return (parsed.address == address) and (parsed.value == len(values))

    def write_multiple_registers(self, modbus_address, address, values, timeout=None):
        frame = framing.build_write_multiple_registers(modbus_address, address, values)
        parsed = self._checked(frame, timeout=timeout)
        return (parsed.address == address) and (parsed.value == len(values))

    def send_modbus_request(self, modbus_address, function_code, address, quantity=1, value=None, values=None,
                            timeout=None):
        """
        Build and send any of the eight standard requests, and return the ExchangeResult without raising on
        protocol errors. Used by the command line tools.
        """
        frame = framing.build_request(modbus_address, function_code, address, quantity=quantity, value=value,
                                      values=values)
        if function_code in READ_FUNCTIONS:
            return self.send_and_wait(frame, timeout=timeout, quantity=quantity)
        return self.send_and_wait(frame, timeout=timeout)
