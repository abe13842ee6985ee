import os
import sys
import threading

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ecmodbus import coordinator
from simulate import sim_fan


class FakeTransport(object):
    """
    Stands in for transport.Transport. Every write is recorded in .sent, and the next entry in .replies (if any) is
    delivered to the frame handler from another thread after 'delay' seconds, like a real reader thread would.
    A reply of None means the device stays silent.
    """
    def __init__(self, baudrate=19200, parity='E'):
        self.connected = True
        self.baudrate = baudrate
        self.parity = parity
        self.frame_handler = None
        self.disconnect_handler = None
        self.sent = []
        self.replies = []    # List of (reply_bytes or None, delay_seconds)
        self.timers = []

    def write(self, data):
        self.sent.append(bytes(data))
        if self.replies:
            reply, delay = self.replies.pop(0)
            if reply is not None:
                self.deliver(reply, delay)

    def deliver(self, frame, delay=0.0):
        t = threading.Timer(delay, self.frame_handler, [bytes(frame)])
        t.daemon = True
        self.timers.append(t)
        t.start()

    def drop(self):
        self.connected = False
        if self.disconnect_handler is not None:
            self.disconnect_handler()

    def close(self):
        for t in self.timers:
            t.cancel()


@pytest.fixture
def fake_transport():
    t = FakeTransport()
    yield t
    t.close()


@pytest.fixture
def wired(fake_transport):
    """A RequestCoordinator on top of a FakeTransport."""
    return coordinator.RequestCoordinator(transport=fake_transport, response_timeout=0.2)


@pytest.fixture
def simfan():
    return sim_fan.SimECFan(modbus_address=1)


@pytest.fixture
def simulated(simfan):
    """A RequestCoordinator talking to a single simulated fan on address 1."""
    return coordinator.RequestCoordinator(simulator=simfan, response_timeout=0.2)
