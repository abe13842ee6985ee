"""
Event names, and a mixin class giving any component a list of listeners to notify.

Listeners are plain callables, called as listener(event, **details) in the thread that generated the event. They
are for observability only (logging, progress displays) - nothing in the protocol code depends on any listener
existing, and an exception raised by a listener is logged and otherwise ignored.
"""

import logging

# Connection state
SERIAL_CONNECTED = 'serial:connected'
SERIAL_DISCONNECTED = 'serial:disconnected'
SERIAL_ERROR = 'serial:error'

# Frames
FRAME_SENT = 'frame:sent'
FRAME_RECEIVED = 'frame:received'
FRAME_ERROR = 'frame:error'
FRAME_TIMEOUT = 'frame:timeout'

# Device scan
SCAN_STARTED = 'scan:started'
SCAN_PROGRESS = 'scan:progress'
SCAN_FOUND = 'scan:found'
SCAN_COMPLETED = 'scan:completed'
SCAN_ABORTED = 'scan:aborted'

# Firmware upload
FIRMWARE_STARTED = 'firmware:started'
FIRMWARE_PROGRESS = 'firmware:progress'
FIRMWARE_COMPLETE = 'firmware:complete'
FIRMWARE_ERROR = 'firmware:error'
FIRMWARE_CANCELLED = 'firmware:cancelled'

# Device polling
DEVICE_DATA = 'device:data'
DEVICE_OFFLINE = 'device:offline'


class EventSource(object):
    """
    Mixin for anything that reports events. Subclasses must set self.logger before calling _notify().
    """
    def add_listener(self, listener):
        """
        Register a callable to be called as listener(event, **details) for every event from this object.

        :param listener: A callable
        :return: None
        """
        if not hasattr(self, '_listeners'):
            self._listeners = []
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener):
        if listener in getattr(self, '_listeners', []):
            self._listeners.remove(listener)

    def _notify(self, event, **details):
        for listener in list(getattr(self, '_listeners', [])):
            try:
                listener(event, **details)
            except Exception:
                getattr(self, 'logger', logging.getLogger()).exception('Exception in listener for %s' % event)
