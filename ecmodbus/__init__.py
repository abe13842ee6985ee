"""
Base module, including the Modbus-RTU transport library, and the code used to poll, test and update EC fans
on an RS-485 bus.

The contents are:

        errors.py - exception classes raised by the rest of the module.

        framing.py - CRC-16, Modbus-RTU frame construction and response parsing, including the 0x66 firmware
                     sub-protocol.

        events.py - listener registration used by every component to report connection, frame, scan and firmware
                    events.

        transport.py - low-level byte channel (serial port, pyserial URL or ethernet-serial bridge), turning incoming
                       bytes into candidate frames using an inter-byte silence window.

        coordinator.py - one request/response exchange at a time, with timeouts, on top of a transport (or a
                         simulated device).

        firmware_upload.py - the four-step firmware upload (init, erase, data, done).

        scanner.py - sweep a range of Modbus addresses looking for devices.

        fan.py - class to control an EC fan, and a polling loop for a set of fans.

        procedures.py - step-based test procedures run against a single device.

        config.py - settings file handling.
"""
