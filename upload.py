#!/usr/bin/env python

import argparse
from datetime import datetime
import logging
import os
import sys

LOGFILE = 'upload-%s.log' % (datetime.now().strftime('%Y-%m-%dT%H-%M-%S'))

fh = logging.FileHandler(filename=LOGFILE, mode='w')
fh.setLevel(logging.DEBUG)  # All log messages go to the log file
sh = logging.StreamHandler()
sh.setLevel(logging.INFO)  # Some or all log messages go to the console
# noinspection PyArgumentList
logging.basicConfig(handlers=[fh, sh],
                    level=logging.DEBUG,
                    format='%(levelname)s:%(name)s %(created)14.3f - %(message)s')

from ecmodbus import config
from ecmodbus import coordinator
from ecmodbus import events
from ecmodbus import firmware_upload
from simulate import sim_fan


def show_progress(event, **details):
    """Listener for the firmware uploader, printing a one-line progress display."""
    if event == events.FIRMWARE_PROGRESS:
        print('\r%-14s %5.1f%% %s        ' % (details['step'], details['progress'], details['message']), end='')
        sys.stdout.flush()
    elif event in (events.FIRMWARE_COMPLETE, events.FIRMWARE_ERROR, events.FIRMWARE_CANCELLED):
        print()


if __name__ == '__main__':
    settings, CPfile = config.load_settings()
    if not CPfile:
        print("None of the specified configuration files found: %s" % (config.CPPATH,))

    parser = argparse.ArgumentParser(description='Upload new firmware to an EC fan')
    parser.add_argument('--filename', help='Firmware filename to upload (.bin, .fw or Intel HEX .hex)')
    parser.add_argument('--host', dest='host', default=None,
                        help='Hostname of an ethernet-serial gateway, eg 192.168.1.50')
    parser.add_argument('--device', dest='device', default=None,
                        help='Serial port device name or pyserial URL, eg /dev/ttyUSB0 or COM6')
    parser.add_argument('--portnum', dest='portnum', default=None,
                        help='TCP port number to use')
    parser.add_argument('--baudrate', dest='baudrate', default=None,
                        help='Serial port speed')
    parser.add_argument('--address', dest='address', default=0,
                        help='Modbus address')
    parser.add_argument('--packet-size', dest='packet_size', default=None,
                        help='Bytes of firmware per packet (1-255)')
    parser.add_argument('--packet-delay', dest='packet_delay', default=None,
                        help='Pause after each packet, in seconds')
    parser.add_argument('--simulate', dest='simulate', default=False, action='store_true',
                        help='Upload to a simulated fan instead of real hardware')
    parser.add_argument('--nowrite', dest='nowrite', default=False, action='store_true',
                        help="Don't actually upload the firmware, just do all the checks.")
    args = parser.parse_args()

    if not args.filename:
        print('Must supply a firmware filename with --filename')
        sys.exit(-1)

    if os.path.splitext(args.filename)[1].lower() not in firmware_upload.FIRMWARE_EXTENSIONS:
        print('Firmware file must end in one of %s, not %s' % (firmware_upload.FIRMWARE_EXTENSIONS, args.filename))
        print('Exiting.')
        sys.exit(-1)

    if int(args.address) == 0:
        print('Must supply a modbus address to send the new firmware to')
        sys.exit(-1)

    try:
        image = firmware_upload.load_firmware(args.filename)
    except (IOError, ValueError) as e:
        print('Error reading %s: %s' % (args.filename, e))
        sys.exit(-1)
    print('Read %d bytes from %s' % (len(image), args.filename))
    if args.nowrite:
        sys.exit(0)

    if args.host is not None:
        settings['serial']['host'] = args.host
    if args.device is not None:
        settings['serial']['device'] = args.device
    if args.portnum is not None:
        settings['serial']['portnum'] = int(args.portnum)
    if args.baudrate is not None:
        settings['serial']['baudrate'] = int(args.baudrate)
    if args.packet_size is not None:
        settings['firmware']['packet_size'] = int(args.packet_size)
    if args.packet_delay is not None:
        settings['firmware']['packet_delay'] = float(args.packet_delay)

    clogger = logging.getLogger('C')
    if args.simulate:
        conn = coordinator.RequestCoordinator(simulator=sim_fan.SimECFan(modbus_address=int(args.address)),
                                              logger=clogger)
    else:
        tlogger = logging.getLogger('T')
        t = config.make_transport(settings, logger=tlogger)
        conn = coordinator.RequestCoordinator(transport=t, logger=clogger)
        t.open()

    fwsettings = settings['firmware']
    uploader = firmware_upload.FirmwareUploader(coordinator=conn,
                                                packet_size=fwsettings['packet_size'],
                                                packet_delay=fwsettings['packet_delay'],
                                                erase_timeout=fwsettings['erase_timeout'],
                                                poll_interval=fwsettings['poll_interval'],
                                                response_timeout=fwsettings['response_timeout'],
                                                logger=logging.getLogger('FW:%d' % int(args.address)))
    uploader.add_listener(show_progress)
    try:
        session = uploader.upload_interruptible(image, int(args.address))
    finally:
        if conn.transport is not None:
            conn.transport.close()

    if session.success:
        print('Firmware upload complete.')
    elif session.step == firmware_upload.STEP_CANCELLED:
        print('Firmware upload cancelled after %d bytes.' % session.bytes_sent)
        sys.exit(-1)
    else:
        print('Firmware upload failed in step %s: %s' % (session.failed_step, session.error))
        sys.exit(-1)
