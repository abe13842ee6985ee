#!/usr/bin/env python

import argparse
import logging
import sys

LOGFILE = 'communicate.log'


if __name__ == '__main__':
    from ecmodbus import config

    settings, CPfile = config.load_settings()
    if not CPfile:
        print("None of the specified configuration files found: %s" % (config.CPPATH,))

    parser = argparse.ArgumentParser(description='Communicate with one or more EC fans, by sending packets in "master" mode.',
                                     epilog='Run this as "python -i %s" to drop into the Python prompt after starting up.' % sys.argv[0])
    parser.add_argument('--host', dest='host', default=None,
                        help='Hostname of an ethernet-serial gateway, eg 192.168.1.50')
    parser.add_argument('--device', dest='device', default=None,
                        help='Serial port device name or pyserial URL, eg /dev/ttyUSB0, COM6 or loop://')
    parser.add_argument('--portnum', dest='portnum', default=None,
                        help='TCP port number to use')
    parser.add_argument('--baudrate', dest='baudrate', default=None,
                        help='Serial port speed')
    parser.add_argument('--parity', dest='parity', default=None, choices=['N', 'E', 'O'],
                        help='Serial port parity')
    parser.add_argument('--address', dest='address', default='1',
                        help='Modbus address/es of the fan/s to poll, eg 1 or 1,2,5')
    parser.add_argument('--simulate', dest='simulate', default=False, action='store_true',
                        help='Talk to a simulated fan instead of real hardware')
    parser.add_argument('--poll', dest='poll', default=False, action='store_true',
                        help='Start polling the fan/s in the background')
    parser.add_argument('--debug', dest='debug', default=False, action='store_true',
                        help='If given, drop to the DEBUG log level, otherwise use INFO')
    args = parser.parse_args()

    if args.debug:
        loglevel = logging.DEBUG
    else:
        loglevel = logging.INFO

    fh = logging.FileHandler(filename=LOGFILE, mode='w')
    fh.setLevel(logging.DEBUG)   # All log messages go to the log file
    sh = logging.StreamHandler()
    sh.setLevel(loglevel)        # Some or all log messages go to the console
    # noinspection PyArgumentList
    logging.basicConfig(handlers=[fh, sh],
                        level=logging.DEBUG,
                        format='%(levelname)s:%(name)s %(created)14.3f - %(message)s')

    from ecmodbus import coordinator
    from ecmodbus import fan
    from ecmodbus import firmware_upload
    from ecmodbus import scanner
    from simulate import sim_fan

    if args.host is not None:
        settings['serial']['host'] = args.host
    if args.device is not None:
        settings['serial']['device'] = args.device
    if args.portnum is not None:
        settings['serial']['portnum'] = int(args.portnum)
    if args.baudrate is not None:
        settings['serial']['baudrate'] = int(args.baudrate)
    if args.parity is not None:
        settings['serial']['parity'] = args.parity

    addresses = [int(a) for a in args.address.split(',')]

    clogger = logging.getLogger('C')
    if args.simulate:
        sims = {}
        for a in addresses:
            sims[a] = sim_fan.SimECFan(modbus_address=a)
        bus = sim_fan.SimBus(fans=sims.values())
        conn = coordinator.RequestCoordinator(simulator=bus,
                                              response_timeout=settings['serial']['response_timeout'],
                                              logger=clogger)
        print('Using simulated fan/s on address/es %s as "sims".' % addresses)
    else:
        if (not settings['serial']['host']) and (not settings['serial']['device']):
            print('Must supply a --host or --device, or put one in the [serial] section of a config file.')
            sys.exit(-1)
        tlogger = logging.getLogger('T')
        t = config.make_transport(settings, logger=tlogger)
        conn = coordinator.RequestCoordinator(transport=t,
                                              response_timeout=settings['serial']['response_timeout'],
                                              logger=clogger)
        t.open()

    fans = {}
    for a in addresses:
        fans[a] = fan.ECFan(coordinator=conn, modbus_address=a)
        print('Polling fan as "fans[%d]" on address %d.' % (a, a))
        fans[a].poll_data()
        fans[a].read_settings()
        print(fans[a])

    s = scanner.Scanner(coordinator=conn,
                        register=settings['scan']['register'],
                        timeout=settings['scan']['timeout'],
                        scan_delay=settings['scan']['scan_delay'])
    fwsettings = settings['firmware']
    u = firmware_upload.FirmwareUploader(coordinator=conn,
                                         packet_size=fwsettings['packet_size'],
                                         packet_delay=fwsettings['packet_delay'],
                                         erase_timeout=fwsettings['erase_timeout'],
                                         poll_interval=fwsettings['poll_interval'])
    p = fan.Poller(fans=list(fans.values()), scanner=s, uploader=u)
    print('Scanner is "s" (eg s.scan(1, 10)), poller is "p" (p.start(), p.stop()).')
    print('Firmware uploader is "u" (eg u.upload(firmware_upload.load_firmware("fan.hex"), 1)).')
    if args.poll:
        p.start()
