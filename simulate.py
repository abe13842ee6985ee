#!/usr/bin/env python

import atexit
import argparse
import logging
import sys
import threading

LOGFILE = 'simulate.log'
SIM_OBJECTS = []   # Simulated fan instances, once they're started


def cleanup():
    """Called automatically on exit - sets .wants_exit=True on the simulated fans, so that the simulation threads
       shut down cleanly.
    """
    print('Cleanup called.')
    for simfan in SIM_OBJECTS:
        simfan.wants_exit = True


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Simulate one or more EC fans, and listen forever in "slave" mode for packets',
                                     epilog='Run this as "python -i %s" to drop into the Python prompt after starting up.' % sys.argv[0])
    parser.add_argument('--host', dest='host', default=None,
                        help='Hostname of an ethernet-serial gateway, eg 192.168.1.50')
    parser.add_argument('--device', dest='device', default=None,
                        help='Serial port device name or pyserial URL, eg /dev/ttyUSB1 or COM7')
    parser.add_argument('--portnum', dest='portnum', default=5000,
                        help='TCP port number to use')
    parser.add_argument('--baudrate', dest='baudrate', default=9600,
                        help='Serial port speed')
    parser.add_argument('--address', dest='address', default='1',
                        help='Modbus address/es to simulate, eg 1 or 1,3')
    parser.add_argument('--delay', dest='delay', default=0.0,
                        help='Seconds to wait before each reply')
    parser.add_argument('--debug', dest='debug', default=False, action='store_true',
                        help='If given, drop to the DEBUG log level, otherwise use INFO')
    args = parser.parse_args()
    if (args.host is None) and (args.device is None):
        print('Must supply a --host or --device to listen on.')
        sys.exit(-1)

    if args.debug:
        loglevel = logging.DEBUG
    else:
        loglevel = logging.INFO

    fh = logging.FileHandler(filename=LOGFILE, mode='w')
    fh.setLevel(logging.DEBUG)   # All log messages go to the log file
    sh = logging.StreamHandler()
    sh.setLevel(loglevel)        # Some or all log messages go to the console
    logformat = '%(levelname)s:%(name)s %(created)14.3f - %(threadName)s: %(message)s'
    # noinspection PyArgumentList
    logging.basicConfig(handlers=[fh, sh],
                        level=logging.DEBUG,
                        format=logformat)

    from ecmodbus import transport
    from simulate import sim_fan

    tlogger = logging.getLogger('T')
    conn = transport.Transport(hostname=args.host, devicename=args.device, port=int(args.portnum),
                               baudrate=int(args.baudrate), logger=tlogger)

    addresses = [int(a) for a in args.address.split(',')]
    sims = {}
    for a in addresses:
        sims[a] = sim_fan.SimECFan(modbus_address=a, response_delay=float(args.delay))
        SIM_OBJECTS.append(sims[a])
    bus = sim_fan.SimBus(fans=sims.values())

    def handle_wire_frame(frame):
        """Route each request arriving on the transport to the fan it's addressed to."""
        if not frame:
            return
        simfan = bus.fans.get(frame[0])
        if simfan is not None:
            simfan.handle_wire_frame(frame)

    for simfan in sims.values():
        simfan.listen(conn)
    conn.frame_handler = handle_wire_frame
    conn.open()

    atexit.register(cleanup)
    for a, simfan in sims.items():
        simthread = threading.Thread(target=simfan.sim_loop, daemon=False, name='FAN%d.thread' % a)
        simthread.start()
    print('Simulating fan/s on address/es %s as "sims".' % addresses)
