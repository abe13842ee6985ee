#!/usr/bin/env python3

"""
EC fan command tool, to scan the bus for fans, read and write registers, upload new firmware, and run the
built-in Modbus test procedures.

The serial port (or ethernet-serial gateway) comes from the [serial] section of the config file, and can be
overridden with the --device, --host and --baudrate options. Use --simulate to talk to simulated fans instead.
"""

import logging
import sys

import click

from ecmodbus import config
from ecmodbus import coordinator
from ecmodbus import events
from ecmodbus import fan
from ecmodbus import firmware_upload
from ecmodbus import framing
from ecmodbus import procedures
from ecmodbus import scanner
from ecmodbus.errors import ModbusError
from simulate import sim_fan

SETTINGS = None   # Will be replaced by the settings dictionary on startup
CONN = None       # Will be replaced by a coordinator.RequestCoordinator instance on startup


def init(device=None, host=None, baudrate=None, parity=None, simulate=False, debug=False):
    """
    Read the config file, and create the RequestCoordinator, storing them in the 'SETTINGS' and 'CONN' globals.

    :return: None
    """
    global SETTINGS, CONN
    if debug:
        loglevel = logging.DEBUG
    else:
        loglevel = logging.WARNING
    # noinspection PyArgumentList
    logging.basicConfig(level=loglevel, format='%(levelname)s:%(name)s %(created)14.3f - %(message)s')

    SETTINGS, CPfile = config.load_settings()
    if host is not None:
        SETTINGS['serial']['host'] = host
    if device is not None:
        SETTINGS['serial']['device'] = device
    if baudrate is not None:
        SETTINGS['serial']['baudrate'] = baudrate
    if parity is not None:
        SETTINGS['serial']['parity'] = parity

    if simulate:
        bus = sim_fan.SimBus(fans=[sim_fan.SimECFan(modbus_address=a) for a in (1, 3)])
        CONN = coordinator.RequestCoordinator(simulator=bus,
                                              response_timeout=SETTINGS['serial']['response_timeout'])
        return

    if (not SETTINGS['serial']['host']) and (not SETTINGS['serial']['device']):
        raise click.UsageError('No --device or --host given, and none found in config files: %s' % (config.CPPATH,))
    t = config.make_transport(SETTINGS, logger=logging.getLogger('T'))
    CONN = coordinator.RequestCoordinator(transport=t, response_timeout=SETTINGS['serial']['response_timeout'])
    t.open()


def parse_values(valuelist, all_list=None):
    """
    Take a tuple of strings from the command line, each of which could be an integer, or 'all',
    and expand that into a list of values. If the value (or 'all') is preceded by a minus sign, it or
    they are excluded from the final list.

    :param valuelist: Tuple of strings, optionally preceded by a '-', each either a single address, or the word 'all'
    :param all_list: List of values that should be taken to mean 'all' - eg [1,2,3,4,5,6,7,8,9,10]
    :return: List of values to act on, eg [1,3,5]
    """
    includevalues = []
    excludevalues = []

    for value in valuelist:
        subflag = False
        valuespec = value
        if value.startswith('-'):
            subflag = True
            valuespec = value[1:]

        if valuespec == 'all':
            thesevalues = all_list
        elif valuespec.isdigit():
            thesevalues = [int(valuespec)]
        else:
            thesevalues = []

        if subflag:
            excludevalues += thesevalues
        else:
            includevalues += thesevalues

    ovalues = sorted(set([x for x in includevalues if x not in excludevalues]))
    return ovalues


def parse_int(ctx, param, value):
    """click callback, accepting decimal or 0x-prefixed hex."""
    if value is None:
        return None
    try:
        return int(value, 0)
    except ValueError:
        raise click.BadParameter('%s is not a valid number' % value)


@click.group()
@click.option('--device', default=None, help='Serial port device name or pyserial URL, eg /dev/ttyUSB0')
@click.option('--host', default=None, help='Hostname of an ethernet-serial gateway')
@click.option('--baudrate', default=None, type=int, help='Serial port speed')
@click.option('--parity', default=None, type=click.Choice(['N', 'E', 'O']), help='Serial port parity')
@click.option('--simulate', is_flag=True, default=False, help='Talk to simulated fans on addresses 1 and 3')
@click.option('--debug', is_flag=True, default=False, help='Show DEBUG log messages')
def cli(device, host, baudrate, parity, simulate, debug):
    init(device=device, host=host, baudrate=baudrate, parity=parity, simulate=simulate, debug=debug)


@cli.command('scan', short_help="Look for fans on the bus")
@click.option('--start', 'range_start', default=None, type=int, help='First address to probe')
@click.option('--end', 'range_end', default=None, type=int, help='Last address to probe')
def scan(range_start, range_end):
    """
    Probe every address in a range, by reading the motor status register, and list the addresses that reply.

    \b
    E.g.
    $ fancmd scan                   # probes addresses 1-10 (or the range in the config file)
    $ fancmd scan --start 1 --end 32
    """
    if range_start is None:
        range_start = SETTINGS['scan']['range_start']
    if range_end is None:
        range_end = SETTINGS['scan']['range_end']
    s = scanner.Scanner(coordinator=CONN,
                        register=SETTINGS['scan']['register'],
                        timeout=SETTINGS['scan']['timeout'],
                        scan_delay=SETTINGS['scan']['scan_delay'])
    try:
        session = s.scan(range_start, range_end)
    except ValueError as e:
        raise click.BadParameter(str(e))
    except KeyboardInterrupt:
        s.cancel()
        return -1
    if session.error:
        print('Scan stopped: %s' % session.error)
    if session.found:
        print('Found fan/s on address/es: %s' % ', '.join([str(x) for x in session.found]))
    else:
        print('No fans found on addresses %d-%d' % (range_start, range_end))


@cli.command('status', short_help="Show the status of one or more fans")
@click.argument('addresses', nargs=-1)
def status(addresses):
    """
    Read the motor status, setpoint and operation mode of one or more fans.

    ADDRESSES is one or more items, each a Modbus address or the word 'all' (meaning 1-10). Items are optionally
    preceded by a '-' to exclude them

    \b
    E.g.
    $ fancmd status 1 2       # displays the status of the fans on addresses 1 and 2
    $ fancmd status all -4    # displays the status of the fans on addresses 1-10, except 4
    """
    addrlist = parse_values(valuelist=addresses, all_list=list(range(scanner.RANGE_START, scanner.RANGE_END + 1)))
    if not addrlist:
        print('No matching addresses, exiting.')
        return -1
    for a in addrlist:
        f = fan.ECFan(coordinator=CONN, modbus_address=a)
        if f.poll_data():
            f.read_settings()
            print(f)
        else:
            print('Fan %d: no reply' % a)


@cli.command('read', short_help="Read registers or coils from a fan")
@click.argument('address', type=int)
@click.argument('register', callback=parse_int)
@click.option('--count', default=1, type=int, help='Number of registers or coils to read')
@click.option('--function', 'function_code', default='3', callback=parse_int,
              help='Function code: 1=coils, 2=discrete inputs, 3=holding registers, 4=input registers')
def read(address, register, count, function_code):
    """
    Read one or more registers (or coils) from the fan at ADDRESS, starting at REGISTER

    \b
    E.g.
    $ fancmd read 1 0xD001                  # reads the setpoint of fan 1
    $ fancmd read 1 0xD000 --function 4     # reads the identification input register of fan 1
    $ fancmd read 1 0 --count 4 --function 1
    """
    if function_code not in (framing.READ_COILS, framing.READ_DISCRETE_INPUTS,
                             framing.READ_HOLDING_REGISTERS, framing.READ_INPUT_REGISTERS):
        raise click.BadParameter('Function code must be 1, 2, 3 or 4, not %s' % function_code)
    try:
        result = CONN.send_modbus_request(address, function_code, register, quantity=count)
    except (ValueError, ModbusError) as e:
        print('Error: %s' % e)
        return -1
    if not result.success:
        print('Error: %s' % result.error)
        return -1
    for i, value in enumerate(result.parsed.data):
        if function_code in (framing.READ_COILS, framing.READ_DISCRETE_INPUTS):
            print('[0x%04X] = %s' % (register + i, value))
        else:
            print('[0x%04X] = 0x%04X (%d)' % (register + i, value, value))


@cli.command('write', short_help="Write a holding register or coil on a fan")
@click.argument('address', type=int)
@click.argument('register', callback=parse_int)
@click.argument('value', callback=parse_int)
@click.option('--coil', is_flag=True, default=False, help='Write a coil (function 0x05) instead of a register')
def write(address, register, value, coil):
    """
    Write VALUE to REGISTER on the fan at ADDRESS

    \b
    E.g.
    $ fancmd write 1 0xD001 1500     # sets the setpoint of fan 1 to 1500
    $ fancmd write 1 0xD106 2        # switches fan 1 to open-loop mode
    $ fancmd write 1 0 1 --coil
    """
    if coil:
        function_code = framing.WRITE_SINGLE_COIL
        value = bool(value)
    else:
        function_code = framing.WRITE_SINGLE_REGISTER
    try:
        result = CONN.send_modbus_request(address, function_code, register, value=value)
    except (ValueError, ModbusError) as e:
        print('Error: %s' % e)
        return -1
    if not result.success:
        print('Error: %s' % result.error)
        return -1
    print('OK, [0x%04X] = %s' % (register, result.parsed.value))


@cli.command('upload', short_help="Upload new firmware to a fan")
@click.argument('address', type=int)
@click.argument('filename', type=click.Path(exists=True, dir_okay=False))
def upload(address, filename):
    """
    Upload the firmware in FILENAME (.bin, .fw or Intel HEX .hex) to the fan at ADDRESS

    \b
    E.g.
    $ fancmd upload 1 fan_v2.hex
    """
    try:
        image = firmware_upload.load_firmware(filename)
    except (IOError, ValueError) as e:
        print('Error reading %s: %s' % (filename, e))
        return -1

    fwsettings = SETTINGS['firmware']
    uploader = firmware_upload.FirmwareUploader(coordinator=CONN,
                                                packet_size=fwsettings['packet_size'],
                                                packet_delay=fwsettings['packet_delay'],
                                                erase_timeout=fwsettings['erase_timeout'],
                                                poll_interval=fwsettings['poll_interval'],
                                                response_timeout=fwsettings['response_timeout'])

    def show_progress(event, **details):
        if event == events.FIRMWARE_PROGRESS:
            print('\r%-14s %5.1f%% %s        ' % (details['step'], details['progress'], details['message']), end='')
            sys.stdout.flush()

    uploader.add_listener(show_progress)
    print('Uploading %d bytes to fan %d' % (len(image), address))
    session = uploader.upload_interruptible(image, address)
    print()
    if session.success:
        print('Firmware upload complete.')
    elif session.step == firmware_upload.STEP_CANCELLED:
        print('Firmware upload cancelled after %d bytes.' % session.bytes_sent)
        return -1
    else:
        print('Firmware upload failed in step %s: %s' % (session.failed_step or session.step, session.error))
        return -1


@cli.command('test', short_help="Run one of the Modbus test procedures")
@click.argument('procedure_id', required=False)
@click.option('--delay', default=procedures.STEP_DELAY, type=float, help='Pause after each step, in seconds')
def test(procedure_id, delay):
    """
    Run the test procedure PROCEDURE_ID against the fan on address 1. With no PROCEDURE_ID, list the procedures.

    \b
    E.g.
    $ fancmd test             # lists the available procedures
    $ fancmd test modbus-3    # checks that writing the setpoint is echoed back
    """
    if procedure_id is None:
        for pid in sorted(procedures.PROCEDURES.keys()):
            proc = procedures.PROCEDURES[pid]
            print('%s: %s - %s' % (pid, proc['title'], proc['purpose']))
        return

    if procedure_id not in procedures.PROCEDURES:
        raise click.BadParameter('Unknown procedure %s, must be one of %s' % (procedure_id,
                                                                               sorted(procedures.PROCEDURES.keys())))
    runner = procedures.ProcedureRunner(coordinator=CONN, step_delay=delay)
    try:
        result = runner.run(procedure_id)
    except KeyboardInterrupt:
        runner.stop()
        return -1
    print(result.details)
    print('%s: %s - %s' % (result.procedure_id, result.outcome, result.message))
    if result.outcome == procedures.FAIL:
        return -1


if __name__ == '__main__':
    cli()
