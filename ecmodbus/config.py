"""
Settings file handling, shared by the command line tools.

Settings are read with ConfigParser from the first of the CPPATH files that exist (later files override earlier
ones), in sections [serial], [firmware] and [scan]. Anything missing falls back to the defaults below, and command
line options override both.
"""

from configparser import ConfigParser as conparser

from ecmodbus import coordinator
from ecmodbus import firmware_upload
from ecmodbus import scanner
from ecmodbus import transport

CPPATH = ['/usr/local/etc/ecmodbus.conf', '/usr/local/etc/ecmodbus-local.conf',
          './ecmodbus.conf', './ecmodbus-local.conf']

# Section name -> {option name: default value}. The type of each default is used to convert the value from the file.
DEFAULTS = {'serial': {'device': '',
                       'host': '',
                       'portnum': 5000,
                       'baudrate': 9600,
                       'bytesize': 8,
                       'parity': 'N',
                       'stopbits': 1,
                       'frame_timeout': transport.FRAME_TIMEOUT,
                       'response_timeout': coordinator.RESPONSE_TIMEOUT},
            'firmware': {'packet_size': firmware_upload.PACKET_SIZE,
                         'packet_delay': firmware_upload.PACKET_DELAY,
                         'erase_timeout': firmware_upload.ERASE_TIMEOUT,
                         'poll_interval': firmware_upload.POLL_INTERVAL,
                         'response_timeout': firmware_upload.RESPONSE_TIMEOUT},
            'scan': {'range_start': scanner.RANGE_START,
                     'range_end': scanner.RANGE_END,
                     'timeout': scanner.SCAN_TIMEOUT,
                     'scan_delay': scanner.SCAN_DELAY,
                     'register': scanner.SCAN_REGISTER}}

HEX_OPTIONS = ['register']   # Integer options that may be written in hex or octal. All others are plain decimal


def load_settings(filenames=None):
    """
    Read the settings files, and return the settings as a dictionary of dictionaries, eg
    settings['serial']['baudrate'].

    :param filenames: List of files to try, or None to use CPPATH
    :return: A tuple of (settings, files_read), where files_read is the list of files actually found
    """
    if filenames is None:
        filenames = CPPATH
    CP = conparser(defaults={})
    CPfile = CP.read(filenames)

    settings = {}
    for section, options in DEFAULTS.items():
        settings[section] = {}
        for name, default in options.items():
            if isinstance(default, float):
                value = CP.getfloat(section, name, fallback=default)
            elif isinstance(default, int) and (name in HEX_OPTIONS):
                # Allow hex register addresses, eg 'register = 0xD011'
                value = int(CP.get(section, name, fallback=str(default)), 0)
            elif isinstance(default, int):
                value = CP.getint(section, name, fallback=default)
            else:
                value = CP.get(section, name, fallback=default)
            settings[section][name] = value
    return settings, CPfile


def make_transport(settings, logger=None):
    """
    Create (but don't open) a transport.Transport from the [serial] settings.
    """
    serial_settings = settings['serial']
    return transport.Transport(hostname=serial_settings['host'] or None,
                               devicename=serial_settings['device'] or None,
                               port=serial_settings['portnum'],
                               baudrate=serial_settings['baudrate'],
                               bytesize=serial_settings['bytesize'],
                               parity=serial_settings['parity'],
                               stopbits=serial_settings['stopbits'],
                               frame_timeout=serial_settings['frame_timeout'],
                               logger=logger)
