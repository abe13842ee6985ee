from ecmodbus import config
from ecmodbus import scanner
from ecmodbus import transport


def test_defaults(tmp_path):
    settings, files = config.load_settings([str(tmp_path / 'missing.conf')])
    assert files == []
    assert settings['serial']['baudrate'] == 9600
    assert settings['serial']['frame_timeout'] == transport.FRAME_TIMEOUT
    assert settings['scan']['register'] == scanner.SCAN_REGISTER
    assert settings['firmware']['packet_size'] == 60


def test_file_overrides(tmp_path):
    fname = tmp_path / 'ecmodbus.conf'
    fname.write_text('[serial]\n'
                     'device = loop://\n'
                     'baudrate = 19200\n'
                     'parity = E\n'
                     'frame_timeout = 0.02\n'
                     '\n'
                     '[scan]\n'
                     'register = 0xD001\n'
                     'range_end = 32\n')
    settings, files = config.load_settings([str(fname)])
    assert files == [str(fname)]
    assert settings['serial']['device'] == 'loop://'
    assert settings['serial']['baudrate'] == 19200
    assert settings['serial']['parity'] == 'E'
    assert settings['serial']['frame_timeout'] == 0.02
    assert settings['scan']['register'] == 0xD001
    assert settings['scan']['range_end'] == 32
    assert settings['scan']['range_start'] == 1

    t = config.make_transport(settings)
    assert t.devicename == 'loop://'
    assert t.hostname is None
    assert t.baudrate == 19200
    assert t.parity == 'E'
    assert not t.connected


def test_zero_padded_decimal(tmp_path):
    fname = tmp_path / 'ecmodbus.conf'
    fname.write_text('[serial]\n'
                     'baudrate = 09600\n'
                     'portnum = 05000\n'
                     '\n'
                     '[scan]\n'
                     'register = 0xD011\n'
                     'range_start = 01\n')
    settings, files = config.load_settings([str(fname)])
    assert settings['serial']['baudrate'] == 9600
    assert settings['serial']['portnum'] == 5000
    assert settings['scan']['register'] == 0xD011
    assert settings['scan']['range_start'] == 1
