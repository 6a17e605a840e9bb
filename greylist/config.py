import logging
import re

from greylist.errors import ConfigError


logger = logging.getLogger('/Greylist.config')

defaults = {
    'remote_ip':      '1',
    'sender':         '0',
    'recipient':      '0',
    'reject':         '1',
    'black_timeout':  '3000',          # 50 minutes
    'grey_timeout':   '12000',         # 3h20m
    'white_timeout':  '3110400',       # 36 days
    'p0f':            '',
    'geoip':          '',
    'db_dir':         '',
    'redis':          '',
    'deny_late':      '0',
    'prune_interval': '3600',
    'marker':         'greylist',
    'config_dir':     '',
}

booleans  = ('remote_ip', 'sender', 'recipient', 'reject', 'deny_late')
durations = ('black_timeout', 'grey_timeout', 'white_timeout', 'prune_interval')

_truthy   = {'1', 'yes', 'true', 'on'}
_falsy    = {'0', 'no', 'false', 'off', ''}
_units    = {'s':1, 'm':60, 'h':3600, 'd':86400, 'w':604800}
_re_dur   = re.compile(r'(\d+)\s*([smhdw]?)', re.I)


def to_bool(option, value):
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0

    v = str(value).strip().lower()
    if v in _truthy:
        return True
    if v in _falsy:
        return False

    raise ConfigError('{}: expected a boolean, got {!r}'.format(option, value))


def to_seconds(option, value):
    ''' "3000", "50m", "1h30m" or "36d" '''
    if isinstance(value, int) and not isinstance(value, bool):
        if value < 0:
            raise ConfigError('{}: negative duration {}'.format(option, value))
        return value

    v = str(value).strip()
    if not v:
        raise ConfigError('{}: empty duration'.format(option))

    total = 0
    pos   = 0
    for m in _re_dur.finditer(v):
        if v[pos:m.start()].strip():
            break
        total += int(m.group(1)) * _units[(m.group(2) or 's').lower()]
        pos    = m.end()

    if pos == 0 or v[pos:].strip():
        raise ConfigError('{}: unparsable duration {!r}'.format(option, value))

    return total


def parse_plugin_args(args):
    ''' plugin hosts pass arguments as a flat "key value key value" list, as
        the line following the plugin name in the host's plugin config
    '''
    if isinstance(args, str):
        args = args.split()
    args = list(args)

    if len(args) % 2:
        raise ConfigError('odd number of plugin arguments: {}'.format(args))

    return GreylistArgs(**dict(zip(args[0::2], args[1::2])))


class GreylistArgs():
    ''' resolved once at registration and treated as read-only after '''

    def __init__(self, **kwargs):
        unknown = set(kwargs) - set(defaults)
        if unknown:
            raise ConfigError('unknown greylist option(s): {}'.format(', '.join(sorted(unknown))))

        values = dict(defaults)
        values.update({k:v for k,v in kwargs.items() if v is not None})

        for option in booleans:
            values[option] = to_bool(option, values[option])
        for option in durations:
            values[option] = to_seconds(option, values[option])

        for option in ('p0f', 'geoip', 'db_dir', 'redis', 'marker', 'config_dir'):
            values[option] = str(values[option]).strip()

        if ':' in values['marker']:
            raise ConfigError('marker may not contain ":"')

        if values['white_timeout'] <= values['black_timeout']:
            raise ConfigError('white_timeout ({}) must be longer than black_timeout ({})'.format(
                values['white_timeout'], values['black_timeout']))

        if values['grey_timeout'] < values['black_timeout']:
            logger.warning('grey_timeout ({}) is shorter than black_timeout ({})'.format(
                values['grey_timeout'], values['black_timeout']))

        self.__dict__.update(values)


    @classmethod
    def from_section(cls, section):
        ''' build from a configparser section, or any mapping '''
        return cls(**{k.replace(' ','_'):v for k,v in section.items() if k.replace(' ','_') in defaults})


    @property
    def key_components(self):
        return tuple(c for c in ('remote_ip', 'sender', 'recipient') if getattr(self, c))


    def __setattr__(self, name, value):
        raise AttributeError('GreylistArgs is read-only')


    def __repr__(self):
        return 'GreylistArgs({})'.format(', '.join('{}={!r}'.format(k, getattr(self, k)) for k in sorted(defaults)))
