'''
greylist store maintenance

    python -m greylist            sweep in the foreground
    python -m greylist daemon     sweep, detached
    python -m greylist prune      one sweep, then exit
    python -m greylist convert    upgrade dotted quad keys to integer keys
    python -m greylist dump       print every entry
'''

import configparser
import datetime
import fcntl
import logging
import logging.handlers
import os
import signal
import sys
import time

import daemon

from greylist        import __version__
from greylist.config import GreylistArgs
from greylist.errors import GreylistError
from greylist.plugin import GreylistPlugin


configfile = '/etc/greylist/greylist.conf'
commands   = ('daemon', 'prune', 'convert', 'dump')


class PidFile(object):
    """flock()ed pid file for DaemonContext. a class rather than a
    contextmanager generator, DaemonContext calls __exit__() bare."""

    def __init__(self, path):
        self.path = path
        self.fh   = None

    def __enter__(self):
        self.fh = open(self.path, 'a+')
        try:
            fcntl.flock(self.fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            self.fh.close()
            raise SystemExit('greylist sweeper already running, see {}'.format(self.path))

        self.fh.seek(0)
        self.fh.truncate()
        self.fh.write('{}\n'.format(os.getpid()))
        self.fh.flush()
        return self.fh

    def __exit__(self, exc_type=None, exc_value=None, exc_tb=None):
        if self.fh and not self.fh.closed:
            self.fh.close()
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass


class ContextFilter(logging.Filter):
    def filter(self, record):
        record.loadavg = os.getloadavg()[0]
        return True


def load_config(path=None, logger=None):
    path   = path or configfile
    config = configparser.ConfigParser()

    if not config.read(path) and logger:
        logger.warning('Error reading configuration file: {}, using defaults'.format(path))

    for section in ('main', 'greylist'):
        if not section in config.sections():
            config.add_section(section)

    if not 'pid file' in config['main']:
        config['main']['pid file'] = '/run/greylist.pid'
    if not 'log file' in config['main']:
        config['main']['log file'] = '/var/log/greylist'
    if not 'spool dir' in config['main']:
        config['main']['spool dir'] = '/var/lib/greylist'
    if not 'sweep interval' in config['main']:
        config['main']['sweep interval'] = '3600'

    if not 'db dir' in config['greylist'] and not 'redis' in config['greylist']:
        config['greylist']['db dir'] = config['main']['spool dir']

    return config


def sweep_forever(plugin, interval, logger):
    running = [True]

    def _stop(signum, frame):
        logger.info('caught signal {}, stopping'.format(signum))
        running[0] = False

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)

    while running[0]:
        try:
            plugin.prune()
        except GreylistError as e:
            logger.error('sweep failed: {}'.format(e))

        next_run = time.monotonic() + interval
        while running[0] and time.monotonic() < next_run:
            time.sleep(1)


def dump(plugin, out=None):
    out = out or sys.stdout
    with plugin.store.locked():
        for key in sorted(plugin.store.keys()):
            value = plugin.store.get(key) or ''
            ts    = value.split(':',1)[0]
            try:
                when = datetime.datetime.fromtimestamp(int(ts), datetime.timezone.utc).strftime('%F %T')
            except ValueError:
                when = '?'
            out.write('{:<60} {} {}\n'.format(key, when, value))


def main(logger, command=None):
    config = load_config(logger=logger)

    try:
        args = GreylistArgs.from_section(config['greylist'])
    except GreylistError as e:
        logger.error('bad [greylist] configuration: {}'.format(e))
        return 2

    plugin = GreylistPlugin(logger=logger)
    if not plugin.register(args):
        return 1

    if command == 'prune':
        plugin.prune()
        return 0

    if command == 'convert':
        plugin.convert_db()
        return 0

    if command == 'dump':
        dump(plugin)
        return 0

    logger.info('greylist sweeper v{} starting'.format(__version__))
    sweep_forever(plugin, int(config['main']['sweep interval']), logger)
    plugin.store.close()
    return 0


def setup_logging(config, to_file):
    rootlogger = logging.getLogger('/Greylist')
    rootlogger.setLevel(logging.DEBUG)

    fm = logging.Formatter(fmt='%(asctime)-8s %(levelname)-.1s %(loadavg)1.1f %(message)s', datefmt='%H:%M:%S')

    if to_file:
        fh = logging.handlers.TimedRotatingFileHandler(filename=config['main']['log file'], when='midnight', backupCount=14, encoding='utf-8')
        fh.setFormatter(fm)
        rootlogger.addHandler(fh)
    else:
        ch = logging.StreamHandler()
        ch.setFormatter(fm)
        rootlogger.addHandler(ch)

    # on the handlers, so records from the child loggers get a loadavg too
    for handler in rootlogger.handlers:
        handler.addFilter(ContextFilter())

    return rootlogger


def run(argv=None):
    argv    = sys.argv[1:] if argv is None else argv
    command = argv and argv[0] or None

    if command and not command in commands:
        sys.stderr.write(__doc__)
        return 2

    config = load_config()

    if command == 'daemon':
        rootlogger = setup_logging(config, to_file=True)

        # remember to open new file descriptors inside the daemon context, or pass their
        # file descriptors below
        dcontext = daemon.DaemonContext(umask=0o077,
            working_directory=config['main']['spool dir'], pidfile=PidFile(config['main']['pid file']))

        openFiles = [sys.stdin, sys.stdout]
        for handler in rootlogger.handlers:
            if hasattr(handler, 'stream') and hasattr(handler.stream, 'fileno'):
                openFiles.append(handler.stream)

        dcontext.files_preserve = openFiles

        with dcontext:
            return main(rootlogger)

    rootlogger = setup_logging(config, to_file=False)
    return main(rootlogger, command)


if __name__ == '__main__':
    sys.exit(run())
