'''
connections, senders and hosts that never get greylisted
'''

import logging
import os
import re

import dns.exception
import dns.resolver
import dns.reversename
import netaddr

from greylist.errors import ConfigError


logger = logging.getLogger('/Greylist.exclusion')

list_files = {
    'ips':       'greylist_exclude_ips',
    'hostnames': 'greylist_exclude_hostnames',
    'regexes':   'greylist_exclude_regexes',
}

p0f_string  = ('genre', 'link')
p0f_numeric = ('distance', 'uptime')


class ExclusionConfig():
    ''' immutable once built, shared by every connection '''

    __slots__ = ('excluded_ips', 'excluded_networks', 'excluded_hostnames', 'excluded_regexes')

    def __init__(self, ips=(), hostnames=(), regexes=()):
        literal  = set()
        networks = netaddr.IPSet()

        for ip in ips:
            ip = ip.strip()
            if '/' in ip:
                try:
                    networks.add(netaddr.IPNetwork(ip))
                except (netaddr.AddrFormatError, ValueError):
                    logger.error('ignoring bad network in greylist exclusions: {}'.format(ip))
                continue
            literal.add(ip)

        compiled = []
        for r in regexes:
            if isinstance(r, str):
                try:
                    r = re.compile(r, re.I)
                except re.error as e:
                    logger.error('ignoring bad regex in greylist exclusions: {!r}: {}'.format(r, e))
                    continue
            compiled.append(r)

        object.__setattr__(self, 'excluded_ips',       frozenset(literal))
        object.__setattr__(self, 'excluded_networks',  networks)
        object.__setattr__(self, 'excluded_hostnames', frozenset(h.strip().lower() for h in hostnames))
        object.__setattr__(self, 'excluded_regexes',   tuple(compiled))


    def __setattr__(self, name, value):
        raise AttributeError('ExclusionConfig is read-only')


    def __bool__(self):
        return bool(self.excluded_ips or self.excluded_networks or self.excluded_hostnames or self.excluded_regexes)


    def __repr__(self):
        return 'ExclusionConfig(ips={}, networks={}, hostnames={}, regexes={})'.format(
            len(self.excluded_ips), len(self.excluded_networks.iter_cidrs()),
            len(self.excluded_hostnames), len(self.excluded_regexes))


    def ip_listed(self, ip):
        if not ip:
            return False
        if ip in self.excluded_ips:
            return True
        if self.excluded_networks:
            try:
                return netaddr.IPAddress(ip.strip('[]')) in self.excluded_networks
            except (netaddr.AddrFormatError, ValueError):
                return False
        return False


    def hostname_listed(self, hostname):
        if not hostname:
            return False
        if hostname.lower() in self.excluded_hostnames:
            return True
        for r in self.excluded_regexes:
            if r.search(hostname):
                return True
        return False


def read_list(path):
    ''' one entry per line, # starts a comment '''
    entries = []
    try:
        with open(path, encoding='utf-8') as f:
            for line in f:
                line = line.split('#',1)[0].strip()
                if line:
                    entries.append(line)
    except FileNotFoundError:
        return entries
    except OSError as e:
        logger.error('unable to read {}: {}'.format(path, e))
    return entries


def load_exclusions(config_dir):
    if not config_dir:
        return ExclusionConfig()

    lists = {k:read_list(os.path.join(config_dir, fn)) for k,fn in list_files.items()}
    exclusions = ExclusionConfig(**lists)
    logger.info('loaded greylist exclusions from {}: {!r}'.format(config_dir, exclusions))
    return exclusions


def parse_p0f_spec(spec):
    parts = [p.strip() for p in spec.split(',')]
    if len(parts) != 2 or not all(parts):
        raise ConfigError('p0f match wants "attribute,value", got {!r}'.format(spec))

    attr,value = parts[0].lower(), parts[1]
    if attr in p0f_numeric:
        try:
            value = float(value)
        except ValueError:
            raise ConfigError('p0f {} wants a number, got {!r}'.format(attr, value))
    elif not attr in p0f_string:
        raise ConfigError('unknown p0f attribute {!r}'.format(attr))

    return attr, value


def p0f_match(connection, spec):
    ''' compare the p0f note against "attribute,value". genre and link are
        case insensitive equality, distance and uptime must be >= value
    '''
    if not spec:
        return False

    try:
        attr,expected = parse_p0f_spec(spec)
    except ConfigError as e:
        logger.error('{}'.format(e))
        return False

    note = connection.notes.get('p0f')
    if not note:
        return False

    actual = note.get(attr)
    if actual is None or actual == '':
        return False

    if attr in p0f_numeric:
        try:
            matched = float(actual) >= expected
        except (TypeError, ValueError):
            logger.debug('p0f {} is not numeric: {!r}'.format(attr, actual))
            return False
    else:
        matched = str(actual).lower() == expected.lower()

    if matched:
        logger.info('p0f {} {} matched {}'.format(attr, actual, expected))
    return matched


def geoip_match(connection, spec):
    if not spec:
        return False

    country = connection.notes.get('geoip_country')
    if not country:
        return False

    wanted = {c.strip().lower() for c in spec.split(',') if c.strip()}
    if country.lower() in wanted:
        logger.info('geoip country {} matched'.format(country))
        return True
    return False


def resolve_hostname(ip, resolver):
    try:
        answer = resolver.resolve(dns.reversename.from_address(ip), 'PTR')
    except (dns.resolver.NXDOMAIN, dns.resolver.NoNameservers, dns.resolver.NoAnswer,
            dns.exception.Timeout, dns.exception.SyntaxError, ValueError):
        return None

    for rdata in answer:
        return str(rdata.target).rstrip('.')


def connection_hostname(connection, resolver=None):
    host = connection.remote_host
    if host and not host.lower() in ('unknown', '[{}]'.format(connection.remote_ip)):
        return host

    if resolver and connection.remote_ip:
        host = resolve_hostname(connection.remote_ip, resolver)
        if host:
            logger.debug('resolved {} to {}'.format(connection.remote_ip, host))
        return host


def is_excluded(connection, args, exclusions=None, transaction=None, resolver=None):
    if connection.relay_client:
        logger.info('skip: relay client')
        return True

    if connection.notes.get('whitelisthost'):
        logger.info('skip: whitelisted host')
        return True

    if transaction is not None and transaction.notes.get('whitelistsender'):
        logger.info('skip: whitelisted sender')
        return True

    if p0f_match(connection, args.p0f):
        return True

    if geoip_match(connection, args.geoip):
        return True

    if not exclusions:
        return False

    if exclusions.ip_listed(connection.remote_ip):
        logger.info('skip: {} is in the exclusion list'.format(connection.remote_ip))
        return True

    hostname = connection_hostname(connection, resolver)
    if exclusions.hostname_listed(hostname):
        logger.info('skip: {} matched the exclusion list'.format(hostname))
        return True

    return False
