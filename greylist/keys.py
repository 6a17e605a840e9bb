import logging

import netaddr

from greylist.errors import ConfigError


logger = logging.getLogger('/Greylist.keys')


def _clean_ip(ip):
    ip = str(ip).strip().strip('[]')
    if ip.startswith('IPv6:'):
        ip = ip[5:]
    return ip


def ip_to_int(ip):
    ''' dotted quad to its unsigned 32 bit value '''
    try:
        return netaddr.IPAddress(_clean_ip(ip), 4, flags=netaddr.INET_PTON).value
    except (netaddr.AddrFormatError, ValueError, TypeError):
        raise ConfigError('not an IPv4 address: {!r}'.format(ip))


def int_to_ip(n):
    try:
        return str(netaddr.IPAddress(int(n), 4))
    except (netaddr.AddrFormatError, ValueError, TypeError):
        raise ConfigError('not a 32 bit address value: {!r}'.format(n))


def ip_component(ip):
    ''' IPv4 keys use the integer form, anything else its canonical text '''
    ip = _clean_ip(ip)
    try:
        addr = netaddr.IPAddress(ip, flags=netaddr.INET_PTON)
    except (netaddr.AddrFormatError, ValueError, TypeError):
        logger.debug('using unparsable remote ip {!r} verbatim in key'.format(ip))
        return ip

    if addr.version == 4:
        return str(addr.value)

    # v4 mapped v6 (::ffff:1.2.3.4) keys the same as the bare v4 address
    if addr.is_ipv4_mapped():
        return str(addr.ipv4().value)

    return str(addr)


def _address(addr):
    if addr is None:
        return ''
    return getattr(addr, 'address', addr) or ''


def build_key(remote_ip, sender, recipient, args):
    ''' ip[:sender][:recipient]

        the ip is always present once any component is switched on. an empty
        result means greylisting has nothing to key on
    '''
    if not args.key_components:
        return ''

    if remote_ip is None or not str(remote_ip).strip():
        logger.debug('no remote ip, nothing to key on')
        return ''

    parts = [ip_component(remote_ip)]
    if args.sender:
        parts.append(_address(sender))
    if args.recipient:
        parts.append(_address(recipient))

    return ':'.join(parts)


def convert_key(key):
    ''' rewrite a dotted quad leading component to its integer form, for
        stores written by older releases. returns None if nothing to change
    '''
    ip,sep,rest = key.partition(':')
    if not '.' in ip:
        return None

    try:
        value = ip_to_int(ip)
    except ConfigError:
        return None

    return str(value) + sep + rest
