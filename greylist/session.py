'''
minimal host-side objects. the plugin host hands us its own connection,
transaction and address objects; anything exposing the same attributes works.
these are what the daemon and the tests use.
'''

# hook return codes
DECLINED = 909
DENY     = 901
DENYSOFT = 902

# smtp reply used by the host when it turns a code into a wire response
replies = {
    DENY:     (550, '5.7.1'),
    DENYSOFT: (451, '4.7.1'),
}


def code_name(code):
    return {DECLINED:'DECLINED', DENY:'DENY', DENYSOFT:'DENYSOFT'}.get(code, str(code))


def smtp_reply(code, message=None):
    ''' return (smtp code, enhanced status, text) for a hook result, or None
        when the host should carry on
    '''
    if not code in replies:
        return None

    smtp, enhanced = replies[code]
    return (smtp, enhanced, message or '')


class Address():
    def __init__(self, address):
        address = (address or '').strip()
        if address.startswith('<') and address.endswith('>'):
            address = address[1:-1]
        self.address = address


    @property
    def user(self):
        if '@' in self.address:
            return self.address.rsplit('@',1)[0]
        return self.address or None


    @property
    def host(self):
        if '@' in self.address:
            return self.address.rsplit('@',1)[1].lower()
        return None


    def format(self):
        return '<{}>'.format(self.address)


    def __str__(self):
        return self.address


    def __repr__(self):
        return 'Address({!r})'.format(self.address)


    def __eq__(self, other):
        if isinstance(other, Address):
            return self.address == other.address
        return NotImplemented


    def __hash__(self):
        return hash(self.address)


class Connection():
    def __init__(self, remote_ip=None, remote_host=None, relay_client=False, notes=None):
        self.remote_ip    = remote_ip
        self.remote_host  = remote_host
        self.relay_client = relay_client
        self.notes        = notes if notes is not None else {}


    def notes_get(self, key, default=None):
        return self.notes.get(key, default)


class Transaction():
    def __init__(self, connection=None, sender=None, recipients=None, notes=None):
        if isinstance(sender, str):
            sender = Address(sender)

        self.connection = connection if connection is not None else Connection()
        self.sender     = sender
        self.recipients = [isinstance(r, str) and Address(r) or r for r in (recipients or [])]
        self.notes      = notes if notes is not None else {}
        self.headers    = []


    def add_recipient(self, recipient):
        if isinstance(recipient, str):
            recipient = Address(recipient)
        self.recipients.append(recipient)
        return recipient


    def header_get(self, name):
        for k,v in self.headers:
            if k.lower() == name.lower():
                return v


    def header_replace(self, name, value):
        self.headers = [(k,v) for k,v in self.headers if not k.lower() == name.lower()]
        self.headers.append((name, value))
