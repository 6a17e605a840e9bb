__version__  = '1.0.0'
__author__   = 'David Ford <david@blue-labs.org>'
__email__    = 'david@blue-labs.org'
__date__     = '2026-Oct-18'
__license__  = 'Apache 2.0'

"""
greylisting policy for SMTP proxy plugin hosts

the host calls into GreylistPlugin at RCPT TO (and at end of DATA when
deny_late is set). everything we know about a sender is kept as a single
"timestamp:marker" string per key in a lockable key-value store, either a
local dbm file or a redis server.
"""

from greylist.errors  import GreylistError, ConfigError, StoreError, DataError
from greylist.session import Address, Connection, Transaction, DECLINED, DENYSOFT, DENY
from greylist.config  import GreylistArgs, parse_plugin_args
from greylist.keys    import ip_to_int, int_to_ip, build_key
from greylist.store   import KVStore, DBMStore, RedisStore, init_store
from greylist.exclusion import ExclusionConfig, load_exclusions, is_excluded
from greylist.policy  import GreylistStateMachine, PruningSweeper, ALLOW, DEFER
from greylist.plugin  import GreylistPlugin
