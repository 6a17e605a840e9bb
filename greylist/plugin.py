import logging
import time

from greylist.config    import GreylistArgs, parse_plugin_args
from greylist.errors    import ConfigError, GreylistError, StoreError
from greylist.exclusion import is_excluded, load_exclusions
from greylist.keys      import build_key, convert_key
from greylist.policy    import DEFER, GreylistStateMachine, PruningSweeper
from greylist.session   import DECLINED, DENYSOFT, code_name
from greylist.store     import init_store


DENY_MESSAGE = 'This mail is temporarily denied'
ERROR_TAG    = 'UNABLE TO OBTAIN GREYLIST RESULT'


class GreylistPlugin():
    ''' entry points for the plugin host

        register() once at startup, then hook_rcpt() for every RCPT TO and
        hook_data_post() once the message body is in. greylist() is the bare
        decision and prune() the bare sweep, for hosts that wire their own
        hooks.
    '''

    def __init__(self, logger=None, clock=time.time, resolver=None):
        self.logger     = logger or logging.getLogger('/Greylist')
        self.clock      = clock
        self.resolver   = resolver
        self.args       = None
        self.exclusions = None
        self.store      = None
        self.machine    = None
        self.sweeper    = None


    def register(self, args=None, exclusions=None, store=None):
        try:
            if args is None:
                args = GreylistArgs()
            elif isinstance(args, (str, list, tuple)):
                args = parse_plugin_args(args)
            elif isinstance(args, dict):
                args = GreylistArgs(**args)
        except ConfigError as e:
            self.logger.error('greylisting disabled, bad arguments: {}'.format(e))
            self.args = None
            return False

        self.args       = args
        self.exclusions = exclusions if exclusions is not None else load_exclusions(args.config_dir)

        if store is None:
            try:
                store = init_store(args)
            except (ConfigError, StoreError) as e:
                self.logger.error('greylisting disabled, no store: {}'.format(e))
                store = None

        self.store = store
        if store is not None:
            self.machine = GreylistStateMachine(store, args, clock=self.clock)
            self.sweeper = PruningSweeper(store, args, clock=self.clock)

        self.logger.info('greylisting registered, keyed on {}, reject={}, deny_late={}'.format(
            '+'.join(args.key_components) or 'nothing', args.reject, args.deny_late))

        return self.store is not None


    def failcode(self):
        if not self.args or not self.args.reject:
            return DECLINED, None
        return DENYSOFT, DENY_MESSAGE


    def errcode(self, message):
        self.logger.error('{}: {}'.format(ERROR_TAG, message))
        return DECLINED, None


    def greylist(self, transaction, sender, recipient):
        if not self.args:
            return DECLINED, None

        connection = transaction.connection

        if is_excluded(connection, self.args, self.exclusions, transaction=transaction, resolver=self.resolver):
            return DECLINED, None

        key = build_key(connection.remote_ip, sender, recipient, self.args)
        if not key:
            self.logger.debug('nothing to key on, no components enabled or no remote ip')
            return DECLINED, None

        if self.machine is None:
            return self.errcode('no greylist store available')

        now = int(self.clock())
        try:
            verdict = self.machine.decide(key, now)
        except GreylistError as e:
            return self.errcode(str(e))
        except Exception as e:
            return self.errcode('{}: {}'.format(e.__class__.__name__, e))

        try:
            self.sweeper.maybe_prune(now)
        except GreylistError as e:
            self.logger.error('greylist prune failed: {}'.format(e))
        except Exception as e:
            self.logger.error('greylist prune failed: {}: {}'.format(e.__class__.__name__, e))

        if verdict == DEFER:
            code = self.failcode()
            if code[0] == DECLINED:
                self.logger.info('{} would be deferred, reject is off'.format(key))
            return code

        return DECLINED, None


    def hook_rcpt(self, transaction, recipient):
        if self.args is None:
            return DECLINED, None

        if self.args.recipient:
            result = self.greylist(transaction, transaction.sender, recipient)
        else:
            # one decision per transaction when the recipient isn't part of the key
            result = transaction.notes.get('greylist')
            if result is None:
                result = self.greylist(transaction, transaction.sender, recipient)
                transaction.notes['greylist'] = result

        self.logger.debug('rcpt {}: {}'.format(recipient, code_name(result[0])))

        if self.args.deny_late:
            if result[0] == DENYSOFT:
                transaction.notes['greylist_deny_late'] = result
            return DECLINED, None

        return result


    def hook_data_post(self, transaction):
        if self.args is None or not self.args.deny_late:
            return DECLINED, None

        result = transaction.notes.get('greylist_deny_late')
        if result:
            self.logger.info('deferring after DATA: {}'.format(result[1]))
            return result

        return DECLINED, None


    def prune(self, now=None):
        if self.sweeper is None:
            self.logger.warning('nothing to prune, no greylist store')
            return 0
        return self.sweeper.prune(now)


    def convert_db(self):
        ''' rewrite dotted quad keys left by older releases to integer keys '''
        if self.store is None:
            self.logger.warning('nothing to convert, no greylist store')
            return 0

        converted = 0
        with self.store.locked():
            for key in self.store.keys():
                new = convert_key(key)
                if not new:
                    continue

                value = self.store.get(key)
                if value is not None and self.store.get(new) is None:
                    self.store.set(new, value)
                self.store.delete(key)
                converted += 1

            self.store.flush()

        self.logger.info('converted {} greylist keys'.format(converted))
        return converted
