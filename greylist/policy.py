'''
the timing policy

    no entry                          DEFER, entry written with now
    now - ts <  black_timeout         DEFER, entry untouched
    now - ts >= black_timeout         ALLOW, ts kept so the white window
                                      stays anchored to first contact
    now - ts >  white_timeout         stale, handled as no entry

values are "<unix ts>:<marker>". nothing past the first ":" is read back.
'''

import logging
import time

from greylist.errors import DataError


logger = logging.getLogger('/Greylist.policy')

ALLOW = 'ALLOW'
DEFER = 'DEFER'


def parse_entry(key, value):
    ts = value.split(':',1)[0]
    try:
        return int(ts)
    except ValueError:
        raise DataError(key, value)


def make_entry(now, marker):
    return '{}:{}'.format(int(now), marker)


class GreylistStateMachine():
    def __init__(self, store, args, clock=time.time):
        self.store = store
        self.args  = args
        self.clock = clock


    def decide(self, key, now=None):
        if now is None:
            now = self.clock()
        now = int(now)

        with self.store.locked():
            value = self.store.get(key)
            verdict = self._evaluate(key, value, now)
            if verdict is None:
                self.store.set(key, make_entry(now, self.args.marker))
                verdict = DEFER

        return verdict


    def _evaluate(self, key, value, now):
        ''' returns None when the key has to be (re)started '''
        if value is None:
            logger.info('new greylist entry for {}'.format(key))
            return None

        try:
            ts = parse_entry(key, value)
        except DataError as e:
            logger.warning('{}, starting over'.format(e))
            return None

        age = now - ts
        if age > self.args.white_timeout:
            logger.info('{} expired {}s ago, starting over'.format(key, age - self.args.white_timeout))
            return None

        if age < self.args.black_timeout:
            logger.info('{} retried too soon, {}s of {}s black timeout'.format(key, age, self.args.black_timeout))
            return DEFER

        logger.info('{} passed greylisting, first seen {}s ago'.format(key, age))
        return ALLOW


class PruningSweeper():
    def __init__(self, store, args, clock=time.time):
        self.store      = store
        self.args       = args
        self.clock      = clock
        self.last_sweep = None


    def prune(self, now=None):
        if now is None:
            now = self.clock()
        now = int(now)

        removed = 0
        with self.store.locked():
            for key in self.store.keys():
                value = self.store.get(key)
                if value is None:
                    continue

                try:
                    age = now - parse_entry(key, value)
                except DataError as e:
                    logger.warning('{}, removing'.format(e))
                    self.store.delete(key)
                    removed += 1
                    continue

                if age > self.args.white_timeout:
                    self.store.delete(key)
                    removed += 1

            self.store.flush()

        self.last_sweep = now
        if removed:
            logger.info('pruned {} expired greylist entries'.format(removed))
        else:
            logger.debug('nothing to prune')

        return removed


    def due(self, now):
        if self.last_sweep is None:
            return True
        return now - self.last_sweep >= self.args.prune_interval


    def maybe_prune(self, now=None):
        if now is None:
            now = self.clock()
        if not self.due(int(now)):
            return 0
        return self.prune(now)
