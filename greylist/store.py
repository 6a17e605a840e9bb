'''
lockable string -> string stores. the policy only talks to the KVStore
interface; init_store() picks the backend from the plugin arguments.

every read and write must happen between lock() and unlock(). the lock is
coarse, one per store, and is the only thing keeping two connections from
trampling each other's entries.
'''

import contextlib
import dbm
import fcntl
import logging
import os
import threading
import time

import redis

from greylist.errors import ConfigError, StoreError


logger = logging.getLogger('/Greylist.store')

STORE_NAME     = 'greylist'
REDIS_PORT     = 6379
REDIS_TIMEOUT  = 1.0
LOCK_POLL      = 0.05
db_candidates  = ('/var/lib/greylist', './var/db')


class KVStore():
    ''' lock() and unlock() belong here. a handle is shared by every worker
        thread of the host, so a thread mutex is taken before the backend
        lock and only the owning thread may touch the store or release it.
        backends implement _acquire() and _release_lock()
    '''
    name = STORE_NAME

    def __init__(self, name=STORE_NAME):
        self.name      = name
        self.is_locked = False
        self._mutex    = threading.RLock()
        self._owner    = None


    def lock(self, timeout=None):
        deadline = timeout is not None and time.monotonic() + timeout or None

        if not self._mutex.acquire(timeout=-1 if timeout is None else timeout):
            raise StoreError('timed out waiting for {} store lock'.format(self.name))

        if self.is_locked:
            # only the owning thread gets through an RLock twice
            self._mutex.release()
            raise StoreError('{} store is already locked by this thread'.format(self.name))

        try:
            self._acquire(deadline and max(deadline - time.monotonic(), 0))
        except BaseException:
            self._mutex.release()
            raise

        self._owner    = threading.get_ident()
        self.is_locked = True


    def unlock(self):
        if not self.holds_lock():
            return

        try:
            self._release_lock()
        finally:
            self.is_locked = False
            self._owner    = None
            self._mutex.release()


    def holds_lock(self):
        return self.is_locked and self._owner == threading.get_ident()


    def _acquire(self, timeout):
        raise NotImplementedError


    def _release_lock(self):
        raise NotImplementedError


    def get(self, key):
        raise NotImplementedError


    def set(self, key, value):
        raise NotImplementedError


    def delete(self, key):
        raise NotImplementedError


    def keys(self):
        raise NotImplementedError


    def flush(self):
        pass


    def close(self):
        self.unlock()


    @contextlib.contextmanager
    def locked(self, timeout=None):
        self.lock(timeout)
        try:
            yield self
        finally:
            self.unlock()


    def _require_lock(self, op):
        if not self.holds_lock():
            raise StoreError('{} on {} store without holding its lock'.format(op, self.name))


class DBMStore(KVStore):
    ''' dbm file in db_dir. the database is only open while the flock is
        held, so every writer sees the previous writer's changes.

        path is what dbm.open() is given. what lands on disk depends on the
        dbm module python was built with: gdbm writes greylist.dbm itself,
        ndbm greylist.dbm.db, dbm.dumb greylist.dbm.dat and greylist.dbm.dir
    '''

    def __init__(self, db_dir, name=STORE_NAME):
        super().__init__(name)
        self.db_dir    = db_dir
        self.path      = os.path.join(db_dir, name + '.dbm')
        self.lockpath  = self.path + '.lock'
        self.lockfile  = None
        self.db        = None

        try:
            os.makedirs(db_dir, mode=0o750, exist_ok=True)
            # make sure we can create the lock file now rather than on the first message
            with open(self.lockpath, 'a'):
                pass
        except OSError as e:
            raise StoreError('unable to use greylist db dir {}: {}'.format(db_dir, e))

        logger.debug('dbm store at {} ({})'.format(self.path, dbm.whichdb(self.path) or 'new'))


    def files(self):
        ''' the files dbm actually keeps for this store '''
        prefix = os.path.basename(self.path)
        return sorted(os.path.join(self.db_dir, f) for f in os.listdir(self.db_dir)
                      if f.startswith(prefix) and not f == os.path.basename(self.lockpath))


    def _acquire(self, timeout):
        try:
            self.lockfile = open(self.lockpath, 'a')
        except OSError as e:
            raise StoreError('unable to open lock file {}: {}'.format(self.lockpath, e))

        deadline = timeout is not None and time.monotonic() + timeout or None
        while True:
            try:
                fcntl.flock(self.lockfile.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except (BlockingIOError, PermissionError):
                if timeout is not None and time.monotonic() >= deadline:
                    self._close_lockfile()
                    raise StoreError('timed out waiting for lock on {}'.format(self.lockpath))
                time.sleep(LOCK_POLL)
            except OSError as e:
                self._close_lockfile()
                raise StoreError('failed to lock {}: {}'.format(self.lockpath, e))

        try:
            self.db = dbm.open(self.path, 'c', 0o600)
        except Exception as e:
            self._unflock()
            raise StoreError('unable to open {}: {}'.format(self.path, e))


    def _close_lockfile(self):
        if self.lockfile:
            self.lockfile.close()
            self.lockfile = None


    def _unflock(self):
        if self.lockfile:
            try:
                fcntl.flock(self.lockfile.fileno(), fcntl.LOCK_UN)
            finally:
                self._close_lockfile()


    def _release_lock(self):
        try:
            if self.db is not None:
                self.db.close()
        finally:
            self.db = None
            self._unflock()


    def get(self, key):
        self._require_lock('get')
        try:
            value = self.db.get(key.encode())
        except Exception as e:
            raise StoreError('read of {!r} failed: {}'.format(key, e))
        if value is None:
            return None
        return value.decode()


    def set(self, key, value):
        self._require_lock('set')
        try:
            self.db[key.encode()] = str(value).encode()
        except Exception as e:
            raise StoreError('write of {!r} failed: {}'.format(key, e))


    def delete(self, key):
        self._require_lock('delete')
        try:
            del self.db[key.encode()]
        except KeyError:
            pass
        except Exception as e:
            raise StoreError('delete of {!r} failed: {}'.format(key, e))


    def keys(self):
        self._require_lock('keys')
        try:
            return [k.decode() for k in self.db.keys()]
        except Exception as e:
            raise StoreError('listing keys of {} failed: {}'.format(self.path, e))


    def flush(self):
        if self.db is not None and hasattr(self.db, 'sync'):
            try:
                self.db.sync()
            except Exception as e:
                raise StoreError('sync of {} failed: {}'.format(self.path, e))


class RedisStore(KVStore):
    ''' keys live under "<name>:" so the server can be shared '''

    def __init__(self, host, port=REDIS_PORT, name=STORE_NAME, client=None, lock_ttl=30):
        super().__init__(name)
        self.host      = host
        self.port      = port
        self.prefix    = name + ':'

        try:
            self.redis = client or redis.Redis(host=host, port=port,
                                               socket_connect_timeout=REDIS_TIMEOUT,
                                               socket_timeout=REDIS_TIMEOUT,
                                               decode_responses=True)
            self.redis.ping()
        except redis.RedisError as e:
            raise StoreError('unable to reach redis at {}:{}: {}'.format(host, port, e))

        # the lock key sits outside our prefix so it never shows up in keys()
        self._lock = self.redis.lock(name + '.lock', timeout=lock_ttl)
        logger.debug('redis store at {}:{}'.format(host, port))


    def _acquire(self, timeout):
        try:
            acquired = self._lock.acquire(blocking=True, blocking_timeout=timeout)
        except redis.RedisError as e:
            raise StoreError('failed to lock redis store: {}'.format(e))

        if not acquired:
            raise StoreError('timed out waiting for redis lock {}.lock'.format(self.name))


    def _release_lock(self):
        try:
            self._lock.release()
        except redis.exceptions.LockError as e:
            # expired under us, someone else may hold it by now
            logger.warning('redis lock was lost before release: {}'.format(e))
        except redis.RedisError as e:
            raise StoreError('failed to release redis lock: {}'.format(e))


    def _call(self, op, fn, *args):
        self._require_lock(op)
        try:
            return fn(*args)
        except redis.RedisError as e:
            raise StoreError('redis {} failed: {}'.format(op, e))


    def get(self, key):
        return self._call('get', self.redis.get, self.prefix + key)


    def set(self, key, value):
        self._call('set', self.redis.set, self.prefix + key, str(value))


    def delete(self, key):
        self._call('delete', self.redis.delete, self.prefix + key)


    def keys(self):
        found = self._call('keys', lambda: list(self.redis.scan_iter(match=self.prefix + '*')))
        return [k[len(self.prefix):] for k in found]


    def close(self):
        self.unlock()
        self.redis.close()


def parse_redis_endpoint(endpoint):
    ''' "host" or "host:port" '''
    endpoint = endpoint.strip()
    if endpoint.startswith('[') and endpoint.endswith(']'):
        host,sep,port = endpoint, '', ''
    else:
        host,sep,port = endpoint.rpartition(':')
        if not sep:
            host,port = port,''

    host = host.strip('[]')
    if not host:
        raise ConfigError('redis endpoint {!r} has no host'.format(endpoint))

    if not port:
        return host, REDIS_PORT

    try:
        port = int(port)
    except ValueError:
        raise ConfigError('redis endpoint {!r} has a bad port'.format(endpoint))

    if not 0 < port < 65536:
        raise ConfigError('redis endpoint {!r} has a bad port'.format(endpoint))

    return host, port


def find_db_dir(candidates=db_candidates):
    for d in candidates:
        if os.path.isdir(d) and os.access(d, os.W_OK):
            return d
    return '.'


def init_store(args, redis_client=None):
    if args.redis:
        host,port = parse_redis_endpoint(args.redis)
        logger.info('greylist store: redis {}:{}'.format(host, port))
        return RedisStore(host, port, client=redis_client)

    db_dir = args.db_dir or find_db_dir()
    logger.info('greylist store: dbm in {}'.format(db_dir))
    return DBMStore(db_dir)
