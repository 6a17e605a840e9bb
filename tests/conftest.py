import fnmatch

import pytest

from greylist.config    import GreylistArgs
from greylist.exclusion import ExclusionConfig
from greylist.session   import Connection, Transaction
from greylist.store     import DBMStore


T0 = 1700000000


class Clock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeLock:
    def __init__(self, server):
        self.server = server

    def acquire(self, blocking=None, blocking_timeout=None):
        if self.server.lock_held:
            return False
        self.server.lock_held = True
        return True

    def release(self):
        self.server.lock_held = False


class FakeRedis:
    ''' just enough of redis.Redis for RedisStore '''

    def __init__(self):
        self.data      = {}
        self.lock_held = False
        self.closed    = False
        self.lock_name = None

    def ping(self):
        return True

    def lock(self, name, timeout=None):
        self.lock_name = name
        return FakeLock(self)

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value):
        self.data[key] = value
        return True

    def delete(self, key):
        return int(self.data.pop(key, None) is not None)

    def scan_iter(self, match='*'):
        return iter([k for k in list(self.data) if fnmatch.fnmatchcase(k, match)])

    def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def args():
    return GreylistArgs()


@pytest.fixture
def store(tmp_path):
    s = DBMStore(str(tmp_path))
    yield s
    s.close()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def no_exclusions():
    return ExclusionConfig()


@pytest.fixture
def transaction():
    conn = Connection(remote_ip='192.0.2.1', remote_host='mx.example.net')
    return Transaction(connection=conn, sender='alice@example.net', recipients=[])
