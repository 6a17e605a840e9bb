import os
import threading
import time
from unittest.mock import MagicMock

import pytest
import redis

from greylist.config import GreylistArgs
from greylist.errors import ConfigError, StoreError
from greylist.store  import DBMStore, RedisStore, init_store, parse_redis_endpoint


class TestDBMStore:
    def test_path(self, tmp_path):
        s = DBMStore(str(tmp_path))
        assert s.path == os.path.join(str(tmp_path), 'greylist.dbm')
        assert s.name == 'greylist'

    def test_creates_missing_dir(self, tmp_path):
        d = tmp_path / 'var' / 'db'
        DBMStore(str(d))
        assert d.is_dir()

    def test_set_get_delete(self, store):
        with store.locked():
            assert store.get('3221225985') is None
            store.set('3221225985', '1700000000:greylist')
            assert store.get('3221225985') == '1700000000:greylist'
            assert store.keys() == ['3221225985']
            store.delete('3221225985')
            store.delete('3221225985')
            assert store.keys() == []

    def test_persists_between_locks(self, tmp_path):
        a = DBMStore(str(tmp_path))
        with a.locked():
            a.set('k', '1:x')

        b = DBMStore(str(tmp_path))
        with b.locked():
            assert b.get('k') == '1:x'

    def test_access_requires_lock(self, store):
        with pytest.raises(StoreError):
            store.get('k')
        with pytest.raises(StoreError):
            store.set('k', 'v')
        with pytest.raises(StoreError):
            store.keys()

    def test_double_lock_same_handle(self, store):
        with store.locked():
            with pytest.raises(StoreError):
                store.lock()
        assert not store.is_locked

    def test_second_handle_waits_for_lock(self, tmp_path):
        a = DBMStore(str(tmp_path))
        b = DBMStore(str(tmp_path))

        a.lock()
        try:
            with pytest.raises(StoreError):
                b.lock(timeout=0.1)
        finally:
            a.unlock()

        b.lock(timeout=1)
        b.unlock()

    def test_unlock_released_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.locked():
                raise RuntimeError('boom')
        assert not store.is_locked
        store.lock(timeout=1)
        store.unlock()

    def test_unlock_when_not_locked(self, store):
        store.unlock()
        store.unlock()
        assert not store.is_locked

    def test_unusable_dir(self, tmp_path):
        blocker = tmp_path / 'file'
        blocker.write_text('not a dir')
        with pytest.raises(StoreError):
            DBMStore(str(blocker / 'db'))

    def test_keys_failure_is_store_error(self, store):
        with store.locked():
            real     = store.db
            store.db = MagicMock()
            store.db.keys.side_effect = OSError('I/O error')
            try:
                with pytest.raises(StoreError):
                    store.keys()
            finally:
                store.db = real
        assert not store.is_locked

    def test_files_on_disk(self, store):
        with store.locked():
            store.set('k', '1:x')

        files = store.files()
        assert files
        for f in files:
            assert os.path.basename(f).startswith('greylist.dbm')
        assert not store.lockpath in files


class TestSharedHandle:
    ''' one handle used by every worker thread of the host '''

    def test_other_thread_waits(self, store):
        done = []

        def worker():
            with store.locked():
                store.set('k', '2:worker')
            done.append(True)

        store.lock()
        t = threading.Thread(target=worker)
        t.start()
        time.sleep(0.2)
        assert not done
        assert t.is_alive()

        store.set('k', '1:main')
        store.unlock()
        t.join(5)

        assert done == [True]
        with store.locked():
            assert store.get('k') == '2:worker'

    def test_other_thread_times_out(self, store):
        errors = []

        def worker():
            try:
                store.lock(timeout=0.1)
            except StoreError as e:
                errors.append(e)

        with store.locked():
            t = threading.Thread(target=worker)
            t.start()
            t.join(5)

        assert len(errors) == 1
        store.lock(timeout=1)
        store.unlock()

    def test_only_owner_may_use_or_release(self, store):
        seen = []

        def worker():
            store.unlock()
            try:
                store.get('k')
            except StoreError:
                seen.append('refused')

        with store.locked():
            t = threading.Thread(target=worker)
            t.start()
            t.join(5)
            assert store.is_locked
            assert store.holds_lock()

        assert seen == ['refused']

    def test_redis_handle(self, fake_redis):
        s    = RedisStore('cache.example', client=fake_redis)
        done = []

        def worker():
            with s.locked():
                done.append(fake_redis.lock_held)

        s.lock()
        t = threading.Thread(target=worker)
        t.start()
        time.sleep(0.2)
        assert not done
        s.unlock()
        t.join(5)
        assert done == [True]
        assert not fake_redis.lock_held


class TestRedisStore:
    def test_prefixed_keys(self, fake_redis):
        s = RedisStore('cache.example', client=fake_redis)
        with s.locked():
            s.set('3221225985', '1700000000:greylist')
            assert s.get('3221225985') == '1700000000:greylist'
            assert s.keys() == ['3221225985']

        assert fake_redis.data == {'greylist:3221225985': '1700000000:greylist'}

    def test_foreign_keys_ignored(self, fake_redis):
        fake_redis.data['other:thing'] = '1'
        s = RedisStore('cache.example', client=fake_redis)
        with s.locked():
            assert s.keys() == []

    def test_lock_outside_namespace(self, fake_redis):
        s = RedisStore('cache.example', client=fake_redis)
        assert fake_redis.lock_name == 'greylist.lock'
        with s.locked():
            s.set('167772161', '1700000000:greylist')
            assert s.keys() == ['167772161']

    def test_lock_timeout(self, fake_redis):
        fake_redis.lock_held = True
        s = RedisStore('cache.example', client=fake_redis)
        with pytest.raises(StoreError):
            s.lock(timeout=0.1)

    def test_unreachable(self, fake_redis):
        def ping():
            raise redis.ConnectionError('refused')
        fake_redis.ping = ping
        with pytest.raises(StoreError):
            RedisStore('cache.example', client=fake_redis)

    def test_command_failure_is_store_error(self, fake_redis):
        def get(key):
            raise redis.TimeoutError('slow')
        fake_redis.get = get
        s = RedisStore('cache.example', client=fake_redis)
        with s.locked():
            with pytest.raises(StoreError):
                s.get('k')
        assert not fake_redis.lock_held

    def test_close(self, fake_redis):
        s = RedisStore('cache.example', client=fake_redis)
        s.lock()
        s.close()
        assert not fake_redis.lock_held
        assert fake_redis.closed


class TestEndpoint:
    @pytest.mark.parametrize('endpoint,expected', [
        ('cache.example', ('cache.example', 6379)),
        ('cache.example:6380', ('cache.example', 6380)),
        ('10.0.0.5:7000', ('10.0.0.5', 7000)),
        ('[2001:db8::5]:6380', ('2001:db8::5', 6380)),
        ('[2001:db8::5]', ('2001:db8::5', 6379)),
    ])
    def test_parse(self, endpoint, expected):
        assert parse_redis_endpoint(endpoint) == expected

    @pytest.mark.parametrize('endpoint', ['cache:http', ':6379', 'cache:0', 'cache:70000'])
    def test_bad(self, endpoint):
        with pytest.raises(ConfigError):
            parse_redis_endpoint(endpoint)


class TestInitStore:
    def test_dbm(self, tmp_path):
        s = init_store(GreylistArgs(db_dir=str(tmp_path)))
        assert isinstance(s, DBMStore)
        assert s.path == os.path.join(str(tmp_path), 'greylist.dbm')

    def test_redis(self, fake_redis):
        s = init_store(GreylistArgs(redis='cache.example:6380'), redis_client=fake_redis)
        assert isinstance(s, RedisStore)
        assert (s.host, s.port, s.name) == ('cache.example', 6380, 'greylist')

    def test_redis_default_port(self, fake_redis):
        s = init_store(GreylistArgs(redis='cache.example'), redis_client=fake_redis)
        assert s.port == 6379

    def test_redis_client_timeouts(self, monkeypatch):
        seen = {}

        class Recorder:
            def __init__(self, **kwargs):
                seen.update(kwargs)
            def ping(self):
                return True
            def lock(self, name, timeout=None):
                return None

        monkeypatch.setattr(redis, 'Redis', Recorder)
        init_store(GreylistArgs(redis='cache.example'))
        assert seen['socket_connect_timeout'] == 1.0
        assert seen['port'] == 6379
