"""Tests for TileStore lifecycle and point operations."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import tempfile
from pathlib import Path

import pytest

from domain.models import StoreInfo, StoreOptions, StoreSettings
from shared.constants import StoreState
from tilestore.content import content_digest
from tilestore.engine import SQLiteEngine
from tilestore.errors import (
    ArchiveMissingError,
    ConcurrentOpenConflictError,
    IntegrityError,
    NotFoundError,
    WriteError,
)
from tilestore.registry import HandleRegistry
from tilestore.store import TileStore, normalize_headers, open_store

FOO_MD5 = 'acbd18db4cc2f85cedef654fccc4a4d8'


@pytest.fixture
def store_path():
    """Path of a not yet created store."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / 'tiles'


def engine_of(store: TileStore) -> SQLiteEngine:
    return store._handle.engine


def data_keys(engine: SQLiteEngine) -> list[bytes]:
    return [k for k, _ in engine.iterate(b'data:', b'data:\xff', keys_only=True)]


def test_normalize_headers():
    assert normalize_headers({'Content-Type': 'image/png', 'X-Size': 12}) == {
        'content-type': 'image/png',
        'x-size': '12',
    }
    assert normalize_headers(None) == {}


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_open_missing_archive(self, store_path):
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry)
            assert store.state is StoreState.MISSING
            assert not store_path.exists()
            await store.close()

    @pytest.mark.asyncio
    async def test_read_on_missing_archive(self, store_path):
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry)
            with pytest.raises(ArchiveMissingError):
                await store.get_tile(5, 5, 5)
            with pytest.raises(ArchiveMissingError):
                await store.get_info()
            await store.close()

    @pytest.mark.asyncio
    async def test_missing_archive_created_later(self, store_path):
        async with HandleRegistry() as registry:
            reader = await open_store(store_path, registry)
            writer = TileStore(store_path, registry)
            await writer.put_tile(0, 0, 0, b'foo')
            body, _ = await reader.get_tile(0, 0, 0)
            assert body == b'foo'
            assert reader.state is StoreState.READ_ONLY
            await writer.close()
            await reader.close()

    @pytest.mark.asyncio
    async def test_promotion(self, store_path):
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry)
            await store.open_for_write()
            assert store.state is StoreState.READ_WRITE
            assert store_path.is_dir()
            await store.open_for_write()
            assert registry.stats['busy_handles'] == 1
            await store.close()
            assert store.state is StoreState.CLOSED

    @pytest.mark.asyncio
    async def test_promotion_from_read_only(self, store_path):
        SQLiteEngine.open(store_path, create_if_missing=True).close()
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry)
            assert store.state is StoreState.READ_ONLY
            await store.put_tile(1, 1, 1, b'x')
            assert store.state is StoreState.READ_WRITE
            assert registry.stats['busy_handles'] == 1
            await store.close()

    @pytest.mark.asyncio
    async def test_concurrent_promotions(self, store_path):
        async with HandleRegistry() as registry:
            stores = [TileStore(store_path, registry) for _ in range(4)]
            await asyncio.gather(*(s.open_for_write() for s in stores))
            assert registry.stats['opened'] == 1
            for s in stores:
                await s.close()

    @pytest.mark.asyncio
    async def test_foreign_writer_conflict(self, store_path):
        foreign = SQLiteEngine.open(store_path, create_if_missing=True)
        try:
            async with HandleRegistry() as registry:
                store = TileStore(store_path, registry)
                with pytest.raises(ConcurrentOpenConflictError):
                    await store.put_tile(0, 0, 0, b'foo')
                await store.close()
        finally:
            foreign.close()

    @pytest.mark.asyncio
    async def test_idempotent_close_compacts_once(self, store_path):
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry)
            await store.put_tile(0, 0, 0, b'foo')
            await store.close()
            await store.close()
            await registry.wait_background()
            assert registry.stats['compactions'] == 1

    @pytest.mark.asyncio
    async def test_read_only_session_is_not_compacted(self, store_path):
        SQLiteEngine.open(store_path, create_if_missing=True).close()
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry)
            await store.close()
            await registry.wait_background()
            assert registry.stats['compactions'] == 0

    @pytest.mark.asyncio
    async def test_compaction_can_be_disabled(self, store_path):
        settings = StoreSettings(compact_on_close=False)
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry, settings=settings)
            await store.put_tile(0, 0, 0, b'foo')
            await store.close()
            await registry.wait_background()
            assert registry.stats['compactions'] == 0

    @pytest.mark.asyncio
    async def test_close_flushes_pending_writes(self, store_path):
        settings = StoreSettings(write_batch_window_s=0.05)
        async with HandleRegistry() as registry:
            store = TileStore(store_path, registry, settings=settings)
            future = await store.put_tile(0, 0, 0, b'foo', wait=False)
            assert not future.done()
            await store.close()
            assert future.done()
            reader = await open_store(store_path, registry)
            assert (await reader.get_tile(0, 0, 0))[0] == b'foo'
            await reader.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize('yields', range(6))
    async def test_put_racing_close_completes(self, store_path, yields):
        async with HandleRegistry() as registry:
            store = TileStore(store_path, registry)
            await store.put_tile(0, 0, 0, b'foo')
            close_task = asyncio.create_task(store.close())
            for _ in range(yields):
                await asyncio.sleep(0)
            put_task = asyncio.create_task(store.put_tile(1, 0, 0, b'bar'))
            await close_task
            await asyncio.wait_for(put_task, timeout=2)
            await store.close()
            reader = await open_store(store_path, registry)
            assert (await reader.get_tile(1, 0, 0))[0] == b'bar'
            await reader.close()

    @pytest.mark.asyncio
    async def test_reopen_after_close(self, store_path):
        async with HandleRegistry() as registry:
            store = TileStore(store_path, registry)
            await store.put_tile(0, 0, 0, b'foo')
            await store.close()
            assert (await store.get_tile(0, 0, 0))[0] == b'foo'
            assert store.state is StoreState.READ_ONLY
            await store.close()

    @pytest.mark.asyncio
    async def test_context_manager(self, store_path):
        async with HandleRegistry() as registry:
            async with TileStore(store_path, registry) as store:
                await store.put_tile(0, 0, 0, b'foo')
            assert store.state is StoreState.CLOSED

    @pytest.mark.asyncio
    async def test_lifecycle_logging(self, store_path, caplog):
        async with HandleRegistry() as registry:
            with caplog.at_level(logging.INFO):
                store = await open_store(store_path, registry)
                await store.put_tile(0, 0, 0, b'foo')
                await store.close()
        assert 'does not exist yet' in caplog.text
        assert 'promoted to read-write' in caplog.text
        assert 'Closed tile store' in caplog.text


class TestTiles:
    @pytest.mark.asyncio
    async def test_put_get_round_trip(self, store_path):
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry)
            await store.put_tile(0, 0, 0, b'foo', {})
            body, headers = await store.get_tile(0, 0, 0)
            assert body == b'foo'
            assert headers == {'content-md5': FOO_MD5}
            await store.close()

    @pytest.mark.asyncio
    async def test_headers_are_lowercased(self, store_path):
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry)
            await store.put_tile(3, 1, 2, b'png', {'Content-Type': 'image/png'})
            _, headers = await store.get_tile(3, 1, 2)
            assert headers == {'content-type': 'image/png', 'content-md5': content_digest(b'png')}
            await store.close()

    @pytest.mark.asyncio
    async def test_get_missing_tile(self, store_path):
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry)
            await store.open_for_write()
            with pytest.raises(NotFoundError):
                await store.get_tile(5, 5, 5)
            await store.close()

    @pytest.mark.asyncio
    async def test_invalid_coordinate(self, store_path):
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry)
            with pytest.raises(ValueError):
                await store.put_tile(1, 2, 0, b'foo')
            with pytest.raises(ValueError):
                await store.get_tile(-1, 0, 0)
            assert store.state is StoreState.MISSING
            await store.close()

    @pytest.mark.asyncio
    async def test_dedup(self, store_path):
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry)
            await store.put_tile(1, 0, 0, b'same')
            await store.put_tile(1, 1, 1, b'same')
            engine = engine_of(store)
            digest = content_digest(b'same')
            assert data_keys(engine) == [f'data:{digest}'.encode()]
            assert store.content.refcount(engine, digest) == 2
            await store.close()

    @pytest.mark.asyncio
    async def test_refcount_reclamation(self, store_path):
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry)
            await store.put_tile(1, 0, 0, b'same')
            await store.put_tile(1, 1, 1, b'same')
            engine = engine_of(store)
            digest = content_digest(b'same')

            await store.drop_tile(1, 0, 0)
            assert store.content.refcount(engine, digest) == 1
            assert (await store.get_tile(1, 1, 1))[0] == b'same'

            await store.drop_tile(1, 1, 1)
            assert store.content.refcount(engine, digest) == 0
            assert data_keys(engine) == []
            assert engine.count() == 0
            await store.close()

    @pytest.mark.asyncio
    async def test_replace_releases_old_body(self, store_path):
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry)
            await store.put_tile(2, 1, 1, b'old')
            await store.put_tile(2, 1, 1, b'new')
            engine = engine_of(store)
            assert data_keys(engine) == [f'data:{content_digest(b"new")}'.encode()]
            assert (await store.get_tile(2, 1, 1))[0] == b'new'
            await store.close()

    @pytest.mark.asyncio
    async def test_concurrent_puts_share_refcount(self, store_path):
        n = 25
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry)
            await asyncio.gather(*(store.put_tile(5, i, 3, b'shared') for i in range(n)))
            engine = engine_of(store)
            assert store.content.refcount(engine, content_digest(b'shared')) == n
            await store.close()

    @pytest.mark.asyncio
    async def test_concurrent_puts_from_two_stores(self, store_path):
        async with HandleRegistry() as registry:
            a = TileStore(store_path, registry)
            b = TileStore(store_path, registry)
            await asyncio.gather(
                *(a.put_tile(4, i, 0, b'shared') for i in range(10)),
                *(b.put_tile(4, i, 1, b'shared') for i in range(10)),
            )
            engine = engine_of(a)
            assert a.content.refcount(engine, content_digest(b'shared')) == 20
            await a.close()
            await b.close()

    @pytest.mark.asyncio
    async def test_supplied_hash_is_trusted_and_verified(self, store_path):
        wrong = content_digest(b'other')
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry)
            await store.put_tile(0, 0, 0, b'foo', {'Content-MD5': FOO_MD5.upper()})
            assert (await store.get_tile(0, 0, 0))[1]['content-md5'] == FOO_MD5
            await store.put_tile(1, 0, 0, b'foo', {'content-md5': wrong})
            with pytest.raises(IntegrityError):
                await store.get_tile(1, 0, 0)
            await store.close()

    @pytest.mark.asyncio
    async def test_malformed_supplied_hash(self, store_path):
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry)
            with pytest.raises(ValueError):
                await store.put_tile(0, 0, 0, b'foo', {'content-md5': 'xyz'})
            await store.close()

    @pytest.mark.asyncio
    async def test_drop_missing_tile(self, store_path):
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry)
            with pytest.raises(NotFoundError):
                await store.drop_tile(0, 0, 0)
            assert not store_path.exists()
            await store.put_tile(0, 0, 0, b'foo')
            with pytest.raises(NotFoundError):
                await store.drop_tile(1, 1, 1)
            await store.close()

    @pytest.mark.asyncio
    async def test_drop_failure_does_not_affect_batch(self, store_path):
        settings = StoreSettings(write_batch_window_s=0.02)
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry, settings=settings)
            await store.open_for_write()
            results = await asyncio.gather(
                store.put_tile(0, 0, 0, b'foo'),
                store.drop_tile(3, 3, 3),
                return_exceptions=True,
            )
            assert results[0] is None
            assert isinstance(results[1], NotFoundError)
            assert (await store.get_tile(0, 0, 0))[0] == b'foo'
            await store.close()

    @pytest.mark.asyncio
    async def test_fire_and_forget_failure_is_logged(self, store_path, caplog):
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry)
            await store.put_tile(0, 0, 0, b'foo')
            with caplog.at_level(logging.WARNING):
                future = await store.drop_tile(1, 0, 0, wait=False)
                await asyncio.wait([future])
                await asyncio.sleep(0)
            assert 'Background write failed' in caplog.text
            await store.close()

    @pytest.mark.asyncio
    async def test_write_error_surfaces(self, store_path, monkeypatch):
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry)
            await store.open_for_write()
            engine = engine_of(store)

            def broken(ops):
                msg = 'disk full'
                raise sqlite3.OperationalError(msg)

            monkeypatch.setattr(engine, 'batch', broken)
            with pytest.raises(WriteError):
                await store.put_tile(0, 0, 0, b'foo')
            monkeypatch.undo()
            await store.close()

    @pytest.mark.asyncio
    async def test_namespaces_are_isolated(self, store_path):
        async with HandleRegistry() as registry:
            png = TileStore(store_path, registry, StoreOptions(format='png'))
            pbf = TileStore(store_path, registry, StoreOptions(format='pbf'))
            await png.put_tile(0, 0, 0, b'png-bytes')
            await pbf.put_tile(0, 0, 0, b'pbf-bytes')
            assert (await png.get_tile(0, 0, 0))[0] == b'png-bytes'
            assert (await pbf.get_tile(0, 0, 0))[0] == b'pbf-bytes'
            plain = TileStore(store_path, registry)
            with pytest.raises(NotFoundError):
                await plain.get_tile(0, 0, 0)
            for s in (png, pbf, plain):
                await s.close()


class TestInfo:
    @pytest.mark.asyncio
    async def test_round_trip(self, store_path):
        record = {'scheme': 'xyz', 'minzoom': 0, 'maxzoom': 5}
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry)
            await store.put_info(record)
            info = await store.get_info()
            assert info.model_dump(mode='json', exclude_unset=True) == record
            await store.close()

    @pytest.mark.asyncio
    async def test_extra_fields_survive(self, store_path):
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry)
            await store.put_info({'name': 'Test', 'bounds': [-10, -10, 10, 10], 'maxzoom': 3})
            info = await store.get_info()
            assert info.name == 'Test'
            assert info.bounds == (-10.0, -10.0, 10.0, 10.0)
            await store.close()

    @pytest.mark.asyncio
    async def test_overwrite(self, store_path):
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry)
            await store.put_info(StoreInfo(maxzoom=3))
            await store.put_info(StoreInfo(maxzoom=7))
            assert (await store.get_info()).maxzoom == 7
            await store.close()

    @pytest.mark.asyncio
    async def test_missing_info(self, store_path):
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry)
            await store.put_tile(0, 0, 0, b'foo')
            with pytest.raises(NotFoundError):
                await store.get_info()
            await store.close()

    @pytest.mark.asyncio
    async def test_invalid_info(self, store_path):
        async with HandleRegistry() as registry:
            store = await open_store(store_path, registry)
            with pytest.raises(ValueError):
                await store.put_info({'minzoom': 5, 'maxzoom': 2})
            await store.close()
