# tests/services/test_scan_resolver_cache.py
import pytest

from stockrecon.core.errors import ResolutionError
from stockrecon.gateway.scan_item_resolver import CodeResolver, ResolverCache
from stockrecon.utils.codes import hash_code
from tests.helpers.fakes import identity

pytestmark = pytest.mark.grp_scan


@pytest.mark.asyncio
async def test_resolve_fills_cache_under_code_sku_and_barcode(kv, lookup):
    cache = ResolverCache(kv, chunks=8)
    resolver = CodeResolver(lookup, cache=cache)

    ident = await resolver.resolve(identity(4).barcode)
    assert ident.item_id == identity(4).item_id

    # sku 命中缓存，不再查远端
    again = await resolver.resolve("sku-4")
    assert again.item_id == ident.item_id
    assert lookup.calls == [identity(4).barcode]

    written = await cache.flush()
    assert written >= 1
    assert await cache.flush() == 0


@pytest.mark.asyncio
async def test_flushed_cache_survives_new_instance(kv, lookup):
    cache = ResolverCache(kv, chunks=8)
    await CodeResolver(lookup, cache=cache).resolve(identity(5).barcode)
    await cache.flush()

    code = identity(5).barcode
    assert cache.chunk_key(cache.chunk_index(code)) == f"{cache.namespace}:chunk:{hash_code(code) % 8:02d}"

    fresh = ResolverCache(kv, chunks=8)
    hit = await fresh.get(code)
    assert hit is not None and hit.variant_id == identity(5).variant_id


@pytest.mark.asyncio
async def test_chunk_count_change_discards_old_chunks(kv, lookup):
    cache = ResolverCache(kv, chunks=8)
    await CodeResolver(lookup, cache=cache).resolve(identity(6).barcode)
    await cache.flush()

    other = ResolverCache(kv, chunks=16)
    assert await other.get(identity(6).barcode) is None
    meta = await kv.get(other.meta_key)
    assert meta["chunks"] == 16


@pytest.mark.asyncio
async def test_invalidate_drops_everything(kv, lookup):
    cache = ResolverCache(kv, chunks=4)
    resolver = CodeResolver(lookup, cache=cache)
    await resolver.resolve(identity(2).barcode)
    await cache.flush()

    await cache.invalidate()
    assert cache.version == 1
    assert await cache.get(identity(2).barcode) is None
    assert not any(":chunk:" in k for k in kv.keys())

    await resolver.resolve(identity(2).barcode)
    assert len(lookup.calls) == 2


@pytest.mark.asyncio
async def test_resolution_errors(lookup):
    resolver = CodeResolver(lookup)
    with pytest.raises(ResolutionError):
        await resolver.resolve("  ")
    with pytest.raises(ResolutionError) as ei:
        await resolver.resolve("NOPE-123")
    assert ei.value.raw_code == "NOPE-123"
    assert ei.value.status == 404
