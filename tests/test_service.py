import asyncio

import httpx

from conftest import FakeBackend


def test_fetch_orders_replaces_cache_newest_first(ctx, backend):
    backend.add_order(orderId=1, timestamp=1000)
    backend.add_order(orderId=2, timestamp=5000)

    orders = asyncio.run(ctx.service.fetch_orders())

    assert [o.order_number for o in orders] == [2, 1]
    assert all(o.synced for o in ctx.store.get_all())
    assert len(ctx.store.get_all()) == 2


def test_fetch_orders_falls_back_to_cache_when_server_unreachable(ctx, backend):
    ctx.store.put({"_id": "cached", "orderId": 7, "synced": True})
    backend.up = {}
    backend.add_order(orderId=8)

    orders = asyncio.run(ctx.service.fetch_orders())

    assert [o.order_number for o in orders] == [7]
    assert backend.api_calls() == []


def test_fetch_orders_uses_cache_while_offline(ctx, backend):
    ctx.store.put({"_id": "cached", "orderId": 7, "synced": True, "status": "ready"})
    ctx.connectivity.is_online = False

    assert [o.order_number for o in asyncio.run(ctx.service.fetch_orders())] == [7]
    assert asyncio.run(ctx.service.fetch_orders("pending")) == []
    assert backend.requests == []


def test_fetch_orders_retries_transient_server_errors(ctx, backend, sleeps):
    backend.add_order(orderId=1)
    backend.fail_next = [503]

    orders = asyncio.run(ctx.service.fetch_orders())

    assert [o.order_number for o in orders] == [1]
    assert len(sleeps) == 1


def test_failed_fetch_keeps_cache_and_redetects_after_repeated_failures(ctx, backend):
    ctx.store.put({"_id": "cached", "orderId": 7, "synced": True})
    backend.fail_next = [500] * 6

    async def scenario():
        await ctx.service.fetch_orders()
        after_first = ctx.locator.cached()
        await ctx.service.fetch_orders()
        return after_first

    after_first = asyncio.run(scenario())

    assert after_first is not None
    assert ctx.locator.cached() is None
    assert [o.order_number for o in ctx.store.get_all()] == [7]


def test_status_filtered_fetch_leaves_store_alone(ctx, backend):
    ctx.store.put({"_id": "local-only", "orderId": 1, "synced": True})
    backend.add_order(orderId=2, status="ready")
    backend.add_order(orderId=3, status="pending")

    orders = asyncio.run(ctx.service.fetch_orders("ready"))

    assert [o.order_number for o in orders] == [2]
    assert [o.server_id for o in ctx.store.get_all()] == ["local-only"]


def test_push_then_pull_does_not_duplicate_orders(ctx, backend):
    a = ctx.store.enqueue({"orderId": 101, "total": 10})
    b = ctx.store.enqueue({"orderId": 102, "total": 20})

    async def scenario():
        pushed = await ctx.service.sync_pending_orders()
        pulled = await ctx.service.fetch_orders()
        return pushed, pulled

    pushed, pulled = asyncio.run(scenario())

    assert pushed.success is True
    assert pushed.synced == 2
    assert len(pulled) == 2
    stored = {o.id: o for o in ctx.store.get_all()}
    assert set(stored) == {a.id, b.id}
    assert all(o.synced and o.server_id for o in stored.values())
    assert ctx.store.get_unsynced() == []


def test_acknowledged_orders_take_server_fields_and_keep_keys(ctx, backend):
    a = ctx.store.enqueue({"orderId": "A", "total": 3})
    b = ctx.store.enqueue({"_id": "s1", "orderId": "B", "total": 4})
    backend.assign_ids = ["s1", "s2"]

    result = asyncio.run(ctx.service.sync_pending_orders())

    assert result.synced == 2
    stored_a, stored_b = ctx.store.get(a.id), ctx.store.get(b.id)
    assert (stored_a.server_id, stored_a.synced) == ("s1", True)
    assert (stored_b.server_id, stored_b.synced) == ("s2", True)
    assert len(ctx.store.get_all()) == 2


def test_unacknowledged_orders_stay_queued(ctx, backend):
    ctx.store.enqueue({"orderId": 201})
    lost = ctx.store.enqueue({"orderId": 202})
    backend.drop_acks = {202}

    result = asyncio.run(ctx.service.sync_pending_orders())

    assert result.success is True
    assert result.synced == 1
    assert [o.id for o in ctx.store.get_unsynced()] == [lost.id]
    assert ctx.store.get(lost.id).retry_count == 1


def test_repeatedly_rejected_order_is_quarantined(ctx, backend):
    ctx.store.enqueue({"orderId": 301})
    backend.drop_acks = {301}

    async def scenario():
        results = []
        for _ in range(3):
            results.append(await ctx.service.sync_pending_orders())
        return results

    results = asyncio.run(scenario())

    assert results[-1].quarantined == 1
    assert ctx.store.get_unsynced() == []
    assert ctx.store.queue_stats().quarantined == 1


def test_push_is_skipped_while_offline(ctx, backend):
    ctx.store.enqueue({"orderId": 1})
    ctx.connectivity.is_online = False

    result = asyncio.run(ctx.service.sync_pending_orders())

    assert result.success is False
    assert result.message == "Offline"
    assert backend.requests == []


def test_offline_status_change_is_pushed_later(ctx, backend):
    server_order = backend.add_order(orderId=11)
    asyncio.run(ctx.service.fetch_orders())
    ctx.connectivity.is_online = False

    offline = asyncio.run(ctx.service.update_order_status(11, "ready"))
    assert offline.success is True
    assert offline.queued is True
    assert ctx.store.find(11).dirty is True
    assert server_order["status"] == "pending"

    ctx.connectivity.is_online = True
    result = asyncio.run(ctx.service.sync_pending_orders())

    assert result.pushed == 1
    assert server_order["status"] == "ready"
    assert ctx.store.find(11).dirty is False


def test_dirty_order_without_server_id_is_looked_up_by_number(ctx, backend):
    server_order = backend.add_order(orderId=12)
    local = ctx.store.put({"orderId": 12, "synced": True, "status": "pending"})
    ctx.store.update_status(local.id, "completed")

    result = asyncio.run(ctx.service.sync_pending_orders())

    assert result.pushed == 1
    assert server_order["status"] == "completed"
    assert ctx.store.get(local.id).server_id == server_order["_id"]


def test_online_status_update_goes_to_server_first(ctx, backend):
    server_order = backend.add_order(orderId=21)
    asyncio.run(ctx.service.fetch_orders())

    result = asyncio.run(ctx.service.update_order_status(server_order["_id"], "preparing"))

    assert result.success is True
    assert result.queued is None
    assert server_order["status"] == "preparing"
    stored = ctx.store.find(21)
    assert stored.status == "preparing"
    assert stored.dirty is False
    assert ("PATCH", FakeBackend.LOCALHOST, f"/api/orders/{server_order['_id']}") in backend.requests


def test_status_update_for_unknown_order(ctx):
    result = asyncio.run(ctx.service.update_order_status("ghost", "ready"))

    assert result.success is False
    assert result.error == "Order not found"


def test_delete_is_refused_offline(ctx, backend):
    backend.add_order(orderId=31)
    asyncio.run(ctx.service.fetch_orders())
    ctx.connectivity.is_online = False

    result = asyncio.run(ctx.service.delete_order(31))

    assert result.success is False
    assert result.error == "Cannot delete while offline"
    assert ctx.store.find(31) is not None


def test_delete_removes_order_locally_and_on_server(ctx, backend):
    backend.add_order(orderId=41)
    keep = backend.add_order(orderId=42)
    asyncio.run(ctx.service.fetch_orders())

    result = asyncio.run(ctx.service.delete_order(41))

    assert result.success is True
    assert backend.orders == [keep]
    assert [o.order_number for o in ctx.store.get_all()] == [42]


def test_delete_keeps_local_removal_when_server_fails(ctx, backend):
    backend.add_order(orderId=51)
    asyncio.run(ctx.service.fetch_orders())
    backend.orders = []

    result = asyncio.run(ctx.service.delete_order(51))

    assert result.success is True
    assert ctx.store.find(51) is None


def test_flush_queue_marks_accepted_orders(ctx, backend):
    queued = ctx.store.enqueue({"orderId": 61})
    backend.batch_status = 207

    result = asyncio.run(ctx.service.flush_queue())

    assert result.success is True
    assert result.synced == 1
    assert ctx.store.get(queued.id).synced is True
    assert ("POST", FakeBackend.LOCALHOST, "/sync/batch") in backend.requests


def test_flush_queue_failure_leaves_queue_intact(ctx, backend):
    queued = ctx.store.enqueue({"orderId": 62})
    backend.batch_status = 500

    result = asyncio.run(ctx.service.flush_queue())

    assert result.success is False
    assert ctx.store.get(queued.id).synced is False


def test_enqueue_and_dashboard_stats(ctx, backend):
    backend.up = {}
    ctx.service.enqueue_order({"orderId": 71, "total": 4.5, "status": "pending"})
    ctx.service.enqueue_order({"orderId": 72, "total": 5.5, "status": "completed"})

    stats = asyncio.run(ctx.service.dashboard_stats())

    assert stats.total_orders == 2
    assert stats.pending_orders == 1
    assert stats.completed_orders == 1
    assert stats.total_sales == 10.0
    assert stats.today_orders == 2


def test_server_stats_passthrough(ctx, backend):
    backend.add_order(orderId=1)

    assert asyncio.run(ctx.service.fetch_server_stats()) == {"totalOrders": 1}
    backend.up = {}
    ctx.locator.invalidate()
    assert asyncio.run(ctx.service.fetch_server_stats()) is None


def test_acks_without_local_key_match_by_order_number(ctx, backend):
    a = ctx.store.enqueue({"orderId": "A", "total": 3})
    b = ctx.store.enqueue({"_id": "s1", "orderId": "B", "total": 4})
    backend.assign_ids = ["s1", "s2"]
    backend.echo_local_ids = False

    result = asyncio.run(ctx.service.sync_pending_orders())

    assert result.synced == 2
    stored_a, stored_b = ctx.store.get(a.id), ctx.store.get(b.id)
    assert (stored_a.server_id, stored_a.order_number, stored_a.synced) == ("s1", "A", True)
    assert (stored_b.server_id, stored_b.order_number, stored_b.synced) == ("s2", "B", True)
    assert len(ctx.store.get_all()) == 2
    assert ctx.store.get_unsynced() == []


def test_acks_with_new_server_ids_replace_cached_ones(ctx, backend):
    a = ctx.store.enqueue({"_id": "old-a", "orderId": 1})
    b = ctx.store.enqueue({"_id": "old-b", "orderId": 2})
    backend.assign_ids = ["new-a", "new-b"]
    backend.echo_local_ids = False

    result = asyncio.run(ctx.service.sync_pending_orders())

    assert result.synced == 2
    assert ctx.store.get(a.id).server_id == "new-a"
    assert ctx.store.get(b.id).server_id == "new-b"
    assert sorted(o.id for o in ctx.store.get_all()) == sorted([a.id, b.id])


def test_pull_keeps_quarantine_of_unpushed_status_change(ctx, backend):
    backend.add_order(orderId=81)
    asyncio.run(ctx.service.fetch_orders())
    local = ctx.store.update_status(81, "ready")
    assert ctx.store.record_push_failure([local.id], max_attempts=1) == 1

    asyncio.run(ctx.service.fetch_orders())

    stored = ctx.store.get(local.id)
    assert stored.status == "ready"
    assert stored.dirty is True
    assert stored.quarantined is True
    assert stored.retry_count == 1
    assert ctx.store.get_dirty() == []


def _slow_transport(backend, path, method):
    in_flight = []
    peaks = []

    async def handler(request):
        if request.url.path == path and request.method == method:
            in_flight.append(request)
            peaks.append(len(in_flight))
            await asyncio.sleep(0.01)
            in_flight.remove(request)
        return backend.handler(request)

    return httpx.MockTransport(handler), peaks


def test_concurrent_pushes_run_one_at_a_time(make_ctx, backend):
    transport, peaks = _slow_transport(backend, "/api/orders/sync", "POST")

    async def scenario():
        ctx = make_ctx(transport=transport)
        await ctx.open()
        try:
            ctx.store.enqueue({"orderId": 91})
            results = await asyncio.gather(
                ctx.service.sync_pending_orders(), ctx.service.sync_pending_orders(),
            )
            return results, len(ctx.store.get_all())
        finally:
            await ctx.close()

    results, stored = asyncio.run(scenario())

    assert sorted(r.synced for r in results) == [0, 1]
    assert peaks == [1]
    assert len(backend.orders) == 1
    assert stored == 1


def test_concurrent_pulls_run_one_at_a_time(make_ctx, backend):
    backend.add_order(orderId=92)
    transport, peaks = _slow_transport(backend, "/api/orders", "GET")

    async def scenario():
        ctx = make_ctx(transport=transport)
        await ctx.open()
        try:
            first, second = await asyncio.gather(ctx.service.fetch_orders(), ctx.service.fetch_orders())
            return first, second, len(ctx.store.get_all())
        finally:
            await ctx.close()

    first, second, stored = asyncio.run(scenario())

    assert peaks == [1, 1]
    assert [o.order_number for o in first] == [92]
    assert [o.order_number for o in second] == [92]
    assert stored == 1
