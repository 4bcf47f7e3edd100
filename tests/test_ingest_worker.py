from unittest.mock import AsyncMock, patch

from workers import ingest_worker


def test_parse_meta_ids_skips_garbage():
    assert ingest_worker.parse_meta_ids(["3", "x", "12"]) == [3, 12]


async def test_worker_replays_given_ids():
    replay = AsyncMock(side_effect=[True, False])
    with patch.object(ingest_worker, "replay_one", replay), \
         patch.object(ingest_worker, "pending_meta_ids", AsyncMock()) as pending, \
         patch.object(ingest_worker, "dispose_engine", AsyncMock()):
        exit_code = await ingest_worker.worker_main(["4", "5"])

    assert exit_code == 1
    assert [c.args for c in replay.await_args_list] == [(4,), (5,)]
    pending.assert_not_awaited()


async def test_worker_without_args_replays_pending_events():
    replay = AsyncMock(return_value=True)
    with patch.object(ingest_worker, "replay_one", replay), \
         patch.object(ingest_worker, "pending_meta_ids", AsyncMock(return_value=[7])), \
         patch.object(ingest_worker, "dispose_engine", AsyncMock()):
        assert await ingest_worker.worker_main([]) == 0
    replay.assert_awaited_once_with(7)


async def test_worker_with_nothing_to_do():
    with patch.object(ingest_worker, "pending_meta_ids", AsyncMock(return_value=[])), \
         patch.object(ingest_worker, "dispose_engine", AsyncMock()):
        assert await ingest_worker.worker_main([]) == 0
