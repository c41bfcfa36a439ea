from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from novel_sync.auth import Credential
from novel_sync.config import SyncConfig
from novel_sync.errors import AuthError
from novel_sync.manager import SyncManager
from novel_sync.models import SyncEntity, SyncState

from conftest import DummyResp, SlowResp

BUNDLE = "novel-writer-data.json"
T0 = datetime(2025, 5, 1, tzinfo=UTC)
T3 = datetime(2025, 5, 3, tzinfo=UTC)
T5 = datetime(2025, 5, 5, tzinfo=UTC)


def _novel(entity_id: str, version: int, updated_at: datetime, **fields) -> SyncEntity:
    payload = {"id": entity_id, "version": version, "updatedAt": updated_at.isoformat(), **fields}
    return SyncEntity.from_dict(payload, now=T0)


def _bundle(*entities: SyncEntity, **extra) -> str:
    return json.dumps({"novels": [entity.to_dict() for entity in entities], **extra})


def _manager(store, credentials, drive, clock, *, consent=None, **options) -> SyncManager:
    return SyncManager(
        store,
        credentials,
        config=SyncConfig(**options),
        consent_provider=consent,
        session=drive,
        clock=clock,
    )


async def _signed_in(manager: SyncManager, credential: Credential) -> SyncManager:
    manager.credentials.save_token(credential)
    await manager.async_start()
    assert manager.state is SyncState.SIGNED_IN
    return manager


@pytest.mark.asyncio
async def test_sign_in_pulls_and_starts_periodic_sync(store, credentials, drive, clock, token_payload) -> None:
    drive.add_file(BUNDLE, _bundle(_novel("remote-only", 2, T3, title="From elsewhere")))
    consent = AsyncMock(return_value=token_payload())
    manager = _manager(store, credentials, drive, clock, consent=consent)

    assert await manager.async_sign_in()

    consent.assert_awaited_once()
    assert manager.state is SyncState.SIGNED_IN
    status = manager.get_sync_status()
    assert status.is_signed_in and not status.is_syncing
    assert status.last_sync_time == clock.now
    assert credentials.load_token().access_token == "token-1"
    adopted = store.read_entity("remote-only")
    assert adopted.fields["title"] == "From elsewhere"
    assert adopted.last_sync_at == clock.now
    assert manager._periodic_task is not None and not manager._periodic_task.done()
    await manager.async_stop()


@pytest.mark.asyncio
async def test_sign_in_failure_stays_signed_out(store, credentials, drive, clock) -> None:
    async def consent():
        raise AuthError("user closed the popup")

    manager = _manager(store, credentials, drive, clock, consent=consent)

    assert not await manager.async_sign_in()

    assert manager.state is SyncState.SIGNED_OUT
    status = manager.get_sync_status()
    assert not status.is_signed_in
    assert status.error == "user closed the popup"
    assert credentials.load_token() is None
    assert drive.calls == []


@pytest.mark.asyncio
async def test_sign_in_without_consent_provider(store, credentials, drive, clock) -> None:
    manager = _manager(store, credentials, drive, clock)

    assert not await manager.async_sign_in()
    assert manager.get_sync_status().error


@pytest.mark.asyncio
async def test_sign_in_rejects_expired_credential(store, credentials, drive, clock) -> None:
    async def consent():
        return {"access_token": "stale", "expires_in": 0}

    manager = _manager(store, credentials, drive, clock, consent=consent)

    assert not await manager.async_sign_in()
    assert manager.state is SyncState.SIGNED_OUT


@pytest.mark.asyncio
async def test_operations_are_noops_when_signed_out(store, credentials, drive, clock) -> None:
    manager = _manager(store, credentials, drive, clock)

    assert not await manager.async_pull()
    assert not await manager.async_push()
    assert not await manager.async_manual_sync()
    assert not await manager.async_handle_online()
    assert drive.calls == []


@pytest.mark.asyncio
async def test_pull_resolves_each_novel(store, credentials, drive, clock, valid_credential) -> None:
    store.write_entities(
        [
            _novel("a", 3, T5, title="local a"),
            _novel("b", 4, T5, title="local b"),
            _novel("c", 4, T3, title="same c"),
            _novel("d", 1, T3, title="deleted d"),
        ]
    )
    store.delete_entity("d")
    drive.add_file(
        BUNDLE,
        _bundle(
            _novel("a", 5, T0, title="remote a"),
            _novel("b", 4, T3, title="remote b"),
            _novel("c", 4, T5, title="same c"),
            _novel("d", 9, T5, title="resurrected d"),
            _novel("e", 1, T3, title="remote e"),
            folders=[{"id": "f1", "name": "Drafts"}],
            settings={"fontSize": "large"},
        ),
    )
    manager = await _signed_in(_manager(store, credentials, drive, clock), valid_credential)

    assert await manager.async_pull()

    assert manager.last_pull_summary == {"updated": 1, "adopted": 1, "kept_local": 2, "skipped": 1}
    assert store.read_entity("a").fields["title"] == "remote a"
    assert store.read_entity("a").version == 5
    assert store.read_entity("b").fields["title"] == "local b"
    assert store.read_entity("e").fields["title"] == "remote e"
    assert not store.has_entity("d")
    assert all(store.read_entity(entity_id).last_sync_at == clock.now for entity_id in "abce")
    bundle = store.read_settings_bundle()
    assert bundle["folders"] == [{"id": "f1", "name": "Drafts"}]
    assert bundle["settings"]["fontSize"] == "large"
    await manager.async_stop()


@pytest.mark.asyncio
async def test_pull_keeps_customised_local_settings(store, credentials, drive, clock, valid_credential) -> None:
    store.write_settings_bundle({"settings": {"fontSize": "small"}, "tags": [{"id": "t1", "name": "mine"}]})
    drive.add_file(BUNDLE, _bundle(settings={"fontSize": "large"}, tags=[{"id": "t1", "name": "theirs"}]))
    manager = await _signed_in(_manager(store, credentials, drive, clock), valid_credential)

    assert await manager.async_pull()

    bundle = store.read_settings_bundle()
    assert bundle["settings"]["fontSize"] == "small"
    assert bundle["tags"] == [{"id": "t1", "name": "mine"}]
    await manager.async_stop()


@pytest.mark.asyncio
async def test_pull_without_remote_bundle(store, credentials, drive, clock, valid_credential) -> None:
    manager = await _signed_in(_manager(store, credentials, drive, clock), valid_credential)

    assert await manager.async_pull()
    assert manager.last_pull_summary["adopted"] == 0
    await manager.async_stop()


@pytest.mark.asyncio
async def test_pull_with_corrupt_bundle_keeps_local_data(store, credentials, drive, clock, valid_credential) -> None:
    store.write_entity(_novel("a", 2, T3, title="safe"))
    drive.add_file(BUNDLE, '{"novels": [')
    manager = await _signed_in(_manager(store, credentials, drive, clock), valid_credential)

    assert not await manager.async_pull()

    assert store.read_entity("a").fields["title"] == "safe"
    status = manager.get_sync_status()
    assert status.error and not status.is_syncing
    assert manager.state is SyncState.SIGNED_IN
    await manager.async_stop()


@pytest.mark.asyncio
async def test_push_uploads_bundle_and_stamps_novels(store, credentials, drive, clock, valid_credential) -> None:
    store.write_entity(_novel("a", 2, T3, title="Chapter"))
    store.write_settings_bundle({"folders": [{"id": "f1"}]})
    manager = await _signed_in(_manager(store, credentials, drive, clock), valid_credential)

    assert await manager.async_push()

    uploaded = drive.json_of(BUNDLE)
    assert [item["id"] for item in uploaded["novels"]] == ["a"]
    assert uploaded["folders"] == [{"id": "f1"}]
    assert uploaded["settings"]["fontSize"] == "medium"
    assert uploaded["lastSync"] == "2025-06-01T12:00:00Z"
    assert store.read_entity("a").last_sync_at == clock.now

    assert await manager.async_manual_sync()
    assert len(drive.files) == 1
    await manager.async_stop()


@pytest.mark.asyncio
async def test_concurrent_sync_requests_are_dropped(store, credentials, drive, clock, valid_credential) -> None:
    manager = await _signed_in(_manager(store, credentials, drive, clock), valid_credential)
    drive.queued.append(SlowResp(0.05, status=200, body={"files": []}))

    results = await asyncio.gather(manager.async_push(), manager.async_push(), manager.async_pull())

    assert results == [True, False, False]
    assert len(drive.calls_for("POST")) == 1
    assert not manager.get_sync_status().is_syncing
    await manager.async_stop()


@pytest.mark.asyncio
async def test_unauthorized_response_forces_sign_out(store, credentials, drive, clock, valid_credential) -> None:
    reasons: list[str] = []
    manager = await _signed_in(_manager(store, credentials, drive, clock), valid_credential)
    manager.register_reauth_listener(reasons.append)
    drive.queued.append(DummyResp(401, {"error": "invalid_token"}))

    assert not await manager.async_push()

    assert manager.state is SyncState.SIGNED_OUT
    assert credentials.load_token() is None
    assert len(reasons) == 1
    status = manager.get_sync_status()
    assert not status.is_signed_in and status.error
    assert not await manager.async_push()
    await manager.async_stop()


@pytest.mark.asyncio
async def test_daily_quota_blocks_push(store, credentials, drive, clock, valid_credential) -> None:
    manager = await _signed_in(_manager(store, credentials, drive, clock, daily_limit=1), valid_credential)

    assert not await manager.async_push()

    assert len(drive.calls) == 1
    assert "daily request limit" in manager.get_sync_status().error
    assert manager.state is SyncState.SIGNED_IN
    assert manager.get_rate_limit_info().current == 1
    await manager.async_stop()


@pytest.mark.asyncio
async def test_network_failure_is_reported_not_raised(store, credentials, drive, clock, valid_credential) -> None:
    manager = await _signed_in(_manager(store, credentials, drive, clock), valid_credential)
    drive.queued.append(DummyResp(503, "unavailable"))

    assert not await manager.async_push()

    assert "503" in manager.get_sync_status().error
    assert manager.state is SyncState.SIGNED_IN
    assert await manager.async_handle_online()
    assert manager.get_sync_status().error is None
    await manager.async_stop()


@pytest.mark.asyncio
async def test_autosave_pushes_novel_to_its_own_file(store, credentials, drive, clock, valid_credential) -> None:
    manager = await _signed_in(_manager(store, credentials, drive, clock, debounce_seconds=0.01), valid_credential)
    store.write_entity(_novel("n1", 1, T3, title="Draft"))

    manager.schedule_save("n1", {"body": "first"})
    manager.schedule_save("n1", {"body": "second"})
    await asyncio.sleep(0.05)
    await manager.autosave.async_drain()

    remote = drive.json_of("novel-n1.json")
    assert remote["body"] == "second"
    assert remote["version"] == 2
    assert store.read_entity("n1").last_sync_at == clock.now
    await manager.async_stop()


@pytest.mark.asyncio
async def test_autosave_while_signed_out_stays_local(store, credentials, drive, clock) -> None:
    manager = _manager(store, credentials, drive, clock)
    store.write_entity(_novel("n1", 1, T3))

    entity = manager.flush("n1")
    await manager.autosave.async_drain()

    assert entity.version == 2
    assert store.read_entity("n1").version == 2
    assert drive.calls == []


@pytest.mark.asyncio
async def test_failed_entity_push_keeps_local_save(store, credentials, drive, clock, valid_credential) -> None:
    manager = await _signed_in(_manager(store, credentials, drive, clock), valid_credential)
    store.write_entity(_novel("n1", 1, T3))
    drive.queued.append(DummyResp(500, "boom"))

    manager.flush("n1")
    await manager.autosave.async_drain()

    saved = store.read_entity("n1")
    assert saved.version == 2
    assert saved.last_sync_at is None
    assert manager.get_sync_status().error
    await manager.async_stop()


@pytest.mark.asyncio
async def test_delete_entity_removes_remote_file_and_blocks_resurrection(
    store, credentials, drive, clock, valid_credential
) -> None:
    manager = await _signed_in(_manager(store, credentials, drive, clock), valid_credential)
    novel = _novel("n1", 3, T3, title="Doomed")
    store.write_entity(novel)
    drive.add_file("novel-n1.json", json.dumps(novel.to_dict()))
    drive.add_file(BUNDLE, _bundle(novel))

    assert await manager.async_delete_entity("n1")

    assert drive.content_of("novel-n1.json") is None
    assert not store.has_entity("n1")
    assert await manager.async_pull()
    assert not store.has_entity("n1")
    await manager.async_stop()


@pytest.mark.asyncio
async def test_reset_all_data_wipes_everything(store, credentials, drive, clock, valid_credential) -> None:
    manager = await _signed_in(_manager(store, credentials, drive, clock), valid_credential)
    store.write_entity(_novel("n1", 1, T3))
    drive.add_file("novel-n1.json", "{}")
    drive.add_file(BUNDLE, _bundle())
    drive.add_file("unrelated.txt", "keep")

    assert await manager.async_reset_all_data()

    assert [item["name"] for item in drive.files.values()] == ["unrelated.txt"]
    assert store.read_all_entities() == []
    assert credentials.load_token() is None
    assert manager.state is SyncState.SIGNED_OUT
    assert not manager.get_sync_status().is_signed_in


@pytest.mark.asyncio
async def test_sign_out_clears_credential_and_status(store, credentials, drive, clock, valid_credential) -> None:
    manager = await _signed_in(_manager(store, credentials, drive, clock), valid_credential)

    await manager.async_sign_out()

    assert manager.state is SyncState.SIGNED_OUT
    assert credentials.load_token() is None
    assert manager.get_sync_status().last_sync_time is None


@pytest.mark.asyncio
async def test_start_ignores_expired_credential(store, credentials, drive, clock) -> None:
    credentials.save_token(Credential(access_token="old", expires_at=clock.now - timedelta(minutes=1)))
    manager = _manager(store, credentials, drive, clock)

    await manager.async_start()

    assert manager.state is SyncState.SIGNED_OUT
    assert credentials.load_token() is None


@pytest.mark.asyncio
async def test_access_token_is_refreshed_near_expiry(store, credentials, drive, clock, token_payload) -> None:
    credentials.save_token(
        Credential(access_token="old", expires_at=clock.now + timedelta(seconds=60), refresh_token="r1")
    )
    drive.token_responses.append(DummyResp(200, token_payload(access_token="fresh")))
    manager = await _signed_in(
        _manager(store, credentials, drive, clock, client_id="cid", token_refresh_threshold=300),
        credentials.load_token(),
    )

    assert await manager.async_push()

    assert len(drive.token_requests) == 1
    assert drive.token_requests[0]["data"]["refresh_token"] == "r1"
    assert all(call["headers"]["Authorization"] == "Bearer fresh" for call in drive.calls)
    stored = credentials.load_token()
    assert stored.access_token == "fresh"
    assert stored.refresh_token == "r1"
    await manager.async_stop()


@pytest.mark.asyncio
async def test_status_listener_receives_snapshots(store, credentials, drive, clock, valid_credential) -> None:
    seen: list[bool] = []
    manager = _manager(store, credentials, drive, clock)
    remove = manager.register_status_listener(lambda status: seen.append(status.is_syncing))
    await _signed_in(manager, valid_credential)

    await manager.async_push()
    remove()
    await manager.async_push()

    assert seen == [False, True, False]
    await manager.async_stop()


@pytest.mark.asyncio
async def test_periodic_sync_pushes_on_interval(store, credentials, drive, clock, valid_credential) -> None:
    manager = await _signed_in(_manager(store, credentials, drive, clock, sync_interval=0.01), valid_credential)
    store.write_entity(_novel("n1", 1, T3))

    await asyncio.sleep(0.1)
    await manager.async_stop()

    assert drive.json_of(BUNDLE)["novels"][0]["id"] == "n1"


@pytest.mark.asyncio
async def test_stop_flushes_pending_saves(store, credentials, drive, clock) -> None:
    manager = _manager(store, credentials, drive, clock, debounce_seconds=60)
    store.write_entity(_novel("n1", 1, T3))
    manager.schedule_save("n1", {"title": "Saved on exit"})

    await manager.async_stop()

    assert store.read_entity("n1").fields["title"] == "Saved on exit"
    assert not drive.closed


@pytest.mark.asyncio
async def test_pull_tolerates_out_of_range_numbers(store, credentials, drive, clock, valid_credential) -> None:
    drive.add_file(BUNDLE, '{"novels": [{"id": "a", "title": "huge", "version": 1e400, "updatedAt": 1e400}]}')
    manager = await _signed_in(_manager(store, credentials, drive, clock), valid_credential)

    assert await manager.async_pull()

    adopted = store.read_entity("a")
    assert adopted.version == 1
    assert adopted.updated_at == clock.now
    assert not manager.get_sync_status().is_syncing
    assert await manager.async_push()
    await manager.async_stop()


@pytest.mark.asyncio
async def test_pull_skips_folders_with_unusable_ids(store, credentials, drive, clock, valid_credential) -> None:
    drive.add_file(BUNDLE, json.dumps({"novels": [], "folders": [{"id": ["x"]}, {"id": True}, {"id": "f2"}]}))
    manager = await _signed_in(_manager(store, credentials, drive, clock), valid_credential)

    assert await manager.async_pull()

    assert store.read_settings_bundle()["folders"] == [{"id": "f2"}]
    assert not manager.get_sync_status().is_syncing
    await manager.async_stop()


@pytest.mark.asyncio
async def test_unexpected_pull_error_releases_sync_guard(
    store, credentials, drive, clock, valid_credential, monkeypatch
) -> None:
    drive.add_file(BUNDLE, _bundle())
    manager = await _signed_in(_manager(store, credentials, drive, clock), valid_credential)

    def _explode(bundle):
        raise RuntimeError("disk full")

    monkeypatch.setattr(manager, "_apply_bundle", _explode)

    assert not await manager.async_pull()

    status = manager.get_sync_status()
    assert not status.is_syncing
    assert "disk full" in status.error
    assert await manager.async_push()
    await manager.async_stop()


@pytest.mark.asyncio
async def test_sign_in_recovers_after_consent_provider_crash(
    store, credentials, drive, clock, token_payload
) -> None:
    consent = AsyncMock(side_effect=[RuntimeError("popup blocked"), None, token_payload()])
    manager = _manager(store, credentials, drive, clock, consent=consent)

    assert not await manager.async_sign_in()
    assert manager.state is SyncState.SIGNED_OUT
    assert manager.get_sync_status().error == "popup blocked"

    assert not await manager.async_sign_in()
    assert manager.state is SyncState.SIGNED_OUT
    assert "no token payload" in manager.get_sync_status().error

    assert await manager.async_sign_in()
    assert manager.state is SyncState.SIGNED_IN
    await manager.async_stop()


@pytest.mark.asyncio
async def test_failed_reconsent_keeps_periodic_sync(store, credentials, drive, clock, valid_credential) -> None:
    manager = await _signed_in(_manager(store, credentials, drive, clock, sync_interval=0.01), valid_credential)

    async def slow_denial():
        await asyncio.sleep(0.05)
        raise AuthError("denied")

    manager._consent = slow_denial

    assert not await manager.async_sign_in()
    assert manager.state is SyncState.SIGNED_IN
    store.write_entity(_novel("n1", 1, T3))
    await asyncio.sleep(0.05)

    assert not manager._periodic_task.done()
    assert drive.json_of(BUNDLE)["novels"][0]["id"] == "n1"
    await manager.async_stop()


@pytest.mark.asyncio
async def test_reset_waits_for_in_flight_pull(store, credentials, drive, clock, valid_credential) -> None:
    file_id = drive.add_file(BUNDLE, _bundle(_novel("ghost", 2, T3, title="late arrival")))
    listing = {"files": [{"id": file_id, "name": BUNDLE, "modifiedTime": "2025-01-01T00:01:00Z"}]}
    manager = await _signed_in(_manager(store, credentials, drive, clock), valid_credential)
    drive.queued.append(SlowResp(0.05, status=200, body=listing))

    pull = asyncio.create_task(manager.async_pull())
    await asyncio.sleep(0.01)
    assert manager.get_sync_status().is_syncing
    assert not await manager.async_push()

    assert await manager.async_reset_all_data()

    assert pull.done() and pull.result()
    assert store.read_all_entities() == []
    status = manager.get_sync_status()
    assert status.last_sync_time is None and not status.is_syncing
    assert drive.files == {}
    assert manager.state is SyncState.SIGNED_OUT


@pytest.mark.asyncio
async def test_expired_refreshable_credential_is_refreshed(store, credentials, drive, clock, token_payload) -> None:
    credentials.save_token(
        Credential(access_token="old", expires_at=clock.now - timedelta(minutes=10), refresh_token="r1")
    )
    drive.token_responses.append(DummyResp(200, token_payload(access_token="fresh")))
    manager = _manager(store, credentials, drive, clock, client_id="cid")

    await manager.async_start()
    assert manager.state is SyncState.SIGNED_IN
    assert await manager.async_push()

    assert len(drive.token_requests) == 1
    assert credentials.load_token().access_token == "fresh"
    await manager.async_stop()


@pytest.mark.asyncio
async def test_expired_credential_without_refresh_setup_still_purged(store, credentials, drive, clock) -> None:
    credentials.save_token(
        Credential(access_token="old", expires_at=clock.now - timedelta(minutes=10), refresh_token="r1")
    )
    manager = _manager(store, credentials, drive, clock)

    await manager.async_start()

    assert manager.state is SyncState.SIGNED_OUT
    assert credentials.load_token(keep_refreshable=True) is None
