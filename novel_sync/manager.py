"""Coordinate sign-in, pull/push cycles and per-novel autosave pushes."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping, Sequence
from contextlib import suppress
from datetime import UTC, datetime
from typing import Any

from aiohttp import ClientError, ClientSession

from .auth import ConsentProvider, Credential, CredentialStore, OAuthClient
from .autosave import AutosaveScheduler
from .config import SyncConfig
from .conflict import resolve_with_outcome
from .const import DEFAULT_SETTINGS
from .drive import DriveFileResolver
from .errors import AuthError, DecodeError, RateLimitExceeded, SyncError
from .models import RateWindow, SyncEntity, SyncState, SyncStatus, format_timestamp
from .multipart import decode_document, encode_document
from .rate import RateTracker
from .storage import LocalStore
from .utils.logging import warn_once

_LOGGER = logging.getLogger(__name__)

StatusListener = Callable[[SyncStatus], None]
ReauthListener = Callable[[str], None]


class SyncManager:
    """Own the sync state machine and expose the operations the UI calls.

    ``SignedOut -> Authenticating -> SignedIn``; while signed in, at most one
    pull/push runs at a time and requests arriving meanwhile are dropped. Remote
    failures never propagate to the caller: they are logged and published via
    :attr:`SyncStatus.error`, and local data is left as it was.
    """

    def __init__(
        self,
        store: LocalStore,
        credentials: CredentialStore,
        *,
        config: SyncConfig | None = None,
        consent_provider: ConsentProvider | None = None,
        session: ClientSession | None = None,
        oauth_client: OAuthClient | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or SyncConfig()
        self.store = store
        self.credentials = credentials
        self._consent = consent_provider
        self._session = session
        self._owns_session = session is None
        self._oauth = oauth_client
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self.rate = RateTracker(self.config.daily_limit, clock=self._clock)
        self.autosave = AutosaveScheduler(
            store,
            self.async_push_entity,
            delay=self.config.debounce_seconds,
            on_push_error=self._on_entity_push_error,
            clock=self._clock,
        )
        self.state = SyncState.SIGNED_OUT
        self._status = SyncStatus()
        self._resolver: DriveFileResolver | None = None
        self._periodic_task: asyncio.Task | None = None
        self._refresh_lock = asyncio.Lock()
        self._sync_idle = asyncio.Event()
        self._sync_idle.set()
        self._resetting = False
        self._status_listeners: list[StatusListener] = []
        self._reauth_listeners: list[ReauthListener] = []
        self.last_pull_summary: dict[str, int] | None = None

    # ------------------------------------------------------------------
    @property
    def resolver(self) -> DriveFileResolver:
        if self._resolver is None:
            if self._session is None:
                self._session = ClientSession()
                self._owns_session = True
            self._resolver = DriveFileResolver(
                self._session,
                self._async_access_token,
                self.rate,
                base_url=self.config.api_base_url,
                timeout=self.config.request_timeout,
                entity_file_prefix=self.config.entity_file_prefix,
            )
        return self._resolver

    def get_sync_status(self) -> SyncStatus:
        return self._status.copy()

    def get_rate_limit_info(self) -> RateWindow:
        return self.rate.check_quota()

    def register_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        """Register a callback receiving a :class:`SyncStatus` copy on every change."""

        if listener not in self._status_listeners:
            self._status_listeners.append(listener)

        def _remove() -> None:
            with suppress(ValueError):
                self._status_listeners.remove(listener)

        return _remove

    def register_reauth_listener(self, listener: ReauthListener) -> None:
        """Register a callback invoked when the user has to sign in again."""

        if listener in self._reauth_listeners:
            return
        self._reauth_listeners.append(listener)

    # ------------------------------------------------------------------
    async def async_start(self) -> None:
        """Resume a stored session if its credential is still valid or can be refreshed."""

        if self.state is SyncState.SIGNED_IN:
            return
        if self.credentials.load_token(keep_refreshable=self.config.can_refresh) is None:
            return
        self.state = SyncState.SIGNED_IN
        self._update_status(is_signed_in=True)
        self._start_periodic()
        _LOGGER.info("Resumed remote drive session")

    async def async_stop(self) -> None:
        """Flush pending saves, wait for their pushes and release resources."""

        await self._async_stop_periodic()
        self.autosave.flush_all()
        await self.autosave.async_drain()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        self._resolver = None

    async def async_sign_in(self) -> bool:
        """Run the consent flow, store the credential, pull once and start the timer."""

        if self.state is SyncState.AUTHENTICATING:
            _LOGGER.debug("Sign-in already in progress")
            return False
        if self._consent is None:
            self._update_status(error="no consent provider configured")
            return False
        previous = self.state
        self.state = SyncState.AUTHENTICATING
        self._update_status(error=None)
        try:
            payload = await self._consent()
            if not isinstance(payload, Mapping):
                raise AuthError("consent flow returned no token payload", reason="invalid_token")
            credential = Credential.from_payload(payload, now=self._clock())
            if not self.credentials.is_valid(credential):
                raise AuthError("consent flow returned an expired credential", reason="expired")
        except asyncio.CancelledError:
            self._abort_sign_in(previous, "sign-in cancelled")
            raise
        except (AuthError, ClientError, TimeoutError) as err:
            _LOGGER.warning("Sign-in failed: %s", err)
            self._abort_sign_in(previous, str(err) or "sign-in failed")
            return False
        except Exception as err:
            _LOGGER.exception("Consent provider raised an unexpected error")
            self._abort_sign_in(previous, str(err) or err.__class__.__name__)
            return False

        self.credentials.save_token(credential)
        self.state = SyncState.SIGNED_IN
        self._update_status(is_signed_in=True, error=None)
        _LOGGER.info("Signed in to remote drive")
        await self.async_pull()
        self._start_periodic()
        return True

    async def async_sign_out(self) -> None:
        await self._async_stop_periodic()
        self.credentials.clear_token()
        self.state = SyncState.SIGNED_OUT
        self._reset_status()
        _LOGGER.info("Signed out of remote drive")

    # ------------------------------------------------------------------
    async def async_pull(self) -> bool:
        """Download the aggregate bundle and merge it into the local store."""

        if not self._try_begin_sync("pull"):
            return False
        try:
            text = await self.resolver.download_by_name(self.config.bundle_file_name)
            if text is None:
                _LOGGER.debug("No remote bundle named %s yet", self.config.bundle_file_name)
                summary = {"updated": 0, "adopted": 0, "kept_local": 0, "skipped": 0}
            else:
                bundle = decode_document(text)
                try:
                    summary = self._apply_bundle(bundle)
                except (TypeError, ValueError, OverflowError) as err:
                    raise DecodeError(f"remote bundle is malformed: {err}") from err
        except asyncio.CancelledError:
            self._release_sync()
            raise
        except SyncError as err:
            self._finish_sync("pull", err)
            return False
        except Exception as err:
            _LOGGER.exception("Unexpected error while pulling the remote bundle")
            self._finish_sync("pull", SyncError(f"pull failed: {err}", reason="unexpected"))
            return False
        self.last_pull_summary = summary
        self._finish_sync("pull")
        _LOGGER.info("Pulled remote bundle: %s", self.last_pull_summary)
        return True

    async def async_push(self) -> bool:
        """Upload the full local state as the aggregate bundle."""

        if not self._try_begin_sync("push"):
            return False
        try:
            exported = self.store.read_all_entities()
            bundle = self._export_bundle(exported)
            await self.resolver.sync_file(self.config.bundle_file_name, encode_document(bundle))
            self._stamp_synced(exported)
        except asyncio.CancelledError:
            self._release_sync()
            raise
        except SyncError as err:
            self._finish_sync("push", err)
            return False
        except Exception as err:
            _LOGGER.exception("Unexpected error while pushing the remote bundle")
            self._finish_sync("push", SyncError(f"push failed: {err}", reason="unexpected"))
            return False
        self._finish_sync("push")
        _LOGGER.info("Pushed %d novels to the remote bundle", len(exported))
        return True

    async def async_manual_sync(self) -> bool:
        _LOGGER.debug("Manual sync requested")
        return await self.async_push()

    async def async_handle_online(self) -> bool:
        """Push after the network comes back, if signed in."""

        if self.state is not SyncState.SIGNED_IN:
            return False
        _LOGGER.info("Network restored; syncing")
        return await self.async_push()

    async def async_push_entity(self, entity: SyncEntity) -> bool:
        """Best-effort push of one committed novel to its own remote file."""

        if self.state is not SyncState.SIGNED_IN or self._resetting:
            _LOGGER.debug("Not signed in; keeping novel %s local only", entity.id)
            return False
        try:
            await self.resolver.sync_entity(entity)
        except SyncError as err:
            self._record_error(f"push of novel {entity.id}", err)
            return False
        self._stamp_synced([entity])
        return True

    # ------------------------------------------------------------------
    def schedule_save(self, entity_id: str, partial: Mapping[str, Any]) -> None:
        self.autosave.schedule_save(entity_id, partial)

    def flush(self, entity_id: str) -> SyncEntity:
        return self.autosave.flush(entity_id)

    async def async_delete_entity(self, entity_id: str) -> bool:
        """Delete a novel locally, then best-effort delete its remote file."""

        self.autosave.cancel(entity_id)
        existed = self.store.delete_entity(entity_id)
        if self.state is SyncState.SIGNED_IN:
            try:
                ref = await self.resolver.find_by_name(self.resolver.entity_file_name(entity_id))
                if ref is not None:
                    await self.resolver.delete(ref.file_id)
            except SyncError as err:
                self._record_error(f"remote delete of novel {entity_id}", err)
        return existed

    async def async_reset_all_data(self) -> bool:
        """Wipe remote files (when signed in), local data, the credential and the status.

        Returns ``False`` when the remote cleanup failed; local data is cleared regardless.
        In-flight pulls, pushes and novel uploads are allowed to finish first so
        none of them lands after the wipe; new ones are refused meanwhile.
        """

        self._resetting = True
        try:
            await self._async_stop_periodic()
            self.autosave.cancel_all()
            await self.autosave.async_drain()
            await self._sync_idle.wait()
            remote_ok = True
            if self.state is SyncState.SIGNED_IN:
                try:
                    await self._async_delete_remote_data()
                except SyncError as err:
                    remote_ok = False
                    _LOGGER.warning("Remote data could not be deleted: %s", err)
            self.store.clear()
            self.credentials.clear_token()
            self.state = SyncState.SIGNED_OUT
            self.last_pull_summary = None
            self._reset_status()
        finally:
            self._resetting = False
        return remote_ok

    # ------------------------------------------------------------------
    async def _async_access_token(self) -> str:
        credential = self.credentials.load_token(keep_refreshable=self.config.can_refresh)
        if credential is None:
            raise AuthError("not signed in or credential expired", reason="expired")
        if (
            credential.refresh_token
            and self.config.can_refresh
            and credential.expires_within(self.config.token_refresh_threshold, now=self._clock())
        ):
            credential = await self._async_refresh_token(credential)
        return credential.access_token

    async def _async_refresh_token(self, credential: Credential) -> Credential:
        async with self._refresh_lock:
            current = self.credentials.load_token(keep_refreshable=True) or credential
            if not current.expires_within(self.config.token_refresh_threshold, now=self._clock()):
                return current
            client = self._oauth
            if client is None:
                client = self._oauth = OAuthClient(
                    self.config.token_url,
                    self.config.client_id,
                    client_secret=self.config.client_secret,
                    session=self._session,
                    timeout=self.config.request_timeout,
                )
            refreshed = await client.async_refresh(current.refresh_token or "")
            self.credentials.save_token(refreshed)
            _LOGGER.debug("Access token refreshed; expires %s", format_timestamp(refreshed.expires_at))
            return refreshed

    async def _async_delete_remote_data(self) -> None:
        refs = await self.resolver.list_files(prefix=self.config.entity_file_prefix)
        bundle = await self.resolver.find_by_name(self.config.bundle_file_name)
        if bundle is not None and all(ref.file_id != bundle.file_id for ref in refs):
            refs.append(bundle)
        for ref in refs:
            await self.resolver.delete(ref.file_id)
        _LOGGER.info("Deleted %d remote files", len(refs))

    def _try_begin_sync(self, action: str) -> bool:
        # Check-and-set without an await in between: the event loop cannot interleave.
        if self.state is not SyncState.SIGNED_IN:
            _LOGGER.debug("Skipping %s: not signed in", action)
            return False
        if self._resetting:
            _LOGGER.debug("Skipping %s: reset in progress", action)
            return False
        if self._status.is_syncing:
            _LOGGER.debug("Skipping %s: another sync is in flight", action)
            return False
        self._sync_idle.clear()
        self._update_status(is_syncing=True, error=None)
        return True

    def _release_sync(self) -> None:
        self._sync_idle.set()
        self._update_status(is_syncing=False)

    def _finish_sync(self, action: str, error: SyncError | None = None) -> None:
        self._sync_idle.set()
        if error is None:
            self._update_status(is_syncing=False, last_sync_time=self._clock(), error=None)
            return
        self._update_status(is_syncing=False)
        self._record_error(action, error)

    def _abort_sign_in(self, previous: SyncState, message: str) -> None:
        signed_in = previous is SyncState.SIGNED_IN
        self.state = SyncState.SIGNED_IN if signed_in else SyncState.SIGNED_OUT
        self._update_status(is_signed_in=signed_in, error=message)
        if signed_in and (self._periodic_task is None or self._periodic_task.done()):
            self._start_periodic()

    def _record_error(self, action: str, error: Exception) -> None:
        message = str(error) or error.__class__.__name__
        if isinstance(error, AuthError):
            _LOGGER.warning("%s failed, sign-in required: %s", action, message)
            self._force_sign_out(message)
        elif isinstance(error, RateLimitExceeded):
            warn_once(_LOGGER, "rate_limited", f"{action} skipped: {message}")
        elif isinstance(error, DecodeError):
            _LOGGER.warning("%s ignored unusable remote data: %s", action, message)
        else:
            _LOGGER.warning("%s failed: %s", action, message)
        self._update_status(error=message)

    def _on_entity_push_error(self, entity: SyncEntity, error: Exception) -> None:
        self._update_status(error=str(error) or error.__class__.__name__)

    def _force_sign_out(self, message: str) -> None:
        self.credentials.clear_token()
        self._stop_periodic()
        self.state = SyncState.SIGNED_OUT
        self._update_status(is_signed_in=False)
        for listener in list(self._reauth_listeners):
            try:
                listener(message)
            except Exception as err:  # pragma: no cover - defensive log
                _LOGGER.debug("Re-auth listener raised error: %s", err, exc_info=True)

    # ------------------------------------------------------------------
    def _apply_bundle(self, bundle: Any) -> dict[str, int]:
        if not isinstance(bundle, Mapping):
            raise DecodeError("remote bundle is not a JSON object")
        remote_items = bundle.get("novels") or []
        if isinstance(remote_items, Mapping):
            remote_items = list(remote_items.values())
        if not isinstance(remote_items, list):
            raise DecodeError("remote bundle 'novels' is not a list")

        now = self._clock()
        deleted = self.store.deleted_ids()
        local_by_id = {entity.id: entity for entity in self.store.read_all_entities()}
        summary = {"updated": 0, "adopted": 0, "kept_local": 0, "skipped": 0}
        winners: list[SyncEntity] = []
        for item in remote_items:
            if not isinstance(item, Mapping):
                summary["skipped"] += 1
                continue
            try:
                remote = SyncEntity.from_dict(item, now=now)
            except ValueError:
                summary["skipped"] += 1
                continue
            if remote.id in deleted:
                summary["skipped"] += 1
                continue
            local = local_by_id.get(remote.id)
            if local is None:
                winners.append(remote.mark_synced(now))
                summary["adopted"] += 1
                continue
            # Same version with different content means both sides edited independently.
            resolution = resolve_with_outcome(
                local, remote, conflict_candidate=not local.same_content(remote), now=now
            )
            winners.append(resolution.winner)
            summary["updated" if resolution.remote_won else "kept_local"] += 1
        if winners:
            self.store.write_entities(winners)
        self._merge_settings_bundle(bundle)
        return summary

    def _merge_settings_bundle(self, bundle: Mapping[str, Any]) -> None:
        local = self.store.read_settings_bundle()
        merged = {
            "folders": _merge_by_id(local["folders"], bundle.get("folders")),
            "tags": _merge_by_id(local["tags"], bundle.get("tags")),
            "settings": local["settings"],
        }
        remote_settings = bundle.get("settings")
        if isinstance(remote_settings, Mapping) and local["settings"] == DEFAULT_SETTINGS:
            merged["settings"] = {**DEFAULT_SETTINGS, **remote_settings}
        if merged != local:
            self.store.write_settings_bundle(merged)

    def _export_bundle(self, entities: Sequence[SyncEntity]) -> dict[str, Any]:
        bundle: dict[str, Any] = {"novels": [entity.to_dict() for entity in entities]}
        bundle.update(self.store.read_settings_bundle())
        bundle["lastSync"] = format_timestamp(self._clock())
        return bundle

    def _stamp_synced(self, entities: Sequence[SyncEntity]) -> None:
        now = self._clock()
        stamped: list[SyncEntity] = []
        for entity in entities:
            try:
                current = self.store.read_entity(entity.id)
            except KeyError:
                continue
            # Skip novels edited again while the upload was in flight.
            if current.version == entity.version:
                stamped.append(current.mark_synced(now))
        if stamped:
            self.store.write_entities(stamped)

    # ------------------------------------------------------------------
    def _start_periodic(self) -> None:
        self._stop_periodic()
        self._periodic_task = asyncio.get_running_loop().create_task(
            self._periodic_loop(self.config.sync_interval)
        )

    def _stop_periodic(self) -> None:
        task = self._periodic_task
        self._periodic_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _async_stop_periodic(self) -> None:
        task = self._periodic_task
        self._stop_periodic()
        if task is not None and task is not asyncio.current_task():
            with suppress(asyncio.CancelledError):
                await task

    async def _periodic_loop(self, interval: int) -> None:
        # Keeps running through a re-consent; async_push skips while not signed in.
        while self.state is not SyncState.SIGNED_OUT:
            await asyncio.sleep(interval)
            try:
                await self.async_push()
            except asyncio.CancelledError:
                raise
            except Exception as err:  # pragma: no cover - defensive log
                _LOGGER.exception("Unexpected sync error: %s", err)

    def _update_status(self, **changes: Any) -> None:
        for key, value in changes.items():
            setattr(self._status, key, value)
        self._notify_status()

    def _reset_status(self) -> None:
        self._status = SyncStatus()
        self._notify_status()

    def _notify_status(self) -> None:
        snapshot = self._status.copy()
        for listener in list(self._status_listeners):
            try:
                listener(snapshot)
            except Exception as err:  # pragma: no cover - defensive log
                _LOGGER.debug("Status listener raised error: %s", err, exc_info=True)


def _item_id(item: Any) -> str | int | None:
    """Return the id of a folder or tag, or ``None`` when it is missing or not a plain scalar."""

    if not isinstance(item, Mapping):
        return None
    value = item.get("id")
    if isinstance(value, bool) or not isinstance(value, str | int) or value == "":
        return None
    return value


def _merge_by_id(local: list[Any], remote: Any) -> list[Any]:
    """Keep every local item and append remote items whose id is unknown locally."""

    merged = list(local)
    if not isinstance(remote, list):
        return merged
    known = {item_id for item_id in map(_item_id, merged) if item_id is not None}
    for item in remote:
        item_id = _item_id(item)
        if item_id is not None and item_id not in known:
            merged.append(dict(item))
            known.add(item_id)
    return merged


__all__ = ["SyncManager"]
