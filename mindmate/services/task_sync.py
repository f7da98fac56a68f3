"""
Two-way reconciliation between local tasks and the user's Google Tasks list.

The rules are timestamp heuristics, not a merge protocol:

* a linked pair is pushed or pulled depending on which side changed after
  the last sync (newest side wins, no causal ordering);
* an unlinked task on one side is first matched against the other side by
  title + description, and only created when nothing matches;
* a linked local task whose remote counterpart disappeared follows the
  user's ``on_deleted_tasks_action`` ("skip" unlinks, "recreate" re-creates).
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from sqlmodel import Session, select

from mindmate import config
from mindmate.models import RemoteTaskSettings, Task
from mindmate.services.remote_tasks import GoogleTasksClient, parse_remote_time
from mindmate.utils.dates import as_utc, utcnow

log = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
DUPLICATE_DUE_WINDOW = timedelta(hours=24)
NOT_CONNECTED = "Google Tasks not connected or sync disabled"

DIRECTIONS = ("app-to-remote", "remote-to-app", "bidirectional")
DELETED_ACTIONS = ("skip", "recreate")
CONFLICT_STRATEGIES = ("keep_app", "keep_remote", "merge")


class SyncError(RuntimeError):
    pass


# ---- comparison helpers -----------------------------------------------------


def _local_modified(task: Task) -> datetime:
    return as_utc(task.updated_at) or as_utc(task.created_at) or EPOCH


def _last_sync(task: Task) -> datetime:
    return as_utc(task.remote_last_sync) or EPOCH


def should_update_remote(task: Task, remote: dict) -> bool:
    """Local edit newer than both the remote copy and our last sync."""
    remote_updated = parse_remote_time(remote.get("updated")) or EPOCH
    return _local_modified(task) > max(remote_updated, _last_sync(task))


def should_update_local(task: Task, remote: dict) -> bool:
    """Remote edit newer than both the local copy and our last sync."""
    remote_updated = parse_remote_time(remote.get("updated"))
    if remote_updated is None:
        return False
    return remote_updated > max(_local_modified(task), _last_sync(task))


def is_both_modified(task: Task, remote: dict) -> bool:
    last = _last_sync(task)
    remote_updated = parse_remote_time(remote.get("updated")) or EPOCH
    return last > EPOCH and _local_modified(task) > last and remote_updated > last


def same_content(task: Task, remote: dict) -> bool:
    return (task.title or "") == (remote.get("title") or "") and \
        (task.description or "") == (remote.get("notes") or "")


def merge_remote_into_local(task: Task, remote: dict, now: datetime) -> None:
    task.title = remote.get("title") or task.title
    task.description = remote.get("notes") or task.description
    task.reminder_at = parse_remote_time(remote.get("due")) or task.reminder_at

    if remote.get("status") == "completed":
        task.completed_at = parse_remote_time(remote.get("completed")) or task.completed_at or now
    else:
        task.completed_at = None

    task.remote_sync_status = "synced"
    task.remote_last_sync = now
    task.remote_sync_error = None
    task.updated_at = now


def sort_parent_child(tasks: List[Task]) -> List[Task]:
    """Parents first, each followed by its children; orphans last."""
    parents = [t for t in tasks if not t.parent_id]
    children = [t for t in tasks if t.parent_id]

    ordered: List[Task] = []
    for parent in parents:
        ordered.append(parent)
        ordered.extend(c for c in children if c.parent_id == parent.id)

    placed = {t.id for t in ordered}
    ordered.extend(c for c in children if c.id not in placed)
    return ordered


def _result(success: bool, synced: int = 0, conflicts=None, errors=None) -> dict:
    return {"success": success, "synced": synced, "conflicts": conflicts or [], "errors": errors or []}


# ---- service ----------------------------------------------------------------


ClientFactory = Callable[[Session, RemoteTaskSettings], GoogleTasksClient]


class TaskSyncService:
    def __init__(
        self,
        session: Session,
        client_factory: ClientFactory = GoogleTasksClient.for_user,
        throttle_seconds: float = 0.1,
    ):
        self.session = session
        self.client_factory = client_factory
        self.throttle_seconds = throttle_seconds

    # -- settings / storage

    def get_settings(self, user_email: str) -> Optional[RemoteTaskSettings]:
        return self.session.get(RemoteTaskSettings, user_email)

    def _usable(self, settings: Optional[RemoteTaskSettings]) -> bool:
        return bool(settings and settings.is_connected and settings.sync_enabled)

    def _update_settings(self, settings: RemoteTaskSettings, **fields) -> None:
        for k, v in fields.items():
            setattr(settings, k, v)
        self.session.add(settings)
        self.session.commit()

    def _local_tasks(self, user_email: str) -> List[Task]:
        return list(self.session.exec(
            select(Task)
            .where(Task.user_email == user_email)
            .where(Task.deleted_at == None)  # noqa: E711
            .order_by(Task.created_at.asc())
        ).all())

    def _link(self, task: Task, remote: dict, now: datetime) -> None:
        task.remote_task_id = remote.get("id")
        task.remote_task_url = remote.get("selfLink") or task.remote_task_url
        self._mark_synced(task, now)

    def _mark_synced(self, task: Task, now: datetime) -> None:
        task.remote_sync_status = "synced"
        task.remote_last_sync = now
        task.remote_sync_error = None
        self.session.add(task)
        self.session.commit()

    def _mark_error(self, task_id: str, message: str) -> None:
        self.session.rollback()
        task = self.session.get(Task, task_id)
        if task is None:
            return
        task.remote_sync_status = "error"
        task.remote_sync_error = message[:500]
        self.session.add(task)
        self.session.commit()

    # -- full sync

    def sync_user_tasks(self, user_email: str) -> dict:
        settings = self.get_settings(user_email)
        if not self._usable(settings):
            return _result(False, errors=[NOT_CONNECTED])

        self._update_settings(settings, sync_status="syncing")
        try:
            client = self.client_factory(self.session, settings)
            result = self.perform_sync(user_email, settings, client)
        except Exception as e:
            log.exception("Task sync failed for %s", user_email)
            self.session.rollback()
            self._update_settings(settings, sync_status="error", last_error=str(e) or "Unknown sync error")
            return _result(False, errors=[str(e) or "Unknown sync error"])

        self._update_settings(
            settings,
            sync_status="success" if result["success"] else "error",
            last_sync_at=utcnow(),
            last_error="; ".join(result["errors"]) or None,
        )
        log.info(
            "Task sync for %s: synced=%s conflicts=%s errors=%s",
            user_email, result["synced"], len(result["conflicts"]), len(result["errors"]),
        )
        return result

    def perform_sync(self, user_email: str, settings: RemoteTaskSettings, client: GoogleTasksClient) -> dict:
        list_id = settings.default_task_list_id
        local_tasks = self._local_tasks(user_email)
        remote_tasks = [r for r in client.list_tasks(list_id) if r.get("id")]

        by_id: Dict[str, Task] = {t.id: t for t in local_tasks}
        by_remote_id: Dict[str, Task] = {t.remote_task_id: t for t in local_tasks if t.remote_task_id}
        remote_by_id: Dict[str, dict] = {r["id"]: r for r in remote_tasks}

        direction = settings.sync_direction or "bidirectional"
        synced = 0
        conflicts: List[dict] = []
        errors: List[str] = []

        if direction in ("app-to-remote", "bidirectional"):
            log.debug("Syncing %d local tasks to Google Tasks for %s", len(local_tasks), user_email)
            for task in sort_parent_child(local_tasks):
                if not task.sync_to_remote:
                    continue
                title = task.title
                try:
                    if self._push_in_sync(task, settings, client, by_id, by_remote_id, remote_by_id, remote_tasks, conflicts):
                        synced += 1
                except Exception as e:
                    log.warning("Failed to sync local task %s: %s", task.id, e)
                    self.session.rollback()
                    errors.append(f'Failed to sync app task "{title}": {e}')

        if direction in ("remote-to-app", "bidirectional"):
            log.debug("Syncing %d Google tasks to app for %s", len(remote_tasks), user_email)
            for remote in remote_tasks:
                title = remote.get("title")
                try:
                    if self._pull_in_sync(user_email, remote, local_tasks, by_remote_id, conflicts):
                        synced += 1
                except Exception as e:
                    log.warning("Failed to sync Google task %s: %s", remote.get("id"), e)
                    self.session.rollback()
                    errors.append(f'Failed to sync Google task "{title}": {e}')

        return _result(not errors, synced, conflicts, errors)

    def _parent_remote_id(self, task: Task, by_id: Dict[str, Task]) -> Optional[str]:
        if not task.parent_id:
            return None
        parent = by_id.get(task.parent_id) or self.session.get(Task, task.parent_id)
        return parent.remote_task_id if parent else None

    def _push_in_sync(self, task, settings, client, by_id, by_remote_id, remote_by_id, remote_tasks, conflicts) -> bool:
        now = utcnow()
        list_id = settings.default_task_list_id

        if task.remote_task_id:
            remote = remote_by_id.get(task.remote_task_id)
            if remote is not None:
                if not should_update_remote(task, remote):
                    return False
                if is_both_modified(task, remote):
                    conflicts.append({
                        "task_id": task.id,
                        "remote_task_id": remote["id"],
                        "conflict_type": "both_modified",
                        "resolution": "app",
                    })
                log.info("Updating Google task %s from local task %s", task.remote_task_id, task.id)
                client.update_task(task.remote_task_id, task, list_id)
                self._mark_synced(task, now)
                return True

            # linked, but gone on the remote side
            old_remote_id = task.remote_task_id
            by_remote_id.pop(old_remote_id, None)
            if (settings.on_deleted_tasks_action or "skip") == "recreate":
                log.info("Recreating deleted Google task for local task %s", task.id)
                created = client.create_task(task, list_id, self._parent_remote_id(task, by_id))
                if not created.get("id"):
                    raise SyncError("Google did not return an id for the recreated task")
                self._link(task, created, now)
                by_remote_id[created["id"]] = task
                return True

            log.info("Unlinking deleted Google task %s from local task %s", old_remote_id, task.id)
            task.remote_task_id = None
            task.remote_task_url = None
            task.remote_sync_status = "pending"
            task.remote_last_sync = now
            self.session.add(task)
            self.session.commit()
            return False

        duplicate = next(
            (r for r in remote_tasks if same_content(task, r) and r["id"] not in by_remote_id),
            None,
        )
        if duplicate is not None:
            log.info("Linking local task %s to existing Google task %s", task.id, duplicate["id"])
            self._link(task, duplicate, now)
            by_remote_id[duplicate["id"]] = task
            return True

        created = client.create_task(task, list_id, self._parent_remote_id(task, by_id))
        if not created.get("id"):
            return False
        self._link(task, created, now)
        by_remote_id[created["id"]] = task
        return True

    def _pull_in_sync(self, user_email, remote, local_tasks, by_remote_id, conflicts) -> bool:
        now = utcnow()
        task = by_remote_id.get(remote["id"])

        if task is not None:
            if not should_update_local(task, remote):
                return False
            if is_both_modified(task, remote):
                conflicts.append({
                    "task_id": task.id,
                    "remote_task_id": remote["id"],
                    "conflict_type": "both_modified",
                    "resolution": "remote",
                })
            log.info("Updating local task %s from Google task %s", task.id, remote["id"])
            merge_remote_into_local(task, remote, now)
            self.session.add(task)
            self.session.commit()
            return True

        duplicate = next(
            (t for t in local_tasks if not t.remote_task_id and same_content(t, remote)),
            None,
        )
        if duplicate is not None:
            log.info("Linking existing local task %s to Google task %s", duplicate.id, remote["id"])
            self._link(duplicate, remote, now)
            by_remote_id[remote["id"]] = duplicate
            return True

        from mindmate.services.remote_tasks import remote_to_local

        created = remote_to_local(remote, user_email)
        parent = by_remote_id.get(remote.get("parent") or "")
        if parent is not None:
            created.parent_id = parent.id
        self.session.add(created)
        self.session.commit()
        self.session.refresh(created)
        log.info("Created local task %s from Google task %s", created.id, remote["id"])
        local_tasks.append(created)
        by_remote_id[remote["id"]] = created
        return True

    # -- single task push (after a local edit)

    def push_task_change(self, user_email: str, task_id: str) -> None:
        task = self.session.get(Task, task_id)
        if task is None or task.deleted_at is not None:
            log.info("push_task_change: task not found: %s", task_id)
            return
        if not task.sync_to_remote:
            return

        settings = self.get_settings(user_email)
        if not self._usable(settings):
            log.debug("push_task_change: sync not available for %s", user_email)
            return

        client = self.client_factory(self.session, settings)
        self._push_one(task, settings, client, existing=None)

    def _push_one(self, task: Task, settings: RemoteTaskSettings, client, existing: Optional[List[dict]]) -> None:
        task_id = task.id
        list_id = settings.default_task_list_id
        try:
            parent_remote_id = None
            if task.parent_id:
                parent = self.session.get(Task, task.parent_id)
                if parent is not None and parent.remote_task_id:
                    parent_remote_id = parent.remote_task_id
                elif parent is not None and parent.sync_to_remote and parent.deleted_at is None:
                    log.info("Parent %s has no Google task yet, pushing it first", parent.id)
                    self._push_one(parent, settings, client, existing)
                    self.session.refresh(parent)
                    parent_remote_id = parent.remote_task_id

            now = utcnow()
            if task.remote_task_id:
                client.update_task(task.remote_task_id, task, list_id, parent_remote_id)
                self._mark_synced(task, now)
                return

            if existing is None:
                existing = client.list_tasks(list_id)
            duplicate = next((r for r in existing if self._is_push_duplicate(task, r, parent_remote_id)), None)
            if duplicate is not None:
                log.info("Found existing Google task %s, linking instead of creating", duplicate.get("id"))
                self._link(task, duplicate, now)
                return

            created = client.create_task(task, list_id, parent_remote_id)
            if created.get("id"):
                self._link(task, created, now)
                existing.append(created)
        except Exception as e:
            log.error("Error pushing task %s: %s", task_id, e)
            self._mark_error(task_id, str(e) or "Unknown error")
            raise

    @staticmethod
    def _is_push_duplicate(task: Task, remote: dict, parent_remote_id: Optional[str]) -> bool:
        if not same_content(task, remote):
            return False
        if (remote.get("parent") or None) != parent_remote_id:
            return False
        remote_due = parse_remote_time(remote.get("due"))
        local_due = as_utc(task.reminder_at)
        if remote_due is None and local_due is None:
            return True
        if remote_due is None or local_due is None:
            return False
        return abs(remote_due - local_due) < DUPLICATE_DUE_WINDOW

    # -- bulk push

    def sync_all_incomplete(self, user_email: str) -> dict:
        settings = self.get_settings(user_email)
        if not self._usable(settings):
            return {"success": False, "synced_count": 0, "skipped_count": 0, "errors": [NOT_CONNECTED]}

        incomplete = [t for t in self._local_tasks(user_email) if not t.completed_at and t.sync_to_remote]
        log.info("Bulk sync: %d incomplete tasks for %s", len(incomplete), user_email)

        try:
            client = self.client_factory(self.session, settings)
            existing = client.list_tasks(settings.default_task_list_id)
        except Exception as e:
            log.exception("Bulk sync setup failed for %s", user_email)
            return {"success": False, "synced_count": 0, "skipped_count": 0, "errors": [str(e)]}

        synced_count = 0
        skipped_count = 0
        errors: List[str] = []
        for task in sort_parent_child(incomplete):
            if task.remote_task_id:
                skipped_count += 1
                continue
            title = task.title
            try:
                self._push_one(task, settings, client, existing)
                synced_count += 1
            except Exception as e:
                errors.append(f'Failed to sync task "{title}": {e}')
            if self.throttle_seconds:
                time.sleep(self.throttle_seconds)

        log.info("Bulk sync done for %s: synced=%s skipped=%s errors=%s",
                 user_email, synced_count, skipped_count, len(errors))
        return {"success": not errors, "synced_count": synced_count, "skipped_count": skipped_count, "errors": errors}

    # -- deletion / conflicts

    def sync_task_deletion(self, user_email: str, remote_task_id: Optional[str]) -> bool:
        if not remote_task_id:
            return False
        settings = self.get_settings(user_email)
        if not self._usable(settings):
            return False
        try:
            client = self.client_factory(self.session, settings)
            client.delete_task(remote_task_id, settings.default_task_list_id)
            return True
        except Exception as e:
            log.error("Error syncing task deletion %s for %s: %s", remote_task_id, user_email, e)
            return False

    def resolve_conflict(self, user_email: str, strategy: str, task: Task, remote: dict) -> None:
        if strategy not in CONFLICT_STRATEGIES:
            raise ValueError(f"Unknown conflict strategy: {strategy}")
        settings = self.get_settings(user_email)
        if settings is None or not settings.is_connected:
            raise SyncError("Google Tasks not connected")

        client = self.client_factory(self.session, settings)
        list_id = settings.default_task_list_id
        now = utcnow()
        remote_id = remote.get("id")

        if strategy == "keep_app":
            if remote_id:
                client.update_task(remote_id, task, list_id)
        elif strategy == "keep_remote":
            merge_remote_into_local(task, remote, now)
        else:
            task.description = remote.get("notes") or task.description
            if remote.get("status") == "completed" or task.completed_at:
                task.completed_at = task.completed_at or now
            else:
                task.completed_at = None
            task.reminder_at = task.reminder_at or parse_remote_time(remote.get("due"))
            task.updated_at = now
            if remote_id:
                client.update_task(remote_id, task, list_id)

        if remote_id and not task.remote_task_id:
            task.remote_task_id = remote_id
        self._mark_synced(task, now)

    # -- interval sync (notification loop)

    def perform_interval_sync(self, user_email: str, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        settings = self.get_settings(user_email)
        if not self._usable(settings):
            return {**_result(False, errors=[NOT_CONNECTED]), "skipped": True,
                    "reason": "Not connected or sync disabled"}

        if (settings.sync_direction or "bidirectional") == "app-to-remote":
            return {**_result(True), "skipped": True, "reason": "App-to-remote only sync direction"}

        last = as_utc(settings.last_sync_at) or EPOCH
        interval = timedelta(minutes=config.settings.REMOTE_SYNC_INTERVAL_MINUTES)
        if not settings.auto_sync and now - last <= interval:
            return {**_result(True), "skipped": True,
                    "reason": f"Sync not due (last sync: {last.isoformat()})"}

        return {**self.sync_user_tasks(user_email), "skipped": False}
