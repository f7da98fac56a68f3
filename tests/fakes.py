# tests/fakes.py

from __future__ import annotations

from datetime import datetime

from mindmate.services.remote_tasks import task_to_remote_body, to_rfc3339
from mindmate.utils.dates import utcnow


def remote(id_: str, title: str, updated: datetime | None = None, **extra) -> dict:
    """Google Tasks API-shaped dict."""
    body = {
        "id": id_,
        "title": title,
        "status": "needsAction",
        "updated": to_rfc3339(updated or utcnow()),
        "selfLink": f"https://tasks.example/{id_}",
    }
    body.update(extra)
    return body


class FakeRemoteClient:
    """
    In-memory stand-in for GoogleTasksClient.

    - Keeps remote tasks keyed by id
    - Records every mutating call for assertions
    - Titles listed in `fail_on` raise on create/update
    """

    def __init__(self, tasks: list[dict] | None = None) -> None:
        self.tasks: dict[str, dict] = {t["id"]: dict(t) for t in tasks or []}
        self.lists = [{"id": "@default", "title": "My Tasks"}, {"id": "work", "title": "Work"}]
        self.calls: list[tuple] = []
        self.fail_on: set[str] = set()
        self._seq = 0

    def list_task_lists(self) -> list[dict]:
        return list(self.lists)

    def create_task_list(self, title: str) -> dict:
        created = {"id": f"list-{len(self.lists)}", "title": title}
        self.lists.append(created)
        return created

    def list_tasks(self, list_id: str | None = None) -> list[dict]:
        self.calls.append(("list", list_id))
        return [dict(t) for t in self.tasks.values()]

    def create_task(self, task, list_id=None, parent=None) -> dict:
        if task.title in self.fail_on:
            raise RuntimeError(f"remote rejected {task.title}")
        self._seq += 1
        rid = f"new-{self._seq}"
        body = remote(rid, task.title, **{k: v for k, v in task_to_remote_body(task).items() if k != "title"})
        if parent:
            body["parent"] = parent
        self.tasks[rid] = body
        self.calls.append(("create", rid, parent))
        return dict(body)

    def update_task(self, remote_id, task, list_id=None, parent=None) -> dict:
        if task.title in self.fail_on:
            raise RuntimeError(f"remote rejected {task.title}")
        body = remote(remote_id, task.title, **{k: v for k, v in task_to_remote_body(task).items() if k != "title"})
        if parent:
            body["parent"] = parent
        self.tasks[remote_id] = body
        self.calls.append(("update", remote_id, parent))
        return dict(body)

    def delete_task(self, remote_id, list_id=None) -> None:
        self.calls.append(("delete", remote_id))
        if remote_id not in self.tasks:
            raise RuntimeError("404 Not Found")
        del self.tasks[remote_id]

    def mutations(self, kind: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == kind]


class FakePushSender:
    """Replaces push.send_push; answers with a fixed (ok, status)."""

    def __init__(self, ok: bool = True, status: int | None = None) -> None:
        self.ok = ok
        self.status = status
        self.sent: list[tuple[str, dict]] = []

    def __call__(self, sub, payload):
        self.sent.append((sub.endpoint, payload))
        return self.ok, (None if self.ok else self.status)
