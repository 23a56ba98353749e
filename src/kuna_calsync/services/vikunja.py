"""Vikunja task service over its REST API."""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence
import logging

import httpx
import pytz
from dateutil.parser import isoparse
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .base import InvalidTaskId, TaskNotFound, TaskService, TransportError
from ..models import Project, Task, TaskPatch, TimeWindow, ensure_utc

logger = logging.getLogger(__name__)

PER_PAGE = 50
ALL_DAY_TOLERANCE = timedelta(minutes=1)


def parse_vikunja_date(value: Optional[str]) -> Optional[datetime]:
    """Parse a Vikunja timestamp; the zero date ``0001-01-01...`` means unset."""
    if not value:
        return None
    if value.startswith("0001-01-01"):
        return None
    parsed = isoparse(value)
    return ensure_utc(parsed).astimezone(pytz.UTC)


def format_vikunja_date(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).astimezone(pytz.UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def infer_all_day(due: Optional[datetime], tz=pytz.UTC) -> bool:
    """A due date within a minute of local midnight is taken as a whole day."""
    if due is None:
        return False
    local = ensure_utc(due).astimezone(tz)
    midnight = tz.localize(datetime(local.year, local.month, local.day))
    return local - midnight < ALL_DAY_TOLERANCE


def task_from_json(data: Dict[str, Any], tz=pytz.UTC) -> Task:
    """Convert a Vikunja task document into a Task snapshot."""
    due = parse_vikunja_date(data.get("due_date"))

    reminders: List[float] = []
    if due is not None:
        for item in data.get("reminders") or []:
            at = parse_vikunja_date(item.get("reminder"))
            if at is not None:
                reminders.append((at - due).total_seconds())

    updated = parse_vikunja_date(data.get("updated")) or datetime.now(pytz.UTC)
    return Task(
        id=str(data["id"]),
        project_id=str(data.get("project_id") or ""),
        title=data.get("title") or "",
        notes=data.get("description") or None,
        due_date=due,
        is_all_day=infer_all_day(due, tz),
        reminders=reminders,
        updated_at=updated,
        deleted=bool(data.get("done", False)),
    )


class VikunjaTaskService(TaskService):
    """Task service backed by a Vikunja server."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: float = 30,
        retry_attempts: int = 3,
        tz=pytz.UTC,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the Vikunja client.

        Args:
            base_url: API root, e.g. ``https://tasks.example.com/api/v1``
            token: API token sent as a bearer credential
            timeout: Request timeout in seconds
            retry_attempts: Attempts per request on transport errors
            tz: Timezone used to decide whether a due date is a whole day
            transport: Optional httpx transport, used by tests
        """
        self.tz = tz
        self.logger = logger.getChild('vikunja')
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip('/'),
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )
        self._request = retry(
            stop=stop_after_attempt(retry_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(TransportError),
            reraise=True,
        )(self._send)

    @classmethod
    def from_settings(cls, settings) -> "VikunjaTaskService":
        return cls(
            settings.vikunja_url,
            settings.vikunja_token,
            timeout=settings.request_timeout_seconds,
            retry_attempts=settings.sync_config.retry_attempts,
            tz=settings.sync_config.tz,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {path} failed: {e}")

        if response.status_code == 404:
            raise TaskNotFound(f"{method} {path} returned 404")
        if response.status_code >= 400:
            raise TransportError(
                f"{method} {path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    async def _get_paged(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        page = 1
        while True:
            query = dict(params or {})
            query.update({"page": page, "per_page": PER_PAGE})
            response = await self._request("GET", path, params=query)
            batch = response.json() or []
            items.extend(batch)

            total_pages = int(response.headers.get("x-pagination-total-pages", "1") or 1)
            if page >= total_pages or not batch:
                return items
            page += 1

    async def fetch_projects(self) -> List[Project]:
        data = await self._get_paged("/projects")
        return [Project(id=str(p["id"]), title=p.get("title") or "") for p in data]

    async def _fetch_project_tasks(self, project_id: str) -> List[Dict[str, Any]]:
        if not str(project_id).isdigit():
            raise InvalidTaskId(f"Project id {project_id!r} is not numeric")
        return await self._get_paged(f"/projects/{project_id}/tasks")

    async def fetch_tasks(
        self,
        updated_since: Optional[datetime],
        project_ids: Sequence[str],
        window: TimeWindow,
    ) -> List[Task]:
        """Fetch tasks of the given projects, or of every project when none are given.

        The cursor filter is applied client side: a task is returned when its
        ``updated`` timestamp is newer than ``updated_since``.
        """
        ids = list(project_ids)
        if not ids:
            ids = [p.id for p in await self.fetch_projects()]

        batches = await asyncio.gather(*(self._fetch_project_tasks(pid) for pid in ids))

        since = ensure_utc(updated_since)
        tasks: List[Task] = []
        for batch in batches:
            for data in batch:
                task = task_from_json(data, self.tz)
                if since is not None and task.updated_at <= since:
                    continue
                tasks.append(task)

        self.logger.debug(f"Fetched {len(tasks)} tasks from {len(ids)} projects")
        return tasks

    async def patch_task(self, patch: TaskPatch) -> Task:
        if not patch.id.isdigit():
            raise InvalidTaskId(f"Task id {patch.id!r} is not numeric")

        path = f"/tasks/{patch.id}"
        current = (await self._request("GET", path)).json()
        old_due = parse_vikunja_date(current.get("due_date"))

        if patch.title is not None:
            current["title"] = patch.title
        if patch.notes is not None:
            current["description"] = patch.notes

        new_due = old_due
        if patch.due_date is not None:
            new_due = ensure_utc(patch.due_date)
            current["due_date"] = format_vikunja_date(new_due)

        if patch.reminders is not None:
            if new_due is not None:
                current["reminders"] = [
                    {"reminder": format_vikunja_date(new_due + timedelta(seconds=offset))}
                    for offset in patch.reminders
                ]
            else:
                current["reminders"] = []
        elif old_due is not None and new_due is not None and new_due != old_due:
            # keep reminders at the same distance from the moved due date
            shift = new_due - old_due
            moved = []
            for item in current.get("reminders") or []:
                at = parse_vikunja_date(item.get("reminder"))
                if at is not None:
                    moved.append({"reminder": format_vikunja_date(at + shift)})
            current["reminders"] = moved

        response = await self._request("POST", path, json=current)
        return task_from_json(response.json(), self.tz)
