import asyncio
import datetime as dt
from typing import Any

import httpx
from loguru import logger

from bookwell.domain.exceptions import (
    AppointmentNotFoundError,
    BookingConflictError,
    PersistenceFailedError,
    StoreUnavailableError,
)
from bookwell.domain.models import (
    Appointment,
    AppointmentDraft,
    AppointmentStatus,
    CancelOutcome,
    CancelResult,
    Notification,
    Service,
    WaitingListDraft,
    WaitingListEntry,
    WaitingStatus,
)
from bookwell.scheduling.adapters.parsing_helpers import (
    appointment_from_row,
    notification_from_row,
    parse_content_range_total,
    service_from_row,
    timestamp_param,
    waiting_entry_from_row,
)
from bookwell.scheduling.feed import (
    ChangeEvent,
    ChangeFeed,
    ChangeHandler,
    ChangeTopic,
    Subscription,
)

# SQLSTATEs surfaced in PostgREST error bodies
_EXCLUSION_VIOLATION = "23P01"
_NO_DATA_FOUND = "P0002"
_RETRYABLE_CODES = {"40001", "40P01", "57014"}

_RETURN_ROWS = {"Prefer": "return=representation"}
_EXACT_COUNT = {"Prefer": "count=exact"}


class PostgrestSchedulingStore:
    """Scheduling store over a PostgREST endpoint.

    Expects the schema in ``sql/001_scheduling_core.sql``: the exclusion
    constraint on ``appointments`` makes the confirmed insert a single
    atomic compare-and-swap, and ``cancel_appointment_cascade`` runs the
    cancellation cascade inside one transaction.

    Change events are published for mutations made through this client.
    With ``poll_interval`` set, topic-wide ticks are also emitted so writes
    made by other processes are eventually picked up by subscribers.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = "",
        timeout: float = 30,
        poll_interval: float | None = None,
    ) -> None:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout
        )
        self._feed = ChangeFeed()
        self._poll_interval = poll_interval
        self._poller: asyncio.Task[None] | None = None

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    async def get_service(self, service_id: str) -> Service | None:
        rows = await self._select("/services", {"id": f"eq.{service_id}"})
        return service_from_row(rows[0]) if rows else None

    async def get_appointment(self, appointment_id: str) -> Appointment | None:
        rows = await self._select("/appointments", {"id": f"eq.{appointment_id}"})
        return appointment_from_row(rows[0]) if rows else None

    async def list_appointments(
        self,
        *,
        provider_id: str | None = None,
        customer_id: str | None = None,
        status: AppointmentStatus | None = None,
    ) -> list[Appointment]:
        params = {"order": "start_time.asc"}
        if provider_id is not None:
            params["provider_id"] = f"eq.{provider_id}"
        if customer_id is not None:
            params["customer_id"] = f"eq.{customer_id}"
        if status is not None:
            params["status"] = f"eq.{status.value}"
        rows = await self._select("/appointments", params)
        return [appointment_from_row(r) for r in rows]

    async def count_overlapping(
        self, provider_id: str, start_time: dt.datetime, end_time: dt.datetime
    ) -> int:
        return await self._count(
            "/appointments",
            {
                "provider_id": f"eq.{provider_id}",
                "status": f"eq.{AppointmentStatus.CONFIRMED.value}",
                "start_time": f"lt.{timestamp_param(end_time)}",
                "end_time": f"gt.{timestamp_param(start_time)}",
            },
        )

    async def insert_appointment(self, draft: AppointmentDraft) -> Appointment:
        body = {
            "provider_id": draft.provider_id,
            "customer_id": draft.customer_id,
            "service_id": draft.service_id,
            "start_time": timestamp_param(draft.start_time),
            "end_time": timestamp_param(draft.end_time),
            "status": AppointmentStatus.CONFIRMED.value,
            "notes": draft.notes,
        }
        resp = await self._send(
            "POST", "/appointments", json=body, headers=_RETURN_ROWS, write=True
        )
        if self._error_code(resp) == _EXCLUSION_VIOLATION:
            raise BookingConflictError(draft.provider_id, draft.start_time, draft.end_time)
        self._raise_for_status(resp, write=True)

        appointment = appointment_from_row(self._first_row(resp))
        self._feed.publish(
            ChangeEvent(ChangeTopic.APPOINTMENTS, draft.customer_id, appointment.appointment_id)
        )
        return appointment

    async def insert_waiting_entry(self, draft: WaitingListDraft) -> WaitingListEntry:
        body = {
            "user_id": draft.user_id,
            "provider_id": draft.provider_id,
            "service_id": draft.service_id,
            "preferred_date": draft.preferred_date.isoformat(),
            "status": WaitingStatus.WAITING.value,
        }
        resp = await self._send(
            "POST", "/waiting_list", json=body, headers=_RETURN_ROWS, write=True
        )
        self._raise_for_status(resp, write=True)

        entry = waiting_entry_from_row(self._first_row(resp))
        self._feed.publish(ChangeEvent(ChangeTopic.WAITING_LIST, draft.user_id, entry.entry_id))
        return entry

    async def list_waiting_entries(
        self,
        *,
        provider_id: str | None = None,
        user_id: str | None = None,
        status: WaitingStatus | None = None,
    ) -> list[WaitingListEntry]:
        params = {"order": "created_at.asc,id.asc"}
        if provider_id is not None:
            params["provider_id"] = f"eq.{provider_id}"
        if user_id is not None:
            params["user_id"] = f"eq.{user_id}"
        if status is not None:
            params["status"] = f"eq.{status.value}"
        rows = await self._select("/waiting_list", params)
        return [waiting_entry_from_row(r) for r in rows]

    async def cancel_and_promote(
        self, appointment_id: str, *, cancel_date: dt.date, message: str
    ) -> CancelResult:
        resp = await self._send(
            "POST",
            "/rpc/cancel_appointment_cascade",
            json={
                "p_appointment_id": appointment_id,
                "p_cancel_date": cancel_date.isoformat(),
                "p_message": message,
            },
            write=True,
        )
        if self._error_code(resp) == _NO_DATA_FOUND:
            raise AppointmentNotFoundError(appointment_id)
        self._raise_for_status(resp, write=True)

        data: dict[str, Any] = resp.json()
        appointment = appointment_from_row(data["appointment"])
        promoted = waiting_entry_from_row(data["promoted"]) if data.get("promoted") else None
        notification = (
            notification_from_row(data["notification"]) if data.get("notification") else None
        )
        result = CancelResult(
            outcome=CancelOutcome(data["outcome"]),
            appointment=appointment,
            promoted=promoted,
            notification=notification,
        )

        if result.changed:
            self._feed.publish(
                ChangeEvent(ChangeTopic.APPOINTMENTS, appointment.customer_id, appointment_id)
            )
        if promoted is not None:
            self._feed.publish(
                ChangeEvent(ChangeTopic.WAITING_LIST, promoted.user_id, promoted.entry_id)
            )
        if notification is not None:
            self._feed.publish(
                ChangeEvent(
                    ChangeTopic.NOTIFICATIONS, notification.user_id, notification.notification_id
                )
            )
        return result

    async def count_unread(self, user_id: str) -> int:
        return await self._count(
            "/notifications", {"user_id": f"eq.{user_id}", "is_read": "is.false"}
        )

    async def list_notifications(self, user_id: str) -> list[Notification]:
        rows = await self._select(
            "/notifications", {"user_id": f"eq.{user_id}", "order": "created_at.desc"}
        )
        return [notification_from_row(r) for r in rows]

    async def mark_notifications_read(
        self, user_id: str, notification_ids: list[str] | None = None
    ) -> int:
        params = {"user_id": f"eq.{user_id}", "is_read": "is.false"}
        if notification_ids is not None:
            if not notification_ids:
                return 0
            params["id"] = f"in.({','.join(notification_ids)})"
        resp = await self._send(
            "PATCH",
            "/notifications",
            params=params,
            json={"is_read": True},
            headers=_RETURN_ROWS,
            write=True,
        )
        self._raise_for_status(resp, write=True)

        changed = len(resp.json() or [])
        if changed:
            self._feed.publish(ChangeEvent(ChangeTopic.NOTIFICATIONS, user_id))
        return changed

    async def delete_read_notifications(self, user_id: str) -> int:
        resp = await self._send(
            "DELETE",
            "/notifications",
            params={"user_id": f"eq.{user_id}", "is_read": "is.true"},
            headers=_RETURN_ROWS,
            write=True,
        )
        self._raise_for_status(resp, write=True)

        removed = len(resp.json() or [])
        if removed:
            self._feed.publish(ChangeEvent(ChangeTopic.NOTIFICATIONS, user_id))
        return removed

    def subscribe(
        self, topic: ChangeTopic, handler: ChangeHandler, *, user_id: str | None = None
    ) -> Subscription:
        subscription = self._feed.subscribe(topic, handler, user_id=user_id)
        if self._poll_interval and self._poller is None:
            self._poller = asyncio.create_task(self._poll(self._poll_interval))
        return subscription

    async def health_check(self) -> bool:
        try:
            resp = await self._client.get("/")
            resp.raise_for_status()
            return True
        except Exception as exc:
            logger.warning("PostgREST health check failed: {}", exc)
            return False

    async def close(self) -> None:
        if self._poller is not None:
            self._poller.cancel()
            try:
                await self._poller
            except asyncio.CancelledError:
                pass
            self._poller = None
        self._feed.close()
        await self._client.aclose()
        logger.info("PostgREST scheduling store closed")

    async def _poll(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            for topic in ChangeTopic:
                if self._feed.has_subscribers(topic):
                    self._feed.publish(ChangeEvent(topic))

    async def _select(self, path: str, params: dict[str, str]) -> list[dict[str, Any]]:
        resp = await self._send("GET", path, params={"select": "*", **params})
        self._raise_for_status(resp, write=False)
        rows: list[dict[str, Any]] = resp.json() or []
        return rows

    async def _count(self, path: str, params: dict[str, str]) -> int:
        resp = await self._send("HEAD", path, params=params, headers=_EXACT_COUNT)
        self._raise_for_status(resp, write=False)
        total = parse_content_range_total(resp.headers.get("Content-Range"))
        if total is None:
            raise StoreUnavailableError(f"PostgREST returned no exact count for {path}")
        return total

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
        write: bool = False,
    ) -> httpx.Response:
        try:
            return await self._client.request(
                method, path, params=params, json=json, headers=headers
            )
        except Exception as exc:
            text = f"PostgREST {method} {path} failed: {exc}"
            if write:
                raise PersistenceFailedError(text) from exc
            raise StoreUnavailableError(text) from exc

    def _raise_for_status(self, resp: httpx.Response, *, write: bool) -> None:
        if resp.is_success:
            return
        code = self._error_code(resp)
        transient = resp.status_code >= 500 or resp.status_code in {408, 429}
        transient = transient or code in _RETRYABLE_CODES
        text = f"PostgREST returned {resp.status_code}: {self._error_message(resp)}"
        if write:
            raise PersistenceFailedError(text, transient=transient)
        raise StoreUnavailableError(text, transient=transient)

    def _error_code(self, resp: httpx.Response) -> str | None:
        if resp.is_success:
            return None
        body = self._error_body(resp)
        code = body.get("code")
        return str(code) if code is not None else None

    def _error_message(self, resp: httpx.Response) -> str:
        body = self._error_body(resp)
        return str(body.get("message") or resp.reason_phrase or "unknown error")

    def _error_body(self, resp: httpx.Response) -> dict[str, Any]:
        try:
            body = resp.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def _first_row(self, resp: httpx.Response) -> dict[str, Any]:
        rows: list[dict[str, Any]] = resp.json() or []
        if not rows:
            raise PersistenceFailedError("PostgREST returned no row for insert", transient=False)
        return rows[0]
