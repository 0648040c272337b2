from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import Any, Literal
from uuid import uuid4

from autopilot.errors import ApprovalTimeout
from autopilot.models import utcnow

ApprovalKind = Literal["plan", "step", "task"]


class ApprovalRequest:
    """A single yes/no question answered by exactly one call.

    The first ``approve``/``deny`` wins; later answers, and answers arriving
    after a timeout, are ignored.
    """

    def __init__(
        self,
        *,
        kind: ApprovalKind,
        subject: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.id = f"approval-{uuid4().hex[:10]}"
        self.kind = kind
        self.subject = subject
        self.details = dict(details or {})
        self.created_at: datetime = utcnow()
        self.timed_out = False
        self._future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()

    def __repr__(self) -> str:
        return f"ApprovalRequest(id={self.id!r}, kind={self.kind!r}, subject={self.subject!r})"

    @property
    def done(self) -> bool:
        return self._future.done()

    @property
    def approved(self) -> bool | None:
        if not self._future.done() or self._future.cancelled():
            return None
        return self._future.result()

    def _resolve(self, value: bool) -> bool:
        if self._future.done():
            return False
        self._future.set_result(value)
        return True

    def approve(self) -> bool:
        return self._resolve(True)

    def deny(self) -> bool:
        return self._resolve(False)

    def add_done_callback(self, callback: Callable[[ApprovalRequest], None]) -> None:
        """Call ``callback`` once the request is answered, timed out or cancelled."""
        self._future.add_done_callback(lambda _: callback(self))

    async def wait(self, timeout: float | None = None) -> bool:
        try:
            return await asyncio.wait_for(asyncio.shield(self._future), timeout=timeout)
        except TimeoutError as exc:
            self.timed_out = True
            self._future.cancel()
            raise ApprovalTimeout(
                f"No answer to {self.kind} approval '{self.subject}' within {timeout:g}s"
            ) from exc


class ApprovalQueue:
    """Tracks outstanding approval requests and announces new ones."""

    def __init__(self, event_hook: Callable[[dict[str, Any]], None] | None = None) -> None:
        self.event_hook = event_hook
        self._pending: dict[str, ApprovalRequest] = {}

    def open(
        self,
        kind: ApprovalKind,
        subject: str,
        details: dict[str, Any] | None = None,
    ) -> ApprovalRequest:
        request = ApprovalRequest(kind=kind, subject=subject, details=details)
        self._pending[request.id] = request
        if self.event_hook is not None:
            self.event_hook(
                {
                    "event": "approval_requested",
                    "request_id": request.id,
                    "kind": kind,
                    "subject": subject,
                    "details": request.details,
                    "request": request,
                }
            )
        return request

    async def wait(self, request: ApprovalRequest, timeout: float | None) -> bool:
        try:
            return await request.wait(timeout)
        finally:
            self._pending.pop(request.id, None)

    def respond(self, request_id: str, approved: bool) -> bool:
        request = self._pending.get(request_id)
        if request is None:
            return False
        return request.approve() if approved else request.deny()

    def pending(self) -> list[ApprovalRequest]:
        return [request for request in self._pending.values() if not request.done]

    def deny_all(self) -> int:
        return sum(1 for request in list(self._pending.values()) if request.deny())
