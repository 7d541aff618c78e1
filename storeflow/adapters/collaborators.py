"""
External Collaborators.

Interfaces for every side-effecting dependency of the primitive adapter,
plus the default implementations wired by the runtime. Collaborators
signal failure by raising CollaboratorError with a failure kind and a
retryable flag; the adapter normalizes anything else.
"""

from typing import Any, Dict, List, Optional, Protocol
import itertools
import logging
import uuid

import httpx

from storeflow.engine.models import utcnow


logger = logging.getLogger(__name__)


class CollaboratorError(Exception):
    """
    A collaborator failed.

    Attributes:
        kind: Failure category (data, http, timeout, network, delivery, ...)
        retryable: Whether repeating the call may succeed
    """

    def __init__(self, message: str, kind: str = "unexpected", retryable: bool = False):
        self.kind = kind
        self.retryable = retryable
        super().__init__(message)


# ============================================================
# Interfaces
# ============================================================

class DataAccess(Protocol):
    async def query(self, operation: str, model: str, args: Dict[str, Any]) -> Any:
        ...


class HttpClient(Protocol):
    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        ...


class MessageSender(Protocol):
    async def send_email(self, to: str, subject: str, body: str, **options: Any) -> Dict[str, Any]:
        ...

    async def send_sms(self, to: str, message: str, **options: Any) -> Dict[str, Any]:
        ...


class NotificationDispatcher(Protocol):
    async def notify(
        self,
        channel: str,
        type: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        ...


# ============================================================
# In-memory data access
# ============================================================

def _matches(record: Dict[str, Any], where: Optional[Dict[str, Any]]) -> bool:
    if not where:
        return True
    return all(record.get(key) == value for key, value in where.items())


class InMemoryDataAccess:
    """
    Dict-of-lists data facade with Prisma-style operations.

    Supports findUnique, findFirst, findMany, create, update, delete and
    count. Records are plain dicts; ``where`` matches by equality on
    every given field.

    Usage:
        data = InMemoryDataAccess({"cart": [{"id": "c1", "items": []}]})
        cart = await data.query("findUnique", "cart", {"where": {"id": "c1"}})
    """

    OPERATIONS = ("findUnique", "findFirst", "findMany", "create", "update", "delete", "count")

    def __init__(self, records: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.records: Dict[str, List[Dict[str, Any]]] = {
            model: [dict(r) for r in rows] for model, rows in (records or {}).items()
        }
        self.calls: List[Dict[str, Any]] = []

    async def query(self, operation: str, model: str, args: Dict[str, Any]) -> Any:
        if operation not in self.OPERATIONS:
            raise CollaboratorError(f"Unsupported operation '{operation}'", kind="validation")
        self.calls.append({"operation": operation, "model": model, "args": args})

        rows = self.records.setdefault(model, [])
        where = args.get("where")

        if operation in ("findUnique", "findFirst"):
            return next((dict(r) for r in rows if _matches(r, where)), None)

        if operation == "findMany":
            found = [dict(r) for r in rows if _matches(r, where)]
            take = args.get("take")
            return found[:int(take)] if take is not None else found

        if operation == "count":
            return sum(1 for r in rows if _matches(r, where))

        if operation == "create":
            record = dict(args.get("data") or {})
            record.setdefault("id", str(uuid.uuid4()))
            record.setdefault("createdAt", utcnow().isoformat())
            rows.append(record)
            return dict(record)

        target = next((r for r in rows if _matches(r, where)), None) if where else None
        if target is None:
            raise CollaboratorError(f"No {model} record matches {where}", kind="data")

        if operation == "update":
            target.update(args.get("data") or {})
            target["updatedAt"] = utcnow().isoformat()
            return dict(target)

        rows.remove(target)
        return dict(target)


# ============================================================
# HTTP
# ============================================================

class HttpxClient:
    """
    HTTP client built on httpx.

    Timeouts, transport errors, 429 and 5xx responses raise retryable
    failures; other 4xx responses are terminal.
    """

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.transport = transport

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"headers": headers or {}}
        if isinstance(body, (dict, list)):
            kwargs["json"] = body
        elif body is not None:
            kwargs["content"] = str(body)

        try:
            async with httpx.AsyncClient(timeout=timeout or self.timeout, transport=self.transport) as client:
                response = await client.request(method.upper(), url, **kwargs)
        except httpx.TimeoutException as e:
            raise CollaboratorError(f"{method.upper()} {url} timed out", kind="timeout", retryable=True) from e
        except httpx.TransportError as e:
            raise CollaboratorError(f"{method.upper()} {url} failed: {e}", kind="network", retryable=True) from e
        except httpx.InvalidURL as e:
            raise CollaboratorError(f"Invalid URL '{url}': {e}", kind="validation") from e

        if response.status_code >= 400:
            retryable = response.status_code == 429 or response.status_code >= 500
            raise CollaboratorError(
                f"{method.upper()} {url} returned {response.status_code}",
                kind="http",
                retryable=retryable,
            )

        try:
            data = response.json()
        except ValueError:
            data = response.text
        return {"status": response.status_code, "headers": dict(response.headers), "body": data}


# ============================================================
# Messaging
# ============================================================

class LoggingMessageSender:
    """Message sender that logs and records every send instead of delivering it."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self._ids = itertools.count(1)

    def _record(self, channel: str, **fields: Any) -> Dict[str, Any]:
        message = {"id": f"msg_{next(self._ids)}", "channel": channel, "sentAt": utcnow().isoformat(), **fields}
        self.sent.append(message)
        return {"messageId": message["id"], "status": "sent"}

    async def send_email(self, to: str, subject: str, body: str, **options: Any) -> Dict[str, Any]:
        logger.info(f"Email to {to}: {subject}")
        return self._record("email", to=to, subject=subject, body=body, **options)

    async def send_sms(self, to: str, message: str, **options: Any) -> Dict[str, Any]:
        logger.info(f"SMS to {to}")
        return self._record("sms", to=to, message=message, **options)


class InMemoryNotificationDispatcher:
    """Keeps admin notifications in a list, newest last."""

    def __init__(self):
        self.notifications: List[Dict[str, Any]] = []

    async def notify(
        self,
        channel: str,
        type: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        notification = {
            "id": str(uuid.uuid4()),
            "channel": channel,
            "type": type,
            "title": title,
            "message": message,
            "data": data or {},
            "createdAt": utcnow().isoformat(),
        }
        self.notifications.append(notification)
        logger.info(f"Notification [{channel}/{type}] {title}")
        return {"notificationId": notification["id"], "delivered": True}
