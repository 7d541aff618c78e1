"""
Primitive Adapter.

The single seam between the engine and the outside world. DATABASE, HTTP,
ACTION, NOTIFICATION and TRANSFORM steps are resolved against the execution
context and dispatched to the collaborator passed in at construction.

Whatever goes wrong comes back as a StepFailure(kind, message, retryable);
the adapter never raises for a step failure and never retries. Retry
policy belongs to the engine.
"""

from typing import Any, Awaitable, Callable, Dict, Optional, Union
from dataclasses import dataclass
import asyncio
import logging

from storeflow.adapters.collaborators import (
    CollaboratorError,
    DataAccess,
    HttpClient,
    InMemoryDataAccess,
    InMemoryNotificationDispatcher,
    LoggingMessageSender,
    MessageSender,
    NotificationDispatcher,
)
from storeflow.adapters.transforms import TransformRegistry, transform_registry
from storeflow.engine.context import ExecutionContext
from storeflow.engine.errors import WorkflowError
from storeflow.engine.models import NodeType, StepFailure


logger = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    """Result of one primitive step: an output, or a normalized failure."""
    output: Any = None
    error: Optional[StepFailure] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _require(config: Dict[str, Any], *keys: str) -> None:
    missing = [k for k in keys if config.get(k) in (None, "")]
    if missing:
        raise CollaboratorError(f"Missing required config: {', '.join(missing)}", kind="validation")


class PrimitiveAdapter:
    """
    Dispatches primitive steps to external collaborators.

    Usage:
        adapter = PrimitiveAdapter(data_access=InMemoryDataAccess(...))
        outcome = await adapter.execute("DATABASE", {"operation": "findUnique", ...}, ctx)
        if outcome.error:
            ...
    """

    def __init__(
        self,
        data_access: Optional[DataAccess] = None,
        http_client: Optional[HttpClient] = None,
        message_sender: Optional[MessageSender] = None,
        notifier: Optional[NotificationDispatcher] = None,
        transforms: Optional[TransformRegistry] = None,
        http_timeout: float = 30.0,
    ):
        self.data_access = data_access or InMemoryDataAccess()
        self.http_client = http_client
        self.message_sender = message_sender or LoggingMessageSender()
        self.notifier = notifier or InMemoryNotificationDispatcher()
        self.transforms = transforms if transforms is not None else transform_registry
        self.http_timeout = http_timeout

        self._handlers: Dict[NodeType, Callable[[Dict[str, Any]], Awaitable[Any]]] = {
            NodeType.DATABASE: self._database,
            NodeType.HTTP: self._http,
            NodeType.ACTION: self._action,
            NodeType.NOTIFICATION: self._notification,
            NodeType.TRANSFORM: self._transform,
        }

    async def execute(
        self,
        step_type: Union[NodeType, str],
        config: Dict[str, Any],
        context: ExecutionContext,
    ) -> StepOutcome:
        """
        Resolve ``config`` against ``context`` and run the step.

        Returns:
            StepOutcome with the output, or with a StepFailure
        """
        name = step_type.value if isinstance(step_type, NodeType) else step_type
        try:
            handler = self._handlers[NodeType(step_type)]
        except (KeyError, ValueError):
            return StepOutcome(error=StepFailure(
                kind="validation",
                message=f"Unsupported step type '{name}'",
            ))

        resolved = context.resolve(config or {})
        try:
            return StepOutcome(output=await handler(resolved))
        except CollaboratorError as e:
            return StepOutcome(error=StepFailure(kind=e.kind, message=str(e), retryable=e.retryable))
        except asyncio.TimeoutError:
            return StepOutcome(error=StepFailure(kind="timeout", message=f"{name} step timed out", retryable=True))
        except Exception as e:
            logger.exception(f"Unexpected error in {name} step: {e}")
            return StepOutcome(error=StepFailure(kind="unexpected", message=str(e) or type(e).__name__))

    # ============================================================
    # Step handlers
    # ============================================================

    async def _database(self, config: Dict[str, Any]) -> Any:
        _require(config, "operation", "model")
        args = {
            key: config[key]
            for key in ("where", "data", "include", "select", "orderBy", "take", "skip")
            if config.get(key) is not None
        }
        return await self.data_access.query(config["operation"], config["model"], args)

    async def _http(self, config: Dict[str, Any]) -> Any:
        _require(config, "url")
        return await self._request(
            config.get("method", "GET"),
            config["url"],
            config.get("headers"),
            config.get("body"),
            config.get("timeout"),
        )

    async def _request(self, method: str, url: str, headers: Any, body: Any, timeout: Any) -> Dict[str, Any]:
        if self.http_client is None:
            raise CollaboratorError("No HTTP client configured", kind="validation")
        return await self.http_client.request(
            method,
            url,
            headers=headers,
            body=body,
            timeout=float(timeout) if timeout else self.http_timeout,
        )

    async def _action(self, config: Dict[str, Any]) -> Any:
        _require(config, "action")
        action = config["action"]

        if action == "sendEmail":
            _require(config, "to")
            options = {k: config[k] for k in ("from", "template", "replyTo") if config.get(k)}
            return await self.message_sender.send_email(
                config["to"],
                config.get("subject", ""),
                config.get("body") or config.get("message") or "",
                **options,
            )

        if action == "sendSms":
            _require(config, "to")
            return await self.message_sender.send_sms(config["to"], config.get("message", ""))

        if action == "webhook":
            _require(config, "url")
            return await self._request(
                config.get("method", "POST"),
                config["url"],
                config.get("headers"),
                config.get("body", config.get("payload")),
                config.get("timeout"),
            )

        raise CollaboratorError(f"Unknown action '{action}'", kind="validation")

    async def _notification(self, config: Dict[str, Any]) -> Any:
        return await self.notifier.notify(
            config.get("channel", "admin"),
            config.get("type", "info"),
            config.get("title", ""),
            config.get("message", ""),
            config.get("data"),
        )

    async def _transform(self, config: Dict[str, Any]) -> Any:
        operation = config.get("operation", "set")
        if operation not in self.transforms:
            raise CollaboratorError(f"Unknown transform '{operation}'", kind="validation")
        try:
            return self.transforms.call(operation, config)
        except (KeyError, TypeError, ValueError, WorkflowError) as e:
            raise CollaboratorError(f"Transform '{operation}' failed: {e}", kind="transform") from e
