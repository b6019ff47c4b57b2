"""Notification dispatch.

Maps a channel name to an injected handler and renders ``{{key}}`` templates.
Delivery is best-effort: a missing channel or a failing handler is logged and
never fails the transition that requested it.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, Field

from .context import ExecutionContext

if TYPE_CHECKING:
    from .engine import WorkflowEngine

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


class NotificationConfig(BaseModel):
    channel: str
    recipients: list[str] = Field(default_factory=list)
    subject: str | None = None
    message: str | None = None
    template: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class NotificationHandler(Protocol):
    """Transport for one or more channels (SMTP, Slack, webhook...)."""

    def supports(self, channel: str) -> bool: ...

    def send(self, config: NotificationConfig, context: ExecutionContext) -> None: ...


def render_template(template: str, values: dict[str, Any]) -> str:
    """Substitute ``{{key}}`` placeholders; unknown keys are left verbatim."""

    def _sub(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in values or values[key] is None:
            return match.group(0)
        return str(values[key])

    return _PLACEHOLDER.sub(_sub, template)


class NotificationService:
    def __init__(self) -> None:
        self._handlers: dict[str, NotificationHandler] = {}

    def register_handler(self, channel: str, handler: NotificationHandler) -> None:
        self._handlers[channel] = handler

    def is_supported(self, channel: str) -> bool:
        return channel in self._handlers

    def render(self, config: NotificationConfig, context: ExecutionContext) -> NotificationConfig:
        """Return a copy of ``config`` with subject and message rendered."""

        values = {**context.data, **config.data}
        body = config.message or ""
        if config.template:
            body = render_template(config.template, values)
        elif body:
            body = render_template(body, values)
        subject = render_template(config.subject, values) if config.subject else None
        return config.model_copy(update={"message": body or "Workflow notification", "subject": subject})

    def send(
        self,
        config: NotificationConfig,
        context: ExecutionContext,
        *,
        raise_errors: bool = False,
    ) -> bool:
        """Deliver ``config`` through its channel's handler.

        Returns:
            True if a handler accepted the notification.
        """

        handler = self._handlers.get(config.channel)
        extra = {"channel": config.channel, "instance_id": context.instance_id}
        if handler is None or not handler.supports(config.channel):
            logger.warning("No handler registered for notification channel", extra=extra)
            return False

        rendered = self.render(config, context)
        try:
            handler.send(rendered, context)
        except Exception:
            logger.exception("Notification delivery failed", extra=extra)
            if raise_errors:
                raise
            return False

        logger.info(
            "Notification sent", extra={**extra, "recipients": list(config.recipients)}
        )
        return True

    def register_actions(self, engine: WorkflowEngine, name: str = "notify") -> None:
        """Install an action that sends its params as a :class:`NotificationConfig`."""

        def _notify(context: ExecutionContext, params: dict[str, Any]) -> None:
            params = dict(params)
            raise_errors = bool(params.pop("raise_errors", False))
            self.send(NotificationConfig.model_validate(params), context, raise_errors=raise_errors)

        engine.register_action(name, _notify)


class LoggingNotificationHandler:
    """Development handler that records deliveries through logging only."""

    def __init__(self, *channels: str) -> None:
        self._channels = set(channels)
        self.sent: list[NotificationConfig] = []

    def supports(self, channel: str) -> bool:
        return not self._channels or channel in self._channels

    def send(self, config: NotificationConfig, context: ExecutionContext) -> None:
        self.sent.append(config)
        logger.info(
            "Notification delivered",
            extra={
                "channel": config.channel,
                "recipients": list(config.recipients),
                "subject": config.subject,
                "instance_id": context.instance_id,
            },
        )
