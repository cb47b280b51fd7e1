"""Run status notifications sent after a sync run finishes."""

import json
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import aiohttp

from ..config.settings import NotificationSettings, get_settings
from ..database.models import SyncRunStatus
from ..utils.logging import get_logger


logger = get_logger("core.notifications")


class NotificationVariant(str, Enum):
    """Which message a finished run produces."""
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL_FAILURE = "partial_failure"


SUBJECTS: Dict[NotificationVariant, str] = {
    NotificationVariant.SUCCESS: "Sync run success",
    NotificationVariant.FAILURE: "Sync run failed",
    NotificationVariant.PARTIAL_FAILURE: "Sync completed with failed rows",
}


def select_variant(status: SyncRunStatus, failed_rows: int) -> Optional[NotificationVariant]:
    """Pick the variant for a finished run; None for statuses that do not notify."""
    status = SyncRunStatus(status)
    if status == SyncRunStatus.FAILED:
        return NotificationVariant.FAILURE
    if status == SyncRunStatus.SUCCESS:
        if failed_rows > 0:
            return NotificationVariant.PARTIAL_FAILURE
        return NotificationVariant.SUCCESS
    return None


def sync_run_url(host: str, sync_id: int, sync_run_id: int) -> str:
    return f"{host.rstrip('/')}/activate/syncs/{sync_id}/run/{sync_run_id}"


@dataclass
class NotificationPayload:
    """Everything a notifier needs to describe one finished run."""

    sync_id: int
    sync_run_id: int
    status: SyncRunStatus
    variant: NotificationVariant
    subject: str
    successful_rows: int
    failed_rows: int
    sync_run_url: str
    recipients: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["variant"] = self.variant.value
        return data


class Notifier(ABC):
    """Delivery channel for notification payloads."""

    # Notifiers that address people directly set this so empty recipient
    # lists are skipped instead of delivered
    requires_recipients = False

    @abstractmethod
    async def send(self, payload: NotificationPayload) -> None:
        pass

    async def close(self):
        pass


class LogNotifier(Notifier):
    """Writes notifications to the application log."""

    async def send(self, payload: NotificationPayload) -> None:
        log = logger.error if payload.variant == NotificationVariant.FAILURE else logger.info
        log(
            payload.subject,
            sync_id=payload.sync_id,
            sync_run_id=payload.sync_run_id,
            variant=payload.variant.value,
            successful_rows=payload.successful_rows,
            failed_rows=payload.failed_rows,
            sync_run_url=payload.sync_run_url,
            recipients=payload.recipients
        )


class WebhookNotifier(Notifier):
    """POSTs the payload as JSON to a webhook URL."""

    def __init__(self, webhook_url: str, timeout_seconds: int = 10):
        self.webhook_url = webhook_url
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.session: Optional[aiohttp.ClientSession] = None

    async def send(self, payload: NotificationPayload) -> None:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)

        async with self.session.post(
            self.webhook_url,
            data=json.dumps(payload.to_dict()),
            headers={"Content-Type": "application/json"}
        ) as response:
            if response.status >= 300:
                text = await response.text()
                raise RuntimeError(f"Webhook returned {response.status}: {text[:200]}")

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None


class NotificationDispatcher:
    """Builds the payload for a finished run and hands it to the notifier.

    Delivery failures are logged and swallowed; by the time the dispatcher
    runs, the run's final state is already committed.
    """

    def __init__(
        self,
        notifier: Optional[Notifier] = None,
        settings: Optional[NotificationSettings] = None
    ):
        self.settings = settings or get_settings().notifications
        if notifier is None:
            if self.settings.webhook_url:
                notifier = WebhookNotifier(self.settings.webhook_url)
            else:
                notifier = LogNotifier()
        self.notifier = notifier

    def build_payload(
        self,
        sync_id: int,
        sync_run_id: int,
        status: SyncRunStatus,
        successful_rows: int,
        failed_rows: int,
        recipients: Optional[List[str]] = None,
        error: Optional[str] = None
    ) -> Optional[NotificationPayload]:
        variant = select_variant(status, failed_rows)
        if variant is None:
            return None

        return NotificationPayload(
            sync_id=sync_id,
            sync_run_id=sync_run_id,
            status=SyncRunStatus(status),
            variant=variant,
            subject=SUBJECTS[variant],
            successful_rows=successful_rows,
            failed_rows=failed_rows,
            sync_run_url=sync_run_url(self.settings.host, sync_id, sync_run_id),
            recipients=list(self.settings.recipients if recipients is None else recipients),
            error=error
        )

    async def dispatch(
        self,
        sync_id: int,
        sync_run_id: int,
        status: SyncRunStatus,
        successful_rows: int,
        failed_rows: int,
        recipients: Optional[List[str]] = None,
        error: Optional[str] = None
    ) -> Optional[NotificationPayload]:
        """Send the notification for a finished run.

        Returns:
            The payload that was handed to the notifier, or None when the
            dispatch was skipped or delivery failed
        """
        if not self.settings.enabled:
            logger.debug("Notifications disabled", sync_run_id=sync_run_id)
            return None

        payload = self.build_payload(
            sync_id, sync_run_id, status, successful_rows, failed_rows, recipients, error
        )
        if payload is None:
            return None

        if self.notifier.requires_recipients and not payload.recipients:
            logger.info("Notification skipped, no recipients", sync_run_id=sync_run_id)
            return None

        try:
            await self.notifier.send(payload)
        except Exception as e:
            logger.error(
                "Notification delivery failed",
                sync_id=sync_id,
                sync_run_id=sync_run_id,
                variant=payload.variant.value,
                error=str(e)
            )
            return None

        logger.info(
            "Notification dispatched",
            sync_id=sync_id,
            sync_run_id=sync_run_id,
            variant=payload.variant.value
        )
        return payload

    async def close(self):
        await self.notifier.close()
