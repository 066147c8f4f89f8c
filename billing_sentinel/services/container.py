"""
Service wiring - builds every collaborator once at startup.

No module-level singletons: the app lifespan calls build_services() and keeps
the result on app.state; scripts and tests build their own.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from cryptography.fernet import Fernet

from billing_sentinel.exceptions import KeyManagementError
from billing_sentinel.services.audit import AuditLogger
from billing_sentinel.services.connected_accounts import ConnectedAccountService
from billing_sentinel.services.dispatcher import EventDispatcher
from billing_sentinel.services.incidents import IncidentManager
from billing_sentinel.services.ingestion import WebhookPipeline
from billing_sentinel.services.key_store import (
    EncryptedFileSecretStore,
    InMemorySecretStore,
    KeyPurpose,
    StripeKeyManager,
)
from billing_sentinel.services.notification_channels import (
    build_authority_channel,
    build_channels,
)
from billing_sentinel.services.payments import PaymentService
from billing_sentinel.services.retry_coordinator import RetryCoordinator
from billing_sentinel.services.webhook_handlers import HandlerDeps
from billing_sentinel.utils.alerting import RealtimeAlerter
from billing_sentinel.utils.dedup import build_ledger
from billing_sentinel.workers.dispatch_worker import DispatchWorker

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: object
    audit: AuditLogger
    incidents: IncidentManager
    keys: StripeKeyManager
    ledger: object
    dispatcher: EventDispatcher
    retry: RetryCoordinator
    worker: DispatchWorker
    pipeline: WebhookPipeline

    async def shutdown(self) -> None:
        await self.worker.stop()
        await self.incidents.drain(timeout=10.0)
        await self.audit.drain(timeout=10.0)


def _build_fernet(settings) -> Optional[Fernet]:
    from billing_sentinel.utils.encryption import get_fernet
    try:
        return get_fernet(settings.encryption_key)
    except KeyManagementError as e:
        logger.warning(
            "%s - high-assurance audit entries and stored keys are unavailable", str(e),
        )
        return None


def build_services(settings, session_factory, ledger=None, fernet: Optional[Fernet] = None) -> Services:
    fernet = fernet or _build_fernet(settings)

    audit = AuditLogger(
        settings,
        session_factory=session_factory if fernet else None,
        alerter=RealtimeAlerter(),
        fernet=fernet,
    )

    incidents = IncidentManager(
        audit,
        session_factory,
        channels=build_channels(settings),
        authority_channel=build_authority_channel(settings),
        channel_timeout=settings.notification_timeout_seconds,
        host=settings.app_name,
    )
    audit.set_escalation_hook(incidents.escalate_audit_entry)

    if fernet is not None:
        store = EncryptedFileSecretStore(settings.key_store_path, fernet)
    else:
        # Keys can still come from explicit settings; nothing is persisted
        store = InMemorySecretStore(Fernet(Fernet.generate_key()))
    keys = StripeKeyManager(store, audit, settings)

    deps = HandlerDeps(
        payments=PaymentService(
            settings.payments_api_base_url,
            token=settings.payments_api_token,
            timeout=settings.payments_api_timeout_seconds,
        ),
        accounts=ConnectedAccountService(
            session_factory, lambda: keys.resolve(KeyPurpose.SECRET),
        ),
    )
    dispatcher = EventDispatcher(audit, deps)
    retry = RetryCoordinator.from_settings(dispatcher, audit, settings)

    if ledger is None:
        ledger = build_ledger(settings.dedup_backend, settings.dedup_capacity)
    worker = DispatchWorker(
        retry, ledger,
        queue_size=settings.webhook_queue_size,
        worker_count=settings.webhook_worker_count,
    )
    pipeline = WebhookPipeline(
        secret_provider=lambda: keys.resolve(KeyPurpose.WEBHOOK),
        ledger=ledger,
        audit=audit,
        retry=retry,
        queue=worker,
        tolerance_seconds=settings.webhook_tolerance_seconds,
    )

    return Services(
        settings=settings,
        audit=audit,
        incidents=incidents,
        keys=keys,
        ledger=ledger,
        dispatcher=dispatcher,
        retry=retry,
        worker=worker,
        pipeline=pipeline,
    )
