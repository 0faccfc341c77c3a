"""
Vault system wiring

Builds every component from configuration and holds them together.
"""

from decimal import Decimal
from typing import Optional

from .accounts import AccountManager
from .approvals import AdminApprovalService
from .audit import AuditTrail
from .auditor import ConsistencyAuditor
from .config import VaultConfig, get_config
from .documents import DocumentStore, InMemoryDocumentStore, LocalDocumentStore
from .joint_accounts import JointAccountActivator
from .lifecycle import BypassPolicy, OnboardingService, VerificationPolicy
from .logging_config import get_logger
from .messaging import EmailDispatcher, HttpEmailDispatcher, LogEmailDispatcher, OtpManager
from .notifications import (
    InAppNotificationSink, NotificationService, WebhookNotificationSink
)
from .profiles import ProfileManager
from .storage import StorageInterface, create_storage
from .transactions import TransactionPoster


class VaultSystem:
    """Vault core with all components initialized"""

    def __init__(
        self,
        settings: Optional[VaultConfig] = None,
        storage: Optional[StorageInterface] = None,
        email_dispatcher: Optional[EmailDispatcher] = None,
        documents: Optional[DocumentStore] = None
    ):
        self.settings = settings or get_config()
        self.logger = get_logger("vault.system")
        retries = self.settings.max_write_retries

        # Storage and the admin action log
        self.storage = storage or create_storage(self.settings.database_url)
        self.audit_trail = AuditTrail(self.storage)

        # Outbound channels
        self.notifications = NotificationService(self.storage, self._create_sinks())
        self.email_dispatcher = email_dispatcher or self._create_email_dispatcher()
        self.otp = OtpManager(self.storage, self.email_dispatcher, self.settings.otp_ttl_minutes)
        self.documents = documents or self._create_document_store()

        # Records
        self.profiles = ProfileManager(self.storage, self.audit_trail, max_retries=retries)
        self.accounts = AccountManager(self.storage, self.audit_trail, max_retries=retries)

        # Workflows
        self.onboarding = OnboardingService(
            self.profiles, self.accounts, self.audit_trail,
            self.notifications, self.email_dispatcher,
            policy=VerificationPolicy(self.settings.require_email_verification),
            bypass=BypassPolicy.from_settings(
                self.settings.verification_bypass_emails, self.settings.is_production
            )
        )
        self.poster = TransactionPoster(
            self.storage, self.accounts, self.profiles, self.audit_trail, self.notifications,
            policy=self.onboarding.policy,
            auto_complete_delay_minutes=self.settings.auto_complete_delay_minutes
        )
        self.approvals = AdminApprovalService(
            self.poster, self.onboarding, self.profiles, self.audit_trail, self.notifications
        )
        self.joint_accounts = JointAccountActivator(
            self.storage, self.accounts, self.poster, self.profiles, self.audit_trail,
            self.notifications, self.otp, self.documents,
            deposit_percentage=Decimal(self.settings.joint_deposit_percentage),
            max_retries=retries
        )
        self.auditor = ConsistencyAuditor(self.profiles, self.accounts, self.onboarding, self.audit_trail)

    def _create_sinks(self):
        sinks = [InAppNotificationSink(self.storage)]
        if self.settings.notification_webhook_url:
            sinks.append(WebhookNotificationSink(
                self.settings.notification_webhook_url, timeout=self.settings.notification_timeout
            ))
        return sinks

    def _create_email_dispatcher(self) -> EmailDispatcher:
        # Only send real mail when an API is configured
        if not self.settings.email_api_url:
            return LogEmailDispatcher()
        return HttpEmailDispatcher(
            api_url=self.settings.email_api_url,
            api_key=self.settings.email_api_key,
            sender=self.settings.email_sender
        )

    def _create_document_store(self) -> DocumentStore:
        if self.settings.document_root:
            return LocalDocumentStore(self.settings.document_root)
        return InMemoryDocumentStore()

    def close(self) -> None:
        self.storage.close()
