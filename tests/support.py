"""
Shared builders for the test suite
"""

from typing import Any, Dict, List, Optional

from vault_core.config import VaultConfig
from vault_core.documents import InMemoryDocumentStore
from vault_core.messaging import EmailDispatcher
from vault_core.storage import InMemoryStorage
from vault_core.system import VaultSystem


class RecordingEmailDispatcher(EmailDispatcher):
    """Keeps every message instead of sending it"""

    def __init__(self, fail: bool = False):
        super().__init__()
        self.fail = fail
        self.sent: List[Dict[str, Any]] = []

    def deliver(self, to: str, subject: str, body: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        if self.fail:
            raise ConnectionError("mail API unavailable")
        self.sent.append({"to": to, "subject": subject, "body": body, "metadata": metadata or {}})

    def messages_to(self, email: str) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m["to"] == email]


def build_system(storage=None, **settings) -> VaultSystem:
    """In-memory system with recording mail and no outbound webhooks"""
    settings.setdefault("database_url", "memory://")
    settings.setdefault("notification_webhook_url", "")
    settings.setdefault("email_api_url", "")
    return VaultSystem(
        settings=VaultConfig(**settings),
        storage=storage or InMemoryStorage(),
        email_dispatcher=RecordingEmailDispatcher(),
        documents=InMemoryDocumentStore()
    )


def onboard_customer(system: VaultSystem, email: str, full_name: str = "Test Customer",
                     admin_id: str = "admin-1"):
    """Sign up, verify the secret key and approve; returns (profile, account)"""
    signup = system.onboarding.sign_up(email, full_name)
    system.onboarding.verify_secret_key(signup.profile.id, signup.application.qr_code_secret)
    decision = system.onboarding.approve_application(signup.application.id, admin_id)
    return system.profiles.require_profile(signup.profile.id), decision.account
