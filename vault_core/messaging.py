"""
Outbound Email and OTP Module

The core only decides *what* to send: secret keys at signup, one-time codes
for sensitive actions and application decisions. Delivery is delegated to an
EmailDispatcher; every dispatcher reports success as a bool and never raises.
"""

import secrets
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone, timedelta
from typing import Dict, Optional, Any

import requests

from .storage import StorageInterface
from .logging_config import get_logger, log_action


OTP_SUBJECTS = {
    "login": "VaultBank Login Verification Code",
    "transfer": "VaultBank Transfer Verification Code",
    "withdrawal": "VaultBank Withdrawal Verification",
    "joint_account": "VaultBank Joint Account Verification",
    "link_account": "VaultBank Account Link Verification",
}


class EmailDispatcher(ABC):
    """Outbound email boundary"""

    def __init__(self):
        self.logger = get_logger("vault.messaging")

    @abstractmethod
    def deliver(self, to: str, subject: str, body: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Send one message. Raise on failure."""
        pass

    def _send(self, to: str, subject: str, body: str, kind: str, metadata: Optional[Dict[str, Any]] = None) -> bool:
        try:
            self.deliver(to, subject, body, metadata)
            return True
        except Exception as e:
            log_action(
                self.logger, "error", f"Email dispatch failed: {e}",
                action=f"send_{kind}", resource=f"email:{to}"
            )
            return False

    def send_secret_key(self, email: str, secret: str) -> bool:
        body = (
            "Thank you for applying for a VaultBank account.\n\n"
            f"Your secret verification key is: {secret}\n\n"
            "Enter this key on the verification page to confirm your identity."
        )
        return self._send(email, "VaultBank Account Application Received", body, "secret_key")

    def send_otp(self, email: str, code: str, action: str = "link_account", ttl_minutes: int = 10) -> bool:
        subject = OTP_SUBJECTS.get(action, "VaultBank Verification Code")
        body = f"Your verification code is {code}. It expires in {ttl_minutes} minutes. Never share this code."
        return self._send(email, subject, body, "otp", {"action": action})

    def send_application_decision(self, email: str, full_name: str, approved: bool,
                                  account_number: Optional[str] = None, reason: Optional[str] = None) -> bool:
        if approved:
            subject = "Your VaultBank Account Application Has Been Approved"
            body = f"Dear {full_name},\n\nYour account application has been approved."
            if account_number:
                body += f" Your new account number is {account_number}."
        else:
            subject = "Update on Your VaultBank Application"
            body = f"Dear {full_name},\n\nUnfortunately your account application was not approved at this time."
            if reason:
                body += f"\n\nReason: {reason}"
        return self._send(email, subject, body, "application_decision")


class LogEmailDispatcher(EmailDispatcher):
    """Development dispatcher that only logs"""

    def deliver(self, to: str, subject: str, body: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        log_action(self.logger, "info", f"Email to {to}: {subject}", action="send_email",
                   resource=f"email:{to}", extra=metadata)


class HttpEmailDispatcher(EmailDispatcher):
    """Posts messages to a SendGrid-compatible mail API"""

    def __init__(self, api_url: str, api_key: str, sender: str, timeout: float = 10.0):
        super().__init__()
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout

    def deliver(self, to: str, subject: str, body: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        response = requests.post(
            self.api_url,
            json={
                "personalizations": [{"to": [{"email": to}]}],
                "from": {"email": self.sender},
                "subject": subject,
                "content": [{"type": "text/plain", "value": body}],
            },
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout
        )
        response.raise_for_status()


class OtpManager:
    """
    Six-digit single-use codes with a short expiry.

    Codes live in the ``otp_codes`` table and are deleted once used or found
    expired.
    """

    def __init__(self, storage: StorageInterface, dispatcher: EmailDispatcher, ttl_minutes: int = 10):
        self.storage = storage
        self.dispatcher = dispatcher
        self.ttl = timedelta(minutes=ttl_minutes)
        self.table_name = "otp_codes"
        self.logger = get_logger("vault.otp")

    @staticmethod
    def generate_code() -> str:
        return f"{secrets.randbelow(1_000_000):06d}"

    def issue(self, subject_id: str, email: str, action: str) -> str:
        """Create, store and send a code. Earlier codes for the same action are revoked."""
        for stale in self.storage.find(self.table_name, {"subject_id": subject_id, "action": action}):
            self.storage.delete(self.table_name, stale['id'])

        now = datetime.now(timezone.utc)
        code = self.generate_code()
        record_id = str(uuid.uuid4())
        self.storage.insert(self.table_name, record_id, {
            "id": record_id,
            "created_at": now.isoformat(),
            "updated_at": now.isoformat(),
            "subject_id": subject_id,
            "email": email,
            "action": action,
            "code": code,
            "expires_at": (now + self.ttl).isoformat(),
        })
        self.dispatcher.send_otp(email, code, action, int(self.ttl.total_seconds() // 60))
        log_action(self.logger, "info", "OTP issued", action="issue_otp",
                   resource=f"{action}:{subject_id}")
        return code

    def verify(self, subject_id: str, code: str, action: str, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        for record in self.storage.find(self.table_name, {"subject_id": subject_id, "action": action}):
            if datetime.fromisoformat(record['expires_at']) < now:
                self.storage.delete(self.table_name, record['id'])
                continue
            if secrets.compare_digest(record['code'], code.strip()):
                self.storage.delete(self.table_name, record['id'])
                return True
        return False
