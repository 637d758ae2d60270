"""Credential pool: balance tracking, per-run quarantine, and selection."""

import logging
import time

from tts_relay.constants import BALANCE_CHECK_DELAY
from tts_relay.errors import ProviderError, ValidationError
from tts_relay.models import Credential, CredentialStatus
from tts_relay.provider import mask_secret

logger = logging.getLogger(__name__)


def is_eligible(credential: Credential) -> bool:
    return (
        credential.balance is not None
        and credential.balance > 0
        and credential.status != CredentialStatus.INACTIVE
        and not credential.session_invalid
    )


class CredentialPool:
    """Ordered set of credentials owned by the orchestrator during a run.

    Balances only go down locally (record_success); refresh_balance is the
    only place they can rise. Quarantine (session_invalid) lasts until the
    next begin_run() and is never persisted.
    """

    def __init__(self, credentials: list[Credential] | None = None, client=None, activity=None):
        self._credentials = list(credentials or [])
        self.client = client
        self.activity = activity

    def _log(self, message: str, level: str = "info") -> None:
        if self.activity is not None:
            self.activity.add(message, level)
        else:
            logger.info(message)

    @property
    def credentials(self) -> list[Credential]:
        return list(self._credentials)

    def __len__(self) -> int:
        return len(self._credentials)

    def __iter__(self):
        return iter(list(self._credentials))

    def find(self, secret_or_prefix: str) -> Credential | None:
        """Exact secret match first, then a unique prefix match."""
        for c in self._credentials:
            if c.secret == secret_or_prefix:
                return c
        matches = [c for c in self._credentials if c.secret.startswith(secret_or_prefix)]
        return matches[0] if len(matches) == 1 else None

    # --- Membership ---

    def add(self, secret: str) -> Credential:
        secret = (secret or "").strip()
        if not secret:
            raise ValidationError("Enter an API key first.")
        if any(c.secret == secret for c in self._credentials):
            raise ValidationError(f"Key {mask_secret(secret)} already exists.")
        credential = Credential(secret=secret)
        self._credentials.append(credential)
        self._log(f"Key {mask_secret(secret)} added.", "success")
        return credential

    def add_many(self, secrets: list[str]) -> list[Credential]:
        """Add every new, non-blank secret; skip ones already present."""
        existing = {c.secret for c in self._credentials}
        added = []
        for secret in secrets:
            secret = secret.strip()
            if secret and secret not in existing:
                credential = Credential(secret=secret)
                self._credentials.append(credential)
                existing.add(secret)
                added.append(credential)
        if added:
            self._log(f"{len(added)} keys uploaded.", "success")
        return added

    def remove(self, secrets: list[str]) -> int:
        doomed = set(secrets)
        before = len(self._credentials)
        self._credentials = [c for c in self._credentials if c.secret not in doomed]
        removed = before - len(self._credentials)
        if removed:
            self._log(f"{removed} keys deleted.", "warning")
        return removed

    def clear(self) -> None:
        self._credentials = []
        self._log("All keys deleted.", "error")

    # --- Run lifecycle ---

    def begin_run(self) -> None:
        """Lift every quarantine; a fresh run judges credentials anew."""
        for c in self._credentials:
            c.session_invalid = False

    def has_eligible(self) -> bool:
        return any(is_eligible(c) for c in self._credentials)

    def total_balance(self) -> int:
        return sum(max(0, c.balance) for c in self._credentials if c.balance is not None)

    def select_next(self, exclude: set[str] | None = None) -> Credential | None:
        """Eligible credential with the highest known balance, or None.

        Ties go to the earliest-added credential. Secrets in exclude are
        skipped (used to try each credential at most once per segment).
        """
        best = None
        for c in self._credentials:
            if exclude and c.secret in exclude:
                continue
            if not is_eligible(c):
                continue
            if best is None or c.balance > best.balance:
                best = c
        return best

    def record_success(self, credential: Credential, chars_sent: int) -> None:
        credential.balance = max(0, (credential.balance or 0) - chars_sent)
        if credential.balance <= 0:
            credential.status = CredentialStatus.INACTIVE
            self._log(f"Key {mask_secret(credential.secret)} is out of characters.", "warning")

    def record_failure(self, credential: Credential, status_code: int | None) -> None:
        """401 quarantines for this run only; anything else leaves the key usable."""
        if status_code == 401:
            credential.session_invalid = True
            self._log(
                f"Key {mask_secret(credential.secret)} marked invalid for this session.", "warning"
            )
        else:
            logger.info("Transient failure on key %s (%s)", mask_secret(credential.secret), status_code)

    # --- Remote balance checks ---

    def refresh_balance(self, credential: Credential, silent: bool = False) -> Credential:
        """Overwrite balance/status from the provider. Never raises."""
        try:
            used, limit = self.client.fetch_subscription(credential.secret)
        except ProviderError as e:
            credential.status = CredentialStatus.ERROR
            if e.status_code == 401:
                credential.balance = 0
                credential.status = CredentialStatus.INACTIVE
            if not silent:
                self._log(f"Balance check failed: {e}", "error")
            return credential

        credential.balance = limit - used
        credential.status = CredentialStatus.ACTIVE if credential.balance > 0 else CredentialStatus.INACTIVE
        if not silent:
            self._log(
                f"Key {mask_secret(credential.secret)} is valid, balance: {credential.balance:,}", "success"
            )
        return credential

    def refresh_all(
        self,
        only_unknown: bool = False,
        silent: bool = False,
        delay: float = BALANCE_CHECK_DELAY,
        sleep=time.sleep,
    ) -> list[Credential]:
        """Check balances one at a time with a pause between calls (provider rate limit)."""
        targets = [c for c in self._credentials if not only_unknown or c.balance is None]
        if not targets:
            return []
        if not silent:
            self._log("Checking balances...")
        for i, credential in enumerate(targets):
            self.refresh_balance(credential, silent=silent)
            if i < len(targets) - 1:
                sleep(delay)
        return targets

