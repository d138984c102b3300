"""Per-account persistence of Gmail OAuth credentials."""

import logging
from datetime import datetime
from typing import Callable, Optional

from .document_store import DocumentStore
from .models import Credential, _format_instant, utcnow

logger = logging.getLogger(__name__)


class CredentialStore:
    """Reads and writes one Credential document per account.

    Write ownership: consent grants and disconnects come from the service
    facade; token rotation comes only from TokenRefresher through
    update_tokens(), which touches token fields in a single merge write.
    """

    COLLECTION = "gmail_credentials"

    def __init__(
        self,
        store: DocumentStore,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._clock = clock

    def get(self, account_id: str) -> Optional[Credential]:
        """Get the stored credential, or None if the account never connected."""
        data = self._store.get(self.COLLECTION, account_id)
        if data is None:
            return None
        return Credential.from_dict(data)

    def put(self, account_id: str, credential: Credential, merge: bool = True) -> None:
        """Persist a full credential record."""
        credential.updated_at = self._clock()
        self._store.set(self.COLLECTION, account_id, credential.to_dict(), merge=merge)

    def grant(self, account_id: str, credential: Credential) -> Credential:
        """Record a fresh consent grant, clearing any re-auth flag.

        A grant that arrives without a refresh token keeps the previously
        stored one, since Google only issues it on the first consent.
        """
        existing = self.get(account_id)
        if credential.refresh_token is None and existing is not None:
            credential.refresh_token = existing.refresh_token
        now = self._clock()
        credential.email_address = credential.email_address.lower()
        credential.needs_reauth = False
        credential.reauth_reason = None
        credential.granted_at = now
        self.put(account_id, credential, merge=False)
        logger.info("Stored consent grant for account %s", account_id)
        return credential

    def update_tokens(
        self,
        account_id: str,
        access_token: str,
        expires_at: datetime,
        refresh_token: Optional[str] = None,
        scopes: Optional[frozenset[str]] = None,
    ) -> None:
        """Persist the result of a refresh exchange atomically.

        Args:
            account_id: Account whose tokens were rotated.
            access_token: Newly issued access token.
            expires_at: Expiry of the new access token.
            refresh_token: Only passed when the provider reissued one.
            scopes: Only passed when the provider reported granted scopes.
        """
        update = {
            "access_token": access_token,
            "expires_at": _format_instant(expires_at),
            "needs_reauth": False,
            "reauth_reason": None,
            "updated_at": _format_instant(self._clock()),
        }
        if refresh_token:
            update["refresh_token"] = refresh_token
        if scopes:
            update["scopes"] = sorted(scopes)
        self._store.set(self.COLLECTION, account_id, update, merge=True)

    def mark_needs_reauth(self, account_id: str, reason: str) -> None:
        """Flag the credential as unusable until the owner consents again."""
        self._store.set(
            self.COLLECTION,
            account_id,
            {
                "needs_reauth": True,
                "reauth_reason": reason,
                "updated_at": _format_instant(self._clock()),
            },
            merge=True,
        )

    def delete(self, account_id: str) -> None:
        """Remove the credential (explicit disconnect only)."""
        self._store.delete(self.COLLECTION, account_id)

    def list_account_ids(self) -> list[str]:
        """All accounts with a stored credential."""
        return self._store.list_ids(self.COLLECTION)

    def find_account_by_email(self, email_address: str) -> Optional[str]:
        """Resolve a mailbox address to its account ID.

        Gmail push notifications identify the mailbox, not our account.
        """
        matches = self._store.where(self.COLLECTION, email_address=email_address.lower())
        if not matches:
            return None
        if len(matches) > 1:
            logger.warning(
                "Mailbox %s is connected to %d accounts; routing to %s",
                email_address,
                len(matches),
                matches[0][0],
            )
        return matches[0][0]

    def set_email_address(self, account_id: str, email_address: str) -> None:
        """Record the mailbox address reported by Gmail for the account."""
        self._store.set(
            self.COLLECTION,
            account_id,
            {"email_address": email_address.lower()},
            merge=True,
        )
