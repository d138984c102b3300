"""Interactive OAuth consent for connecting a Gmail account from the CLI."""

import logging
from datetime import timedelta, timezone
from pathlib import Path
from typing import Optional, Sequence

from google_auth_oauthlib.flow import InstalledAppFlow

from mailwatch.config import DEFAULT_SCOPES
from mailwatch.store import Credential, utcnow

logger = logging.getLogger(__name__)


def credential_from_google(google_creds, email_address: str = "") -> Credential:
    """Convert google-auth Credentials into a stored Credential record."""
    expires_at = google_creds.expiry
    if expires_at is None:
        expires_at = utcnow() + timedelta(hours=1)
    elif expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    granted = getattr(google_creds, "granted_scopes", None) or google_creds.scopes or []
    return Credential(
        access_token=google_creds.token,
        expires_at=expires_at,
        refresh_token=google_creds.refresh_token,
        scopes=frozenset(granted),
        email_address=email_address,
    )


def run_consent_flow(
    client_secrets_path: Path,
    scopes: Optional[Sequence[str]] = None,
    port: int = 0,
    open_browser: bool = True,
) -> Credential:
    """Run the installed-app consent flow in a local browser.

    Offline access with a forced consent prompt is requested so Google issues
    a refresh token even for a mailbox that was connected before.

    Args:
        client_secrets_path: OAuth client JSON downloaded from Google Cloud Console.
        scopes: Scopes to request. Defaults to the watch manager's scopes.
        port: Local redirect port; 0 picks a free one.
        open_browser: Open the consent page automatically.

    Returns:
        Credential ready for MailWatchService.connect_account().

    Raises:
        FileNotFoundError: If the client secrets file doesn't exist.
    """
    if not Path(client_secrets_path).exists():
        raise FileNotFoundError(
            f"Client secrets file not found at {client_secrets_path}. "
            "Please download OAuth credentials from Google Cloud Console."
        )
    flow = InstalledAppFlow.from_client_secrets_file(
        str(client_secrets_path), list(scopes or DEFAULT_SCOPES)
    )
    google_creds = flow.run_local_server(
        port=port,
        open_browser=open_browser,
        access_type="offline",
        prompt="consent",
    )
    if not google_creds.refresh_token:
        logger.warning("Consent completed without a refresh token; the grant will not outlive the access token")
    return credential_from_google(google_creds)
