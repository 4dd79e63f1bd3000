"""OAuth for the Gmail API (read messages, send verification mail)."""

from __future__ import annotations

from pathlib import Path

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import Resource, build

from .constants import CREDENTIALS_PATH, SCOPES, TOKEN_PATH


def load_credentials(
    token_path: Path = TOKEN_PATH, credentials_path: Path = CREDENTIALS_PATH
) -> Credentials:
    """Return valid credentials, refreshing or running the browser flow as needed.

    The token is cached at ``token_path``. A first run needs the OAuth client
    file at ``credentials_path``.
    """
    token_path.parent.mkdir(parents=True, exist_ok=True)

    creds: Credentials | None = None
    if token_path.exists():
        creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)

    if creds and creds.expired and creds.refresh_token:
        creds.refresh(Request())
    elif not creds or not creds.valid:
        if not credentials_path.exists():
            raise FileNotFoundError(
                f"Credentials file not found at {credentials_path}.\n"
                "Download OAuth client credentials (Gmail read + send) from the "
                "Google Cloud Console and save them there."
            )
        flow = InstalledAppFlow.from_client_secrets_file(str(credentials_path), SCOPES)
        creds = flow.run_local_server(port=0)

    token_path.write_text(creds.to_json())
    return creds


def get_gmail_service() -> Resource:
    return build("gmail", "v1", credentials=load_credentials())


def authenticated_address(service: Resource) -> str:
    """Email address of the account behind ``service``."""
    profile = service.users().getProfile(userId="me").execute()
    return profile["emailAddress"]
