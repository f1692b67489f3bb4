"""
Family Event Planner — Google Authentication.

One OAuth2 token covers both Google services the planner uses: Calendar
(read-only, for conflict checks) and Gmail (send, for proposals and
manual-registration notices).
"""

from __future__ import annotations

import logging
from pathlib import Path

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/gmail.send",
]


def get_google_credentials() -> Credentials:
    """Load, refresh or obtain Google OAuth2 credentials.

    Flow:
    1. Try loading existing token from disk.
    2. If expired, refresh with the refresh token.
    3. If no valid credentials, run the interactive OAuth2 consent flow.
    4. Persist the (refreshed) token for next time.
    """
    from family_planner.config import settings

    token_path = Path(settings.GOOGLE_TOKEN_PATH)
    creds_path = Path(settings.GOOGLE_CREDENTIALS_PATH)
    creds: Credentials | None = None

    if token_path.exists():
        creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)
        logger.debug("Loaded existing token from %s", token_path)

    if creds and creds.expired and creds.refresh_token:
        try:
            creds.refresh(Request())
            logger.info("Token refreshed successfully")
        except Exception as exc:
            logger.warning("Token refresh failed (%s), re-authenticating", exc)
            creds = None

    if not creds or not creds.valid:
        if not creds_path.exists():
            raise FileNotFoundError(
                f"Google credentials file not found at {creds_path}. "
                "Download it from the Google Cloud Console."
            )
        flow = InstalledAppFlow.from_client_secrets_file(str(creds_path), SCOPES)
        creds = flow.run_local_server(port=0)
        logger.info("New credentials obtained via OAuth2 consent flow")

    token_path.parent.mkdir(parents=True, exist_ok=True)
    token_path.write_text(creds.to_json())
    logger.debug("Token saved to %s", token_path)
    return creds


def get_calendar_service():
    """Return a Google Calendar API v3 service object."""
    service = build("calendar", "v3", credentials=get_google_credentials())
    logger.debug("Google Calendar service built")
    return service


def get_gmail_service():
    """Return a Gmail API v1 service object."""
    service = build("gmail", "v1", credentials=get_google_credentials())
    logger.debug("Gmail service built")
    return service


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    print("Running Google authorization flow...")
    svc = get_calendar_service()
    calendars = svc.calendarList().list().execute().get("items", [])
    print(f"Auth successful! {len(calendars)} calendar(s) visible:")
    for cal in calendars:
        print(f"  - {cal.get('id')} ({cal.get('summary', '')})")
