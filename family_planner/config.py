"""
Family Event Planner — Centralized configuration.

Loads all settings from .env and validates required keys.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
import sys
from datetime import date
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from family_planner/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)

_VALID_ROLES = ("blocking", "warning")
_VALID_CHANNELS = ("email", "sms")


class CalendarAccount(BaseModel):
    """One calendar account consulted by the conflict checker.

    role="blocking" accounts are authoritative (conflicts stop a proposal);
    role="warning" accounts are advisory (conflicts are shown to the human).
    """

    account_id: str
    role: str = "blocking"
    provider: str = "google"

    @field_validator("role")
    @classmethod
    def check_role(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in _VALID_ROLES:
            raise ValueError(f"Unknown calendar role: {v!r}")
        return v


class ChildConfig(BaseModel):
    name: str
    birthdate: date


def parse_calendar_accounts(raw: str) -> list[CalendarAccount]:
    """Parse "id:role[:provider],id:role[:provider]" into CalendarAccount list."""
    accounts: list[CalendarAccount] = []
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        parts = [p.strip() for p in chunk.split(":")]
        account = CalendarAccount(
            account_id=parts[0],
            role=parts[1] if len(parts) > 1 and parts[1] else "blocking",
            provider=parts[2] if len(parts) > 2 and parts[2] else "google",
        )
        accounts.append(account)
    return accounts


def parse_children(raw: str) -> list[ChildConfig]:
    """Parse "Name:YYYY-MM-DD,Name:YYYY-MM-DD" into ChildConfig list."""
    children: list[ChildConfig] = []
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk or ":" not in chunk:
            continue
        name, _, birthdate = chunk.partition(":")
        children.append(ChildConfig(name=name.strip(), birthdate=birthdate.strip()))
    return children


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Approval channel: where proposals are sent and replies come from
    APPROVAL_CHANNEL: str = "sms"
    APPROVAL_EMAIL: str = ""
    APPROVAL_PHONE: str = ""
    APPROVAL_TIMEOUT_HOURS: int = 24

    # Operator alerts (payment guard trips)
    OPERATOR_ALERT_CHANNEL: str = "email"
    OPERATOR_ALERT_DESTINATION: str = ""

    # Calendars consulted for conflicts
    CALENDAR_ACCOUNTS: list[CalendarAccount] = []
    CALENDAR_QUERY_TIMEOUT_SECONDS: float = 10.0
    CONFLICT_BUFFER_MINUTES: int = 30
    DEFAULT_EVENT_DURATION_MINUTES: int = 120

    # Google (Calendar + Gmail)
    GOOGLE_CREDENTIALS_PATH: str = "credentials.json"
    GOOGLE_TOKEN_PATH: str = "token.json"
    GMAIL_SENDER: str = "me"

    # CalDAV
    CALDAV_URL: str = ""
    CALDAV_USERNAME: str = ""
    CALDAV_PASSWORD: str = ""

    # Twilio SMS
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_FROM_NUMBER: str = ""

    # Registration automation
    REGISTRATION_MAX_ATTEMPTS: int = 3
    REGISTRATION_BACKOFF_SECONDS: float = 2.0
    REGISTRATION_BACKOFF_MAX_SECONDS: float = 30.0
    BROWSER_CONCURRENCY: int = 2
    PAGE_TIMEOUT_SECONDS: int = 30
    EVIDENCE_DIR: str = "data/evidence"

    # Pipeline
    WORKER_CONCURRENCY: int = 4
    DISCOVERY_LOOKAHEAD_DAYS: int = 60
    SWEEP_INTERVAL_SECONDS: int = 300

    # Family profile
    FAMILY_PARENT1_NAME: str = ""
    FAMILY_PARENT1_EMAIL: str = ""
    FAMILY_PARENT2_NAME: str = ""
    FAMILY_PARENT2_EMAIL: str = ""
    FAMILY_PHONE: str = ""
    FAMILY_CHILDREN: list[ChildConfig] = []

    # SQLite
    DATABASE_PATH: str = "data/events.db"

    TIMEZONE: str = "America/Los_Angeles"

    @field_validator("CALENDAR_ACCOUNTS", mode="before")
    @classmethod
    def parse_accounts(cls, v: str | list) -> list:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return parse_calendar_accounts(v)
        return []

    @field_validator("FAMILY_CHILDREN", mode="before")
    @classmethod
    def parse_family_children(cls, v: str | list) -> list:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return parse_children(v)
        return []

    @field_validator("APPROVAL_CHANNEL", "OPERATOR_ALERT_CHANNEL")
    @classmethod
    def check_channel(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in _VALID_CHANNELS:
            raise ValueError(f"Unknown notification channel: {v!r}")
        return v

    @property
    def approval_destination(self) -> str:
        if self.APPROVAL_CHANNEL == "sms":
            return self.APPROVAL_PHONE
        return self.APPROVAL_EMAIL


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    channel = os.getenv("APPROVAL_CHANNEL", "sms").strip().lower()
    destination = os.getenv("APPROVAL_PHONE" if channel == "sms" else "APPROVAL_EMAIL", "")

    if not destination or destination.startswith("your-"):
        print(
            f"ERROR: approval destination for channel '{channel}' is missing in .env",
            file=sys.stderr,
        )
        sys.exit(1)

    return Settings(
        APPROVAL_CHANNEL=channel,
        APPROVAL_EMAIL=os.getenv("APPROVAL_EMAIL", ""),
        APPROVAL_PHONE=os.getenv("APPROVAL_PHONE", ""),
        APPROVAL_TIMEOUT_HOURS=os.getenv("APPROVAL_TIMEOUT_HOURS", "24"),
        OPERATOR_ALERT_CHANNEL=os.getenv("OPERATOR_ALERT_CHANNEL", "email"),
        OPERATOR_ALERT_DESTINATION=os.getenv("OPERATOR_ALERT_DESTINATION", ""),
        CALENDAR_ACCOUNTS=os.getenv("CALENDAR_ACCOUNTS", ""),
        CALENDAR_QUERY_TIMEOUT_SECONDS=os.getenv("CALENDAR_QUERY_TIMEOUT_SECONDS", "10"),
        CONFLICT_BUFFER_MINUTES=os.getenv("CONFLICT_BUFFER_MINUTES", "30"),
        DEFAULT_EVENT_DURATION_MINUTES=os.getenv("DEFAULT_EVENT_DURATION_MINUTES", "120"),
        GOOGLE_CREDENTIALS_PATH=os.getenv("GOOGLE_CREDENTIALS_PATH", "credentials.json"),
        GOOGLE_TOKEN_PATH=os.getenv("GOOGLE_TOKEN_PATH", "token.json"),
        GMAIL_SENDER=os.getenv("GMAIL_SENDER", "me"),
        CALDAV_URL=os.getenv("CALDAV_URL", ""),
        CALDAV_USERNAME=os.getenv("CALDAV_USERNAME", ""),
        CALDAV_PASSWORD=os.getenv("CALDAV_PASSWORD", ""),
        TWILIO_ACCOUNT_SID=os.getenv("TWILIO_ACCOUNT_SID", ""),
        TWILIO_AUTH_TOKEN=os.getenv("TWILIO_AUTH_TOKEN", ""),
        TWILIO_FROM_NUMBER=os.getenv("TWILIO_FROM_NUMBER", ""),
        REGISTRATION_MAX_ATTEMPTS=os.getenv("REGISTRATION_MAX_ATTEMPTS", "3"),
        REGISTRATION_BACKOFF_SECONDS=os.getenv("REGISTRATION_BACKOFF_SECONDS", "2"),
        REGISTRATION_BACKOFF_MAX_SECONDS=os.getenv("REGISTRATION_BACKOFF_MAX_SECONDS", "30"),
        BROWSER_CONCURRENCY=os.getenv("BROWSER_CONCURRENCY", "2"),
        PAGE_TIMEOUT_SECONDS=os.getenv("PAGE_TIMEOUT_SECONDS", "30"),
        EVIDENCE_DIR=os.getenv("EVIDENCE_DIR", "data/evidence"),
        WORKER_CONCURRENCY=os.getenv("WORKER_CONCURRENCY", "4"),
        DISCOVERY_LOOKAHEAD_DAYS=os.getenv("DISCOVERY_LOOKAHEAD_DAYS", "60"),
        SWEEP_INTERVAL_SECONDS=os.getenv("SWEEP_INTERVAL_SECONDS", "300"),
        FAMILY_PARENT1_NAME=os.getenv("FAMILY_PARENT1_NAME", ""),
        FAMILY_PARENT1_EMAIL=os.getenv("FAMILY_PARENT1_EMAIL", ""),
        FAMILY_PARENT2_NAME=os.getenv("FAMILY_PARENT2_NAME", ""),
        FAMILY_PARENT2_EMAIL=os.getenv("FAMILY_PARENT2_EMAIL", ""),
        FAMILY_PHONE=os.getenv("FAMILY_PHONE", ""),
        FAMILY_CHILDREN=os.getenv("FAMILY_CHILDREN", ""),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/events.db"),
        TIMEZONE=os.getenv("TIMEZONE", "America/Los_Angeles"),
    )


# Singleton, imported by all other modules as:
#   from family_planner.config import settings
settings = _load_settings()
