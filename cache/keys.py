"""
Cache TTLs (seconds) and cache-key names per connector.
"""

from __future__ import annotations


class CACHE_TTL:
    SHORT = 5 * 60          # frequently changing data
    MEDIUM = 15 * 60        # default
    LONG = 60 * 60          # rarely changing data
    DAY = 24 * 60 * 60      # static data


class CACHE_KEYS:
    # Jira
    JIRA_MY_ISSUES = "jira:my_issues"
    JIRA_BOARDS = "jira:boards"

    # Confluence
    CONFLUENCE_SPACES = "confluence:spaces"

    # Outlook
    OUTLOOK_FOLDERS = "outlook:folders"
    OUTLOOK_RECENT_EMAILS = "outlook:recent_emails"

    # Google
    GOOGLE_CALENDAR_EVENTS = "google_calendar:events"
    GOOGLE_DRIVE_RECENT = "google_drive:recent"
    GOOGLE_DOCS_RECENT = "google_docs:recent"
    GOOGLE_SHEETS_RECENT = "google_sheets:recent"

    # GitHub
    GITHUB_PRS = "github:prs"

    # Jenkins
    JENKINS_JOBS = "jenkins:jobs"
