"""Cached GitLab merge request / Jira work item data for dashboard views."""
