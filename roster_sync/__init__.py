"""
Roster Sync - Publish an organisation's member directory to its website.

This package reads members from a directory source (Slack workspace or LDAP),
derives their public role from the free-form title, screens out placeholder
avatars, and reconciles the result against a content sink (Sanity CMS).
"""

__version__ = "1.0.0"
__author__ = "Roster Sync Team"
